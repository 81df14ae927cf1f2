"""
运行时装配
把配置、数据库、采集器、统计服务、命令处理、发送器与调度器组装在一起，
并负责启动 / 关闭的顺序
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from .collector import Collector
from .commands import CommandHandler
from .config import AppConfig, ConfigStore
from .database import Database
from .errors import GroupStatsError
from .scheduler import ReportScheduler
from .sender import OneBotSender
from .stats import StatsService
from .tokenizer import Tokenizer

logger = logging.getLogger("group-stats.runtime")


class Runtime:
    def __init__(
        self,
        config: AppConfig,
        sender=None,
        clock: Callable[[], float] = time.time,
        tokenizer_cut: Optional[Callable] = None,
    ):
        self.config = ConfigStore(config)
        self.clock = clock
        self.db = Database(config.database.path)
        self.tokenizer = Tokenizer(self.config, cut=tokenizer_cut)
        self.collector = Collector(self.config, self.db, clock=clock)
        self.stats = StatsService(self.config, self.db, self.tokenizer, clock=clock)
        self.commands = CommandHandler(self.stats)
        self.sender = sender or OneBotSender(self.config)
        self.scheduler = ReportScheduler(self.config, self.stats, self.sender, clock=clock)
        self.started_at: Optional[float] = None

    async def start(self, with_scheduler: bool = True) -> "Runtime":
        """连接数据库、加载持久化设置并启动调度；数据库初始化失败直接向上抛出"""
        await self.db.connect()
        await self.stats.load_persisted_settings()
        if with_scheduler:
            self.scheduler.start()
        self.started_at = self.clock()
        logger.info("🚀 群聊统计服务已启动")
        return self

    async def stop(self):
        self.scheduler.stop()
        if self.db.is_connected:
            await self.db.close()
        logger.info("👋 群聊统计服务已停止")

    async def handle_event(self, raw: Dict[str, Any]) -> Optional[str]:
        """
        处理一条 OneBot 上报事件。
        所有事件先入库；带命令前缀的群消息再执行命令并回复，返回回复文本。
        """
        cfg = self.config.current
        if not cfg.enabled:
            return None

        await self.collector.ingest(raw)
        if not isinstance(raw, dict) or raw.get("post_type") != "message":
            return None

        text = str(raw.get("raw_message") or "")
        prefix = cfg.command_prefix or "#stats"
        if not text.startswith(prefix):
            return None

        if raw.get("message_type") == "private":
            user_id = raw.get("user_id")
            if user_id:
                await self.sender.send_private_message(str(user_id), "统计命令仅支持在群内使用")
            return None

        group_id = raw.get("group_id")
        if not group_id or not self.config.is_group_enabled(str(group_id)):
            return None

        self.collector.stats.command_calls += 1
        try:
            reply = await self.commands.handle(str(group_id), text[len(prefix):].strip())
        except Exception as e:
            logger.error(f"❌ 处理命令失败: {text[:80]}: {e}", exc_info=True)
            return None
        await self.sender.send_group_message(str(group_id), reply)
        return reply

    async def list_groups(self) -> List[dict]:
        """机器人所在的群及其统计开关；OneBot 调用失败时抛出 GroupStatsError"""
        groups = await self.sender.get_group_list()
        if groups is None:
            raise GroupStatsError("获取群列表失败")
        return [
            {
                "group_id": g.get("group_id"),
                "group_name": g.get("group_name"),
                "member_count": g.get("member_count"),
                "max_member_count": g.get("max_member_count"),
                "enabled": self.config.is_group_enabled(str(g.get("group_id"))),
            }
            for g in groups
            if isinstance(g, dict)
        ]

    async def status(self) -> Dict[str, Any]:
        cfg = self.config.current
        counters = self.collector.stats
        overview = await self.db.messages.get_storage_overview() if self.db.is_connected else {}
        persisted = await self.db.settings.all() if self.db.is_connected else {}
        return {
            "enabled": cfg.enabled,
            "uptime_seconds": int(self.clock() - self.started_at) if self.started_at else 0,
            "db_connected": self.db.is_connected,
            "scheduler_running": self.scheduler.running,
            "stat_period_days": cfg.stat_period_days,
            "timezone_offset_minutes": cfg.timezone_offset_minutes,
            "collected": counters.collected,
            "recalled": counters.recalled,
            "command_calls": counters.command_calls,
            "dropped": counters.dropped,
            "storage": overview,
            "persisted_settings": persisted,
        }
