"""
统计查询模块
在消息日志上提供按时间区间的计数、排行、分布、关键词与 @ 统计，
所有会产生计数的查询都同时提供"含撤回"和"不含撤回"两个版本
"""
from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .anomaly import BurstDetector, SilentDetector
from .config import ConfigStore
from .database import Database
from .errors import QueryError
from .tokenizer import Tokenizer, extract_mentions

logger = logging.getLogger("group-stats.stats")

DAY_SECONDS = 86400
# 判定"不活跃用户"时回看的历史窗口
INACTIVE_HISTORY_DAYS = 30
FEATURE_PREFIX = "feature_flags."


@dataclass(frozen=True)
class TimeRange:
    start: Optional[int] = None
    end: Optional[int] = None
    days: Optional[float] = None


RangeInput = Union[TimeRange, Mapping[str, Any], None]


def _coerce_range(value: RangeInput) -> TimeRange:
    if value is None:
        return TimeRange()
    if isinstance(value, TimeRange):
        return value
    return TimeRange(
        start=int(value["start"]) if value.get("start") is not None else None,
        end=int(value["end"]) if value.get("end") is not None else None,
        days=value.get("days"),
    )


def resolve_time_range(value: RangeInput, default_days: float, now: Optional[float] = None) -> Tuple[int, int]:
    """
    解析时间区间为闭区间 (start, end)。

    end 缺省为当前时间；给出 start 时直接使用并忽略 days，
    否则 start = end - max(1, days) * 86400。
    """
    rng = _coerce_range(value)
    end = int(rng.end) if rng.end is not None else int(time.time() if now is None else now)
    if rng.start is not None:
        start = int(rng.start)
    else:
        days = max(1, rng.days if rng.days is not None else default_days)
        start = int(end - days * DAY_SECONDS)
    if start > end:
        raise QueryError(f"时间区间非法: start={start} > end={end}")
    return start, end


class StatsService:
    """统计查询服务（只读查询 + 少量维护操作）"""

    def __init__(
        self,
        config: ConfigStore,
        db: Database,
        tokenizer: Optional[Tokenizer] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.db = db
        self.tokenizer = tokenizer or Tokenizer(config)
        self.clock = clock
        self.burst = BurstDetector(db, config)
        self.silent = SilentDetector(db, config, clock)

    def _range(self, value: RangeInput) -> Tuple[int, int]:
        return resolve_time_range(value, self.config.current.stat_period_days, self.clock())

    def _offset(self) -> int:
        return self.config.current.timezone_offset_minutes * 60

    # ─── 消息总数 ───

    async def get_group_total_messages(self, group_id: str, time_range: RangeInput = None) -> int:
        start, end = self._range(time_range)
        return await self.db.stats.count_messages(group_id, start, end, include_recall=True)

    async def get_group_total_messages_without_recall(self, group_id: str, time_range: RangeInput = None) -> int:
        start, end = self._range(time_range)
        return await self.db.stats.count_messages(group_id, start, end, include_recall=False)

    async def get_user_total_messages(self, group_id: str, user_id: str, time_range: RangeInput = None) -> int:
        start, end = self._range(time_range)
        return await self.db.stats.count_messages(group_id, start, end, include_recall=True, user_id=user_id)

    async def get_user_total_messages_without_recall(
        self, group_id: str, user_id: str, time_range: RangeInput = None
    ) -> int:
        start, end = self._range(time_range)
        return await self.db.stats.count_messages(group_id, start, end, include_recall=False, user_id=user_id)

    # ─── 排行 ───

    async def get_group_top_users(self, group_id: str, limit: int = 10, time_range: RangeInput = None) -> List[dict]:
        start, end = self._range(time_range)
        return await self.db.stats.top_users(group_id, start, end, max(1, int(limit)), include_recall=True)

    async def get_group_top_users_without_recall(
        self, group_id: str, limit: int = 10, time_range: RangeInput = None
    ) -> List[dict]:
        start, end = self._range(time_range)
        return await self.db.stats.top_users(group_id, start, end, max(1, int(limit)), include_recall=False)

    # ─── 热力图 ───

    async def get_group_heatmap(self, group_id: str, time_range: RangeInput = None) -> Dict[str, List[int]]:
        return await self._build_heatmap(group_id, True, time_range)

    async def get_group_heatmap_without_recall(self, group_id: str, time_range: RangeInput = None) -> Dict[str, List[int]]:
        return await self._build_heatmap(group_id, False, time_range)

    async def _build_heatmap(self, group_id: str, include_recall: bool, time_range: RangeInput) -> Dict[str, List[int]]:
        start, end = self._range(time_range)
        hourly = [0] * 24
        weekly = [0] * 7
        offset = self._offset()
        for event_time in await self.db.stats.event_times(group_id, start, end, include_recall):
            shifted = event_time + offset
            hourly[(shifted // 3600) % 24] += 1
            # 1970-01-01 是周四；周一为 0
            weekly[(shifted // DAY_SECONDS + 3) % 7] += 1
        return {"hourly": hourly, "weekly": weekly}

    # ─── 关键词 ───

    async def get_group_keyword_stats(self, group_id: str, limit: int = 50, time_range: RangeInput = None) -> List[dict]:
        return await self._keyword_stats(group_id, None, True, limit, time_range)

    async def get_group_keyword_stats_without_recall(
        self, group_id: str, limit: int = 50, time_range: RangeInput = None
    ) -> List[dict]:
        return await self._keyword_stats(group_id, None, False, limit, time_range)

    async def get_user_keyword_stats(
        self, group_id: str, user_id: str, limit: int = 50, time_range: RangeInput = None
    ) -> List[dict]:
        return await self._keyword_stats(group_id, user_id, True, limit, time_range)

    async def _keyword_stats(
        self,
        group_id: str,
        user_id: Optional[str],
        include_recall: bool,
        limit: int,
        time_range: RangeInput,
    ) -> List[dict]:
        flags = self.config.current.feature_flags
        if not flags.keyword or (user_id is not None and not flags.user_content):
            return []
        start, end = self._range(time_range)
        contents = await self.db.stats.text_contents(group_id, start, end, include_recall, user_id=user_id)
        counter: Counter = Counter()
        for text in contents:
            counter.update(self.tokenizer.tokenize(text))
        # Counter.most_common 对同票保持首次出现顺序
        return [{"keyword": w, "count": c} for w, c in counter.most_common(max(1, int(limit)))]

    # ─── 消息类型 ───

    async def get_group_message_types(self, group_id: str, time_range: RangeInput = None) -> List[dict]:
        start, end = self._range(time_range)
        return await self.db.stats.message_types(group_id, start, end, include_recall=True)

    async def get_group_message_types_without_recall(self, group_id: str, time_range: RangeInput = None) -> List[dict]:
        start, end = self._range(time_range)
        return await self.db.stats.message_types(group_id, start, end, include_recall=False)

    async def get_user_message_types(self, group_id: str, user_id: str, time_range: RangeInput = None) -> List[dict]:
        start, end = self._range(time_range)
        return await self.db.stats.message_types(group_id, start, end, include_recall=True, user_id=user_id)

    async def get_user_message_types_without_recall(
        self, group_id: str, user_id: str, time_range: RangeInput = None
    ) -> List[dict]:
        start, end = self._range(time_range)
        return await self.db.stats.message_types(group_id, start, end, include_recall=False, user_id=user_id)

    # ─── 按天 / 按小时 ───

    async def get_group_daily_messages(self, group_id: str, time_range: RangeInput = None) -> List[dict]:
        start, end = self._range(time_range)
        return await self.db.stats.daily_counts(group_id, start, end, self._offset(), include_recall=True)

    async def get_group_daily_messages_without_recall(self, group_id: str, time_range: RangeInput = None) -> List[dict]:
        start, end = self._range(time_range)
        return await self.db.stats.daily_counts(group_id, start, end, self._offset(), include_recall=False)

    async def get_group_hourly_messages(self, group_id: str, time_range: RangeInput = None) -> List[dict]:
        start, end = self._range(time_range)
        return await self.db.stats.hourly_counts(group_id, start, end, self._offset(), include_recall=True)

    async def get_group_hourly_messages_without_recall(self, group_id: str, time_range: RangeInput = None) -> List[dict]:
        start, end = self._range(time_range)
        return await self.db.stats.hourly_counts(group_id, start, end, self._offset(), include_recall=False)

    async def get_user_hourly_activity(self, group_id: str, user_id: str, time_range: RangeInput = None) -> List[dict]:
        start, end = self._range(time_range)
        return await self.db.stats.hourly_counts(
            group_id, start, end, self._offset(), include_recall=True, user_id=user_id
        )

    async def get_user_hourly_activity_without_recall(
        self, group_id: str, user_id: str, time_range: RangeInput = None
    ) -> List[dict]:
        start, end = self._range(time_range)
        return await self.db.stats.hourly_counts(
            group_id, start, end, self._offset(), include_recall=False, user_id=user_id
        )

    async def get_user_active_days(self, group_id: str, user_id: str, time_range: RangeInput = None) -> int:
        start, end = self._range(time_range)
        return await self.db.stats.active_days(group_id, user_id, start, end, self._offset())

    # ─── @ 统计 ───

    async def get_user_at_stats(self, group_id: str, user_id: str, time_range: RangeInput = None) -> List[dict]:
        if not self.config.current.feature_flags.user_content:
            return []
        start, end = self._range(time_range)
        contents = await self.db.stats.text_contents(
            group_id, start, end, include_recall=True, user_id=user_id, text_only=False
        )
        counter: Counter = Counter()
        for text in contents:
            counter.update(extract_mentions(text))
        return [{"target_user_id": uid, "count": c} for uid, c in counter.most_common()]

    # ─── 活跃 / 不活跃用户 ───

    async def get_group_active_users(self, group_id: str, days: float = 7) -> List[dict]:
        return await self.get_group_top_users_without_recall(group_id, 200, TimeRange(days=days))

    async def get_group_inactive_users(self, group_id: str, days: float = 7) -> List[dict]:
        now = int(self.clock())
        cutoff = int(now - days * DAY_SECONDS)
        users = await self.db.stats.users_absent_since(
            group_id,
            history_start=cutoff - INACTIVE_HISTORY_DAYS * DAY_SECONDS,
            history_end=cutoff,
            recent_start=cutoff,
            recent_end=now,
        )
        return [{"user_id": uid} for uid in users]

    # ─── 异常检测 ───

    async def get_group_burst_events(self, group_id: str, time_range: RangeInput = None) -> List[dict]:
        cfg = self.config.current
        default_days = cfg.burst.lookback_days if time_range is None else cfg.stat_period_days
        start, end = resolve_time_range(time_range, default_days, self.clock())
        return await self.burst.detect(group_id, start, end)

    async def get_group_silent_events(self, group_id: str) -> List[dict]:
        return await self.silent.detect(group_id)

    # ─── 维护操作 ───

    async def clean_data(self, days: float) -> int:
        threshold = int(self.clock() - max(1, days) * DAY_SECONDS)
        deleted = await self.db.messages.delete_before(threshold)
        return deleted["messages"]

    async def set_stat_period(self, days: int) -> int:
        d = self.config.set_stat_period(days)
        await self.db.settings.set("stat_period_days", str(d))
        return d

    async def enable_feature(self, name: str) -> bool:
        return await self._set_feature(name, True)

    async def disable_feature(self, name: str) -> bool:
        return await self._set_feature(name, False)

    async def _set_feature(self, name: str, enabled: bool) -> bool:
        """写入 feature_flags 镜像；已知开关同时更新运行时配置，返回是否为已知开关"""
        if not name:
            raise QueryError("功能名不能为空")
        await self.db.settings.set_feature(name, enabled)
        known = self.config.set_feature_flag(name, enabled)
        logger.info(f"🔧 功能 {name} 已{'开启' if enabled else '关闭'}")
        return known

    async def apply_config(self, patch: Dict[str, Any]) -> None:
        """
        按点号路径修改配置并写入持久化镜像，重启后依然生效。
        stat_period_days 与 feature_flags.* 写到各自的镜像表，其余键记为配置覆盖项。
        """
        self.config.apply_many(patch)
        for key in patch:
            value = self.config.get_path(key)
            if key == "stat_period_days":
                await self.db.settings.set("stat_period_days", str(value))
            elif key.startswith(FEATURE_PREFIX):
                await self.db.settings.set_feature(key[len(FEATURE_PREFIX):], value)
            else:
                await self.db.settings.set_override(key, value)
        logger.info(f"🔧 配置已更新: {', '.join(patch)}")

    async def set_group_enabled(self, group_id: str, enabled: bool) -> None:
        self.config.set_group_enabled(group_id, enabled)
        await self.db.settings.set_group_enabled(str(group_id), enabled)
        logger.info(f"🔧 群 {group_id} 统计已{'开启' if enabled else '关闭'}")

    async def load_persisted_settings(self):
        """启动时用数据库中的镜像覆盖配置文件的值"""
        for key, value in (await self.db.settings.get_overrides()).items():
            try:
                self.config.apply_path(key, value)
            except ValueError as e:
                logger.warning(f"⚠️ 跳过无效的持久化配置 {key}: {e}")
        period = await self.db.settings.get_int("stat_period_days")
        if period is not None:
            self.config.set_stat_period(period)
        for name, enabled in (await self.db.settings.get_features()).items():
            self.config.set_feature_flag(name, enabled)
        for group_id, enabled in (await self.db.settings.get_group_settings()).items():
            self.config.set_group_enabled(group_id, enabled)

    # ─── 定时任务 ───

    async def list_group_schedules(self, group_id: str) -> List[dict]:
        return await self.db.schedules.list_group_schedules(group_id)

    async def upsert_group_schedule(self, group_id: str, hour: int, minute: int, feature: str) -> dict:
        if not 0 <= hour <= 23 or not 0 <= minute <= 59:
            raise QueryError("时间范围错误，小时 0-23，分钟 0-59")
        if not feature:
            raise QueryError("功能名不能为空")
        return await self.db.schedules.upsert_group_schedule(group_id, hour, minute, feature)

    async def remove_group_schedule(self, group_id: str, job_id: int) -> bool:
        return await self.db.schedules.remove_group_schedule(group_id, job_id)

    async def set_group_schedule_enabled(self, group_id: str, job_id: int, enabled: bool) -> bool:
        """暂停 / 恢复本群的定时任务，任务不属于该群时返回 False"""
        return await self.db.schedules.set_schedule_enabled(group_id, job_id, enabled)
