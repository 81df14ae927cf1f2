"""
群内文本命令
处理 "#stats ..." 形式的命令，返回要回复到群里的文本
"""
from __future__ import annotations

import logging
import re
from typing import List, Optional

from .reports import render_feature
from .stats import StatsService

logger = logging.getLogger("group-stats.commands")

DAYS_PATTERN = re.compile(r"^(\d+)d$", re.IGNORECASE)
HOUR_MINUTE_PATTERN = re.compile(r"^\d{1,2}$")

HELP_LINES = [
    "#stats clean 7d",
    "#stats <HH> <MM> <feature>",
    "#stats schedule list",
    "#stats schedule remove <job_id>",
    "#stats schedule pause|resume <job_id>",
    "#stats run <feature>",
    "#stats period 30d",
    "#stats enable|disable <flag>",
]


def parse_days(value: str) -> Optional[int]:
    m = DAYS_PATTERN.match(value)
    return int(m.group(1)) if m else None


def format_job(job: dict) -> str:
    line = f"#{job['id']} {job['hour']:02d}:{job['minute']:02d} {job['feature']}"
    return line if job.get("enabled", True) else line + " (已暂停)"


class CommandHandler:
    """群命令处理器（命令前缀已由调用方剥离）"""

    def __init__(self, stats: StatsService):
        self.stats = stats

    async def handle(self, group_id: str, text: str) -> str:
        args: List[str] = text.split()
        if not args:
            return "\n".join(HELP_LINES)

        cmd = args[0]

        if cmd == "clean" and len(args) > 1:
            days = parse_days(args[1])
            if not days:
                return "参数格式错误，示例: #stats clean 7d"
            deleted = await self.stats.clean_data(days)
            logger.info(f"🧹 群 {group_id} 触发清理: {days} 天前, 删除消息 {deleted} 条")
            return f"已清理 {days} 天前数据，删除消息 {deleted} 条"

        if cmd == "schedule" and len(args) > 1 and args[1] == "list":
            jobs = await self.stats.list_group_schedules(group_id)
            if not jobs:
                return "本群暂无定时任务"
            return "\n".join(format_job(j) for j in jobs)

        if cmd == "schedule" and len(args) > 2 and args[1] == "remove":
            job_ref = args[2]
            ok = job_ref.isdigit() and await self.stats.remove_group_schedule(group_id, int(job_ref))
            return f"任务 {job_ref} 已删除" if ok else f"任务 {job_ref} 不存在"

        if cmd == "schedule" and len(args) > 2 and args[1] in ("pause", "resume"):
            job_ref = args[2]
            enabled = args[1] == "resume"
            ok = job_ref.isdigit() and await self.stats.set_group_schedule_enabled(group_id, int(job_ref), enabled)
            if not ok:
                return f"任务 {job_ref} 不存在"
            return f"任务 {job_ref} 已{'恢复' if enabled else '暂停'}"

        if len(args) >= 3 and HOUR_MINUTE_PATTERN.match(args[0]) and HOUR_MINUTE_PATTERN.match(args[1]):
            hour, minute, feature = int(args[0]), int(args[1]), args[2]
            if hour > 23 or minute > 59:
                return "时间范围错误，小时 0-23，分钟 0-59"
            job = await self.stats.upsert_group_schedule(group_id, hour, minute, feature)
            return f"任务已设置: {format_job(job)}"

        if cmd == "run" and len(args) > 1:
            return await render_feature(self.stats, group_id, args[1])

        if cmd == "period" and len(args) > 1:
            days = parse_days(args[1])
            if not days:
                return "参数格式错误，示例: #stats period 30d"
            applied = await self.stats.set_stat_period(days)
            return f"统计周期已设置为 {applied} 天"

        if cmd in ("enable", "disable") and len(args) > 1:
            name = args[1]
            if cmd == "enable":
                known = await self.stats.enable_feature(name)
            else:
                known = await self.stats.disable_feature(name)
            state = "开启" if cmd == "enable" else "关闭"
            return f"功能 {name} 已{state}" if known else f"功能 {name} 已{state}（未知开关，仅记录）"

        return "未知命令，输入 #stats 查看帮助"
