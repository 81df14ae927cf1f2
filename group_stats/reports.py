"""
报告渲染
把一个功能名渲染为可直接发送到群里的纯文本
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Optional

if TYPE_CHECKING:
    from .stats import StatsService

WEEKDAY_NAMES = ["周一", "周二", "周三", "周四", "周五", "周六", "周日"]


def _fmt_ts(ts: int, offset_minutes: int) -> str:
    tz = timezone(timedelta(minutes=offset_minutes))
    return datetime.fromtimestamp(ts, tz).strftime("%m-%d %H:%M")


async def _group_total(stats: "StatsService", group_id: str) -> str:
    total = await stats.get_group_total_messages(group_id)
    return f"群总消息数: {total}"


async def _group_total_delre(stats: "StatsService", group_id: str) -> str:
    total = await stats.get_group_total_messages_without_recall(group_id)
    return f"群总消息数(不含撤回): {total}"


async def _top_users(stats: "StatsService", group_id: str) -> str:
    top = await stats.get_group_top_users_without_recall(group_id, 10)
    lines = ["群活跃 Top10:"]
    for i, row in enumerate(top, 1):
        lines.append(f"{i}. {row['user_id']}: {row['count']}")
    return "\n".join(lines)


async def _heatmap(stats: "StatsService", group_id: str) -> str:
    data = await stats.get_group_heatmap_without_recall(group_id)
    hourly, weekly = data["hourly"], data["weekly"]
    peak_hour = max(range(24), key=lambda h: hourly[h])
    lines = ["群活跃时段:"]
    for h in range(24):
        if hourly[h]:
            lines.append(f"{h:02d}:00 {hourly[h]}")
    lines.append(f"高峰: {peak_hour:02d}:00")
    lines.append("按星期: " + " ".join(f"{WEEKDAY_NAMES[i]}{weekly[i]}" for i in range(7)))
    return "\n".join(lines)


async def _keywords(stats: "StatsService", group_id: str) -> str:
    words = await stats.get_group_keyword_stats_without_recall(group_id, 10)
    if not words:
        return "群热词: 暂无数据"
    return "群热词 Top10:\n" + "\n".join(
        f"{i}. {w['keyword']}: {w['count']}" for i, w in enumerate(words, 1)
    )


async def _message_types(stats: "StatsService", group_id: str) -> str:
    rows = await stats.get_group_message_types_without_recall(group_id)
    if not rows:
        return "消息类型分布: 暂无数据"
    return "消息类型分布:\n" + "\n".join(f"{r['message_type']}: {r['count']}" for r in rows)


async def _daily(stats: "StatsService", group_id: str) -> str:
    rows = await stats.get_group_daily_messages_without_recall(group_id)
    if not rows:
        return "每日消息数: 暂无数据"
    return "每日消息数:\n" + "\n".join(f"{r['day']}: {r['count']}" for r in rows[-7:])


async def _burst(stats: "StatsService", group_id: str) -> str:
    events = await stats.get_group_burst_events(group_id)
    if not events:
        return "近期没有检测到消息突增"
    offset = stats.config.current.timezone_offset_minutes
    lines = ["消息突增:"]
    for e in events:
        lines.append(f"{_fmt_ts(e['window_start'], offset)} {e['count']} 条, {len(e['participants'])} 人参与")
    return "\n".join(lines)


async def _silent(stats: "StatsService", group_id: str) -> str:
    events = await stats.get_group_silent_events(group_id)
    if not events:
        return "群活跃度正常"
    e = events[0]
    hours = stats.config.current.silent.recent_hours
    text = f"群已冷清: 最近 {hours} 小时仅 {e['message_count']} 条消息"
    if e["cold_users"]:
        text += "\n沉默成员: " + ", ".join(e["cold_users"][:20])
    return text


Renderer = Callable[["StatsService", str], Awaitable[str]]

# 功能名 -> (渲染函数, 对应的功能开关；None 表示始终可用)
SUPPORTED_FEATURES: Dict[str, tuple] = {
    "group_total": (_group_total, None),
    "group_total_delre": (_group_total_delre, None),
    "top_users": (_top_users, None),
    "heatmap": (_heatmap, "heatmap"),
    "keywords": (_keywords, "keyword"),
    "message_types": (_message_types, "type_stats"),
    "daily": (_daily, None),
    "burst": (_burst, "burst"),
    "silent": (_silent, "silent"),
}


def feature_flag_for(feature: str) -> Optional[str]:
    entry = SUPPORTED_FEATURES.get(feature)
    return entry[1] if entry else None


async def render_feature(stats: "StatsService", group_id: str, feature: str) -> str:
    """渲染功能报告；未知功能返回提示文本而不是抛异常"""
    entry = SUPPORTED_FEATURES.get(feature)
    if entry is None:
        return f"不支持的功能: {feature}"
    renderer, flag = entry
    if flag and not getattr(stats.config.current.feature_flags, flag):
        return f"功能已关闭: {feature}"
    return await renderer(stats, group_id)
