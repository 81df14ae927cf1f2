"""
异常检测模块
- BurstDetector: 固定窗口内消息量显著高于均值（刷屏 / 突发讨论）
- SilentDetector: 最近一段时间的消息量低于历史分位数（冷群）
"""
from __future__ import annotations

import logging
import math
import time
from typing import Callable, List, Sequence

from .config import ConfigStore

logger = logging.getLogger("group-stats.anomaly")

DAY_SECONDS = 86400
COLD_USER_LOOKBACK_DAYS = 30


def percentile(samples: Sequence[int], q: float) -> int:
    """取排序后下标 floor((n-1)*q) 的元素；空样本返回 0"""
    if not samples:
        return 0
    ordered = sorted(samples)
    idx = int(math.floor((len(ordered) - 1) * q))
    return ordered[max(0, min(idx, len(ordered) - 1))]


class BurstDetector:
    def __init__(self, db, config: ConfigStore):
        self.db = db
        self.config = config

    @staticmethod
    def threshold(counts: Sequence[int], sigma: float, min_messages: int) -> float:
        """threshold = max(min_messages, mean + sigma * std)，std 为总体标准差"""
        n = len(counts)
        mean = sum(counts) / n
        variance = sum((c - mean) ** 2 for c in counts) / n
        return max(min_messages, mean + sigma * math.sqrt(variance))

    async def detect(self, group_id: str, start: int, end: int) -> List[dict]:
        cfg = self.config.current.burst
        window = cfg.window_minutes * 60
        buckets = await self.db.stats.bucket_counts(group_id, start, end, window)
        if not buckets:
            return []

        threshold = self.threshold([b["count"] for b in buckets], cfg.sigma, cfg.min_messages)
        events = []
        for b in buckets:
            if b["count"] < threshold:
                continue
            # 参与者统计包含已撤回消息
            participants = await self.db.stats.distinct_users(
                group_id, b["bucket"], b["bucket"] + window - 1, include_recall=True
            )
            events.append({
                "window_start": b["bucket"],
                "count": b["count"],
                "participants": participants,
            })

        if events:
            logger.info(f"🔥 群 {group_id} 检测到 {len(events)} 个突发窗口 (阈值 {threshold:.1f})")
        return events


class SilentDetector:
    def __init__(self, db, config: ConfigStore, clock: Callable[[], float] = time.time):
        self.db = db
        self.config = config
        self.clock = clock

    async def detect(self, group_id: str) -> List[dict]:
        cfg = self.config.current.silent
        now = int(self.clock())
        recent_seconds = cfg.recent_hours * 3600
        recent_start = now - recent_seconds

        current = await self.db.stats.count_messages(group_id, recent_start, now, include_recall=False)
        samples = await self.db.stats.slot_counts(
            group_id, now - cfg.baseline_days * DAY_SECONDS, now, recent_seconds
        )
        threshold = percentile(samples, cfg.quantile)
        if current > threshold:
            return []

        cold_users = await self.db.stats.users_absent_since(
            group_id,
            history_start=now - COLD_USER_LOOKBACK_DAYS * DAY_SECONDS,
            history_end=now,
            recent_start=recent_start,
            recent_end=now,
        )
        logger.info(f"🧊 群 {group_id} 最近 {cfg.recent_hours} 小时消息 {current} 条，低于阈值 {threshold}")
        return [{
            "start": recent_start,
            "end": now,
            "message_count": current,
            "cold_users": cold_users,
        }]
