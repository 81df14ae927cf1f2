"""
定时报告调度模块
按固定间隔扫描 group_schedules，到点的任务渲染报告并发到对应群
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import ConfigStore
from .reports import render_feature
from .stats import StatsService

logger = logging.getLogger("group-stats.scheduler")

JOB_ID = "group-stats-scan"


def local_hour_minute(now: float, offset_minutes: int):
    shifted = datetime.fromtimestamp(int(now) + offset_minutes * 60, tz=timezone.utc)
    return shifted.hour, shifted.minute


class ReportScheduler:
    """
    定时报告调度器。

    每次 tick 计算本地时区的 (小时, 分钟)，找出匹配的已启用任务逐个执行：
    渲染报告 -> 发送 -> 失败且 retry_once 时重发一次 -> 写 last_run_at。
    单个任务出错只记录日志，不影响同一轮的其他任务。
    """

    def __init__(
        self,
        config: ConfigStore,
        stats: StatsService,
        sender,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.stats = stats
        self.sender = sender
        self.clock = clock
        self._tick_lock = asyncio.Lock()
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self):
        cfg = self.config.current.scheduler
        if not cfg.enabled:
            logger.info("⏸️ 定时任务调度已关闭")
            return
        self.stop()
        interval = max(10, cfg.scan_interval_seconds)
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=interval),
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(f"⏰ 定时任务调度已启动 (每 {interval}s 扫描一次)")

    def stop(self):
        if self._scheduler is None:
            return
        if self._scheduler.get_job(JOB_ID):
            self._scheduler.remove_job(JOB_ID)
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("⏹️ 定时任务调度已停止")

    async def tick(self) -> int:
        if self._tick_lock.locked():
            logger.debug("上一轮扫描尚未结束，跳过本轮")
            return 0
        async with self._tick_lock:
            return await self.run_due_jobs()

    async def run_due_jobs(self, now: Optional[float] = None) -> int:
        """执行当前分钟到期的任务，返回尝试执行的任务数"""
        now = int(self.clock() if now is None else now)
        hour, minute = local_hour_minute(now, self.config.current.timezone_offset_minutes)
        jobs = await self.stats.db.schedules.get_due_jobs(hour, minute)

        attempted = 0
        for job in jobs:
            if not self.config.is_group_enabled(job["group_id"]):
                continue
            last_run = job.get("last_run_at")
            if last_run is not None and last_run // 60 == now // 60:
                continue
            attempted += 1
            try:
                await self._run_job(job, now)
            except Exception as e:
                logger.error(f"❌ 定时任务 #{job['id']} ({job['feature']}) 执行失败: {e}", exc_info=True)
        return attempted

    async def _run_job(self, job: dict, now: int):
        try:
            content = await render_feature(self.stats, job["group_id"], job["feature"])
            ok = await self.sender.send_group_message(job["group_id"], content)
            if not ok and self.config.current.scheduler.retry_once:
                logger.warning(f"⚠️ 定时任务 #{job['id']} 发送失败，重试一次")
                ok = await self.sender.send_group_message(job["group_id"], content)
            if ok:
                logger.info(f"✅ 定时任务 #{job['id']} 已发送到群 {job['group_id']}: {job['feature']}")
            else:
                logger.error(f"❌ 定时任务 #{job['id']} 发送失败: 群 {job['group_id']}")
        finally:
            await self.stats.db.schedules.mark_run(job["id"], now)
