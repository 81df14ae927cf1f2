import logging
from typing import List

logger = logging.getLogger("group-stats.db.schedules")


def _row_to_schedule(row) -> dict:
    return {
        "id": row["id"],
        "group_id": row["group_id"],
        "hour": row["hour"],
        "minute": row["minute"],
        "feature": row["feature"],
        "enabled": bool(row["enabled"]),
        "last_run_at": row["last_run_at"],
    }


class SchedulesDAO:
    def __init__(self, conn, write_lock):
        self.conn = conn
        self.write_lock = write_lock

    async def list_group_schedules(self, group_id: str) -> List[dict]:
        cursor = await self.conn.execute(
            """SELECT * FROM group_schedules
               WHERE group_id = ?
               ORDER BY hour ASC, minute ASC, id ASC""",
            (group_id,),
        )
        return [_row_to_schedule(r) for r in await cursor.fetchall()]

    async def upsert_group_schedule(self, group_id: str, hour: int, minute: int, feature: str) -> dict:
        """
        以 (group_id, hour, minute, feature) 为自然键写入任务。
        已存在（无论是否停用）则原地重新启用并沿用原 id，否则新建。
        """
        async with self.write_lock:
            cursor = await self.conn.execute(
                """SELECT id, last_run_at FROM group_schedules
                   WHERE group_id = ? AND hour = ? AND minute = ? AND feature = ?
                   ORDER BY id ASC LIMIT 1""",
                (group_id, hour, minute, feature),
            )
            existed = await cursor.fetchone()
            if existed:
                await self.conn.execute(
                    "UPDATE group_schedules SET enabled = 1 WHERE id = ?", (existed["id"],)
                )
                await self.conn.commit()
                job_id, last_run_at = existed["id"], existed["last_run_at"]
            else:
                cursor = await self.conn.execute(
                    """INSERT INTO group_schedules (group_id, hour, minute, feature, enabled)
                       VALUES (?, ?, ?, ?, 1)""",
                    (group_id, hour, minute, feature),
                )
                await self.conn.commit()
                job_id, last_run_at = cursor.lastrowid, None
        return {
            "id": job_id,
            "group_id": group_id,
            "hour": hour,
            "minute": minute,
            "feature": feature,
            "enabled": True,
            "last_run_at": last_run_at,
        }

    async def remove_group_schedule(self, group_id: str, job_id: int) -> bool:
        # 同时匹配 group_id，防止跨群猜 id 删除
        cursor = await self.conn.execute(
            "DELETE FROM group_schedules WHERE id = ? AND group_id = ?",
            (job_id, group_id),
        )
        await self.conn.commit()
        return cursor.rowcount > 0

    async def set_schedule_enabled(self, group_id: str, job_id: int, enabled: bool) -> bool:
        cursor = await self.conn.execute(
            "UPDATE group_schedules SET enabled = ? WHERE id = ? AND group_id = ?",
            (1 if enabled else 0, job_id, group_id),
        )
        await self.conn.commit()
        return cursor.rowcount > 0

    async def get_due_jobs(self, hour: int, minute: int) -> List[dict]:
        cursor = await self.conn.execute(
            """SELECT * FROM group_schedules
               WHERE enabled = 1 AND hour = ? AND minute = ?
               ORDER BY id ASC""",
            (hour, minute),
        )
        return [_row_to_schedule(r) for r in await cursor.fetchall()]

    async def mark_run(self, job_id: int, run_at: int):
        await self.conn.execute(
            "UPDATE group_schedules SET last_run_at = ? WHERE id = ?",
            (run_at, job_id),
        )
        await self.conn.commit()
