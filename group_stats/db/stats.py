from typing import Any, List, Optional


def _recall_sql(include_recall: bool) -> str:
    return "" if include_recall else "AND is_recall = 0"


class StatsDAO:
    """统计查询（只读）。所有时间区间都是闭区间 [start, end]。"""

    def __init__(self, conn):
        self.conn = conn

    async def _rows(self, sql: str, params: List[Any]) -> List[dict]:
        cursor = await self.conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def _scalar(self, sql: str, params: List[Any]) -> int:
        cursor = await self.conn.execute(sql, params)
        row = await cursor.fetchone()
        return int(row[0] or 0) if row else 0

    def _where(
        self,
        group_id: str,
        start: int,
        end: int,
        include_recall: bool,
        user_id: Optional[str] = None,
    ):
        conditions = ["group_id = ?"]
        params: List[Any] = [group_id]
        if user_id is not None:
            conditions.append("user_id = ?")
            params.append(user_id)
        conditions.append("event_time BETWEEN ? AND ?")
        params.extend([start, end])
        where = "WHERE " + " AND ".join(conditions) + " " + _recall_sql(include_recall)
        return where, params

    async def count_messages(
        self,
        group_id: str,
        start: int,
        end: int,
        include_recall: bool = True,
        user_id: Optional[str] = None,
    ) -> int:
        where, params = self._where(group_id, start, end, include_recall, user_id)
        return await self._scalar(f"SELECT COUNT(1) FROM messages {where}", params)

    async def top_users(
        self,
        group_id: str,
        start: int,
        end: int,
        limit: int,
        include_recall: bool = True,
    ) -> List[dict]:
        where, params = self._where(group_id, start, end, include_recall)
        # MIN(id) 保证同票时按首次出现的行序排序
        return await self._rows(
            f"""SELECT user_id, COUNT(1) as count
                FROM messages
                {where}
                GROUP BY user_id
                ORDER BY count DESC, MIN(id) ASC
                LIMIT ?""",
            [*params, limit],
        )

    async def event_times(
        self,
        group_id: str,
        start: int,
        end: int,
        include_recall: bool = True,
    ) -> List[int]:
        where, params = self._where(group_id, start, end, include_recall)
        cursor = await self.conn.execute(
            f"SELECT event_time FROM messages {where}", params
        )
        return [r["event_time"] for r in await cursor.fetchall()]

    async def text_contents(
        self,
        group_id: str,
        start: int,
        end: int,
        include_recall: bool = True,
        user_id: Optional[str] = None,
        text_only: bool = True,
    ) -> List[str]:
        where, params = self._where(group_id, start, end, include_recall, user_id)
        type_clause = "AND message_type = 'text'" if text_only else ""
        cursor = await self.conn.execute(
            f"SELECT content_text FROM messages {where} {type_clause}", params
        )
        return [r["content_text"] or "" for r in await cursor.fetchall()]

    async def message_types(
        self,
        group_id: str,
        start: int,
        end: int,
        include_recall: bool = True,
        user_id: Optional[str] = None,
    ) -> List[dict]:
        where, params = self._where(group_id, start, end, include_recall, user_id)
        return await self._rows(
            f"""SELECT message_type, COUNT(1) as count
                FROM messages
                {where}
                GROUP BY message_type
                ORDER BY count DESC""",
            params,
        )

    async def daily_counts(
        self,
        group_id: str,
        start: int,
        end: int,
        offset_seconds: int,
        include_recall: bool = True,
    ) -> List[dict]:
        where, params = self._where(group_id, start, end, include_recall)
        return await self._rows(
            f"""SELECT strftime('%Y-%m-%d', event_time + ?, 'unixepoch') as day,
                       COUNT(1) as count
                FROM messages
                {where}
                GROUP BY day
                ORDER BY day ASC""",
            [offset_seconds, *params],
        )

    async def hourly_counts(
        self,
        group_id: str,
        start: int,
        end: int,
        offset_seconds: int,
        include_recall: bool = True,
        user_id: Optional[str] = None,
    ) -> List[dict]:
        where, params = self._where(group_id, start, end, include_recall, user_id)
        return await self._rows(
            f"""SELECT CAST(strftime('%H', event_time + ?, 'unixepoch') AS INTEGER) as hour,
                       COUNT(1) as count
                FROM messages
                {where}
                GROUP BY hour
                ORDER BY hour ASC""",
            [offset_seconds, *params],
        )

    async def active_days(
        self,
        group_id: str,
        user_id: str,
        start: int,
        end: int,
        offset_seconds: int,
    ) -> int:
        where, params = self._where(group_id, start, end, True, user_id)
        return await self._scalar(
            f"""SELECT COUNT(DISTINCT strftime('%Y-%m-%d', event_time + ?, 'unixepoch'))
                FROM messages {where}""",
            [offset_seconds, *params],
        )

    async def bucket_counts(
        self,
        group_id: str,
        start: int,
        end: int,
        window_seconds: int,
    ) -> List[dict]:
        """按固定窗口（对齐 epoch）统计未撤回消息数"""
        where, params = self._where(group_id, start, end, include_recall=False)
        return await self._rows(
            f"""SELECT (event_time / ?) * ? as bucket, COUNT(1) as count
                FROM messages
                {where}
                GROUP BY bucket
                ORDER BY bucket ASC""",
            [window_seconds, window_seconds, *params],
        )

    async def slot_counts(
        self,
        group_id: str,
        start: int,
        now: int,
        slot_seconds: int,
    ) -> List[int]:
        """以 now 为原点向前切片，统计每个片内未撤回消息数（空片不出现）"""
        where, params = self._where(group_id, start, now, include_recall=False)
        cursor = await self.conn.execute(
            f"""SELECT COUNT(1) as c
                FROM messages
                {where}
                GROUP BY ((? - event_time) / ?)""",
            [*params, now, slot_seconds],
        )
        return [r["c"] for r in await cursor.fetchall()]

    async def distinct_users(
        self,
        group_id: str,
        start: int,
        end: int,
        include_recall: bool = True,
    ) -> List[str]:
        where, params = self._where(group_id, start, end, include_recall)
        cursor = await self.conn.execute(
            f"""SELECT user_id FROM messages {where}
                GROUP BY user_id ORDER BY MIN(id) ASC""",
            params,
        )
        return [r["user_id"] for r in await cursor.fetchall()]

    async def users_absent_since(
        self,
        group_id: str,
        history_start: int,
        history_end: int,
        recent_start: int,
        recent_end: int,
    ) -> List[str]:
        """history 区间内出现过、但 recent 区间内没有出现的用户"""
        cursor = await self.conn.execute(
            """SELECT DISTINCT user_id FROM messages
               WHERE group_id = ?
                 AND event_time BETWEEN ? AND ?
                 AND user_id IS NOT NULL
                 AND user_id NOT IN (
                   SELECT DISTINCT user_id FROM messages
                   WHERE group_id = ? AND event_time BETWEEN ? AND ?
                     AND user_id IS NOT NULL
                 )
               ORDER BY user_id""",
            [group_id, history_start, history_end, group_id, recent_start, recent_end],
        )
        return [r["user_id"] for r in await cursor.fetchall()]
