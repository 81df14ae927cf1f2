import logging
import time
from typing import Optional

logger = logging.getLogger("group-stats.db.messages")


class MessagesDAO:
    def __init__(self, conn, write_lock):
        self.conn = conn
        self.write_lock = write_lock

    async def insert_message(self, record: dict) -> bool:
        """
        幂等写入一条消息。
        message_id 已存在时静默忽略（上游事件总线可能重复投递），返回是否真正插入。
        """
        cursor = await self.conn.execute(
            """INSERT OR IGNORE INTO messages
               (message_id, group_id, user_id, chat_type, message_type, event_time,
                content_text, raw_message, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record["message_id"], record.get("group_id"), record.get("user_id"),
                record["chat_type"], record["message_type"], record["event_time"],
                record.get("content_text", ""), record.get("raw_message", ""),
                record.get("created_at") or int(time.time()),
            ),
        )
        await self.conn.commit()
        return cursor.rowcount > 0

    async def mark_recalled(self, message_id: str, recalled_at: int) -> bool:
        if not message_id:
            return False
        cursor = await self.conn.execute(
            "UPDATE messages SET is_recall = 1, recalled_at = ? WHERE message_id = ?",
            (recalled_at, message_id),
        )
        await self.conn.commit()
        if cursor.rowcount > 0:
            return True
        logger.warning(f"⚠️ 收到未匹配到消息的撤回事件 message_id={message_id}")
        return False

    async def insert_member_event(self, group_id: str, user_id: str, event_type: str, event_time: int):
        await self.conn.execute(
            """INSERT INTO group_member_events (group_id, user_id, event_type, event_time)
               VALUES (?, ?, ?, ?)""",
            (group_id, user_id, event_type, event_time),
        )
        await self.conn.commit()

    async def insert_file_event(
        self,
        group_id: str,
        user_id: str,
        file_id: str,
        file_name: str,
        file_size: int,
        event_time: int,
    ):
        await self.conn.execute(
            """INSERT INTO group_file_events
               (group_id, user_id, file_id, file_name, file_size, event_time)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (group_id, user_id, file_id, file_name, file_size, event_time),
        )
        await self.conn.commit()

    async def get_message(self, message_id: str) -> Optional[dict]:
        cursor = await self.conn.execute(
            "SELECT * FROM messages WHERE message_id = ?", (message_id,)
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def count_rows(self, table: str) -> int:
        if table not in ("messages", "group_member_events", "group_file_events"):
            raise ValueError(f"unknown table: {table}")
        cursor = await self.conn.execute(f"SELECT COUNT(*) as cnt FROM {table}")
        return (await cursor.fetchone())["cnt"]

    async def delete_before(self, threshold: int) -> dict:
        """
        删除 event_time 早于 threshold 的消息、成员事件与文件事件。
        三张表共用同一阈值，在写锁内作为一批执行。
        """
        async with self.write_lock:
            deleted = {}
            for table in ("messages", "group_member_events", "group_file_events"):
                cursor = await self.conn.execute(
                    f"DELETE FROM {table} WHERE event_time < ?", (threshold,)
                )
                deleted[table] = cursor.rowcount
            await self.conn.commit()
        logger.info(
            f"🧹 清理超期数据: {deleted['messages']} 条消息, "
            f"{deleted['group_member_events']} 条成员事件, "
            f"{deleted['group_file_events']} 条文件事件 (threshold={threshold})"
        )
        return deleted

    async def get_storage_overview(self) -> dict:
        cursor = await self.conn.execute(
            """SELECT COUNT(DISTINCT group_id) as total_groups,
                      COUNT(*) as total_messages,
                      COALESCE(SUM(is_recall), 0) as recalled_messages
               FROM messages"""
        )
        row = await cursor.fetchone()
        return dict(row)
