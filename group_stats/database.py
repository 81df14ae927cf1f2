"""
数据库模块
使用 SQLite 存储群聊消息、成员/文件事件、定时任务与设置
"""
from __future__ import annotations

import logging
from typing import Optional

from .db.core import DatabaseConnection
from .db.messages import MessagesDAO
from .db.schedules import SchedulesDAO
from .db.settings import SettingsDAO
from .db.stats import StatsDAO

logger = logging.getLogger("group-stats.database")


class Database:
    """异步 SQLite 数据库管理器，持有唯一连接并向各组件暴露 DAO"""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._core = DatabaseConnection(db_path)
        self.messages: Optional[MessagesDAO] = None
        self.stats: Optional[StatsDAO] = None
        self.schedules: Optional[SchedulesDAO] = None
        self.settings: Optional[SettingsDAO] = None

    @property
    def is_connected(self) -> bool:
        return self._core.conn is not None

    async def connect(self) -> "Database":
        """连接数据库并初始化 schema；失败时抛出 StorageInitError"""
        await self._core.connect()
        conn = self._core.conn
        lock = self._core.write_lock
        self.messages = MessagesDAO(conn, lock)
        self.stats = StatsDAO(conn)
        self.schedules = SchedulesDAO(conn, lock)
        self.settings = SettingsDAO(conn)
        return self

    async def close(self):
        await self._core.close()
        logger.info("🔌 数据库连接已关闭")
