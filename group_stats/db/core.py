"""
核心数据库连接与结构模块
负责 SQLite 连接、PRAGMA 配置、Schema 初始化及迁移
"""
import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Tuple

import aiosqlite

from ..errors import StorageInitError

logger = logging.getLogger("group-stats.db.core")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS messages (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id   TEXT NOT NULL UNIQUE,
    group_id     TEXT,
    user_id      TEXT,
    chat_type    TEXT NOT NULL,
    message_type TEXT NOT NULL,
    event_time   INTEGER NOT NULL,
    content_text TEXT DEFAULT '',
    raw_message  TEXT DEFAULT '',
    is_recall    INTEGER NOT NULL DEFAULT 0,
    recalled_at  INTEGER,
    created_at   INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS group_member_events (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id     TEXT NOT NULL,
    user_id      TEXT NOT NULL,
    event_type   TEXT NOT NULL,
    event_time   INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS group_file_events (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id     TEXT NOT NULL,
    user_id      TEXT NOT NULL,
    file_id      TEXT,
    file_name    TEXT,
    file_size    INTEGER DEFAULT 0,
    event_time   INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS feature_flags (
    name         TEXT PRIMARY KEY,
    enabled      INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS stat_settings (
    key          TEXT PRIMARY KEY,
    value        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS group_schedules (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id     TEXT NOT NULL,
    hour         INTEGER NOT NULL,
    minute       INTEGER NOT NULL,
    feature      TEXT NOT NULL,
    enabled      INTEGER NOT NULL DEFAULT 1,
    last_run_at  INTEGER
);

CREATE INDEX IF NOT EXISTS idx_messages_group_time ON messages(group_id, event_time);
CREATE INDEX IF NOT EXISTS idx_messages_group_user_time ON messages(group_id, user_id, event_time);
CREATE INDEX IF NOT EXISTS idx_messages_group_recall_time ON messages(group_id, is_recall, event_time);
CREATE INDEX IF NOT EXISTS idx_messages_type_time ON messages(message_type, event_time);
CREATE INDEX IF NOT EXISTS idx_group_schedules_group_enabled ON group_schedules(group_id, enabled);

CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT (datetime('now')),
    description TEXT
)
"""

# 每个元素为 (version, description, sql)
# version 必须单调递增、不得修改已经发布的 version。
MIGRATIONS: List[Tuple[int, str, str]] = [
    (
        1,
        "Seed default stat period",
        "INSERT OR IGNORE INTO stat_settings(key, value) VALUES ('stat_period_days', '30')",
    ),
    (
        2,
        "Seed default timezone offset",
        "INSERT OR IGNORE INTO stat_settings(key, value) VALUES ('timezone_offset_minutes', '480')",
    ),
    (
        3,
        "Index member events by group and time",
        "CREATE INDEX IF NOT EXISTS idx_member_events_group_time ON group_member_events(group_id, event_time)",
    ),
    (
        4,
        "Persist per-group switches",
        """CREATE TABLE IF NOT EXISTS group_settings (
            group_id TEXT PRIMARY KEY,
            enabled  INTEGER NOT NULL DEFAULT 1
        )""",
    ),
]


class DatabaseConnection:
    """处理数据库底层连接、初始化及迁移"""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn: Optional[aiosqlite.Connection] = None
        # aiosqlite 在单独线程里串行执行语句；多语句写事务再额外加一把锁
        self.write_lock = asyncio.Lock()

    async def connect(self):
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self.conn = await aiosqlite.connect(self.db_path)
            self.conn.row_factory = aiosqlite.Row

            await self.conn.execute("PRAGMA busy_timeout=60000")
            await self.conn.execute("PRAGMA journal_mode=WAL")
            await self.conn.execute("PRAGMA cache_size = -32000")
            await self.conn.execute("PRAGMA temp_store = MEMORY")
            await self.conn.execute("PRAGMA synchronous = NORMAL")

            for stmt in SCHEMA_SQL.split(";"):
                stmt = stmt.strip()
                if not stmt:
                    continue
                try:
                    await self.conn.execute(stmt)
                except aiosqlite.OperationalError as e:
                    if "already exists" not in str(e).lower():
                        logger.error(f"❌ Schema 初始化失败: {e}\nSQL: {stmt[:120]}")
                        raise
            await self.conn.commit()

            await self._run_migrations()
        except (aiosqlite.Error, OSError) as e:
            await self.close()
            raise StorageInitError(f"数据库初始化失败 ({self.db_path}): {e}") from e
        logger.info(f"✅ 数据库已连接 (WAL 模式): {self.db_path}")

    async def _run_migrations(self):
        cursor = await self.conn.execute("SELECT COALESCE(MAX(version), 0) as ver FROM schema_version")
        current = (await cursor.fetchone())["ver"]

        pending = [(v, d, s) for v, d, s in MIGRATIONS if v > current]
        if not pending:
            return

        logger.info(f"🔄 应用 {len(pending)} 个迁移（当前版本: {current}）...")
        for version, description, sql in sorted(pending, key=lambda x: x[0]):
            try:
                await self.conn.execute(sql)
                await self.conn.execute(
                    "INSERT OR IGNORE INTO schema_version (version, description) VALUES (?, ?)",
                    (version, description),
                )
                await self.conn.commit()
                logger.info(f"   ✅ v{version}: {description}")
            except (aiosqlite.OperationalError, aiosqlite.IntegrityError) as e:
                if "already exists" in str(e).lower() or "duplicate" in str(e).lower():
                    await self.conn.execute(
                        "INSERT OR IGNORE INTO schema_version (version, description) VALUES (?, ?)",
                        (version, description),
                    )
                    await self.conn.commit()
                    logger.info(f"   ⚠️ v{version}: 已存在，跳过")
                else:
                    logger.error(f"   ❌ v{version} 迁移失败: {e}")
                    raise

    async def close(self):
        if self.conn:
            await self.conn.close()
            self.conn = None
