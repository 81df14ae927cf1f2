"""
设置 KV 存储 DAO
stat_settings 与 feature_flags 是运行时配置的持久化镜像，
通过 API/命令修改的配置不依赖配置文件也能保留下来
"""
import json
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("group-stats.db.settings")

# 通过接口修改的配置项以 "config.<点号路径>" 为键保存
OVERRIDE_PREFIX = "config."


class SettingsDAO:
    """轻量级 Key-Value 设置存储（持久化到 SQLite stat_settings / feature_flags / group_settings 表）"""

    def __init__(self, conn):
        self.conn = conn

    async def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """读取设置值"""
        cursor = await self.conn.execute(
            "SELECT value FROM stat_settings WHERE key = ?", (key,)
        )
        row = await cursor.fetchone()
        return row["value"] if row else default

    async def get_int(self, key: str, default: Optional[int] = None) -> Optional[int]:
        val = await self.get(key)
        if val is None:
            return default
        try:
            return int(val)
        except ValueError:
            return default

    async def set(self, key: str, value: str):
        """写入设置值"""
        await self.conn.execute(
            """INSERT INTO stat_settings (key, value)
               VALUES (?, ?)
               ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
            (key, value),
        )
        await self.conn.commit()

    async def all(self) -> Dict[str, str]:
        """读取所有设置"""
        cursor = await self.conn.execute("SELECT key, value FROM stat_settings")
        rows = await cursor.fetchall()
        return {r["key"]: r["value"] for r in rows}

    async def set_feature(self, name: str, enabled: bool):
        await self.conn.execute(
            """INSERT INTO feature_flags (name, enabled)
               VALUES (?, ?)
               ON CONFLICT(name) DO UPDATE SET enabled = excluded.enabled""",
            (name, 1 if enabled else 0),
        )
        await self.conn.commit()

    async def get_features(self) -> Dict[str, bool]:
        cursor = await self.conn.execute("SELECT name, enabled FROM feature_flags")
        rows = await cursor.fetchall()
        return {r["name"]: bool(r["enabled"]) for r in rows}

    async def set_override(self, path: str, value: Any):
        """记录一次通过接口修改的配置项（值以 JSON 保存）"""
        await self.set(OVERRIDE_PREFIX + path, json.dumps(value, ensure_ascii=False))

    async def get_overrides(self) -> Dict[str, Any]:
        cursor = await self.conn.execute(
            "SELECT key, value FROM stat_settings WHERE key LIKE ? ORDER BY key",
            (OVERRIDE_PREFIX + "%",),
        )
        overrides = {}
        for r in await cursor.fetchall():
            try:
                overrides[r["key"][len(OVERRIDE_PREFIX):]] = json.loads(r["value"])
            except ValueError:
                logger.warning(f"⚠️ 忽略无法解析的配置记录: {r['key']}={r['value']!r}")
        return overrides

    async def set_group_enabled(self, group_id: str, enabled: bool):
        await self.conn.execute(
            """INSERT INTO group_settings (group_id, enabled)
               VALUES (?, ?)
               ON CONFLICT(group_id) DO UPDATE SET enabled = excluded.enabled""",
            (group_id, 1 if enabled else 0),
        )
        await self.conn.commit()

    async def get_group_settings(self) -> Dict[str, bool]:
        cursor = await self.conn.execute("SELECT group_id, enabled FROM group_settings")
        rows = await cursor.fetchall()
        return {r["group_id"]: bool(r["enabled"]) for r in rows}
