"""
Pytest 公共夹具
真实的 SQLite 文件库（tmp_path）+ 固定时钟 + 假发送器
"""

import sys
from pathlib import Path
from typing import List, Optional, Tuple

import pytest

project_root = Path(__file__).parent.parent.absolute()
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from group_stats.config import AppConfig, ConfigStore  # noqa: E402
from group_stats.database import Database  # noqa: E402
from group_stats.stats import StatsService  # noqa: E402
from group_stats.tokenizer import Tokenizer  # noqa: E402

# 2023-11-14 22:13:20 UTC，UTC+8 下为 2023-11-15（周三）06:13:20
NOW = 1_700_000_000
DAY = 86400


class FixedClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeSender:
    """记录所有发送；fail_times 次之前返回 False，raise_for 中的群直接抛异常"""

    def __init__(self, fail_times: int = 0, raise_for: Tuple[str, ...] = (), groups: Optional[list] = None):
        self.fail_times = fail_times
        self.raise_for = raise_for
        self.groups = groups
        self.group_messages: List[Tuple[str, str]] = []
        self.private_messages: List[Tuple[str, str]] = []

    async def send_group_message(self, group_id: str, message: str) -> bool:
        if group_id in self.raise_for:
            raise RuntimeError(f"boom {group_id}")
        self.group_messages.append((group_id, message))
        if self.fail_times > 0:
            self.fail_times -= 1
            return False
        return True

    async def send_private_message(self, user_id: str, message: str) -> bool:
        self.private_messages.append((user_id, message))
        return True

    async def get_group_list(self) -> Optional[list]:
        return self.groups


def split_cut(text: str) -> List[str]:
    return text.split()


def make_config(tmp_path, **overrides) -> AppConfig:
    raw = {
        "database": {"path": str(tmp_path / "stats.db")},
        "scheduler": {"enabled": False},
        "onebot": {"api_url": "http://onebot.local"},
    }
    raw.update(overrides)
    return AppConfig.model_validate(raw)


def group_event(
    message_id,
    group_id="1001",
    user_id="u1",
    t: int = NOW,
    text: str = "hello",
    segments: Optional[list] = None,
) -> dict:
    return {
        "post_type": "message",
        "message_type": "group",
        "message_id": message_id,
        "group_id": group_id,
        "user_id": user_id,
        "time": t,
        "raw_message": text,
        "message": segments if segments is not None else [{"type": "text", "data": {"text": text}}],
    }


async def insert(db: Database, message_id, group_id="1001", user_id="u1", t: int = NOW,
                 text: str = "", message_type: str = "text", recalled: bool = False):
    await db.messages.insert_message({
        "message_id": str(message_id),
        "group_id": group_id,
        "user_id": user_id,
        "chat_type": "group",
        "message_type": message_type,
        "event_time": t,
        "content_text": text,
        "raw_message": "",
        "created_at": t,
    })
    if recalled:
        await db.messages.mark_recalled(str(message_id), t + 1)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store(tmp_path):
    return ConfigStore(make_config(tmp_path))


@pytest.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "stats.db"))
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def stats(store, db, clock):
    return StatsService(store, db, Tokenizer(store, cut=split_cut), clock=clock)
