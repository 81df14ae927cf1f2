"""
群聊事件采集模块
把 OneBot v11 上报的消息/通知事件规整为统一记录并写入数据库
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from .config import ConfigStore
from .database import Database

logger = logging.getLogger("group-stats.collector")

# OneBot 消息段类型 -> 统计用消息类型
SEGMENT_TYPES = {
    "text": "text",
    "image": "image",
    "record": "voice",
    "video": "video",
    "file": "file",
    "face": "face",
}

RECALL_NOTICES = ("group_recall", "friend_recall")
MEMBER_NOTICES = ("group_increase", "group_decrease")


@dataclass(frozen=True)
class MessageEvent:
    message_id: Optional[str]
    chat_type: str
    group_id: Optional[str]
    user_id: Optional[str]
    event_time: int
    segments: Optional[List[Any]] = None
    raw_message: str = ""
    message: Any = None


@dataclass(frozen=True)
class RecallNotice:
    message_id: str
    event_time: int


@dataclass(frozen=True)
class MemberChangeNotice:
    group_id: str
    user_id: str
    event_type: str
    event_time: int


@dataclass(frozen=True)
class FileUploadNotice:
    group_id: str
    user_id: str
    file_id: str
    file_name: str
    file_size: int
    event_time: int


InboundEvent = Union[MessageEvent, RecallNotice, MemberChangeNotice, FileUploadNotice]


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _event_time(raw: Dict[str, Any], now: float) -> int:
    value = raw.get("time")
    if value is None or value == "":
        return int(now)
    return int(value)


def detect_message_type(segments: Optional[List[Any]], raw_message: str) -> str:
    """按首个消息段判断类型；没有消息段时，有原始文本即视为 text"""
    if isinstance(segments, list):
        first = segments[0] if segments else None
        seg_type = first.get("type") if isinstance(first, dict) else None
        return SEGMENT_TYPES.get(seg_type, "other")
    return "text" if raw_message else "other"


def parse_event(raw: Dict[str, Any], now: Optional[float] = None) -> Optional[InboundEvent]:
    """
    将上报的原始字典解析为具体事件类型。
    不认识的事件返回 None；字段格式错误抛 ValueError/TypeError 由调用方处理。
    """
    if not isinstance(raw, dict):
        raise TypeError(f"事件必须是 dict，实际为 {type(raw).__name__}")
    now = time.time() if now is None else now
    post_type = raw.get("post_type")

    if post_type == "message":
        message = raw.get("message")
        return MessageEvent(
            message_id=_str_or_none(raw.get("message_id")),
            chat_type="private" if raw.get("message_type") == "private" else "group",
            group_id=_str_or_none(raw.get("group_id")),
            user_id=_str_or_none(raw.get("user_id")),
            event_time=_event_time(raw, now),
            segments=message if isinstance(message, list) else None,
            raw_message=str(raw.get("raw_message") or ""),
            message=message,
        )

    if post_type != "notice":
        return None

    notice_type = str(raw.get("notice_type") or "")
    event_time = _event_time(raw, now)

    if notice_type in RECALL_NOTICES:
        return RecallNotice(message_id=str(raw.get("message_id") or ""), event_time=event_time)

    if notice_type in MEMBER_NOTICES:
        return MemberChangeNotice(
            group_id=str(raw.get("group_id") or ""),
            user_id=str(raw.get("user_id") or ""),
            event_type=notice_type,
            event_time=event_time,
        )

    if notice_type == "group_upload":
        file_obj = raw.get("file") if isinstance(raw.get("file"), dict) else {}
        return FileUploadNotice(
            group_id=str(raw.get("group_id") or ""),
            user_id=str(raw.get("user_id") or ""),
            file_id=str(file_obj.get("id") or file_obj.get("fid") or ""),
            file_name=str(file_obj.get("name") or ""),
            file_size=int(file_obj.get("size") or 0),
            event_time=event_time,
        )

    return None


@dataclass
class CollectorStats:
    collected: int = 0
    recalled: int = 0
    command_calls: int = 0
    dropped: int = field(default=0)


class Collector:
    """群聊事件采集器（写入失败只记日志，绝不向上抛出）"""

    def __init__(self, config: ConfigStore, db: Database, clock: Callable[[], float] = time.time):
        self.config = config
        self.db = db
        self.clock = clock
        self.stats = CollectorStats()

    async def ingest(self, raw: Dict[str, Any]) -> None:
        try:
            event = parse_event(raw, now=self.clock())
            if event is None:
                logger.debug(f"忽略未知事件: post_type={raw.get('post_type')} notice_type={raw.get('notice_type')}")
                return
            await self.handle_event(event)
        except Exception as e:
            self.stats.dropped += 1
            logger.error(f"❌ 处理上报事件失败: {e}", exc_info=True)

    async def handle_event(self, event: InboundEvent):
        if isinstance(event, MessageEvent):
            await self.collect_message(event)
        elif isinstance(event, RecallNotice):
            await self.mark_recalled(event.message_id, event.event_time)
        elif isinstance(event, MemberChangeNotice):
            await self.collect_member_change(event)
        elif isinstance(event, FileUploadNotice):
            await self.collect_file_upload(event)

    def to_record(self, event: MessageEvent) -> dict:
        cfg = self.config.current
        store_content = cfg.store_message_content
        message_id = event.message_id or f"{event.chat_type}-{event.user_id or ''}-{event.event_time}"
        raw_payload = event.message if event.message is not None else ""
        return {
            "message_id": message_id,
            "group_id": event.group_id if event.chat_type == "group" else None,
            "user_id": event.user_id,
            "chat_type": event.chat_type,
            "message_type": detect_message_type(event.segments, event.raw_message),
            "event_time": event.event_time,
            "content_text": event.raw_message if store_content else "",
            "raw_message": json.dumps(raw_payload, ensure_ascii=False) if store_content else "",
            "created_at": int(self.clock()),
        }

    async def collect_message(self, event: MessageEvent) -> bool:
        cfg = self.config.current
        if event.chat_type == "private" and not cfg.collect_private_messages:
            return False
        if event.chat_type == "group" and event.group_id and not cfg.is_group_enabled(event.group_id):
            return False

        inserted = await self.db.messages.insert_message(self.to_record(event))
        if inserted:
            self.stats.collected += 1
        return inserted

    async def mark_recalled(self, message_id: str, recalled_at: int) -> bool:
        ok = await self.db.messages.mark_recalled(message_id, recalled_at)
        if ok:
            self.stats.recalled += 1
        return ok

    async def collect_member_change(self, event: MemberChangeNotice) -> bool:
        if not event.group_id or not event.user_id:
            logger.debug(f"成员事件缺少 group_id/user_id，丢弃: {event}")
            return False
        await self.db.messages.insert_member_event(
            event.group_id, event.user_id, event.event_type, event.event_time
        )
        return True

    async def collect_file_upload(self, event: FileUploadNotice) -> bool:
        if not self.config.current.collect_group_files:
            return False
        if not event.group_id or not event.user_id:
            logger.debug(f"文件事件缺少 group_id/user_id，丢弃: {event}")
            return False
        await self.db.messages.insert_file_event(
            event.group_id, event.user_id, event.file_id,
            event.file_name, event.file_size, event.event_time,
        )
        return True
