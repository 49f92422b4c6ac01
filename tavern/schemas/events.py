"""
tavern.schemas.events
~~~~~~~~~~~~~~~~~~~~~

会话事件流的线上格式：以 ``type`` 为判别字段的联合类型。

每个事件编码为一帧 ``data: <json>\\n\\n``。服务端（广播器）与客户端
（订阅器）共用同一组模型：服务端序列化，客户端用 ``decode_event``
解析，未知 ``type`` 返回 ``None`` 而不是报错，保证向前兼容。
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import Field, TypeAdapter

from tavern.schemas.session import (
    CamelModel,
    ChatMessage,
    ChatRoom,
    InitiativeEntry,
    SessionSnapshot,
    utcnow,
)


class BaseEvent(CamelModel):
    timestamp: datetime = Field(default_factory=utcnow)


class ConnectedEvent(BaseEvent):
    type: Literal["connected"] = "connected"
    session_id: str
    user_id: str


class SessionUpdateEvent(BaseEvent):
    type: Literal["session_update"] = "session_update"
    session: SessionSnapshot


class NewMessageEvent(BaseEvent):
    type: Literal["new_message"] = "new_message"
    message: ChatMessage


class ParticipantJoinedEvent(BaseEvent):
    type: Literal["participant_joined"] = "participant_joined"
    user_id: str


class ParticipantLeftEvent(BaseEvent):
    type: Literal["participant_left"] = "participant_left"
    user_id: str


class ParticipantStatusUpdateEvent(BaseEvent):
    type: Literal["participant_status_update"] = "participant_status_update"
    user_id: str
    is_online: bool
    previous_status: bool | None = None


class InitiativeUpdateEvent(BaseEvent):
    type: Literal["initiative_update"] = "initiative_update"
    initiative_order: list[InitiativeEntry]
    current_turn: str | None = None


class ChatRoomsUpdateEvent(BaseEvent):
    type: Literal["chat_rooms_update"] = "chat_rooms_update"
    chat_rooms: list[ChatRoom]


class RoomReadUpdateEvent(BaseEvent):
    type: Literal["room_read_update"] = "room_read_update"
    user_id: str
    room_id: str
    last_message_id: str


class WebRTCSignalEvent(BaseEvent):
    type: Literal["webrtc_signal"] = "webrtc_signal"
    signal_type: str
    data: Any = None
    from_user_id: str
    target_user_id: str | None = None


class UserKickedEvent(BaseEvent):
    type: Literal["user_kicked"] = "user_kicked"
    target_user_id: str
    reason: str | None = None


SessionEvent = Annotated[
    Union[
        ConnectedEvent,
        SessionUpdateEvent,
        NewMessageEvent,
        ParticipantJoinedEvent,
        ParticipantLeftEvent,
        ParticipantStatusUpdateEvent,
        InitiativeUpdateEvent,
        ChatRoomsUpdateEvent,
        RoomReadUpdateEvent,
        WebRTCSignalEvent,
        UserKickedEvent,
    ],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[SessionEvent] = TypeAdapter(SessionEvent)

EVENT_TYPES: frozenset[str] = frozenset(
    model.model_fields["type"].default
    for model in (
        ConnectedEvent,
        SessionUpdateEvent,
        NewMessageEvent,
        ParticipantJoinedEvent,
        ParticipantLeftEvent,
        ParticipantStatusUpdateEvent,
        InitiativeUpdateEvent,
        ChatRoomsUpdateEvent,
        RoomReadUpdateEvent,
        WebRTCSignalEvent,
        UserKickedEvent,
    )
)


def encode_event(event: BaseEvent) -> str:
    """把事件编码为一帧 SSE 文本。"""
    payload = event.model_dump_json(by_alias=True, exclude_none=True)
    return f"data: {payload}\n\n"


def decode_event(data: str) -> BaseEvent | None:
    """解析一帧的 ``data`` 部分。

    Args:
        data: JSON 文本（不含 ``data: `` 前缀）。

    Returns:
        对应的事件模型；``type`` 未知时返回 ``None``。

    Raises:
        ValueError: JSON 非法，或已知类型的字段校验失败。
    """
    raw = json.loads(data)
    if not isinstance(raw, dict) or raw.get("type") not in EVENT_TYPES:
        return None
    return _event_adapter.validate_python(raw)
