"""
tavern.schemas.requests
~~~~~~~~~~~~~~~~~~~~~~~

REST 接口的 Pydantic 请求/响应模型。
"""
from __future__ import annotations

from typing import Any, Literal

from pydantic import Field

from tavern.schemas.session import (
    CamelModel,
    ChatMessage,
    ChatRoom,
    InitiativeEntry,
    SessionSnapshot,
)


# ── 会话 ──────────────────────────────────────────────────────────────

class CreateSessionRequest(CamelModel):
    title: str = Field(..., min_length=1, max_length=120, description="会话标题")
    description: str = Field(default="", max_length=2000, description="会话简介")
    max_players: int | None = Field(default=None, ge=1, le=50, description="人数上限")
    is_public: bool = Field(default=False, description="是否出现在公开列表")


class UpdateSessionRequest(CamelModel):
    title: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=2000)
    max_players: int | None = Field(default=None, ge=1, le=50)
    is_public: bool | None = None


class JoinSessionRequest(CamelModel):
    session_key: str = Field(..., min_length=1, description="6 位邀请码")
    character_id: str | None = None
    character_name: str | None = None


class JoinResponseData(CamelModel):
    session: SessionSnapshot
    role: Literal["player", "dm", "creator"]
    created: bool = Field(..., description="本次是否新增了成员")


class LeaveResponseData(CamelModel):
    session_ended: bool


class KickRequest(CamelModel):
    target_user_id: str = Field(..., min_length=1)
    reason: str | None = Field(default=None, max_length=500)


class AssignDmRequest(CamelModel):
    dm_user_id: str = Field(..., min_length=1)
    dm_name: str | None = Field(default=None, max_length=120)


class StatusRequest(CamelModel):
    is_online: bool


class StatusResponseData(CamelModel):
    is_online: bool
    changed: bool


# ── 聊天 ──────────────────────────────────────────────────────────────

class SendMessageRequest(CamelModel):
    message: str = Field(..., max_length=4000, description="消息正文")
    type: Literal["chat", "roll", "system"] = "chat"
    room_id: str | None = Field(default=None, description="房间 ID，缺省为 general")


class ChatHistoryData(CamelModel):
    room_id: str
    messages: list[ChatMessage]
    total: int = Field(..., description="房间内消息总数")


class CreateRoomRequest(CamelModel):
    name: str = Field(..., max_length=60)
    description: str = Field(default="", max_length=500)
    is_private: bool = False
    allowed_users: list[str] = Field(default_factory=list)


class ChatRoomsData(CamelModel):
    chat_rooms: list[ChatRoom]


class MarkReadRequest(CamelModel):
    room_id: str = Field(..., min_length=1)
    last_message_id: str | None = None


class RollRequest(CamelModel):
    expression: str = Field(..., min_length=1, max_length=200, description="骰子表达式，如 2d6+3")
    room_id: str | None = None


class DiceGroupData(CamelModel):
    notation: str
    sign: int
    faces: list[int]
    subtotal: int


class RollResponseData(CamelModel):
    expression: str
    groups: list[DiceGroupData]
    result: int
    modifier: int
    total: int
    breakdown: str
    message: ChatMessage


# ── 先攻 ──────────────────────────────────────────────────────────────

class AddInitiativeRequest(CamelModel):
    character_name: str = Field(..., max_length=120)
    expression: str = Field(default="1d20", min_length=1, max_length=200)


class InitiativeData(CamelModel):
    initiative_order: list[InitiativeEntry]
    current_turn: str | None = None
    entry: InitiativeEntry | None = None


# ── 信令 ──────────────────────────────────────────────────────────────

class SignalRequest(CamelModel):
    type: str = Field(..., min_length=1, max_length=40, description="offer / answer / ice-candidate ...")
    data: Any = None
    target_user_id: str | None = None
