"""
tavern.schemas.session
~~~~~~~~~~~~~~~~~~~~~~

游戏会话聚合根及其内嵌文档（玩家、聊天消息、聊天室、先攻条目）。

属性名使用 snake_case，线上 JSON 与 MongoDB 文档使用 camelCase 别名。
会话内数组的不变量（玩家去重、先攻稳定排序、默认房间归一化）
都由本模块的方法维护，服务层只调用方法，不直接改数组。
"""
from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

DEFAULT_ROOM_ID = "general"
SYSTEM_USER_ID = "system"

MessageType = Literal["chat", "roll", "system"]

_SESSION_KEY_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
_SESSION_KEY_LENGTH = 6


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def generate_session_key() -> str:
    """生成 6 位大写字母数字邀请码。"""
    return "".join(secrets.choice(_SESSION_KEY_ALPHABET) for _ in range(_SESSION_KEY_LENGTH))


def normalize_room_id(room_id: str | None) -> str:
    """缺省或空白的房间 ID 统一归为 ``general``。"""
    if room_id is None:
        return DEFAULT_ROOM_ID
    room_id = room_id.strip()
    return room_id or DEFAULT_ROOM_ID


class CamelModel(BaseModel):
    """camelCase 别名基类。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Player(CamelModel):
    """会话成员记录。"""

    user_id: str
    character_id: str | None = None
    character_name: str | None = None
    joined_at: datetime = Field(default_factory=utcnow)
    is_online: bool = True
    last_seen: datetime = Field(default_factory=utcnow)
    room_last_seen: dict[str, str] = Field(default_factory=dict)


class ChatMessage(CamelModel):
    """聊天消息，创建后不可修改。``room_id`` 在构造时归一化。"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("msg"))
    user_id: str
    username: str
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    type: MessageType = "chat"
    room_id: str = DEFAULT_ROOM_ID

    @field_validator("room_id", mode="before")
    @classmethod
    def _normalize_room(cls, value: str | None) -> str:
        return normalize_room_id(value)


class ChatRoom(CamelModel):
    id: str = Field(default_factory=lambda: new_id("room"))
    name: str
    description: str = ""
    is_default: bool = False
    created_by: str
    created_at: datetime = Field(default_factory=utcnow)
    is_private: bool = False
    allowed_users: list[str] = Field(default_factory=list)


class InitiativeEntry(CamelModel):
    id: str = Field(default_factory=lambda: new_id("init"))
    character_name: str
    initiative: int
    roll_details: str
    user_id: str
    user_name: str
    is_active: bool = True
    is_dead: bool = False
    added_at: datetime = Field(default_factory=utcnow)


class SessionSnapshot(CamelModel):
    """``session_update`` 事件携带的会话快照。"""

    id: str
    title: str
    session_key: str
    creator_id: str
    creator_name: str
    dm_id: str | None = None
    dm_name: str | None = None
    players: list[Player]
    max_players: int
    chat_messages: list[ChatMessage]
    chat_rooms: list[ChatRoom]
    initiative_order: list[InitiativeEntry]
    current_turn: str | None = None
    is_active: bool
    is_public: bool


class SessionSummary(CamelModel):
    """会话列表中的一行。"""

    id: str
    title: str
    description: str
    session_key: str
    creator_name: str
    dm_name: str | None = None
    max_players: int
    player_count: int
    is_public: bool
    is_active: bool
    created_at: datetime


class GameSession(CamelModel):
    """一局进行中的游戏。

    ``version`` 是乐观锁版本号，每次成功保存后加一，由仓库层维护。
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    title: str
    description: str = ""
    session_key: str
    creator_id: str
    creator_name: str
    dm_id: str | None = None
    dm_name: str | None = None
    players: list[Player] = Field(default_factory=list)
    max_players: int = 6
    is_active: bool = True
    is_public: bool = False
    chat_messages: list[ChatMessage] = Field(default_factory=list)
    chat_rooms: list[ChatRoom] = Field(default_factory=list)
    initiative_order: list[InitiativeEntry] = Field(default_factory=list)
    current_turn: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    # ── 成员 ──────────────────────────────────────────────────────────

    def find_player(self, user_id: str) -> Player | None:
        return next((p for p in self.players if p.user_id == user_id), None)

    def is_creator(self, user_id: str) -> bool:
        return self.creator_id == user_id

    def is_dm(self, user_id: str) -> bool:
        return self.dm_id is not None and self.dm_id == user_id

    def is_moderator(self, user_id: str) -> bool:
        """DM 或创建者。"""
        return self.is_creator(user_id) or self.is_dm(user_id)

    def is_participant(self, user_id: str) -> bool:
        return self.find_player(user_id) is not None or self.is_moderator(user_id)

    @property
    def is_full(self) -> bool:
        return len(self.players) >= self.max_players

    def upsert_player(
        self,
        user_id: str,
        character_id: str | None = None,
        character_name: str | None = None,
    ) -> tuple[Player, bool]:
        """加入或重新加入会话。

        同一 ``user_id`` 只保留一条记录：已存在时更新角色信息与在线状态。

        Returns:
            ``(player, created)``，``created`` 表示是否新增了成员。
        """
        now = utcnow()
        player = self.find_player(user_id)
        if player is not None:
            player.character_id = character_id
            player.character_name = character_name
            player.is_online = True
            player.joined_at = now
            player.last_seen = now
            return player, False

        player = Player(
            user_id=user_id,
            character_id=character_id,
            character_name=character_name,
            joined_at=now,
            last_seen=now,
        )
        self.players.append(player)
        return player, True

    def remove_player(self, user_id: str) -> bool:
        before = len(self.players)
        self.players = [p for p in self.players if p.user_id != user_id]
        return len(self.players) < before

    def set_player_status(self, user_id: str, is_online: bool) -> bool | None:
        """更新在线状态。

        Returns:
            更新前的状态；玩家不存在时返回 ``None``。
        """
        player = self.find_player(user_id)
        if player is None:
            return None
        previous = player.is_online
        player.is_online = is_online
        player.last_seen = utcnow()
        return previous

    # ── 聊天 ──────────────────────────────────────────────────────────

    def add_message(self, message: ChatMessage) -> ChatMessage:
        self.chat_messages.append(message)
        return message

    def add_system_message(self, text: str, room_id: str | None = None) -> ChatMessage:
        return self.add_message(
            ChatMessage(
                user_id=SYSTEM_USER_ID,
                username="System",
                message=text,
                type="system",
                room_id=room_id,
            ),
        )

    def messages_in_room(self, room_id: str) -> list[ChatMessage]:
        return [m for m in self.chat_messages if m.room_id == room_id]

    def find_room(self, room_id: str) -> ChatRoom | None:
        return next((r for r in self.chat_rooms if r.id == room_id), None)

    def can_see_room(self, user_id: str, room: ChatRoom) -> bool:
        if not room.is_private or self.is_moderator(user_id):
            return True
        return user_id in room.allowed_users

    def visible_rooms(self, user_id: str) -> list[ChatRoom]:
        return [r for r in self.chat_rooms if self.can_see_room(user_id, r)]

    def has_room_named(self, name: str) -> bool:
        wanted = name.strip().lower()
        return any(r.name.lower() == wanted for r in self.chat_rooms)

    def mark_room_read(
        self, user_id: str, room_id: str, last_message_id: str | None = None,
    ) -> str | None:
        """记录玩家在某房间已读到的最后一条消息。

        未指定 ``last_message_id`` 时标记为房间内最新一条。

        Returns:
            实际记录的消息 ID；玩家不存在或房间无消息时返回 ``None``。
        """
        player = self.find_player(user_id)
        if player is None:
            return None
        if last_message_id is None:
            room_messages = self.messages_in_room(room_id)
            if not room_messages:
                return None
            last_message_id = room_messages[-1].id
        player.room_last_seen[room_id] = last_message_id
        return last_message_id

    def unread_counts(self, user_id: str) -> dict[str, int]:
        """按房间统计未读数（不含自己发的消息）。

        已读位置之后的消息计为未读；从未读过或已读消息已不存在时，
        整个房间的消息都计为未读。
        """
        player = self.find_player(user_id)
        last_seen = player.room_last_seen if player is not None else {}
        counts: dict[str, int] = {}
        for room in self.visible_rooms(user_id):
            messages = self.messages_in_room(room.id)
            seen_id = last_seen.get(room.id)
            start = 0
            if seen_id is not None:
                for index, message in enumerate(messages):
                    if message.id == seen_id:
                        start = index + 1
                        break
            counts[room.id] = sum(1 for m in messages[start:] if m.user_id != user_id)
        return counts

    # ── 先攻 ──────────────────────────────────────────────────────────

    def find_initiative(self, entry_id: str) -> InitiativeEntry | None:
        return next((e for e in self.initiative_order if e.id == entry_id), None)

    def add_initiative(self, entry: InitiativeEntry) -> InitiativeEntry:
        """加入先攻条目。

        同一 (角色名, 用户) 的旧条目会被替换；之后按先攻值降序稳定排序，
        同值保持加入顺序。
        """
        self.initiative_order = [
            e for e in self.initiative_order
            if not (e.character_name == entry.character_name and e.user_id == entry.user_id)
        ]
        self.initiative_order.append(entry)
        self.initiative_order.sort(key=lambda e: e.initiative, reverse=True)
        self._drop_stale_turn()
        return entry

    def remove_initiative(self, entry_id: str) -> bool:
        before = len(self.initiative_order)
        self.initiative_order = [e for e in self.initiative_order if e.id != entry_id]
        self._drop_stale_turn()
        return len(self.initiative_order) < before

    def remove_initiative_for_user(self, user_id: str) -> None:
        self.initiative_order = [e for e in self.initiative_order if e.user_id != user_id]
        self._drop_stale_turn()

    def advance_turn(self) -> InitiativeEntry | None:
        """把回合指针移到下一个存活条目，末尾后回到第一个。"""
        alive = [e for e in self.initiative_order if e.is_active and not e.is_dead]
        if not alive:
            self.current_turn = None
            return None

        ids = [e.id for e in alive]
        if self.current_turn in ids:
            nxt = alive[(ids.index(self.current_turn) + 1) % len(alive)]
        elif self.current_turn is not None and self.find_initiative(self.current_turn):
            # 当前条目已阵亡：取排在它后面的第一个存活条目
            order = [e.id for e in self.initiative_order]
            position = order.index(self.current_turn)
            later = [e for e in alive if order.index(e.id) > position]
            nxt = later[0] if later else alive[0]
        else:
            nxt = alive[0]
        self.current_turn = nxt.id
        return nxt

    def _drop_stale_turn(self) -> None:
        if self.current_turn is not None and self.find_initiative(self.current_turn) is None:
            self.current_turn = None

    # ── 视图 ──────────────────────────────────────────────────────────

    def snapshot(self, message_limit: int = 50) -> SessionSnapshot:
        messages = self.chat_messages[-message_limit:] if message_limit > 0 else []
        return SessionSnapshot(
            id=self.id,
            title=self.title,
            session_key=self.session_key,
            creator_id=self.creator_id,
            creator_name=self.creator_name,
            dm_id=self.dm_id,
            dm_name=self.dm_name,
            players=self.players,
            max_players=self.max_players,
            chat_messages=messages,
            chat_rooms=self.chat_rooms,
            initiative_order=self.initiative_order,
            current_turn=self.current_turn,
            is_active=self.is_active,
            is_public=self.is_public,
        )

    def summary(self) -> SessionSummary:
        return SessionSummary(
            id=self.id,
            title=self.title,
            description=self.description,
            session_key=self.session_key,
            creator_name=self.creator_name,
            dm_name=self.dm_name,
            max_players=self.max_players,
            player_count=len(self.players),
            is_public=self.is_public,
            is_active=self.is_active,
            created_at=self.created_at,
        )
