"""
tavern.services.session_service
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

会话业务服务 —— 所有会话变更的唯一入口。

每个写操作都遵循同一流程::

    加载(404) → 鉴权(403) → 校验(400) → 修改 → 带版本保存 → 广播

保存遇到版本冲突时整体重读重做，最多 ``_MAX_SAVE_ATTEMPTS`` 次。
广播只在保存成功之后发生；任何一步抛出异常，都不会有事件发出。
"""
from __future__ import annotations

from collections.abc import Callable
from typing import Literal, TypeVar

from tavern.core.config import settings
from tavern.core.errors import (
    AuthorizationError,
    ConcurrentModificationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from tavern.core.logging import get_logger
from tavern.core.security import CurrentUser
from tavern.db.session_repository import SessionRepository
from tavern.schemas.events import (
    ChatRoomsUpdateEvent,
    InitiativeUpdateEvent,
    NewMessageEvent,
    ParticipantStatusUpdateEvent,
    RoomReadUpdateEvent,
    SessionUpdateEvent,
    UserKickedEvent,
    WebRTCSignalEvent,
)
from tavern.schemas.requests import CreateRoomRequest, CreateSessionRequest, UpdateSessionRequest
from tavern.schemas.session import (
    DEFAULT_ROOM_ID,
    ChatMessage,
    ChatRoom,
    GameSession,
    InitiativeEntry,
    MessageType,
    generate_session_key,
    normalize_room_id,
)
from tavern.services import dice
from tavern.services.broadcaster import EventBroadcaster

logger = get_logger(__name__)

T = TypeVar("T")

Role = Literal["player", "dm", "creator"]

_MAX_SAVE_ATTEMPTS = 3


class SessionService:
    """会话服务。

    Attributes:
        repo: 会话仓库。
        broadcaster: 事件广播器。
        key_factory: 邀请码生成函数，测试时可替换为确定序列。
    """

    def __init__(
        self,
        repo: SessionRepository,
        broadcaster: EventBroadcaster,
        key_factory: Callable[[], str] = generate_session_key,
    ) -> None:
        self.repo = repo
        self.broadcaster = broadcaster
        self.key_factory = key_factory

    # ── 内部工具 ──────────────────────────────────────────────────────

    async def _load(self, session_id: str) -> GameSession:
        session = await self.repo.get(session_id)
        if session is None:
            raise NotFoundError("Session not found")
        return session

    async def _mutate(
        self,
        session_id: str,
        mutator: Callable[[GameSession], tuple[bool, T]],
    ) -> tuple[GameSession, T]:
        """读-改-写，版本冲突时重试。

        ``mutator`` 返回 ``(changed, value)``；``changed`` 为 ``False`` 时不写库。
        ``mutator`` 内抛出的业务异常直接向上传播，此时没有任何写入。
        """
        for attempt in range(1, _MAX_SAVE_ATTEMPTS + 1):
            session = await self._load(session_id)
            changed, value = mutator(session)
            if not changed:
                return session, value
            try:
                await self.repo.save(session)
            except ConcurrentModificationError:
                if attempt == _MAX_SAVE_ATTEMPTS:
                    logger.error("会话保存冲突，已放弃 | session=%s | attempts=%d", session_id, attempt)
                    raise
                logger.warning("会话保存冲突，重试 | session=%s | attempt=%d", session_id, attempt)
                continue
            return session, value
        raise AssertionError("unreachable")

    @staticmethod
    def _require_participant(session: GameSession, user: CurrentUser) -> None:
        if not session.is_participant(user.user_id):
            raise AuthorizationError("You are not a participant in this session")

    @staticmethod
    def _require_creator(session: GameSession, user: CurrentUser, action: str) -> None:
        if not session.is_creator(user.user_id):
            raise AuthorizationError(f"Only the session creator can {action}")

    @staticmethod
    def _require_moderator(session: GameSession, user: CurrentUser, action: str) -> None:
        if not session.is_moderator(user.user_id):
            raise AuthorizationError(f"Only DM or session creator can {action}")

    @staticmethod
    def _resolve_room(session: GameSession, user: CurrentUser, room_id: str | None) -> str:
        """校验房间存在且对用户可见，返回归一化后的房间 ID。"""
        room_id = normalize_room_id(room_id)
        room = session.find_room(room_id)
        if room is None:
            if room_id == DEFAULT_ROOM_ID:
                return room_id
            raise NotFoundError("Chat room not found")
        if not session.can_see_room(user.user_id, room):
            raise AuthorizationError("You do not have access to this chat room")
        return room_id

    def role_of(self, session: GameSession, user_id: str) -> Role:
        if session.is_creator(user_id):
            return "creator"
        if session.is_dm(user_id):
            return "dm"
        return "player"

    def _broadcast_session(self, session: GameSession) -> None:
        self.broadcaster.broadcast(
            session.id,
            SessionUpdateEvent(session=session.snapshot(settings.SNAPSHOT_MESSAGE_LIMIT)),
        )

    def _broadcast_initiative(self, session: GameSession) -> None:
        self.broadcaster.broadcast(
            session.id,
            InitiativeUpdateEvent(
                initiative_order=session.initiative_order,
                current_turn=session.current_turn,
            ),
        )

    # ── 会话 ──────────────────────────────────────────────────────────

    async def create_session(self, user: CurrentUser, req: CreateSessionRequest) -> GameSession:
        """创建会话，创建者默认担任 DM，并建好默认房间 ``general``。

        Raises:
            ConflictError: 邀请码连续 ``SESSION_KEY_MAX_ATTEMPTS`` 次重复。
        """
        session_key: str | None = None
        for _ in range(settings.SESSION_KEY_MAX_ATTEMPTS):
            candidate = self.key_factory()
            if not await self.repo.key_exists(candidate):
                session_key = candidate
                break
        if session_key is None:
            raise ConflictError("Failed to generate unique session key")

        session = GameSession(
            title=req.title.strip(),
            description=req.description,
            session_key=session_key,
            creator_id=user.user_id,
            creator_name=user.name,
            dm_id=user.user_id,
            dm_name=user.name,
            max_players=req.max_players or settings.DEFAULT_MAX_PLAYERS,
            is_public=req.is_public,
            chat_rooms=[
                ChatRoom(
                    id=DEFAULT_ROOM_ID,
                    name="General",
                    description="Main chat room",
                    is_default=True,
                    created_by=user.user_id,
                ),
            ],
        )
        await self.repo.insert(session)
        logger.info("会话已创建 | session=%s | key=%s | creator=%s", session.id, session_key, user.user_id)
        return session

    async def list_sessions(
        self, user: CurrentUser, scope: Literal["mine", "public"] = "mine",
    ) -> list[GameSession]:
        if scope == "public":
            return await self.repo.list_sessions(public_only=True)
        return await self.repo.list_sessions(user_id=user.user_id)

    async def get_session(self, user: CurrentUser, session_id: str) -> GameSession:
        session = await self._load(session_id)
        if not session.is_public:
            self._require_participant(session, user)
        return session

    async def load_for_stream(self, user: CurrentUser, session_id: str) -> GameSession:
        """事件流建立前的校验：会话存在(404)且调用者是参与者(403)。"""
        session = await self._load(session_id)
        self._require_participant(session, user)
        return session

    async def update_session(
        self, user: CurrentUser, session_id: str, req: UpdateSessionRequest,
    ) -> GameSession:
        def mutate(session: GameSession) -> tuple[bool, None]:
            self._require_creator(session, user, "update session settings")
            changes = req.model_dump(exclude_none=True)
            if not changes:
                return False, None
            if "max_players" in changes and changes["max_players"] < len(session.players):
                raise ValidationError("maxPlayers cannot be lower than the current player count")
            for name, value in changes.items():
                setattr(session, name, value.strip() if name == "title" else value)
            return True, None

        session, _ = await self._mutate(session_id, mutate)
        self._broadcast_session(session)
        return session

    async def delete_session(self, user: CurrentUser, session_id: str) -> None:
        session = await self._load(session_id)
        self._require_creator(session, user, "delete the session")
        await self.repo.delete(session_id)
        logger.info("会话已删除 | session=%s", session_id)

    # ── 成员 ──────────────────────────────────────────────────────────

    async def join_by_key(
        self,
        user: CurrentUser,
        session_key: str,
        character_id: str | None = None,
        character_name: str | None = None,
    ) -> tuple[GameSession, Role, bool]:
        """通过邀请码加入会话。

        已在会话中的玩家会更新角色信息；创建者与 DM 直接返回，不占玩家名额。

        Returns:
            ``(session, role, created)``。

        Raises:
            NotFoundError: 邀请码不存在或会话已结束。
            ValidationError: 会话已满。
        """
        found = await self.repo.find_by_key(session_key.strip().upper(), active_only=True)
        if found is None:
            raise NotFoundError("Session not found or inactive")

        def mutate(session: GameSession) -> tuple[bool, bool]:
            if not session.is_active:
                raise NotFoundError("Session not found or inactive")
            if session.is_moderator(user.user_id) and session.find_player(user.user_id) is None:
                return False, False
            if session.find_player(user.user_id) is None and session.is_full:
                raise ValidationError("Session is full")
            _, created = session.upsert_player(user.user_id, character_id, character_name)
            if created:
                suffix = f" with {character_name}" if character_name else ""
                session.add_system_message(f"{user.name} joined the session{suffix}")
            return True, created

        session, created = await self._mutate(found.id, mutate)
        if session.find_player(user.user_id) is not None:
            self._broadcast_session(session)
        return session, self.role_of(session, user.user_id), created

    async def auto_join(self, user: CurrentUser, session_id: str) -> tuple[GameSession, Role, bool]:
        """打开会话页面时自动加入。DM 不加入玩家列表；已有玩家只刷新在线状态。"""

        def mutate(session: GameSession) -> tuple[bool, bool]:
            if session.is_dm(user.user_id):
                return False, False
            player = session.find_player(user.user_id)
            if player is not None:
                if player.is_online:
                    return False, False
                session.set_player_status(user.user_id, True)
                return True, False
            if session.is_creator(user.user_id):
                return False, False
            if not session.is_active:
                raise ValidationError("Session is not active")
            if session.is_full:
                raise ValidationError("Session is full")
            session.upsert_player(user.user_id, character_name=user.name)
            session.add_system_message(f"{user.name} joined the session")
            return True, True

        session, created = await self._mutate(session_id, mutate)
        if created:
            self._broadcast_session(session)
        return session, self.role_of(session, user.user_id), created

    async def leave(self, user: CurrentUser, session_id: str) -> bool:
        """离开会话。

        DM 离开会清空 DM；创建者离开时，创建者身份转给第一个剩余玩家，
        没有剩余玩家则结束会话。

        Returns:
            会话是否因此结束。
        """

        def mutate(session: GameSession) -> tuple[bool, bool]:
            if not session.is_participant(user.user_id):
                raise NotFoundError("You are not in this session")

            if session.is_dm(user.user_id):
                session.dm_id = None
                session.dm_name = None
                session.add_system_message(f"{user.name} left the session and is no longer the DM")
            else:
                session.add_system_message(f"{user.name} left the session")
            session.remove_player(user.user_id)
            session.remove_initiative_for_user(user.user_id)

            ended = False
            if session.is_creator(user.user_id):
                if session.players:
                    heir = session.players[0]
                    session.creator_id = heir.user_id
                    session.creator_name = heir.character_name or heir.user_id
                    session.add_system_message(
                        f"{user.name} left the session. {session.creator_name} is now the session creator.",
                    )
                else:
                    session.is_active = False
                    session.add_system_message("Session ended - all participants have left")
                    ended = True
            return True, ended

        session, ended = await self._mutate(session_id, mutate)
        if session.is_active:
            self._broadcast_session(session)
        logger.info("玩家离开会话 | session=%s | user=%s | ended=%s", session_id, user.user_id, ended)
        return ended

    async def kick(
        self, user: CurrentUser, session_id: str, target_user_id: str, reason: str | None = None,
    ) -> GameSession:
        def mutate(session: GameSession) -> tuple[bool, str]:
            self._require_creator(session, user, "kick players")
            if target_user_id == user.user_id:
                raise ValidationError("You cannot kick yourself")
            target = session.find_player(target_user_id)
            if target is None:
                raise NotFoundError("Player not found in session")
            target_name = target.character_name or target_user_id

            session.remove_player(target_user_id)
            if session.is_dm(target_user_id):
                session.dm_id = None
                session.dm_name = None
            session.remove_initiative_for_user(target_user_id)

            text = f"{target_name} was kicked from the session by {user.name}."
            if reason:
                text = f"{text} Reason: {reason}"
            session.add_system_message(text)
            return True, target_name

        session, target_name = await self._mutate(session_id, mutate)
        self._broadcast_session(session)
        self.broadcaster.broadcast(
            session.id, UserKickedEvent(target_user_id=target_user_id, reason=reason),
        )
        logger.info("玩家被踢出 | session=%s | target=%s(%s)", session_id, target_user_id, target_name)
        return session

    async def assign_dm(
        self, user: CurrentUser, session_id: str, dm_user_id: str, dm_name: str | None = None,
    ) -> GameSession:
        def mutate(session: GameSession) -> tuple[bool, None]:
            self._require_creator(session, user, "assign DM")
            if not session.is_participant(dm_user_id):
                raise ValidationError("DM must be a participant in the session")
            player = session.find_player(dm_user_id)
            name = dm_name or (player.character_name if player else None) or (
                session.creator_name if session.is_creator(dm_user_id) else dm_user_id
            )
            session.dm_id = dm_user_id
            session.dm_name = name
            session.add_system_message(f"{name} has been assigned as Dungeon Master")
            return True, None

        session, _ = await self._mutate(session_id, mutate)
        self._broadcast_session(session)
        return session

    async def set_status(self, user: CurrentUser, session_id: str, is_online: bool) -> bool:
        """更新在线状态。

        Returns:
            状态是否真的发生了变化；只有变化时才广播。
        """

        def mutate(session: GameSession) -> tuple[bool, bool | None]:
            player = session.find_player(user.user_id)
            if player is None:
                raise NotFoundError("User not found in session")
            previous = session.set_player_status(user.user_id, is_online)
            # last_seen 也要落库，所以始终保存
            return True, previous

        session, previous = await self._mutate(session_id, mutate)
        changed = previous is not None and previous != is_online
        if changed:
            self.broadcaster.broadcast(
                session.id,
                ParticipantStatusUpdateEvent(
                    user_id=user.user_id, is_online=is_online, previous_status=previous,
                ),
            )
        return changed

    # ── 聊天 ──────────────────────────────────────────────────────────

    async def send_message(
        self,
        user: CurrentUser,
        session_id: str,
        text: str,
        type: MessageType = "chat",
        room_id: str | None = None,
    ) -> ChatMessage:
        text = text.strip()
        if not text:
            raise ValidationError("Message cannot be empty")

        def mutate(session: GameSession) -> tuple[bool, ChatMessage]:
            self._require_participant(session, user)
            if type == "system" and not session.is_moderator(user.user_id):
                raise AuthorizationError("Only DM or session creator can post system messages")
            resolved = self._resolve_room(session, user, room_id)
            message = session.add_message(
                ChatMessage(
                    user_id=user.user_id,
                    username=user.name,
                    message=text,
                    type=type,
                    room_id=resolved,
                ),
            )
            return True, message

        session, message = await self._mutate(session_id, mutate)
        self.broadcaster.broadcast(session.id, NewMessageEvent(message=message))
        return message

    async def chat_history(
        self,
        user: CurrentUser,
        session_id: str,
        room_id: str | None = None,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[str, list[ChatMessage], int]:
        """分页获取某房间的聊天记录（按时间正序）。

        Returns:
            ``(room_id, messages, total)``。
        """
        session = await self._load(session_id)
        self._require_participant(session, user)
        resolved = self._resolve_room(session, user, room_id)
        messages = session.messages_in_room(resolved)
        return resolved, messages[skip:skip + limit], len(messages)

    async def roll(
        self, user: CurrentUser, session_id: str, expression: str, room_id: str | None = None,
    ) -> tuple[dice.DiceRoll, ChatMessage]:
        """服务端掷骰并把结果作为 ``roll`` 消息发到聊天。"""

        def mutate(session: GameSession) -> tuple[bool, tuple[dice.DiceRoll, ChatMessage]]:
            self._require_participant(session, user)
            result = dice.evaluate(expression)
            resolved = self._resolve_room(session, user, room_id)
            message = session.add_message(
                ChatMessage(
                    user_id=user.user_id,
                    username=user.name,
                    message=dice.format_roll(result),
                    type="roll",
                    room_id=resolved,
                ),
            )
            return True, (result, message)

        session, (result, message) = await self._mutate(session_id, mutate)
        self.broadcaster.broadcast(session.id, NewMessageEvent(message=message))
        return result, message

    async def list_rooms(self, user: CurrentUser, session_id: str) -> list[ChatRoom]:
        session = await self._load(session_id)
        self._require_participant(session, user)
        return session.visible_rooms(user.user_id)

    async def create_room(
        self, user: CurrentUser, session_id: str, req: CreateRoomRequest,
    ) -> ChatRoom:
        name = req.name.strip()
        if not name:
            raise ValidationError("Room name is required")

        def mutate(session: GameSession) -> tuple[bool, ChatRoom]:
            self._require_creator(session, user, "create chat rooms")
            if session.has_room_named(name):
                raise ValidationError("A room with this name already exists")
            room = ChatRoom(
                name=name,
                description=req.description.strip(),
                created_by=user.user_id,
                is_private=req.is_private,
                allowed_users=list(dict.fromkeys(req.allowed_users)) if req.is_private else [],
            )
            session.chat_rooms.append(room)
            return True, room

        session, room = await self._mutate(session_id, mutate)
        self.broadcaster.broadcast(session.id, ChatRoomsUpdateEvent(chat_rooms=session.chat_rooms))
        return room

    async def mark_read(
        self,
        user: CurrentUser,
        session_id: str,
        room_id: str,
        last_message_id: str | None = None,
    ) -> str | None:
        """记录已读位置，返回实际记录的消息 ID（房间为空时为 ``None``）。"""

        def mutate(session: GameSession) -> tuple[bool, str | None]:
            if session.find_player(user.user_id) is None:
                if session.is_moderator(user.user_id):
                    return False, None
                raise AuthorizationError("You are not a participant in this session")
            resolved = self._resolve_room(session, user, room_id)
            marked = session.mark_room_read(user.user_id, resolved, last_message_id)
            return marked is not None, marked

        session, marked = await self._mutate(session_id, mutate)
        if marked is not None:
            self.broadcaster.broadcast(
                session.id,
                RoomReadUpdateEvent(
                    user_id=user.user_id,
                    room_id=normalize_room_id(room_id),
                    last_message_id=marked,
                ),
            )
        return marked

    async def unread_counts(self, user: CurrentUser, session_id: str) -> dict[str, int]:
        session = await self._load(session_id)
        self._require_participant(session, user)
        return session.unread_counts(user.user_id)

    # ── 先攻 ──────────────────────────────────────────────────────────

    async def add_initiative(
        self, user: CurrentUser, session_id: str, character_name: str, expression: str = "1d20",
    ) -> tuple[GameSession, InitiativeEntry]:
        character_name = character_name.strip()
        if not character_name:
            raise ValidationError("Character name is required")

        def mutate(session: GameSession) -> tuple[bool, InitiativeEntry]:
            self._require_participant(session, user)
            result = dice.evaluate(expression)
            entry = session.add_initiative(
                InitiativeEntry(
                    character_name=character_name,
                    initiative=result.total,
                    roll_details=result.breakdown,
                    user_id=user.user_id,
                    user_name=user.name,
                ),
            )
            return True, entry

        session, entry = await self._mutate(session_id, mutate)
        self._broadcast_initiative(session)
        return session, entry

    async def remove_initiative(
        self, user: CurrentUser, session_id: str, entry_id: str,
    ) -> GameSession:
        def mutate(session: GameSession) -> tuple[bool, None]:
            entry = session.find_initiative(entry_id)
            if entry is None:
                raise NotFoundError("Initiative entry not found")
            if entry.user_id != user.user_id and not session.is_moderator(user.user_id):
                raise AuthorizationError("You can only remove your own initiative rolls")
            session.remove_initiative(entry_id)
            return True, None

        session, _ = await self._mutate(session_id, mutate)
        self._broadcast_initiative(session)
        return session

    async def toggle_dead(
        self, user: CurrentUser, session_id: str, entry_id: str,
    ) -> tuple[GameSession, InitiativeEntry, ChatMessage]:
        def mutate(session: GameSession) -> tuple[bool, tuple[InitiativeEntry, ChatMessage]]:
            self._require_moderator(session, user, "toggle death status")
            entry = session.find_initiative(entry_id)
            if entry is None:
                raise NotFoundError("Initiative entry not found")
            entry.is_dead = not entry.is_dead
            status = "marked as dead" if entry.is_dead else "revived"
            message = session.add_system_message(f"💀 {entry.character_name} has been {status}")
            return True, (entry, message)

        session, (entry, message) = await self._mutate(session_id, mutate)
        self._broadcast_initiative(session)
        self.broadcaster.broadcast(session.id, NewMessageEvent(message=message))
        return session, entry, message

    async def next_turn(self, user: CurrentUser, session_id: str) -> GameSession:
        def mutate(session: GameSession) -> tuple[bool, None]:
            self._require_moderator(session, user, "advance the turn")
            session.advance_turn()
            return True, None

        session, _ = await self._mutate(session_id, mutate)
        self._broadcast_initiative(session)
        return session

    # ── 信令 ──────────────────────────────────────────────────────────

    async def relay_signal(
        self,
        user: CurrentUser,
        session_id: str,
        signal_type: str,
        data: object = None,
        target_user_id: str | None = None,
    ) -> int:
        """转发 WebRTC 信令，不落库。返回投递到的连接数。"""
        session = await self._load(session_id)
        self._require_participant(session, user)
        return self.broadcaster.broadcast(
            session.id,
            WebRTCSignalEvent(
                signal_type=signal_type,
                data=data,
                from_user_id=user.user_id,
                target_user_id=target_user_id,
            ),
        )
