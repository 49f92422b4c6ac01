"""
tests.test_session_service
~~~~~~~~~~~~~~~~~~~~~~~~~~

``SessionService`` 业务流程测试：先落库后广播、乐观锁重试、成员规则。

在线连接用真实的 ``ConnectionRegistry`` + ``SessionConnection``，
通过读取连接队列断言广播内容。
"""
from __future__ import annotations

import json

import pytest
from conftest import ALICE, BOB, CAROL, FakeSessionRepository, KeySequence, read_frames

from tavern.core.errors import (
    AuthorizationError,
    ConcurrentModificationError,
    ConflictError,
    InvalidExpression,
    NotFoundError,
    ValidationError,
)
from tavern.schemas.requests import CreateRoomRequest, CreateSessionRequest, UpdateSessionRequest
from tavern.schemas.session import DEFAULT_ROOM_ID, GameSession
from tavern.services.broadcaster import EventBroadcaster
from tavern.services.event_stream import SessionEventStream
from tavern.services.registry import ConnectionRegistry, SessionConnection
from tavern.services.session_service import SessionService


def events(conn: SessionConnection) -> list[dict]:
    return [json.loads(f.removeprefix("data: ").strip()) for f in read_frames(conn)]


def types(conn: SessionConnection) -> list[str]:
    return [e["type"] for e in events(conn)]


def listen(registry: ConnectionRegistry, session: GameSession, user_id: str = "listener") -> SessionConnection:
    conn = SessionConnection(session.id, user_id)
    registry.add(session.id, conn)
    return conn


async def create_with_players(
    service: SessionService, request: CreateSessionRequest, *players,
) -> GameSession:
    session = await service.create_session(ALICE, request)
    for player in players:
        session, _, _ = await service.join_by_key(player, session.session_key, character_name=player.name)
    return session


class TestCreateSession:

    @pytest.mark.asyncio
    async def test_create_defaults(self, service: SessionService, create_request: CreateSessionRequest) -> None:
        session = await service.create_session(ALICE, create_request)

        assert session.session_key == "ABC123"
        assert session.creator_id == ALICE.user_id
        assert session.dm_id == ALICE.user_id
        assert session.max_players == 4
        assert [r.id for r in session.chat_rooms] == [DEFAULT_ROOM_ID]
        assert session.chat_rooms[0].is_default

    @pytest.mark.asyncio
    async def test_key_collision_regenerates(
        self, service: SessionService, create_request: CreateSessionRequest,
    ) -> None:
        first = await service.create_session(ALICE, create_request)
        second = await service.create_session(ALICE, create_request)

        assert first.session_key == "ABC123"
        assert second.session_key == "DEF456"

    @pytest.mark.asyncio
    async def test_key_exhaustion(
        self, repo: FakeSessionRepository, broadcaster: EventBroadcaster, create_request: CreateSessionRequest,
    ) -> None:
        keys = KeySequence("ABC123")
        service = SessionService(repo, broadcaster, key_factory=keys)
        await service.create_session(ALICE, create_request)

        with pytest.raises(ConflictError):
            await service.create_session(ALICE, create_request)
        assert keys.calls == 1 + 10


class TestMembership:
    """加入 / 离开 / 踢人 / 指定 DM。"""

    @pytest.mark.asyncio
    async def test_join_by_key(
        self, service: SessionService, registry: ConnectionRegistry, create_request: CreateSessionRequest,
    ) -> None:
        session = await service.create_session(ALICE, create_request)
        conn = listen(registry, session)

        joined, role, created = await service.join_by_key(BOB, "abc123", character_name="Thorin")

        assert role == "player"
        assert created is True
        assert joined.find_player(BOB.user_id).character_name == "Thorin"
        assert joined.chat_messages[-1].message == "Bob joined the session with Thorin"
        [update] = events(conn)
        assert update["type"] == "session_update"
        assert [p["userId"] for p in update["session"]["players"]] == [BOB.user_id]

    @pytest.mark.asyncio
    async def test_rejoin_does_not_duplicate(
        self, service: SessionService, create_request: CreateSessionRequest,
    ) -> None:
        session = await create_with_players(service, create_request, BOB)

        joined, _, created = await service.join_by_key(BOB, session.session_key, character_name="Gimli")

        assert created is False
        assert len(joined.players) == 1
        assert joined.players[0].character_name == "Gimli"

    @pytest.mark.asyncio
    async def test_join_unknown_key(self, service: SessionService) -> None:
        with pytest.raises(NotFoundError):
            await service.join_by_key(BOB, "ZZZZZZ")

    @pytest.mark.asyncio
    async def test_join_full_session(self, service: SessionService) -> None:
        session = await service.create_session(ALICE, CreateSessionRequest(title="Tiny", max_players=1))
        await service.join_by_key(BOB, session.session_key)

        with pytest.raises(ValidationError):
            await service.join_by_key(CAROL, session.session_key)

    @pytest.mark.asyncio
    async def test_creator_join_returns_role(
        self, service: SessionService, create_request: CreateSessionRequest,
    ) -> None:
        session = await service.create_session(ALICE, create_request)

        joined, role, created = await service.join_by_key(ALICE, session.session_key)

        assert role == "creator"
        assert created is False
        assert joined.players == []

    @pytest.mark.asyncio
    async def test_auto_join(
        self, service: SessionService, registry: ConnectionRegistry, create_request: CreateSessionRequest,
    ) -> None:
        session = await service.create_session(ALICE, create_request)
        conn = listen(registry, session)

        _, role, created = await service.auto_join(BOB, session.id)
        _, _, created_again = await service.auto_join(BOB, session.id)

        assert role == "player"
        assert created is True
        assert created_again is False
        assert types(conn) == ["session_update"]

    @pytest.mark.asyncio
    async def test_dm_leaving_clears_dm(
        self, service: SessionService, create_request: CreateSessionRequest,
    ) -> None:
        session = await create_with_players(service, create_request, BOB)
        await service.assign_dm(ALICE, session.id, BOB.user_id)

        ended = await service.leave(BOB, session.id)

        stored = await service.get_session(ALICE, session.id)
        assert ended is False
        assert stored.dm_id is None
        assert stored.find_player(BOB.user_id) is None

    @pytest.mark.asyncio
    async def test_creator_leaving_transfers_ownership(
        self, service: SessionService, create_request: CreateSessionRequest,
    ) -> None:
        session = await create_with_players(service, create_request, BOB, CAROL)

        ended = await service.leave(ALICE, session.id)

        stored = await service.get_session(BOB, session.id)
        assert ended is False
        assert stored.creator_id == BOB.user_id
        assert stored.is_active

    @pytest.mark.asyncio
    async def test_last_creator_leaving_ends_session(
        self, service: SessionService, registry: ConnectionRegistry, create_request: CreateSessionRequest,
    ) -> None:
        session = await service.create_session(ALICE, create_request)
        conn = listen(registry, session)

        ended = await service.leave(ALICE, session.id)

        assert ended is True
        assert (await service.repo.get(session.id)).is_active is False
        assert types(conn) == []

    @pytest.mark.asyncio
    async def test_kick(
        self, service: SessionService, registry: ConnectionRegistry, create_request: CreateSessionRequest,
    ) -> None:
        session = await create_with_players(service, create_request, BOB)
        await service.add_initiative(BOB, session.id, "Thorin", "15")
        conn = listen(registry, session)

        kicked = await service.kick(ALICE, session.id, BOB.user_id, reason="AFK")

        assert kicked.find_player(BOB.user_id) is None
        assert kicked.initiative_order == []
        assert kicked.chat_messages[-1].message.endswith("Reason: AFK")
        received = events(conn)
        assert [e["type"] for e in received] == ["session_update", "user_kicked"]
        assert received[1]["targetUserId"] == BOB.user_id

    @pytest.mark.asyncio
    async def test_kick_rules(self, service: SessionService, create_request: CreateSessionRequest) -> None:
        session = await create_with_players(service, create_request, BOB)

        with pytest.raises(ValidationError):
            await service.kick(ALICE, session.id, ALICE.user_id)
        with pytest.raises(AuthorizationError):
            await service.kick(BOB, session.id, ALICE.user_id)
        with pytest.raises(NotFoundError):
            await service.kick(ALICE, session.id, CAROL.user_id)

    @pytest.mark.asyncio
    async def test_assign_dm_requires_participant(
        self, service: SessionService, create_request: CreateSessionRequest,
    ) -> None:
        session = await service.create_session(ALICE, create_request)

        with pytest.raises(ValidationError):
            await service.assign_dm(ALICE, session.id, CAROL.user_id)

    @pytest.mark.asyncio
    async def test_update_settings_creator_only(
        self, service: SessionService, create_request: CreateSessionRequest,
    ) -> None:
        session = await create_with_players(service, create_request, BOB)

        with pytest.raises(AuthorizationError):
            await service.update_session(BOB, session.id, UpdateSessionRequest(title="Hijack"))
        updated = await service.update_session(ALICE, session.id, UpdateSessionRequest(title="  New  "))
        assert updated.title == "New"


class TestStatus:

    @pytest.mark.asyncio
    async def test_broadcast_only_on_change(
        self, service: SessionService, registry: ConnectionRegistry, create_request: CreateSessionRequest,
    ) -> None:
        session = await create_with_players(service, create_request, BOB)
        conn = listen(registry, session)

        assert await service.set_status(BOB, session.id, False) is True
        assert await service.set_status(BOB, session.id, False) is False

        [update] = events(conn)
        assert update["type"] == "participant_status_update"
        assert update["isOnline"] is False
        assert update["previousStatus"] is True

    @pytest.mark.asyncio
    async def test_unknown_player(self, service: SessionService, create_request: CreateSessionRequest) -> None:
        session = await service.create_session(ALICE, create_request)

        with pytest.raises(NotFoundError):
            await service.set_status(CAROL, session.id, True)


class TestChat:

    @pytest.mark.asyncio
    async def test_send_message_persists_then_broadcasts(
        self, service: SessionService, registry: ConnectionRegistry, create_request: CreateSessionRequest,
    ) -> None:
        session = await create_with_players(service, create_request, BOB)
        conn = listen(registry, session)

        message = await service.send_message(BOB, session.id, "  hello  ")

        stored = await service.repo.get(session.id)
        assert stored.chat_messages[-1].id == message.id
        assert message.message == "hello"
        assert message.room_id == DEFAULT_ROOM_ID
        [event] = events(conn)
        assert event["type"] == "new_message"
        assert event["message"]["id"] == message.id

    @pytest.mark.asyncio
    async def test_failed_save_means_no_broadcast(
        self,
        service: SessionService,
        repo: FakeSessionRepository,
        registry: ConnectionRegistry,
        create_request: CreateSessionRequest,
    ) -> None:
        session = await create_with_players(service, create_request, BOB)
        conn = listen(registry, session)
        repo.conflicts_to_raise = 3

        with pytest.raises(ConcurrentModificationError):
            await service.send_message(BOB, session.id, "lost")

        assert types(conn) == []
        assert all(m.message != "lost" for m in (await repo.get(session.id)).chat_messages)

    @pytest.mark.asyncio
    async def test_conflict_is_retried(
        self, service: SessionService, repo: FakeSessionRepository, create_request: CreateSessionRequest,
    ) -> None:
        session = await create_with_players(service, create_request, BOB)
        repo.conflicts_to_raise = 2
        calls_before = repo.save_calls

        await service.send_message(BOB, session.id, "eventually")

        assert repo.save_calls - calls_before == 3
        assert (await repo.get(session.id)).chat_messages[-1].message == "eventually"

    @pytest.mark.asyncio
    async def test_validation_before_mutation(
        self, service: SessionService, create_request: CreateSessionRequest,
    ) -> None:
        session = await create_with_players(service, create_request, BOB)

        with pytest.raises(ValidationError):
            await service.send_message(BOB, session.id, "   ")
        with pytest.raises(AuthorizationError):
            await service.send_message(CAROL, session.id, "let me in")
        with pytest.raises(NotFoundError):
            await service.send_message(BOB, session.id, "hi", room_id="nowhere")

    @pytest.mark.asyncio
    async def test_roll_posts_roll_message(
        self, service: SessionService, registry: ConnectionRegistry, create_request: CreateSessionRequest,
    ) -> None:
        session = await create_with_players(service, create_request, BOB)
        conn = listen(registry, session)

        roll, message = await service.roll(BOB, session.id, "2d6+3")

        assert message.type == "roll"
        assert message.message.startswith("🎲 2d6+3 → ")
        assert 5 <= roll.total <= 15
        assert types(conn) == ["new_message"]

    @pytest.mark.asyncio
    async def test_invalid_roll_has_no_side_effects(
        self, service: SessionService, registry: ConnectionRegistry, create_request: CreateSessionRequest,
    ) -> None:
        session = await create_with_players(service, create_request, BOB)
        conn = listen(registry, session)
        before = len((await service.repo.get(session.id)).chat_messages)

        with pytest.raises(InvalidExpression):
            await service.roll(BOB, session.id, "2x6")

        assert len((await service.repo.get(session.id)).chat_messages) == before
        assert types(conn) == []

    @pytest.mark.asyncio
    async def test_outsider_bad_roll_is_forbidden(
        self, service: SessionService, create_request: CreateSessionRequest,
    ) -> None:
        """非参与者先被拒绝，不会因表达式错误得到 400。"""
        session = await create_with_players(service, create_request, BOB)

        with pytest.raises(AuthorizationError):
            await service.roll(CAROL, session.id, "2x6")
        with pytest.raises(AuthorizationError):
            await service.add_initiative(CAROL, session.id, "Sneak", "1d1000000")

    @pytest.mark.asyncio
    async def test_private_rooms(
        self, service: SessionService, registry: ConnectionRegistry, create_request: CreateSessionRequest,
    ) -> None:
        session = await create_with_players(service, create_request, BOB, CAROL)
        conn = listen(registry, session)

        room = await service.create_room(
            ALICE, session.id, CreateRoomRequest(name="Whispers", is_private=True, allowed_users=[BOB.user_id]),
        )

        assert types(conn) == ["chat_rooms_update"]
        assert room in await service.list_rooms(BOB, session.id)
        assert room not in await service.list_rooms(CAROL, session.id)
        with pytest.raises(AuthorizationError):
            await service.send_message(CAROL, session.id, "psst", room_id=room.id)
        with pytest.raises(ValidationError):
            await service.create_room(ALICE, session.id, CreateRoomRequest(name="whispers"))
        with pytest.raises(AuthorizationError):
            await service.create_room(BOB, session.id, CreateRoomRequest(name="Mine"))

    @pytest.mark.asyncio
    async def test_mark_read_and_unread(
        self, service: SessionService, registry: ConnectionRegistry, create_request: CreateSessionRequest,
    ) -> None:
        session = await create_with_players(service, create_request, BOB)
        await service.send_message(ALICE, session.id, "one")
        await service.send_message(ALICE, session.id, "two")
        await service.send_message(BOB, session.id, "mine")
        conn = listen(registry, session)

        assert (await service.unread_counts(BOB, session.id))[DEFAULT_ROOM_ID] >= 2

        marked = await service.mark_read(BOB, session.id, DEFAULT_ROOM_ID)

        assert (await service.unread_counts(BOB, session.id)) == {DEFAULT_ROOM_ID: 0}
        [event] = events(conn)
        assert event["type"] == "room_read_update"
        assert event["lastMessageId"] == marked

    @pytest.mark.asyncio
    async def test_history_pagination(
        self, service: SessionService, create_request: CreateSessionRequest,
    ) -> None:
        session = await create_with_players(service, create_request, BOB)
        for i in range(5):
            await service.send_message(BOB, session.id, f"msg {i}")

        room_id, page, total = await service.chat_history(BOB, session.id, None, skip=1, limit=2)

        assert room_id == DEFAULT_ROOM_ID
        assert total == 6  # 含加入时的系统消息
        assert [m.message for m in page] == ["msg 0", "msg 1"]


class TestInitiative:

    @pytest.mark.asyncio
    async def test_add_evaluates_server_side(
        self, service: SessionService, registry: ConnectionRegistry, create_request: CreateSessionRequest,
    ) -> None:
        session = await create_with_players(service, create_request, BOB)
        conn = listen(registry, session)

        updated, entry = await service.add_initiative(BOB, session.id, "Thorin", "12")

        assert entry.initiative == 12
        assert entry.roll_details == "12 = 12"
        assert updated.initiative_order == [entry]
        [event] = events(conn)
        assert event["type"] == "initiative_update"
        assert event["initiativeOrder"][0]["characterName"] == "Thorin"

    @pytest.mark.asyncio
    async def test_remove_own_only(self, service: SessionService, create_request: CreateSessionRequest) -> None:
        session = await create_with_players(service, create_request, BOB, CAROL)
        _, entry = await service.add_initiative(BOB, session.id, "Thorin", "12")

        with pytest.raises(AuthorizationError):
            await service.remove_initiative(CAROL, session.id, entry.id)
        updated = await service.remove_initiative(ALICE, session.id, entry.id)
        assert updated.initiative_order == []
        with pytest.raises(NotFoundError):
            await service.remove_initiative(ALICE, session.id, entry.id)

    @pytest.mark.asyncio
    async def test_toggle_dead_posts_system_message(
        self, service: SessionService, registry: ConnectionRegistry, create_request: CreateSessionRequest,
    ) -> None:
        session = await create_with_players(service, create_request, BOB)
        _, entry = await service.add_initiative(BOB, session.id, "Thorin", "12")
        conn = listen(registry, session)

        with pytest.raises(AuthorizationError):
            await service.toggle_dead(BOB, session.id, entry.id)
        _, toggled, message = await service.toggle_dead(ALICE, session.id, entry.id)

        assert toggled.is_dead is True
        assert message.message == "💀 Thorin has been marked as dead"
        assert types(conn) == ["initiative_update", "new_message"]

    @pytest.mark.asyncio
    async def test_next_turn(self, service: SessionService, create_request: CreateSessionRequest) -> None:
        session = await create_with_players(service, create_request, BOB)
        _, fast = await service.add_initiative(BOB, session.id, "Fast", "20")
        _, slow = await service.add_initiative(BOB, session.id, "Slow", "3")

        assert (await service.next_turn(ALICE, session.id)).current_turn == fast.id
        assert (await service.next_turn(ALICE, session.id)).current_turn == slow.id
        assert (await service.next_turn(ALICE, session.id)).current_turn == fast.id
        with pytest.raises(AuthorizationError):
            await service.next_turn(BOB, session.id)


class TestSignaling:

    @pytest.mark.asyncio
    async def test_relay(
        self, service: SessionService, registry: ConnectionRegistry, create_request: CreateSessionRequest,
    ) -> None:
        session = await create_with_players(service, create_request, BOB)
        conn = listen(registry, session)

        delivered = await service.relay_signal(BOB, session.id, "offer", {"sdp": "x"}, ALICE.user_id)

        assert delivered == 1
        [event] = events(conn)
        assert event["type"] == "webrtc_signal"
        assert event["signalType"] == "offer"
        assert event["fromUserId"] == BOB.user_id
        with pytest.raises(AuthorizationError):
            await service.relay_signal(CAROL, session.id, "offer")


class TestEndToEnd:
    """创建 → 订阅 → 加入 → 聊天 → 断开 的完整流程。"""

    @pytest.mark.asyncio
    async def test_full_flow(
        self,
        service: SessionService,
        registry: ConnectionRegistry,
        broadcaster: EventBroadcaster,
        create_request: CreateSessionRequest,
    ) -> None:
        session = await service.create_session(ALICE, create_request)
        assert session.session_key == "ABC123"

        dm_stream = SessionEventStream(
            await service.load_for_stream(ALICE, session.id), ALICE.user_id, registry, broadcaster,
        )
        dm_stream.open()
        assert types(dm_stream.connection) == ["connected", "session_update"]

        await service.join_by_key(BOB, "ABC123", character_name="Thorin")
        bob_stream = SessionEventStream(
            await service.load_for_stream(BOB, session.id), BOB.user_id, registry, broadcaster,
        )
        bob_stream.open()
        assert types(dm_stream.connection) == ["session_update", "participant_joined"]

        await service.send_message(BOB, session.id, "Hello DM")
        [dm_event] = events(dm_stream.connection)
        [bob_event] = [e for e in events(bob_stream.connection) if e["type"] == "new_message"]
        assert dm_event["message"]["message"] == bob_event["message"]["message"] == "Hello DM"

        bob_stream.close()
        assert types(dm_stream.connection) == ["participant_left"]
        assert registry.count(session.id) == 1

        with pytest.raises(AuthorizationError):
            await service.load_for_stream(CAROL, session.id)
