"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures：内存版会话仓库、注册表、广播器与服务，
使单元测试无需 MongoDB 与网络即可运行。
"""
from __future__ import annotations

import os
from typing import Any

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

from tavern.core.errors import ConcurrentModificationError, ConflictError  # noqa: E402
from tavern.core.security import CurrentUser, create_access_token  # noqa: E402
from tavern.schemas.requests import CreateSessionRequest  # noqa: E402
from tavern.schemas.session import GameSession, utcnow  # noqa: E402
from tavern.services.broadcaster import EventBroadcaster  # noqa: E402
from tavern.services.registry import ConnectionRegistry, SessionConnection  # noqa: E402
from tavern.services.session_service import SessionService  # noqa: E402


# ── 内存仓库 ──────────────────────────────────────────────────────────

class FakeSessionRepository:
    """与 ``SessionRepository`` 接口一致的内存实现。

    文档以 ``model_dump`` 后的字典保存，读写都会重新构造模型，
    行为上等同于真实的数据库往返。

    Attributes:
        conflicts_to_raise: 接下来若干次 ``save`` 强制抛出版本冲突。
        save_calls: ``save`` 被调用的次数。
    """

    def __init__(self) -> None:
        self.docs: dict[str, dict[str, Any]] = {}
        self.conflicts_to_raise = 0
        self.save_calls = 0

    def _load(self, doc: dict[str, Any]) -> GameSession:
        return GameSession.model_validate(doc)

    async def insert(self, session: GameSession) -> GameSession:
        if await self.key_exists(session.session_key):
            raise ConflictError(f"Session key {session.session_key} already exists")
        self.docs[session.id] = session.model_dump(by_alias=True)
        return session

    async def get(self, session_id: str) -> GameSession | None:
        doc = self.docs.get(session_id)
        return self._load(doc) if doc else None

    async def find_by_key(self, session_key: str, active_only: bool = True) -> GameSession | None:
        for doc in self.docs.values():
            if doc["sessionKey"] == session_key.upper() and (doc["isActive"] or not active_only):
                return self._load(doc)
        return None

    async def key_exists(self, session_key: str) -> bool:
        return any(doc["sessionKey"] == session_key for doc in self.docs.values())

    async def list_sessions(
        self, user_id: str | None = None, public_only: bool = False, limit: int = 50,
    ) -> list[GameSession]:
        sessions = [self._load(doc) for doc in self.docs.values()]
        if user_id is not None:
            sessions = [s for s in sessions if s.is_participant(user_id)]
        if public_only:
            sessions = [s for s in sessions if s.is_public and s.is_active]
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return sessions[:limit]

    async def save(self, session: GameSession) -> GameSession:
        self.save_calls += 1
        if self.conflicts_to_raise > 0:
            self.conflicts_to_raise -= 1
            raise ConcurrentModificationError(f"Session {session.id} was modified concurrently")
        stored = self.docs.get(session.id)
        if stored is None or stored["version"] != session.version:
            raise ConcurrentModificationError(f"Session {session.id} was modified concurrently")
        session.version += 1
        session.updated_at = utcnow()
        self.docs[session.id] = session.model_dump(by_alias=True)
        return session

    async def delete(self, session_id: str) -> bool:
        return self.docs.pop(session_id, None) is not None


class KeySequence:
    """按顺序返回预设邀请码，用完后退回到最后一个。"""

    def __init__(self, *keys: str) -> None:
        self.keys = list(keys)
        self.calls = 0

    def __call__(self) -> str:
        key = self.keys[min(self.calls, len(self.keys) - 1)]
        self.calls += 1
        return key


# ── 用户 ──────────────────────────────────────────────────────────────

ALICE = CurrentUser(user_id="u-alice", name="Alice")
BOB = CurrentUser(user_id="u-bob", name="Bob")
CAROL = CurrentUser(user_id="u-carol", name="Carol")


def auth_headers(user: CurrentUser) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.user_id, user.name)}"}


def read_frames(conn: SessionConnection) -> list[str]:
    """取出连接队列中当前全部帧（不等待）。"""
    frames = []
    while not conn._queue.empty():
        frame = conn._queue.get_nowait()
        if frame is not None:
            frames.append(frame)
    return frames


# ── fixtures ──────────────────────────────────────────────────────────

@pytest.fixture()
def repo() -> FakeSessionRepository:
    return FakeSessionRepository()


@pytest.fixture()
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


@pytest.fixture()
def broadcaster(registry: ConnectionRegistry) -> EventBroadcaster:
    return EventBroadcaster(registry)


@pytest.fixture()
def service(repo: FakeSessionRepository, broadcaster: EventBroadcaster) -> SessionService:
    return SessionService(repo, broadcaster, key_factory=KeySequence("ABC123", "DEF456", "GHJ789"))


@pytest.fixture()
def create_request() -> CreateSessionRequest:
    return CreateSessionRequest(title="Lost Mine of Phandelver", max_players=4)


@pytest.fixture()
def app_client(service: SessionService, registry: ConnectionRegistry, broadcaster: EventBroadcaster):
    """不触发 lifespan 的 TestClient，服务实例直接挂到 ``app.state``。"""
    from fastapi.testclient import TestClient

    from tavern.main import app

    app.state.registry = registry
    app.state.broadcaster = broadcaster
    app.state.session_service = service
    return TestClient(app)
