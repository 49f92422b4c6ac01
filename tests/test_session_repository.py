"""
tests.test_session_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

``SessionRepository`` 单元测试。Motor 集合用 ``AsyncMock`` 替身，
只校验查询条件、文档映射与乐观锁行为。
"""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pymongo.errors import DuplicateKeyError

from tavern.core.errors import ConcurrentModificationError, ConflictError
from tavern.db import _mask_uri, close_mongo, open_session_repository
from tavern.db.session_repository import SessionRepository, _to_document
from tavern.schemas.session import GameSession


def make_repo() -> tuple[SessionRepository, MagicMock]:
    collection = MagicMock()
    collection.create_index = AsyncMock()
    collection.insert_one = AsyncMock()
    collection.find_one = AsyncMock(return_value=None)
    collection.replace_one = AsyncMock()
    collection.delete_one = AsyncMock()
    collection.count_documents = AsyncMock(return_value=0)
    db = MagicMock()
    db.__getitem__.return_value = collection
    return SessionRepository(db), collection


def make_session() -> GameSession:
    return GameSession(title="Storm King's Thunder", session_key="ABC123", creator_id="u1", creator_name="U1")


class TestSessionRepository:

    @pytest.mark.asyncio
    async def test_indexes_created_once(self) -> None:
        repo, collection = make_repo()

        await repo.get("a")
        await repo.get("b")

        assert collection.create_index.await_count == 3

    @pytest.mark.asyncio
    async def test_document_uses_mongo_id(self) -> None:
        repo, collection = make_repo()
        session = make_session()

        await repo.insert(session)

        doc = collection.insert_one.await_args.args[0]
        assert doc["_id"] == session.id
        assert "id" not in doc
        assert doc["sessionKey"] == "ABC123"

    @pytest.mark.asyncio
    async def test_roundtrip_from_document(self) -> None:
        repo, collection = make_repo()
        session = make_session()
        collection.find_one.return_value = _to_document(session)

        loaded = await repo.get(session.id)

        assert loaded == session

    @pytest.mark.asyncio
    async def test_duplicate_key_is_conflict(self) -> None:
        repo, collection = make_repo()
        collection.insert_one.side_effect = DuplicateKeyError("dup")

        with pytest.raises(ConflictError):
            await repo.insert(make_session())

    @pytest.mark.asyncio
    async def test_find_by_key_normalizes_case(self) -> None:
        repo, collection = make_repo()

        await repo.find_by_key("abc123")

        collection.find_one.assert_awaited_with({"sessionKey": "ABC123", "isActive": True})

    @pytest.mark.asyncio
    async def test_save_bumps_version(self) -> None:
        repo, collection = make_repo()
        collection.replace_one.return_value = MagicMock(matched_count=1)
        session = make_session()

        await repo.save(session)

        query, doc = collection.replace_one.await_args.args
        assert query == {"_id": session.id, "version": 0}
        assert doc["version"] == 1
        assert session.version == 1

    @pytest.mark.asyncio
    async def test_save_conflict_restores_version(self) -> None:
        repo, collection = make_repo()
        collection.replace_one.return_value = MagicMock(matched_count=0)
        session = make_session()

        with pytest.raises(ConcurrentModificationError):
            await repo.save(session)

        assert session.version == 0

    def test_mask_uri(self) -> None:
        assert _mask_uri("mongodb://admin:hunter2@db:27017/tavern") == "mongodb://admin:***@db:27017/tavern"
        assert _mask_uri("mongodb://localhost:27017") == "mongodb://localhost:27017"


class TestStartup:
    """``open_session_repository`` / ``close_mongo`` 装配流程。"""

    @pytest.mark.asyncio
    async def test_open_pings_and_creates_indexes(self) -> None:
        with patch("tavern.db.AsyncIOMotorClient") as client_cls:
            db = client_cls.return_value.__getitem__.return_value
            db.command = AsyncMock()
            collection = db.__getitem__.return_value
            collection.create_index = AsyncMock()

            repo = await open_session_repository()
            await close_mongo()
            await close_mongo()

        assert isinstance(repo, SessionRepository)
        db.command.assert_awaited_once_with("ping")
        assert collection.create_index.await_count == 3
        client_cls.return_value.close.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_open_failure_closes_client(self) -> None:
        with patch("tavern.db.AsyncIOMotorClient") as client_cls:
            db = client_cls.return_value.__getitem__.return_value
            db.command = AsyncMock(side_effect=RuntimeError("auth failed"))

            with pytest.raises(RuntimeError):
                await open_session_repository()

        client_cls.return_value.close.assert_called_once_with()
