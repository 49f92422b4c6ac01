"""
tavern.db.session_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

游戏会话持久化仓库：封装 MongoDB ``game_sessions`` 集合。

一个会话一个文档，玩家、聊天、房间、先攻都内嵌在文档里。
保存使用乐观锁：过滤条件带上读取时的 ``version``，匹配不到即说明
文档已被并发修改，抛出 ``ConcurrentModificationError`` 由服务层重试。
"""
from __future__ import annotations

from typing import Any

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from tavern.core.errors import ConcurrentModificationError, ConflictError
from tavern.core.logging import get_logger
from tavern.schemas.session import GameSession, utcnow

logger = get_logger(__name__)

# 集合名称
_COLLECTION_NAME = "game_sessions"


def _to_document(session: GameSession) -> dict[str, Any]:
    doc = session.model_dump(by_alias=True)
    doc["_id"] = doc.pop("id")
    return doc


def _from_document(doc: dict[str, Any]) -> GameSession:
    doc = dict(doc)
    doc["id"] = doc.pop("_id")
    return GameSession.model_validate(doc)


class SessionRepository:
    """会话仓库。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]
        self._indexes_created = False

    async def ensure_indexes(self) -> None:
        """确保索引已创建。启动时显式调用一次，之后各操作前的调用直接返回。"""
        if self._indexes_created:
            return
        await self._collection.create_index("sessionKey", unique=True, name="uniq_session_key")
        await self._collection.create_index(
            [("isPublic", 1), ("isActive", 1), ("createdAt", DESCENDING)],
            name="idx_public_active",
        )
        await self._collection.create_index("players.userId", name="idx_player")
        self._indexes_created = True
        logger.debug("game_sessions 索引已就绪")

    async def insert(self, session: GameSession) -> GameSession:
        """插入新会话。

        Raises:
            ConflictError: 邀请码与已有会话重复。
        """
        await self.ensure_indexes()
        try:
            await self._collection.insert_one(_to_document(session))
        except DuplicateKeyError:
            raise ConflictError(f"Session key {session.session_key} already exists") from None
        return session

    async def get(self, session_id: str) -> GameSession | None:
        await self.ensure_indexes()
        doc = await self._collection.find_one({"_id": session_id})
        return _from_document(doc) if doc else None

    async def find_by_key(self, session_key: str, active_only: bool = True) -> GameSession | None:
        await self.ensure_indexes()
        query: dict[str, Any] = {"sessionKey": session_key.upper()}
        if active_only:
            query["isActive"] = True
        doc = await self._collection.find_one(query)
        return _from_document(doc) if doc else None

    async def key_exists(self, session_key: str) -> bool:
        await self.ensure_indexes()
        return await self._collection.count_documents({"sessionKey": session_key}, limit=1) > 0

    async def list_sessions(
        self,
        user_id: str | None = None,
        public_only: bool = False,
        limit: int = 50,
    ) -> list[GameSession]:
        """列出会话，按创建时间倒序。

        Args:
            user_id: 只列出该用户创建、担任 DM 或参与的会话。
            public_only: 只列出公开且进行中的会话。
            limit: 最大返回条数。
        """
        await self.ensure_indexes()
        query: dict[str, Any] = {}
        if user_id is not None:
            query["$or"] = [
                {"creatorId": user_id},
                {"dmId": user_id},
                {"players.userId": user_id},
            ]
        if public_only:
            query["isPublic"] = True
            query["isActive"] = True
        cursor = self._collection.find(query).sort("createdAt", DESCENDING).limit(limit)
        return [_from_document(doc) for doc in await cursor.to_list(length=limit)]

    async def save(self, session: GameSession) -> GameSession:
        """带版本校验地整体保存会话，成功后 ``session.version`` 加一。

        Raises:
            ConcurrentModificationError: 读取之后文档已被其他请求修改或删除。
        """
        await self.ensure_indexes()
        expected = session.version
        session.version = expected + 1
        session.updated_at = utcnow()
        doc = _to_document(session)
        result = await self._collection.replace_one({"_id": session.id, "version": expected}, doc)
        if result.matched_count == 0:
            session.version = expected
            raise ConcurrentModificationError(f"Session {session.id} was modified concurrently")
        return session

    async def delete(self, session_id: str) -> bool:
        await self.ensure_indexes()
        result = await self._collection.delete_one({"_id": session_id})
        return result.deleted_count > 0
