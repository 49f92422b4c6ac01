"""
tavern.db
~~~~~~~~~

MongoDB 连接管理与会话仓库装配。

lifespan 启动时调用 ``open_session_repository()``：建立 ``motor`` 连接池、
对目标库 ping 校验凭证、创建 ``game_sessions`` 索引，返回可直接交给服务层的
``SessionRepository``。关闭时调用 ``close_mongo()``。
"""
from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit

from motor.motor_asyncio import AsyncIOMotorClient

from tavern.core.config import settings
from tavern.core.logging import get_logger
from tavern.db.session_repository import SessionRepository

logger = get_logger(__name__)

_client: AsyncIOMotorClient | None = None


def _mask_uri(uri: str) -> str:
    """隐藏连接串中的密码，只用于日志。"""
    parts = urlsplit(uri)
    if not parts.password:
        return uri
    host = parts.netloc.rsplit("@", 1)[1]
    return urlunsplit(parts._replace(netloc=f"{parts.username}:***@{host}"))


async def open_session_repository() -> SessionRepository:
    """连接 MongoDB 并返回已建好索引的会话仓库。

    Raises:
        pymongo.errors.PyMongoError: 无法连接、认证失败或建索引失败。
    """
    global _client
    _client = AsyncIOMotorClient(settings.MONGO_URI, tz_aware=True)
    db = _client[settings.MONGO_DB_NAME]
    try:
        await db.command("ping")
        repo = SessionRepository(db)
        await repo.ensure_indexes()
    except Exception:
        logger.error("MongoDB 初始化失败 | uri=%s", _mask_uri(settings.MONGO_URI), exc_info=True)
        _client.close()
        _client = None
        raise
    logger.info("MongoDB 已连接 | uri=%s | db=%s", _mask_uri(settings.MONGO_URI), settings.MONGO_DB_NAME)
    return repo


async def close_mongo() -> None:
    """关闭连接池。可重复调用。"""
    global _client
    if _client is None:
        return
    _client.close()
    _client = None
    logger.info("MongoDB 连接已关闭")
