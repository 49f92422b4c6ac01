"""
tavern.core.security
~~~~~~~~~~~~~~~~~~~~

JWT 校验。令牌由外部认证服务签发，本服务只负责校验并解析出当前用户。
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from tavern.core.config import settings
from tavern.core.errors import AuthenticationError
from tavern.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CurrentUser:
    """已通过认证的调用者。"""

    user_id: str
    name: str


def create_access_token(user_id: str, name: str) -> str:
    """签发访问令牌（供脚本与测试使用）。"""
    now = datetime.now(timezone.utc)
    payload = {
        "userId": user_id,
        "name": name,
        "iat": now,
        "exp": now + timedelta(days=settings.JWT_EXPIRE_DAYS),
    }
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> CurrentUser:
    """校验 JWT 并返回当前用户。

    Args:
        token: 原始 JWT 字符串。

    Returns:
        ``CurrentUser``。

    Raises:
        AuthenticationError: 令牌过期、签名错误或缺少 ``userId``。
    """
    try:
        payload = jwt.decode(
            token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM],
        )
    except jwt.ExpiredSignatureError:
        logger.warning("令牌已过期")
        raise AuthenticationError("Invalid or expired token") from None
    except jwt.InvalidTokenError as e:
        logger.warning("令牌无效: %s", e)
        raise AuthenticationError("Invalid or expired token") from None

    user_id = payload.get("userId")
    if not user_id:
        logger.warning("令牌缺少 userId")
        raise AuthenticationError("Invalid or expired token")

    return CurrentUser(user_id=str(user_id), name=str(payload.get("name") or user_id))


def extract_token(cookie_token: str | None, authorization: str | None) -> str | None:
    """按 Cookie 优先、``Authorization: Bearer`` 其次的顺序取出令牌。"""
    if cookie_token:
        return cookie_token
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None
