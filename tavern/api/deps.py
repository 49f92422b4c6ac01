"""
tavern.api.deps
~~~~~~~~~~~~~~~

FastAPI 依赖：从 ``app.state`` 取出服务实例，以及当前用户鉴权。
"""
from fastapi import Header, Request

from tavern.core.config import settings
from tavern.core.errors import AuthenticationError
from tavern.core.security import CurrentUser, extract_token, verify_token
from tavern.services.broadcaster import EventBroadcaster
from tavern.services.registry import ConnectionRegistry
from tavern.services.session_service import SessionService


def get_session_service(request: Request) -> SessionService:
    return request.app.state.session_service


def get_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.registry


def get_broadcaster(request: Request) -> EventBroadcaster:
    return request.app.state.broadcaster


async def get_current_user(
    request: Request,
    authorization: str | None = Header(default=None),
) -> CurrentUser:
    """从 Cookie（``auth-token``）或 ``Authorization: Bearer`` 中解析当前用户。

    Raises:
        AuthenticationError: 未携带令牌或令牌无效。
    """
    token = extract_token(request.cookies.get(settings.AUTH_COOKIE_NAME), authorization)
    if token is None:
        raise AuthenticationError("Authentication required")
    return verify_token(token)
