"""
tavern.api.events
~~~~~~~~~~~~~~~~~

会话事件流（Server-Sent Events）接口。

鉴权由依赖 ``get_current_user`` 在进入处理函数之前完成，失败直接 401，
不会触碰连接注册表。连接的注册、快照、注销都在 ``SessionEventStream`` 中。
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from tavern.api.deps import get_broadcaster, get_current_user, get_registry, get_session_service
from tavern.core.logging import get_logger
from tavern.core.security import CurrentUser
from tavern.services.broadcaster import EventBroadcaster
from tavern.services.event_stream import SessionEventStream
from tavern.services.registry import ConnectionRegistry
from tavern.services.session_service import SessionService

logger = get_logger(__name__)

router: APIRouter = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.get("/sessions/{session_id}/events", summary="订阅会话事件流")
async def session_events(
    session_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
    registry: ConnectionRegistry = Depends(get_registry),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
) -> StreamingResponse:
    """打开一条 ``text/event-stream`` 长连接。

    首帧为 ``connected``，第二帧为会话快照 ``session_update``，
    之后是该会话的全部实时事件；空闲时定期写入 ``: keepalive`` 注释行。

    Args:
        session_id: 会话 ID。
        request: 用于探测客户端是否已断开。
    """
    session = await service.load_for_stream(user, session_id)
    stream = SessionEventStream(session, user.user_id, registry, broadcaster)
    logger.info(
        "事件流请求 | session=%s | user=%s | conn=%s",
        session_id, user.user_id, stream.connection.connection_id,
    )
    return StreamingResponse(
        stream.frames(request.is_disconnected),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
