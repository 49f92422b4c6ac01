"""
tavern.api.signaling
~~~~~~~~~~~~~~~~~~~~

WebRTC 信令转发。服务端不解析信令内容，只经事件流转发给同会话的其他连接。
"""
from fastapi import APIRouter, Depends, Request

from tavern.api.deps import get_current_user, get_session_service
from tavern.core.config import settings
from tavern.core.rate_limit import limiter
from tavern.core.security import CurrentUser
from tavern.schemas.api_response import ApiResponse
from tavern.schemas.requests import SignalRequest
from tavern.services.session_service import SessionService

router: APIRouter = APIRouter()


@router.post("/sessions/{session_id}/webrtc", summary="转发 WebRTC 信令", response_model=ApiResponse[dict])
@limiter.limit(settings.CHAT_RATE_LIMIT)
async def relay_signal(
    request: Request,
    session_id: str,
    body: SignalRequest,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
):
    delivered = await service.relay_signal(user, session_id, body.type, body.data, body.target_user_id)
    return ApiResponse.ok(data={"delivered": delivered}, msg="Signal sent")
