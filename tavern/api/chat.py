"""
tavern.api.chat
~~~~~~~~~~~~~~~

聊天 REST 接口：发消息、历史回看、聊天室、已读/未读、掷骰。

端点:
  - ``POST /sessions/{id}/chat``          → 发送消息
  - ``GET  /sessions/{id}/chat``          → 获取某房间历史（分页）
  - ``POST /sessions/{id}/roll``          → 服务端掷骰并发到聊天
  - ``GET  /sessions/{id}/chat-rooms``    → 可见的聊天室列表
  - ``POST /sessions/{id}/chat-rooms``    → 新建聊天室（创建者）
  - ``POST /sessions/{id}/mark-read``     → 标记已读
  - ``GET  /sessions/{id}/unread``        → 各房间未读数
"""
from fastapi import APIRouter, Depends, Query, Request

from tavern.api.deps import get_current_user, get_session_service
from tavern.core.config import settings
from tavern.core.rate_limit import limiter
from tavern.core.security import CurrentUser
from tavern.schemas.api_response import ApiResponse
from tavern.schemas.requests import (
    ChatHistoryData,
    ChatRoomsData,
    CreateRoomRequest,
    DiceGroupData,
    MarkReadRequest,
    RollRequest,
    RollResponseData,
    SendMessageRequest,
)
from tavern.schemas.session import ChatMessage, ChatRoom
from tavern.services.session_service import SessionService

router: APIRouter = APIRouter()


# ── 消息端点 ──────────────────────────────────────────────────────────

@router.post("/sessions/{session_id}/chat", summary="发送聊天消息", response_model=ApiResponse[ChatMessage])
@limiter.limit(settings.CHAT_RATE_LIMIT)
async def send_message(
    request: Request,
    session_id: str,
    body: SendMessageRequest,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
):
    """发送一条消息，落库后广播 ``new_message``。

    Args:
        request: FastAPI Request 对象（用于限流判断）。
        session_id: 会话 ID。
        body: 消息正文、类型与房间。
    """
    message = await service.send_message(user, session_id, body.message, body.type, body.room_id)
    return ApiResponse.ok(data=message, msg="Message sent")


@router.get("/sessions/{session_id}/chat", summary="获取聊天历史", response_model=ApiResponse[ChatHistoryData])
async def chat_history(
    session_id: str,
    room_id: str | None = Query(None, alias="roomId", description="房间 ID，缺省为 general"),
    skip: int = Query(0, ge=0, description="跳过条数（分页偏移）"),
    limit: int = Query(50, ge=1, le=500, description="每页最大条数"),
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
):
    resolved, messages, total = await service.chat_history(user, session_id, room_id, skip, limit)
    return ApiResponse.ok(data=ChatHistoryData(room_id=resolved, messages=messages, total=total))


@router.post("/sessions/{session_id}/roll", summary="掷骰", response_model=ApiResponse[RollResponseData])
@limiter.limit(settings.CHAT_RATE_LIMIT)
async def roll_dice(
    request: Request,
    session_id: str,
    body: RollRequest,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
):
    """在服务端求值骰子表达式，结果作为 ``roll`` 消息广播。

    表达式非法时返回 400，且不会产生任何消息。
    """
    roll, message = await service.roll(user, session_id, body.expression, body.room_id)
    return ApiResponse.ok(
        data=RollResponseData(
            expression=roll.expression,
            groups=[
                DiceGroupData(
                    notation=g.notation, sign=g.sign, faces=list(g.faces), subtotal=g.subtotal,
                )
                for g in roll.groups
            ],
            result=roll.result,
            modifier=roll.modifier,
            total=roll.total,
            breakdown=roll.breakdown,
            message=message,
        ),
    )


# ── 聊天室端点 ────────────────────────────────────────────────────────

@router.get("/sessions/{session_id}/chat-rooms", summary="聊天室列表", response_model=ApiResponse[ChatRoomsData])
async def list_chat_rooms(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
):
    rooms = await service.list_rooms(user, session_id)
    return ApiResponse.ok(data=ChatRoomsData(chat_rooms=rooms))


@router.post("/sessions/{session_id}/chat-rooms", summary="新建聊天室", response_model=ApiResponse[ChatRoom])
async def create_chat_room(
    session_id: str,
    body: CreateRoomRequest,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
):
    room = await service.create_room(user, session_id, body)
    return ApiResponse.ok(data=room, msg="Chat room created")


# ── 已读 / 未读端点 ───────────────────────────────────────────────────

@router.post("/sessions/{session_id}/mark-read", summary="标记已读", response_model=ApiResponse[dict])
async def mark_read(
    session_id: str,
    body: MarkReadRequest,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
):
    marked = await service.mark_read(user, session_id, body.room_id, body.last_message_id)
    return ApiResponse.ok(data={"roomId": body.room_id, "lastMessageId": marked})


@router.get("/sessions/{session_id}/unread", summary="各房间未读数", response_model=ApiResponse[dict[str, int]])
async def unread_counts(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
):
    counts = await service.unread_counts(user, session_id)
    return ApiResponse.ok(data=counts)
