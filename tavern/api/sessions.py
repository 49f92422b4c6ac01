"""
tavern.api.sessions
~~~~~~~~~~~~~~~~~~~

会话 REST 接口：会话管理 + 成员变更 + 在线状态。

端点:
  - ``POST   /sessions``                    → 创建会话
  - ``GET    /sessions``                    → 会话列表（mine / public）
  - ``GET    /sessions/{id}``               → 会话详情
  - ``PATCH  /sessions/{id}``               → 修改会话设置（创建者）
  - ``DELETE /sessions/{id}``               → 删除会话（创建者）
  - ``POST   /sessions/join``               → 通过邀请码加入
  - ``POST   /sessions/{id}/auto-join``     → 打开页面时自动加入
  - ``POST   /sessions/{id}/leave``         → 离开会话
  - ``POST   /sessions/{id}/kick``          → 踢出玩家（创建者）
  - ``POST   /sessions/{id}/assign-dm``     → 指定 DM（创建者）
  - ``POST   /sessions/{id}/status``        → 更新在线状态（JSON 或表单）
"""
from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import ValidationError as PydanticValidationError

from tavern.api.deps import get_current_user, get_session_service
from tavern.core.errors import ValidationError
from tavern.core.security import CurrentUser
from tavern.schemas.api_response import ApiResponse
from tavern.schemas.requests import (
    AssignDmRequest,
    CreateSessionRequest,
    JoinResponseData,
    JoinSessionRequest,
    KickRequest,
    LeaveResponseData,
    StatusRequest,
    StatusResponseData,
    UpdateSessionRequest,
)
from tavern.schemas.session import SessionSnapshot, SessionSummary
from tavern.services.session_service import SessionService

router: APIRouter = APIRouter()

_FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


# ── 会话管理端点 ──────────────────────────────────────────────────────

@router.post("/sessions", summary="创建会话", response_model=ApiResponse[SessionSnapshot])
async def create_session(
    body: CreateSessionRequest,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> ApiResponse[SessionSnapshot]:
    session = await service.create_session(user, body)
    return ApiResponse.ok(data=session.snapshot(), msg="Session created")


@router.get("/sessions", summary="会话列表", response_model=ApiResponse[list[SessionSummary]])
async def list_sessions(
    scope: Literal["mine", "public"] = Query("mine", description="mine：我参与的；public：公开会话"),
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> ApiResponse[list[SessionSummary]]:
    sessions = await service.list_sessions(user, scope)
    return ApiResponse.ok(data=[s.summary() for s in sessions])


@router.get("/sessions/{session_id}", summary="会话详情", response_model=ApiResponse[SessionSnapshot])
async def get_session(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> ApiResponse[SessionSnapshot]:
    session = await service.get_session(user, session_id)
    return ApiResponse.ok(data=session.snapshot())


@router.patch("/sessions/{session_id}", summary="修改会话设置", response_model=ApiResponse[SessionSnapshot])
async def update_session(
    session_id: str,
    body: UpdateSessionRequest,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> ApiResponse[SessionSnapshot]:
    session = await service.update_session(user, session_id, body)
    return ApiResponse.ok(data=session.snapshot(), msg="Session updated")


@router.delete("/sessions/{session_id}", summary="删除会话", response_model=ApiResponse[None])
async def delete_session(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> ApiResponse[None]:
    await service.delete_session(user, session_id)
    return ApiResponse.ok(data=None, msg="Session deleted")


# ── 成员端点 ──────────────────────────────────────────────────────────

@router.post("/sessions/join", summary="通过邀请码加入", response_model=ApiResponse[JoinResponseData])
async def join_session(
    body: JoinSessionRequest,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> ApiResponse[JoinResponseData]:
    session, role, created = await service.join_by_key(
        user, body.session_key, body.character_id, body.character_name,
    )
    return ApiResponse.ok(
        data=JoinResponseData(session=session.snapshot(), role=role, created=created),
    )


@router.post(
    "/sessions/{session_id}/auto-join",
    summary="自动加入会话",
    response_model=ApiResponse[JoinResponseData],
)
async def auto_join(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> ApiResponse[JoinResponseData]:
    session, role, created = await service.auto_join(user, session_id)
    return ApiResponse.ok(
        data=JoinResponseData(session=session.snapshot(), role=role, created=created),
    )


@router.post("/sessions/{session_id}/leave", summary="离开会话", response_model=ApiResponse[LeaveResponseData])
async def leave_session(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> ApiResponse[LeaveResponseData]:
    ended = await service.leave(user, session_id)
    return ApiResponse.ok(data=LeaveResponseData(session_ended=ended), msg="Left session successfully")


@router.post("/sessions/{session_id}/kick", summary="踢出玩家", response_model=ApiResponse[SessionSnapshot])
async def kick_player(
    session_id: str,
    body: KickRequest,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> ApiResponse[SessionSnapshot]:
    session = await service.kick(user, session_id, body.target_user_id, body.reason)
    return ApiResponse.ok(data=session.snapshot(), msg="Player kicked")


@router.post("/sessions/{session_id}/assign-dm", summary="指定 DM", response_model=ApiResponse[SessionSnapshot])
async def assign_dm(
    session_id: str,
    body: AssignDmRequest,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> ApiResponse[SessionSnapshot]:
    session = await service.assign_dm(user, session_id, body.dm_user_id, body.dm_name)
    return ApiResponse.ok(data=session.snapshot(), msg="DM assigned successfully")


# ── 在线状态端点 ──────────────────────────────────────────────────────

async def _parse_status(request: Request) -> StatusRequest:
    """解析在线状态请求体。

    页面卸载时浏览器只能可靠地发出表单编码的请求，因此同时接受
    ``application/json`` 与 ``application/x-www-form-urlencoded``。
    """
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith(_FORM_CONTENT_TYPES):
            form = await request.form()
            return StatusRequest.model_validate({"isOnline": form.get("isOnline")})
        return StatusRequest.model_validate(await request.json())
    except (PydanticValidationError, ValueError):
        raise ValidationError("isOnline (boolean) is required") from None


@router.post(
    "/sessions/{session_id}/status",
    summary="更新在线状态",
    response_model=ApiResponse[StatusResponseData],
)
async def update_status(
    session_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> ApiResponse[StatusResponseData]:
    body = await _parse_status(request)
    changed = await service.set_status(user, session_id, body.is_online)
    return ApiResponse.ok(
        data=StatusResponseData(is_online=body.is_online, changed=changed),
        msg="Status updated",
    )
