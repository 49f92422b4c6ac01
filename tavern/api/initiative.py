"""
tavern.api.initiative
~~~~~~~~~~~~~~~~~~~~~

先攻追踪 REST 接口。先攻值由服务端掷骰得出，客户端只提交表达式。
"""
from __future__ import annotations

from fastapi import APIRouter, Depends

from tavern.api.deps import get_current_user, get_session_service
from tavern.core.security import CurrentUser
from tavern.schemas.api_response import ApiResponse
from tavern.schemas.requests import AddInitiativeRequest, InitiativeData
from tavern.services.session_service import SessionService

router: APIRouter = APIRouter()


@router.post("/sessions/{session_id}/initiative", summary="加入先攻", response_model=ApiResponse[InitiativeData])
async def add_initiative(
    session_id: str,
    body: AddInitiativeRequest,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> ApiResponse[InitiativeData]:
    """掷先攻并加入顺序表；同一角色重复提交会替换旧条目。"""
    session, entry = await service.add_initiative(user, session_id, body.character_name, body.expression)
    return ApiResponse.ok(
        data=InitiativeData(
            initiative_order=session.initiative_order,
            current_turn=session.current_turn,
            entry=entry,
        ),
    )


@router.post(
    "/sessions/{session_id}/initiative/next-turn",
    summary="下一回合",
    response_model=ApiResponse[InitiativeData],
)
async def next_turn(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> ApiResponse[InitiativeData]:
    session = await service.next_turn(user, session_id)
    return ApiResponse.ok(
        data=InitiativeData(initiative_order=session.initiative_order, current_turn=session.current_turn),
    )


@router.delete(
    "/sessions/{session_id}/initiative/{entry_id}",
    summary="移除先攻条目",
    response_model=ApiResponse[InitiativeData],
)
async def remove_initiative(
    session_id: str,
    entry_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> ApiResponse[InitiativeData]:
    session = await service.remove_initiative(user, session_id, entry_id)
    return ApiResponse.ok(
        data=InitiativeData(initiative_order=session.initiative_order, current_turn=session.current_turn),
    )


@router.post(
    "/sessions/{session_id}/initiative/{entry_id}/toggle-dead",
    summary="切换阵亡状态",
    response_model=ApiResponse[InitiativeData],
)
async def toggle_dead(
    session_id: str,
    entry_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
) -> ApiResponse[InitiativeData]:
    session, entry, _ = await service.toggle_dead(user, session_id, entry_id)
    return ApiResponse.ok(
        data=InitiativeData(
            initiative_order=session.initiative_order,
            current_turn=session.current_turn,
            entry=entry,
        ),
    )
