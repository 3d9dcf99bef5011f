"""
room_session.api.rooms
~~~~~~~~~~~~~~~~~~~~~~

房间 REST 接口。

路由前缀 ``/api/rooms``:
  - ``GET  /rooms``                    → 可加入的房间列表
  - ``GET  /rooms/{room_id}``          → 房间详情
  - ``POST /rooms``                    → 创建房间并加入
  - ``POST /rooms/quick-entry``        → 快速进入
  - ``POST /rooms/{room_id}/join``     → 按 ID 加入
  - ``POST /rooms/exit``               → 安全退出
  - ``POST /rooms/{room_id}/voice``    → 更新静音 / 说话状态
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from room_session.api.deps import (
    SessionRegistry,
    entry_response,
    get_facade,
    get_sessions,
)
from room_session.core.errors import RoomNotFound, RoomSessionError
from room_session.schemas.api_response import ApiResponse
from room_session.schemas.room import GeoPoint, RoomCreate, RoomVisibility
from room_session.schemas.session import EntryResult, QuickEntryRequest
from room_session.services.session_facade import SessionFacade

router: APIRouter = APIRouter()


# ── 请求模型 ──────────────────────────────────────────────────────────

class CreateRoomRequest(QuickEntryRequest):
    """创建房间请求：创建者信息 + 房间参数。"""

    name: str = Field(..., description="房间名")
    description: str = Field(default="", description="房间描述")
    visibility: RoomVisibility = Field(default=RoomVisibility.PUBLIC, description="可见性")
    max_participants: int = Field(default=8, description="容量")
    location: GeoPoint | None = Field(default=None, description="房间坐标，缺省时用 coords")


class ExitRequest(BaseModel):
    """退出请求。"""

    user_id: str = Field(..., min_length=1, description="用户 ID")
    room_id: str | None = Field(default=None, description="要退出的房间，缺省为当前房间")


class VoiceStateRequest(BaseModel):
    """语音状态更新请求。"""

    user_id: str = Field(..., min_length=1, description="用户 ID")
    is_muted: bool | None = Field(default=None, description="是否静音")
    is_speaking: bool | None = Field(default=None, description="是否正在说话")


class ExitResponseData(BaseModel):
    """退出结果。"""

    user_id: str = Field(..., description="用户 ID")
    room_id: str | None = Field(default=None, description="退出的房间")


# ── 查询 ──────────────────────────────────────────────────────────────

@router.get("/rooms", summary="可加入的房间列表")
async def list_rooms(
    limit: int = Query(20, ge=1, le=100, description="最大条数"),
    facade: SessionFacade = Depends(get_facade),
) -> ApiResponse[list[dict[str, Any]]]:
    """返回尚未满员的活跃房间（按创建时间倒序）。"""
    rooms = await facade.repository.list_open_rooms(limit)
    return ApiResponse.ok(data=[room.model_dump(mode="json") for room in rooms])


@router.get("/rooms/{room_id}", summary="房间详情")
async def room_info(
    room_id: str,
    facade: SessionFacade = Depends(get_facade),
) -> ApiResponse[dict[str, Any] | None]:
    """返回指定房间的完整快照；房间不存在时返回 404 业务码。"""
    room = await facade.repository.get_room(room_id)
    if room is None:
        return ApiResponse.from_error(RoomNotFound())
    return ApiResponse.ok(data=room.model_dump(mode="json"))


# ── 加入 / 创建 ───────────────────────────────────────────────────────

@router.post("/rooms", summary="创建房间并加入")
async def create_room(
    request: CreateRoomRequest,
    facade: SessionFacade = Depends(get_facade),
    sessions: SessionRegistry = Depends(get_sessions),
) -> ApiResponse[EntryResult]:
    params = RoomCreate(
        name=request.name,
        description=request.description,
        visibility=request.visibility,
        max_participants=request.max_participants,
        created_by=request.user_id,
        location=request.location or request.coords,
    )
    result = await facade.create_room(sessions.get(request.user_id), params, request)
    return entry_response(result)


@router.post("/rooms/quick-entry", summary="快速进入附近房间")
async def quick_entry(
    request: QuickEntryRequest,
    facade: SessionFacade = Depends(get_facade),
    sessions: SessionRegistry = Depends(get_sessions),
) -> ApiResponse[EntryResult]:
    """加入附近人最多的未满房间，没有则新建一个。

    同一用户短时间内的重复请求会被加入锁拒绝（``already_joining`` / ``cooldown``）。
    """
    result = await facade.handle_quick_entry(sessions.get(request.user_id), request)
    return entry_response(result)


@router.post("/rooms/{room_id}/join", summary="按 ID 加入房间")
async def join_room(
    room_id: str,
    request: QuickEntryRequest,
    facade: SessionFacade = Depends(get_facade),
    sessions: SessionRegistry = Depends(get_sessions),
) -> ApiResponse[EntryResult]:
    result = await facade.join_room(sessions.get(request.user_id), room_id, request)
    return entry_response(result)


# ── 退出 / 语音 ───────────────────────────────────────────────────────

@router.post("/rooms/exit", summary="安全退出")
async def exit_room(
    request: ExitRequest,
    facade: SessionFacade = Depends(get_facade),
    sessions: SessionRegistry = Depends(get_sessions),
) -> ApiResponse[ExitResponseData]:
    """退出指定房间（缺省为当前房间）。不在任何房间时同样返回成功。

    存储不可用导致服务端成员关系未能移除时返回 503，``data.room_id``
    可用于带房间 ID 重试。
    """
    session = sessions.get(request.user_id)
    target = request.room_id or session.current_room_id
    left = await facade.handle_safe_exit(session, request.room_id)
    sessions.prune()
    data = ExitResponseData(user_id=request.user_id, room_id=target)
    if not left:
        return ApiResponse.fail(msg="退出未完成，请稍后重试", code=503, data=data)
    return ApiResponse.ok(data=data)


@router.post("/rooms/{room_id}/voice", summary="更新语音状态")
async def set_voice_state(
    room_id: str,
    request: VoiceStateRequest,
    facade: SessionFacade = Depends(get_facade),
) -> ApiResponse[bool]:
    try:
        updated = await facade.membership.set_voice_state(
            room_id,
            request.user_id,
            is_muted=request.is_muted,
            is_speaking=request.is_speaking,
        )
    except RoomSessionError as e:
        return ApiResponse.from_error(e, data=False)
    if not updated:
        return ApiResponse.fail(msg="你不在这个房间里", code=404, data=False)
    return ApiResponse.ok(data=True)
