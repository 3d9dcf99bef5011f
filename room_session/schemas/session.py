"""
room_session.schemas.session
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

快速进入 / 退出流程的请求与结果模型。
"""
from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from room_session.core.errors import RoomSessionError
from room_session.schemas.room import GeoPoint


class SessionState(str, Enum):
    """客户端会话状态。"""

    IDLE = "idle"
    JOINING = "joining"
    CONNECTED = "connected"
    LEAVING = "leaving"
    ERROR = "error"


class QuickEntryRequest(BaseModel):
    """快速进入请求。"""

    user_id: str = Field(..., min_length=1, description="用户 ID")
    display_name: str = Field(..., description="展示昵称")
    username: str | None = Field(default=None, description="用户名")
    photo_url: str | None = Field(default=None, description="头像 URL")
    level: int = Field(default=1, ge=0, description="用户等级")
    is_anonymous: bool = Field(default=False, description="用户主动要求匿名")
    coords: GeoPoint | None = Field(default=None, description="当前坐标，缺省时走定位服务")


class EntryResult(BaseModel):
    """加入类操作的终态结果，永远以返回值而非异常交给调用方。"""

    success: bool = Field(..., description="是否成功")
    room_id: str | None = Field(default=None, description="房间 ID")
    room_name: str | None = Field(default=None, description="房间名")
    is_new_room: bool = Field(default=False, description="是否为新建房间")
    error: str | None = Field(default=None, description="错误描述")
    error_code: str | None = Field(default=None, description="错误码")
    cooldown_remaining_ms: int = Field(default=0, ge=0, description="剩余冷却（毫秒，仅展示用）")

    @classmethod
    def ok(cls, room_id: str, room_name: str, is_new_room: bool = False) -> EntryResult:
        return cls(success=True, room_id=room_id, room_name=room_name, is_new_room=is_new_room)

    @classmethod
    def from_error(cls, error: RoomSessionError, cooldown_remaining_ms: int = 0) -> EntryResult:
        return cls(
            success=False,
            error=error.message,
            error_code=error.code,
            cooldown_remaining_ms=cooldown_remaining_ms,
        )
