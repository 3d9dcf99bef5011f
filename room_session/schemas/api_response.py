"""
room_session.schemas.api_response
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

统一应答体 ``{"code", "data", "msg"}``。

业务失败不走 HTTP 状态码，而是放在 ``code`` 字段里：HTTP 始终为 200，
客户端按 ``code`` 与 ``data.error_code`` 决定重试、等待还是换房间。
"""
from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

from room_session.core.errors import RoomSessionError

T = TypeVar("T")

# 错误码 → 业务状态码；未列出的一律 500
ERROR_STATUS: dict[str, int] = {
    "validation_error": 400,
    "room_not_found": 404,
    "room_full": 409,
    "already_joined": 409,
    "concurrent_modification": 409,
    "already_joining": 429,
    "cooldown": 429,
    "cancelled": 499,
    "no_room_available": 503,
    "store_unavailable": 503,
}


def status_for(error_code: str | None) -> int:
    """错误码对应的业务状态码。"""
    return ERROR_STATUS.get(error_code or "", 500)


class ApiResponse(BaseModel, Generic[T]):
    """统一 JSON 应答体。

    Attributes:
        code: 业务状态码，200 表示成功。
        data: 业务数据；失败时可携带 ``EntryResult`` 等结构化细节。
        msg: 人类可读的状态消息。
    """

    code: int = Field(default=200, description="业务状态码")
    data: T = Field(..., description="业务数据")
    msg: str = Field(default="success", description="状态消息")

    @classmethod
    def ok(cls, data: T, msg: str = "success") -> ApiResponse[T]:
        return cls(code=200, data=data, msg=msg)

    @classmethod
    def fail(cls, msg: str = "error", code: int = 500, data: Any = None) -> ApiResponse[Any]:
        return cls(code=code, data=data, msg=msg)

    @classmethod
    def from_error(cls, error: RoomSessionError, data: Any = None) -> ApiResponse[Any]:
        """按错误码构造失败应答。"""
        return cls(code=status_for(error.code), data=data, msg=error.message)
