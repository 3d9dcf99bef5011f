"""
room_session.core.errors
~~~~~~~~~~~~~~~~~~~~~~~~

房间会话错误体系。

每种错误带一个稳定的 ``code``（供 UI 判断是重试、等待还是换房间）
和一条默认的人类可读 ``message``。
"""
from __future__ import annotations


class RoomSessionError(Exception):
    """所有房间会话错误的基类。

    Attributes:
        code: 机器可读的错误码。
        message: 人类可读的错误描述。
    """

    code: str = "room_session_error"
    default_message: str = "房间操作失败"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class RoomValidationError(RoomSessionError):
    """参数非法（如容量为 0、房间名为空），在访问存储之前拒绝。"""

    code = "validation_error"
    default_message = "房间参数不合法"


class RoomNotFound(RoomSessionError):
    """房间不存在或已被逻辑删除。"""

    code = "room_not_found"
    default_message = "房间不存在或已关闭"


class RoomFull(RoomSessionError):
    """房间已满员。"""

    code = "room_full"
    default_message = "房间已满"


class AlreadyJoined(RoomSessionError):
    """用户已在房间中（幂等加入时会被视为成功）。"""

    code = "already_joined"
    default_message = "你已经在这个房间里了"


class ConcurrentModification(RoomSessionError):
    """乐观并发写入在有限次重试后仍然冲突。"""

    code = "concurrent_modification"
    default_message = "房间正在被其他人修改，请稍后重试"


class StoreUnavailable(RoomSessionError):
    """存储服务暂不可用（网络 / 选主超时等瞬时故障）。"""

    code = "store_unavailable"
    default_message = "服务暂时不可用，请稍后重试"


class LockBusy(RoomSessionError):
    """本客户端已有一次加入正在进行。"""

    code = "already_joining"
    default_message = "正在加入房间，请勿重复操作"


class JoinCooldown(LockBusy):
    """两次加入尝试间隔过短。

    Attributes:
        remaining_ms: 剩余冷却时间（毫秒）。
    """

    code = "cooldown"
    default_message = "操作太快啦，请稍等片刻"

    def __init__(self, remaining_ms: int, message: str | None = None) -> None:
        self.remaining_ms = remaining_ms
        super().__init__(message)


class NoRoomAvailable(RoomSessionError):
    """快速进入既找不到可加入的房间，也无法创建新房间。"""

    code = "no_room_available"
    default_message = "暂时没有可加入的房间"


class EntryCancelled(RoomSessionError):
    """调用方取消了快速进入。"""

    code = "cancelled"
    default_message = "已取消加入"
