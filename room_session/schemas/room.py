"""
room_session.schemas.room
~~~~~~~~~~~~~~~~~~~~~~~~~

房间与成员的数据模型。

``participants`` 的顺序即加入顺序；房主迁移只看 ``joined_at``。
``version`` 由存储层在每次写入时递增，是条件写入（CAS）的依据。
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """带时区的当前 UTC 时间。"""
    return datetime.now(timezone.utc)


class RoomVisibility(str, Enum):
    """房间可见性。``anonymous`` 会隐藏成员昵称与头像。"""

    PUBLIC = "public"
    PRIVATE = "private"
    ANONYMOUS = "anonymous"


class GeoPoint(BaseModel):
    """经纬度坐标。"""

    latitude: float = Field(..., ge=-90, le=90, description="纬度")
    longitude: float = Field(..., ge=-180, le=180, description="经度")


class Participant(BaseModel):
    """房间内的一条成员记录（内嵌于 Room 文档）。"""

    user_id: str = Field(..., description="用户 ID")
    display_name: str = Field(..., description="展示昵称（匿名房间为占位名）")
    username: str | None = Field(default=None, description="用户名")
    photo_url: str | None = Field(default=None, description="头像（匿名时为空）")
    level: int = Field(default=0, description="用户等级")
    is_host: bool = Field(default=False, description="是否为房主")
    is_muted: bool = Field(default=True, description="是否静音")
    is_speaking: bool = Field(default=False, description="是否正在说话")
    is_anonymous: bool = Field(default=False, description="是否以匿名身份加入")
    joined_at: datetime = Field(default_factory=utcnow, description="加入时间")


class Room(BaseModel):
    """房间快照。

    Attributes:
        id: 存储分配的房间 ID。
        participants: 按加入顺序排列的成员列表。
        host_id: 当前房主；房间非空时必然等于某个成员的 ``user_id``。
        is_active: 为 False 时视为已逻辑删除。
        user_count: 成员数缓存，通过原子增减维护。
        version: 文档版本号，每次写入递增。
    """

    model_config = ConfigDict(use_enum_values=True)

    id: str
    name: str
    description: str = ""
    visibility: RoomVisibility = RoomVisibility.PUBLIC
    participants: list[Participant] = Field(default_factory=list)
    max_participants: int
    host_id: str | None = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    created_by: str
    user_count: int = 0
    location: GeoPoint | None = None
    last_activity: datetime | None = None
    version: int = 1

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> Room:
        """由存储文档构造快照。"""
        return cls.model_validate(document)

    @property
    def is_anonymous(self) -> bool:
        return self.visibility == RoomVisibility.ANONYMOUS

    @property
    def is_empty(self) -> bool:
        return not self.participants

    @property
    def is_full(self) -> bool:
        return len(self.participants) >= self.max_participants

    @property
    def participant_ids(self) -> list[str]:
        return [p.user_id for p in self.participants]

    def find(self, user_id: str) -> Participant | None:
        """按用户 ID 查找成员。"""
        for participant in self.participants:
            if participant.user_id == user_id:
                return participant
        return None


class RoomCreate(BaseModel):
    """创建房间的参数。合法性由仓库在写入前校验。"""

    model_config = ConfigDict(use_enum_values=True)

    name: str = Field(..., description="房间名")
    description: str = Field(default="", description="房间描述")
    visibility: RoomVisibility = Field(default=RoomVisibility.PUBLIC, description="可见性")
    max_participants: int = Field(default=8, description="容量")
    created_by: str = Field(..., description="创建者用户 ID")
    location: GeoPoint | None = Field(default=None, description="房间坐标")


class _RoomDeleted:
    """订阅回调收到的「房间已删除」哨兵。"""

    _instance: _RoomDeleted | None = None

    def __new__(cls) -> _RoomDeleted:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ROOM_DELETED"

    def __bool__(self) -> bool:
        return False


ROOM_DELETED = _RoomDeleted()

RoomSnapshot = Room | _RoomDeleted
