"""
room_session.services.profile
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

用户资料边界 —— 只负责「设置当前所在房间」这一件事。

它与房间文档之间没有事务关系，因此所有调用都是尽力而为：
失败只记日志，绝不影响加入 / 离开的结果。
"""
from __future__ import annotations

from typing import Protocol

from motor.motor_asyncio import AsyncIOMotorDatabase

from room_session.core.logging import get_logger
from room_session.schemas.room import utcnow

logger = get_logger(__name__)

# 集合名称
_COLLECTION_NAME = "users"


class ProfileUpdater(Protocol):
    """用户资料更新接口。"""

    async def set_current_room(
        self, user_id: str, room_id: str | None, *, only_if: str | None = None,
    ) -> None:
        """设置（或清除）用户当前所在房间。

        ``only_if`` 不为空时，仅当资料中的当前房间仍是 ``only_if`` 才写入，
        避免离开旧房间时覆盖刚加入的新房间。
        """
        ...


class MongoProfileUpdater:
    """写入 MongoDB ``users`` 集合。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase, collection_name: str = _COLLECTION_NAME) -> None:
        self.db = db
        self._collection = db[collection_name]

    async def set_current_room(
        self, user_id: str, room_id: str | None, *, only_if: str | None = None,
    ) -> None:
        changes: dict[str, object] = {"current_room_id": room_id}
        if room_id is not None:
            changes["last_room_joined_at"] = utcnow()
        if only_if is not None:
            # 条件写入不 upsert：资料不存在或已指向别的房间时什么都不做
            await self._collection.update_one(
                {"_id": user_id, "current_room_id": only_if}, {"$set": changes},
            )
            return
        await self._collection.update_one(
            {"_id": user_id}, {"$set": changes}, upsert=True,
        )


class MemoryProfileUpdater:
    """进程内实现，``current_rooms`` 记录每个用户当前所在房间。"""

    def __init__(self) -> None:
        self.current_rooms: dict[str, str | None] = {}

    async def set_current_room(
        self, user_id: str, room_id: str | None, *, only_if: str | None = None,
    ) -> None:
        if only_if is not None and self.current_rooms.get(user_id) != only_if:
            return
        self.current_rooms[user_id] = room_id


async def best_effort_profile_update(
    updater: ProfileUpdater | None,
    user_id: str,
    room_id: str | None,
    *,
    only_if: str | None = None,
) -> bool:
    """尽力更新用户当前房间，失败时只记录警告。

    Returns:
        是否更新成功（未配置 updater 时返回 False）。
    """
    if updater is None:
        return False
    try:
        await updater.set_current_room(user_id, room_id, only_if=only_if)
        return True
    except Exception as e:
        # 资料更新失败不应阻塞加入 / 离开流程
        logger.warning(
            "用户资料更新失败 | user=%s | room=%s | %s", user_id, room_id, e, exc_info=True,
        )
        return False
