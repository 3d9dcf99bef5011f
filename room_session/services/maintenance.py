"""
room_session.services.maintenance
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

后台清理任务：删除遗留的空房间与已关闭房间，修复房主标记与计数不一致的房间。

正常流程中最后一个成员离开就会删除房间，这里只兜底客户端崩溃、
网络中断等导致的残留。所有写入都以 ``version`` 为条件，不会覆盖并发修改。
"""
from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass

from room_session.core.config import settings
from room_session.core.logging import get_logger
from room_session.db.room_repository import RoomRepository
from room_session.schemas.room import Room
from room_session.services.membership import assign_host, elect_host

logger = get_logger(__name__)


@dataclass
class SweepStats:
    """一轮清理的统计。"""

    deleted: int = 0
    repaired: int = 0


def needs_repair(room: Room) -> bool:
    """房主标记、``host_id`` 或计数缓存与成员列表不一致。"""
    hosts = [p.user_id for p in room.participants if p.is_host]
    if len(hosts) != 1 or hosts[0] != room.host_id:
        return True
    return room.user_count != len(room.participants)


class RoomSweeper:
    """房间清理器。

    Attributes:
        repository: 房间仓库。
        min_room_age_seconds: 空房间至少存在多久才会被删除，
            避免删掉创建者尚未来得及加入的新房间。
    """

    def __init__(
        self,
        repository: RoomRepository,
        min_room_age_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.repository = repository
        self.min_room_age_seconds = (
            settings.SWEEP_MIN_ROOM_AGE_SECONDS
            if min_room_age_seconds is None
            else min_room_age_seconds
        )
        self._clock = clock

    async def sweep(self) -> SweepStats:
        """执行一轮清理。"""
        stats = SweepStats()
        now = self._clock()
        for room in await self.repository.list_all_rooms():
            if not room.is_active:
                if await self.repository.delete_room(room.id, expected_version=room.version):
                    stats.deleted += 1
                continue

            if room.is_empty:
                age = now - room.created_at.timestamp()
                if age >= self.min_room_age_seconds and await self.repository.delete_room(
                    room.id, expected_version=room.version,
                ):
                    stats.deleted += 1
                continue

            if needs_repair(room):
                host_id = room.host_id
                if host_id not in room.participant_ids:
                    host_id = elect_host(room.participants).user_id
                participants = assign_host(room.participants, host_id)
                if await self.repository.replace_participants(room, participants, host_id):
                    logger.warning("修复房间状态 | room=%s | host=%s", room.id, host_id)
                    stats.repaired += 1

        if stats.deleted or stats.repaired:
            logger.info("清理完成 | 删除 %d | 修复 %d", stats.deleted, stats.repaired)
        return stats

    async def run_forever(self, interval: float | None = None) -> None:
        """周期执行清理，直到任务被取消。单轮失败只记录日志。"""
        interval = interval or settings.SWEEP_INTERVAL_SECONDS
        logger.info("房间清理任务启动 | interval=%.0fs", interval)
        while True:
            try:
                await self.sweep()
            except Exception as e:
                logger.error("房间清理失败 | %s", e, exc_info=True)
            await asyncio.sleep(interval)
