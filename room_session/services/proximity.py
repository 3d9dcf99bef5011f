"""
room_session.services.proximity
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

附近匹配 —— 快速进入时，要么加入附近一个未满的房间，要么新建一个。

重复快速进入是幂等的：调用方当前所在的房间，以及同一用户在同一网格
``idempotency_ttl`` 秒内进入过的房间，会先于候选查询被重新加入（对成员
是空操作，满员也不影响）。

候选排序：用户已在其中的房间优先，其次人数多的（更热闹），
再按距离由近到远，最后按创建时间由新到旧。加入失败（满员 / 已删除）时
换下一个候选，候选耗尽后新建房间并作为创建者加入。
"""
from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from room_session.core.config import settings
from room_session.core.errors import (
    EntryCancelled,
    NoRoomAvailable,
    RoomFull,
    RoomNotFound,
)
from room_session.core.logging import get_logger
from room_session.db.room_repository import RoomRepository
from room_session.schemas.room import GeoPoint, Room, RoomCreate, RoomVisibility
from room_session.schemas.session import QuickEntryRequest
from room_session.services.membership import JoinOutcome, MembershipService

logger = get_logger(__name__)

EARTH_RADIUS_KM: float = 6371.0

_CLOUD_NAMES: tuple[str, ...] = (
    "Wolke", "Nebel", "Himmel", "Traum", "Stern",
    "Aurora", "Cosmos", "Galaxy", "Nova", "Aether",
)


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    """两点间球面距离（公里）。"""
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.longitude - a.longitude)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def location_bucket(point: GeoPoint) -> str:
    """约 500 米精度的网格键。"""
    lat = math.floor(point.latitude * 200) / 200
    lon = math.floor(point.longitude * 200) / 200
    return f"{lat}_{lon}"


def generate_room_name(point: GeoPoint | None, seed: str = "") -> str:
    """按网格生成稳定的房间名；同一网格内的人得到同一个名字。"""
    key = location_bucket(point) if point is not None else seed
    digest = sum(ord(ch) for ch in key)
    return f"{_CLOUD_NAMES[digest % len(_CLOUD_NAMES)]} {digest % 99 + 1}"


@dataclass
class Candidate:
    """一个候选房间及其距离（无坐标时为 None）。"""

    room: Room
    distance_km: float | None = None


@dataclass
class MatchResult:
    """快速进入的结果。"""

    room_id: str
    room_name: str
    is_new_room: bool
    outcome: JoinOutcome


def _raise_if_cancelled(cancel: asyncio.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise EntryCancelled()


class ProximityMatcher:
    """附近匹配器。

    Attributes:
        repository: 房间仓库。
        membership: 成员状态机。
        radius_km: 搜索半径（公里）。
        query_limit: 单次查询的候选上限。
        max_candidates: 最多尝试加入几个候选。
        default_max_participants: 新建房间的容量。
        idempotency_ttl: 「用户 + 网格 → 房间」缓存的有效期（秒）。
    """

    def __init__(
        self,
        repository: RoomRepository,
        membership: MembershipService,
        radius_km: float | None = None,
        query_limit: int | None = None,
        max_candidates: int | None = None,
        default_max_participants: int | None = None,
        idempotency_ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.membership = membership
        self.radius_km = radius_km or settings.PROXIMITY_RADIUS_KM
        self.query_limit = query_limit or settings.PROXIMITY_QUERY_LIMIT
        self.max_candidates = max_candidates or settings.PROXIMITY_MAX_CANDIDATES
        self.default_max_participants = (
            default_max_participants or settings.DEFAULT_MAX_PARTICIPANTS
        )
        self.idempotency_ttl = (
            settings.QUICK_ENTRY_IDEMPOTENCY_SECONDS if idempotency_ttl is None else idempotency_ttl
        )
        self._clock = clock
        self._recent: dict[tuple[str, str], tuple[str, float]] = {}

    async def find_candidates(self, user_id: str, coords: GeoPoint | None) -> list[Candidate]:
        """查询附近可加入的房间并排序。

        没有坐标时不按距离过滤；没有位置信息的房间在有坐标时被跳过。
        私密房间不参与快速进入。
        """
        rooms = await self.repository.list_open_rooms(self.query_limit)
        candidates: list[Candidate] = []
        for room in rooms:
            if room.visibility == RoomVisibility.PRIVATE:
                continue
            if coords is None:
                candidates.append(Candidate(room=room))
                continue
            if room.location is None:
                continue
            distance = haversine_km(coords, room.location)
            if distance <= self.radius_km:
                candidates.append(Candidate(room=room, distance_km=distance))

        candidates.sort(
            key=lambda c: (
                c.room.find(user_id) is None,
                -len(c.room.participants),
                c.distance_km or 0.0,
                -c.room.created_at.timestamp(),
            ),
        )
        return candidates

    async def quick_entry(
        self,
        request: QuickEntryRequest,
        coords: GeoPoint | None = None,
        cancel: asyncio.Event | None = None,
        current_room_id: str | None = None,
    ) -> MatchResult:
        """找到或创建一个房间并加入。

        ``current_room_id``（调用方当前所在房间）或幂等缓存命中的房间会先被
        重新加入；它已满员或已删除时才走候选查询。

        ``cancel`` 在每次访问存储前检查；加入一旦提交就直接返回结果，
        由调用方决定是否立即离开。

        Raises:
            NoRoomAvailable: 候选全部失败且新建房间也无法加入。
            EntryCancelled: 在提交加入之前被取消。
        """
        coords = coords or request.coords
        key = self._idempotency_key(request.user_id, coords)
        _raise_if_cancelled(cancel)

        for room_id in dict.fromkeys(filter(None, (current_room_id, self._cached_room(key)))):
            _raise_if_cancelled(cancel)
            try:
                outcome = await self._join(room_id, request)
            except (RoomFull, RoomNotFound) as e:
                logger.info("无法回到之前的房间 | room=%s | %s", room_id, e.code)
                self._recent.pop(key, None)
                continue
            logger.info(
                "幂等命中，回到之前的房间 | room=%s | user=%s | already=%s",
                room_id, request.user_id, outcome.already_joined,
            )
            return self._remember(key, MatchResult(
                room_id=room_id, room_name=outcome.room.name, is_new_room=False, outcome=outcome,
            ))

        candidates = await self.find_candidates(request.user_id, coords)
        logger.info(
            "附近候选房间 %d 个 | user=%s | coords=%s",
            len(candidates), request.user_id, "yes" if coords else "no",
        )

        for candidate in candidates[: self.max_candidates]:
            _raise_if_cancelled(cancel)
            room = candidate.room
            try:
                outcome = await self._join(room.id, request)
            except (RoomFull, RoomNotFound) as e:
                logger.info("候选房间不可加入，尝试下一个 | room=%s | %s", room.id, e.code)
                continue
            return self._remember(key, MatchResult(
                room_id=room.id, room_name=room.name, is_new_room=False, outcome=outcome,
            ))

        _raise_if_cancelled(cancel)
        return self._remember(key, await self._create_and_join(request, coords))

    def forget(self, user_id: str) -> None:
        """清除某个用户的幂等缓存（例如主动退出之后）。"""
        for key in [k for k in self._recent if k[0] == user_id]:
            del self._recent[key]

    @staticmethod
    def _idempotency_key(user_id: str, coords: GeoPoint | None) -> tuple[str, str]:
        return user_id, location_bucket(coords) if coords is not None else "global"

    def _cached_room(self, key: tuple[str, str]) -> str | None:
        entry = self._recent.get(key)
        if entry is None:
            return None
        room_id, stored_at = entry
        if self._clock() - stored_at >= self.idempotency_ttl:
            del self._recent[key]
            return None
        return room_id

    def _remember(self, key: tuple[str, str], match: MatchResult) -> MatchResult:
        if self.idempotency_ttl > 0:
            self._recent[key] = (match.room_id, self._clock())
        return match

    async def _join(self, room_id: str, request: QuickEntryRequest) -> JoinOutcome:
        return await self.membership.join(
            room_id,
            request.user_id,
            request.display_name,
            request.photo_url,
            request.level,
            username=request.username,
            is_anonymous=request.is_anonymous,
        )

    async def _create_and_join(
        self,
        request: QuickEntryRequest,
        coords: GeoPoint | None,
    ) -> MatchResult:
        name = generate_room_name(coords, seed=request.user_id)
        room_id = await self.repository.create_room(
            RoomCreate(
                name=name,
                max_participants=self.default_max_participants,
                created_by=request.user_id,
                location=coords,
            ),
        )
        try:
            outcome = await self._join(room_id, request)
        except (RoomFull, RoomNotFound) as e:
            await self.discard_if_empty(room_id)
            raise NoRoomAvailable() from e

        logger.info("新建房间并加入 | room=%s | name=%s | user=%s", room_id, name, request.user_id)
        return MatchResult(room_id=room_id, room_name=name, is_new_room=True, outcome=outcome)

    async def discard_if_empty(self, room_id: str) -> None:
        """尽力删除创建者没能进入的空房间。"""
        try:
            room = await self.repository.get_room(room_id)
            if room is not None and room.is_empty:
                await self.repository.delete_room(room_id, expected_version=room.version)
        except Exception as e:
            logger.warning("清理空房间失败 | room=%s | %s", room_id, e, exc_info=True)
