"""
tests.test_proximity
~~~~~~~~~~~~~~~~~~~~

附近匹配测试：距离计算、候选排序、满员换房、新建房间与取消。
"""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from room_session.core.errors import EntryCancelled, NoRoomAvailable, RoomFull
from room_session.db.room_repository import RoomRepository
from room_session.schemas.room import GeoPoint, RoomVisibility
from room_session.services.membership import MembershipService
from room_session.services.proximity import (
    ProximityMatcher,
    generate_room_name,
    haversine_km,
    location_bucket,
)
from tests.conftest import FakeClock, make_request, make_room_params

HERE = GeoPoint(latitude=31.2304, longitude=121.4737)
# 约 220 米外
NEARBY = GeoPoint(latitude=31.2324, longitude=121.4737)
# 约 11 公里外
FAR = GeoPoint(latitude=31.3304, longitude=121.4737)


async def _room_with_members(
    repository: RoomRepository,
    membership: MembershipService,
    members: int,
    *,
    location: GeoPoint | None = HERE,
    capacity: int = 8,
    visibility: RoomVisibility = RoomVisibility.PUBLIC,
    name: str = "Room",
) -> str:
    room_id = await repository.create_room(
        make_room_params(
            name=name, max_participants=capacity, location=location, visibility=visibility,
        ),
    )
    for i in range(members):
        await membership.join(room_id, f"{room_id}-m{i}", f"M{i}")
    return room_id


class TestGeometry:
    """测试距离与房间名。"""

    def test_haversine_zero(self) -> None:
        assert haversine_km(HERE, HERE) == pytest.approx(0.0)

    def test_haversine_known_distance(self) -> None:
        """纬度差 0.1 度约 11.1 公里。"""
        assert haversine_km(HERE, FAR) == pytest.approx(11.12, rel=0.01)
        assert haversine_km(HERE, NEARBY) < 0.5

    def test_bucket_groups_close_points(self) -> None:
        a = GeoPoint(latitude=31.2301, longitude=121.4701)
        b = GeoPoint(latitude=31.2302, longitude=121.4702)
        assert location_bucket(a) == location_bucket(b)

    def test_room_name_is_deterministic(self) -> None:
        assert generate_room_name(HERE) == generate_room_name(HERE)
        assert generate_room_name(None, seed="u1") == generate_room_name(None, seed="u1")
        name, number = generate_room_name(HERE).rsplit(" ", 1)
        assert name
        assert 1 <= int(number) <= 99


class TestFindCandidates:
    """测试候选过滤与排序。"""

    @pytest.mark.asyncio
    async def test_prefers_livelier_rooms(
        self,
        matcher: ProximityMatcher,
        repository: RoomRepository,
        membership: MembershipService,
    ) -> None:
        quiet = await _room_with_members(repository, membership, 1, name="quiet")
        lively = await _room_with_members(repository, membership, 3, location=NEARBY, name="lively")

        candidates = await matcher.find_candidates("newcomer", HERE)
        assert [c.room.id for c in candidates] == [lively, quiet]

    @pytest.mark.asyncio
    async def test_distance_breaks_ties(
        self,
        matcher: ProximityMatcher,
        repository: RoomRepository,
        membership: MembershipService,
    ) -> None:
        near = await _room_with_members(repository, membership, 2, location=HERE)
        further = await _room_with_members(repository, membership, 2, location=NEARBY)
        candidates = await matcher.find_candidates("newcomer", HERE)
        assert [c.room.id for c in candidates] == [near, further]

    @pytest.mark.asyncio
    async def test_filters_far_private_and_full_rooms(
        self,
        matcher: ProximityMatcher,
        repository: RoomRepository,
        membership: MembershipService,
    ) -> None:
        await _room_with_members(repository, membership, 1, location=FAR)
        await _room_with_members(
            repository, membership, 1, visibility=RoomVisibility.PRIVATE,
        )
        await _room_with_members(repository, membership, 2, capacity=2)
        await _room_with_members(repository, membership, 1, location=None)
        ok = await _room_with_members(repository, membership, 1)

        candidates = await matcher.find_candidates("newcomer", HERE)
        assert [c.room.id for c in candidates] == [ok]

    @pytest.mark.asyncio
    async def test_no_coords_means_no_distance_filter(
        self,
        matcher: ProximityMatcher,
        repository: RoomRepository,
        membership: MembershipService,
    ) -> None:
        """没有坐标时显示全部公开房间。"""
        far = await _room_with_members(repository, membership, 2, location=FAR)
        nowhere = await _room_with_members(repository, membership, 1, location=None)
        candidates = await matcher.find_candidates("newcomer", None)
        assert [c.room.id for c in candidates] == [far, nowhere]

    @pytest.mark.asyncio
    async def test_own_room_first(
        self,
        matcher: ProximityMatcher,
        repository: RoomRepository,
        membership: MembershipService,
    ) -> None:
        """用户已在的房间排在最前，重试快速进入不会换房间。"""
        mine = await _room_with_members(repository, membership, 1)
        await membership.join(mine, "me", "Me")
        await _room_with_members(repository, membership, 5)
        candidates = await matcher.find_candidates("me", HERE)
        assert candidates[0].room.id == mine


class TestQuickEntry:
    """测试快速进入。"""

    @pytest.mark.asyncio
    async def test_joins_nearby_room(
        self,
        matcher: ProximityMatcher,
        repository: RoomRepository,
        membership: MembershipService,
    ) -> None:
        room_id = await _room_with_members(repository, membership, 1)
        result = await matcher.quick_entry(make_request("me"), coords=HERE)
        assert result.room_id == room_id
        assert result.is_new_room is False
        assert "me" in (await repository.require_room(room_id)).participant_ids

    @pytest.mark.asyncio
    async def test_creates_room_when_none_nearby(
        self, matcher: ProximityMatcher, repository: RoomRepository,
    ) -> None:
        result = await matcher.quick_entry(make_request("me"), coords=HERE)
        assert result.is_new_room is True
        assert result.room_name == generate_room_name(HERE)

        room = await repository.require_room(result.room_id)
        assert room.host_id == "me"
        assert room.created_by == "me"
        assert room.max_participants == 8
        assert room.location == HERE

    @pytest.mark.asyncio
    async def test_uses_request_coords(
        self, matcher: ProximityMatcher, repository: RoomRepository,
    ) -> None:
        result = await matcher.quick_entry(make_request("me", coords=HERE))
        room = await repository.require_room(result.room_id)
        assert room.location == HERE

    @pytest.mark.asyncio
    async def test_full_candidate_falls_through_to_next(
        self,
        matcher: ProximityMatcher,
        repository: RoomRepository,
        membership: MembershipService,
    ) -> None:
        """第一个候选在加入时已满（输掉竞争），换下一个候选。"""
        first = await _room_with_members(repository, membership, 3, name="first")
        second = await _room_with_members(repository, membership, 1, name="second")

        original_join = membership.join

        async def lose_race(room_id: str, *args, **kwargs):
            if room_id == first:
                raise RoomFull()
            return await original_join(room_id, *args, **kwargs)

        with patch.object(membership, "join", side_effect=lose_race):
            result = await matcher.quick_entry(make_request("me"), coords=HERE)
        assert result.room_id == second

    @pytest.mark.asyncio
    async def test_all_candidates_full_creates_room(
        self,
        matcher: ProximityMatcher,
        repository: RoomRepository,
        membership: MembershipService,
    ) -> None:
        candidates = [await _room_with_members(repository, membership, 1) for _ in range(2)]
        original_join = membership.join

        async def always_full(room_id: str, *args, **kwargs):
            if room_id in candidates:
                raise RoomFull()
            return await original_join(room_id, *args, **kwargs)

        with patch.object(membership, "join", side_effect=always_full):
            result = await matcher.quick_entry(make_request("me"), coords=HERE)
        assert result.is_new_room is True
        assert result.room_id not in candidates

    @pytest.mark.asyncio
    async def test_attempts_are_bounded(
        self,
        matcher: ProximityMatcher,
        repository: RoomRepository,
        membership: MembershipService,
    ) -> None:
        """最多尝试 max_candidates 个候选后转为新建。"""
        for _ in range(5):
            await _room_with_members(repository, membership, 1)

        join = AsyncMock(side_effect=RoomFull())
        with patch.object(membership, "join", join):
            with pytest.raises(NoRoomAvailable):
                await matcher.quick_entry(make_request("me"), coords=HERE)
        # 3 个候选 + 1 次新建房间的加入
        assert join.await_count == matcher.max_candidates + 1

    @pytest.mark.asyncio
    async def test_founder_join_failure_discards_room(
        self, matcher: ProximityMatcher, repository: RoomRepository, membership: MembershipService,
    ) -> None:
        """创建者没能进入新房间时，空房间被删除并报告 NoRoomAvailable。"""
        with patch.object(membership, "join", AsyncMock(side_effect=RoomFull())):
            with pytest.raises(NoRoomAvailable):
                await matcher.quick_entry(make_request("me"), coords=HERE)
        assert await repository.list_all_rooms() == []

    @pytest.mark.asyncio
    async def test_cancel_before_start(
        self, matcher: ProximityMatcher, repository: RoomRepository,
    ) -> None:
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(EntryCancelled):
            await matcher.quick_entry(make_request("me"), coords=HERE, cancel=cancel)
        assert await repository.list_all_rooms() == []

    @pytest.mark.asyncio
    async def test_concurrent_quick_entries_share_room(
        self,
        matcher: ProximityMatcher,
        repository: RoomRepository,
        membership: MembershipService,
    ) -> None:
        """已有附近房间时，多个用户同时快速进入都落在同一房间且不超员。"""
        room_id = await _room_with_members(repository, membership, 1, capacity=4)
        results = await asyncio.gather(
            *(matcher.quick_entry(make_request(f"u{i}"), coords=HERE) for i in range(3)),
        )
        assert {r.room_id for r in results} == {room_id}
        room = await repository.require_room(room_id)
        assert len(room.participants) == 4
        assert sum(p.is_host for p in room.participants) == 1


class TestIdempotentEntry:
    """测试重复快速进入回到原房间。"""

    @pytest.mark.asyncio
    async def test_current_room_kept_even_when_full(
        self,
        matcher: ProximityMatcher,
        repository: RoomRepository,
        membership: MembershipService,
    ) -> None:
        """当前房间已满时仍回到该房间，不新建、不迁移房主。"""
        room_id = await repository.create_room(
            make_room_params(created_by="me", max_participants=2, location=HERE),
        )
        await membership.join(room_id, "me", "Me")
        await membership.join(room_id, "bob", "Bob")

        result = await matcher.quick_entry(
            make_request("me"), coords=HERE, current_room_id=room_id,
        )
        assert result.room_id == room_id
        assert result.is_new_room is False
        assert result.outcome.already_joined is True
        room = await repository.require_room(room_id)
        assert room.participant_ids == ["me", "bob"]
        assert room.host_id == "me"
        assert len(await repository.list_all_rooms()) == 1

    @pytest.mark.asyncio
    async def test_recent_room_reused_within_ttl(
        self,
        matcher: ProximityMatcher,
        repository: RoomRepository,
        membership: MembershipService,
        clock: FakeClock,
    ) -> None:
        """同一网格内重复进入命中缓存，即使房间已满。"""
        first = await matcher.quick_entry(make_request("me"), coords=HERE)
        for i in range(7):
            await membership.join(first.room_id, f"other-{i}", f"O{i}")

        clock.advance(10)
        again = await matcher.quick_entry(make_request("me"), coords=NEARBY)
        assert again.room_id == first.room_id
        assert again.outcome.already_joined is True
        assert len(await repository.list_all_rooms()) == 1

    @pytest.mark.asyncio
    async def test_cache_expires(
        self,
        matcher: ProximityMatcher,
        repository: RoomRepository,
        membership: MembershipService,
        clock: FakeClock,
    ) -> None:
        """缓存过期后按正常排序选择更热闹的房间。"""
        first = await matcher.quick_entry(make_request("me"), coords=HERE)
        await membership.join(first.room_id, "stay", "Stay")
        await membership.leave(first.room_id, "me")
        other = await _room_with_members(repository, membership, 3, name="other")

        clock.advance(31)
        again = await matcher.quick_entry(make_request("me"), coords=HERE)
        assert again.room_id == other

    @pytest.mark.asyncio
    async def test_deleted_cached_room_falls_back(
        self,
        matcher: ProximityMatcher,
        repository: RoomRepository,
        membership: MembershipService,
    ) -> None:
        """缓存中的房间已删除时走正常匹配。"""
        first = await matcher.quick_entry(make_request("me"), coords=HERE)
        await membership.leave(first.room_id, "me")

        again = await matcher.quick_entry(make_request("me"), coords=HERE)
        assert again.room_id != first.room_id
        assert again.is_new_room is True

    @pytest.mark.asyncio
    async def test_forget_clears_user_entries(
        self,
        matcher: ProximityMatcher,
        repository: RoomRepository,
        membership: MembershipService,
    ) -> None:
        first = await matcher.quick_entry(make_request("me"), coords=HERE)
        await matcher.quick_entry(make_request("you"), coords=HERE)
        matcher.forget("me")
        await membership.leave(first.room_id, "me")
        other = await _room_with_members(repository, membership, 3, name="busy")

        again = await matcher.quick_entry(make_request("me"), coords=HERE)
        assert again.room_id == other
