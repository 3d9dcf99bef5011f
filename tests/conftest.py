"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 全部基于内存存储，单元测试无需 MongoDB 与网络即可运行。
"""
from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置
os.environ.setdefault("ROOM_STORE_BACKEND", "memory")

from room_session.db.memory_store import MemoryRoomStore  # noqa: E402
from room_session.db.room_repository import RoomRepository  # noqa: E402
from room_session.schemas.room import Participant, RoomCreate  # noqa: E402
from room_session.schemas.session import QuickEntryRequest  # noqa: E402
from room_session.services.join_lock import JoinLock  # noqa: E402
from room_session.services.membership import MembershipService  # noqa: E402
from room_session.services.profile import MemoryProfileUpdater  # noqa: E402
from room_session.services.proximity import ProximityMatcher  # noqa: E402
from room_session.services.session_facade import ClientSession, SessionFacade  # noqa: E402

BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """可手动推进的时钟，替代 ``time.monotonic``。"""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_participant(user_id: str, offset_seconds: int = 0, is_host: bool = False) -> Participant:
    """构造一个加入时间为 ``BASE_TIME + offset`` 的成员。"""
    return Participant(
        user_id=user_id,
        display_name=user_id.upper(),
        is_host=is_host,
        joined_at=BASE_TIME + timedelta(seconds=offset_seconds),
    )


def make_request(user_id: str, **kwargs: object) -> QuickEntryRequest:
    return QuickEntryRequest(user_id=user_id, display_name=f"{user_id}-name", **kwargs)  # type: ignore[arg-type]


def make_room_params(created_by: str = "founder", **kwargs: object) -> RoomCreate:
    params: dict[str, object] = {"name": "Test Room", "max_participants": 8}
    params.update(kwargs)
    return RoomCreate(created_by=created_by, **params)  # type: ignore[arg-type]


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store() -> MemoryRoomStore:
    return MemoryRoomStore()


@pytest.fixture()
def repository(store: MemoryRoomStore) -> RoomRepository:
    """重试不等待，避免测试变慢。"""
    return RoomRepository(store, max_attempts=3, retry_base_delay=0)


@pytest.fixture()
def profiles() -> MemoryProfileUpdater:
    return MemoryProfileUpdater()


@pytest.fixture()
def membership(repository: RoomRepository, profiles: MemoryProfileUpdater) -> MembershipService:
    return MembershipService(repository, profiles, anonymous_name="Wanderer")


@pytest.fixture()
def matcher(
    repository: RoomRepository, membership: MembershipService, clock: FakeClock,
) -> ProximityMatcher:
    """幂等缓存 30 秒，与加入锁共用假时钟。"""
    return ProximityMatcher(
        repository,
        membership,
        radius_km=0.5,
        query_limit=20,
        max_candidates=3,
        default_max_participants=8,
        idempotency_ttl=30.0,
        clock=clock,
    )


@pytest.fixture()
def facade(
    repository: RoomRepository,
    membership: MembershipService,
    matcher: ProximityMatcher,
) -> SessionFacade:
    return SessionFacade(repository, membership, matcher)


@pytest.fixture()
def make_session(clock: FakeClock):
    """按用户构造会话，加入锁使用假时钟，冷却 2 秒。"""

    def _make(user_id: str) -> ClientSession:
        return ClientSession(user_id=user_id, join_lock=JoinLock(cooldown_seconds=2.0, clock=clock))

    return _make
