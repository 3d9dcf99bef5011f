"""
tests.test_join_lock
~~~~~~~~~~~~~~~~~~~~

加入锁单元测试（假时钟，不真正等待）。
"""
from __future__ import annotations

import pytest

from room_session.core.errors import JoinCooldown, LockBusy
from room_session.services.join_lock import JoinLock
from tests.conftest import FakeClock


class TestJoinLock:
    """测试进行中互斥与冷却窗口。"""

    def test_first_acquire_succeeds(self, clock: FakeClock) -> None:
        lock = JoinLock(cooldown_seconds=2.0, clock=clock)
        assert lock.try_acquire() is True
        assert lock.is_locked is True

    def test_second_acquire_while_in_flight_fails(self, clock: FakeClock) -> None:
        """进行中的加入会拒绝第二次尝试。"""
        lock = JoinLock(cooldown_seconds=2.0, clock=clock)
        assert lock.try_acquire()
        assert lock.try_acquire() is False
        with pytest.raises(LockBusy) as exc_info:
            lock.acquire_or_raise()
        assert not isinstance(exc_info.value, JoinCooldown)

    def test_cooldown_after_release(self, clock: FakeClock) -> None:
        """释放后 2 秒内拒绝，2 秒后放行。"""
        lock = JoinLock(cooldown_seconds=2.0, clock=clock)
        lock.try_acquire()
        lock.release()
        assert lock.is_locked is False

        clock.advance(1.0)
        assert lock.try_acquire() is False
        assert lock.remaining_cooldown_ms() == 1000

        clock.advance(1.0)
        assert lock.remaining_cooldown_ms() == 0
        assert lock.try_acquire() is True

    def test_acquire_or_raise_reports_remaining(self, clock: FakeClock) -> None:
        lock = JoinLock(cooldown_seconds=2.0, clock=clock)
        lock.acquire_or_raise()
        lock.release()
        clock.advance(0.5)
        with pytest.raises(JoinCooldown) as exc_info:
            lock.acquire_or_raise()
        assert exc_info.value.remaining_ms == 1500

    def test_remaining_is_zero_before_first_use(self, clock: FakeClock) -> None:
        assert JoinLock(cooldown_seconds=2.0, clock=clock).remaining_cooldown_ms() == 0

    def test_force_reset_is_idempotent(self, clock: FakeClock) -> None:
        """强制重置清除进行中标记与冷却，重复调用无副作用。"""
        lock = JoinLock(cooldown_seconds=2.0, clock=clock)
        lock.try_acquire()
        lock.force_reset()
        lock.force_reset()
        assert lock.is_locked is False
        assert lock.remaining_cooldown_ms() == 0
        assert lock.try_acquire() is True

    def test_zero_cooldown(self, clock: FakeClock) -> None:
        lock = JoinLock(cooldown_seconds=0, clock=clock)
        lock.try_acquire()
        lock.release()
        assert lock.try_acquire() is True
