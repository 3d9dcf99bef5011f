"""
room_session.services.join_lock
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

客户端本地的加入锁：同一时刻最多一次进行中的加入，
两次加入之间至少间隔一个冷却时间（吸收双击、重连风暴产生的重复事件）。

它只在单个客户端内生效，无法阻止不同客户端抢同一个房间；
那种竞争由仓库的原子追加 + 容量检查解决。
"""
from __future__ import annotations

import math
import time
from collections.abc import Callable

from room_session.core.config import settings
from room_session.core.errors import JoinCooldown, LockBusy
from room_session.core.logging import get_logger

logger = get_logger(__name__)


class JoinLock:
    """加入锁 + 冷却计时。

    非阻塞：``try_acquire()`` 立即返回是否拿到锁。
    ``release()`` 在加入结束（无论成败）时调用，并开始冷却计时。

    Attributes:
        cooldown_seconds: 冷却时长（秒）。
    """

    def __init__(
        self,
        cooldown_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cooldown_seconds = (
            settings.JOIN_COOLDOWN_SECONDS if cooldown_seconds is None else cooldown_seconds
        )
        self._clock = clock
        self._in_flight = False
        self._released_at: float | None = None

    @property
    def is_locked(self) -> bool:
        """当前是否有加入正在进行。"""
        return self._in_flight

    def _remaining_seconds(self) -> float:
        if self._released_at is None:
            return 0.0
        elapsed = self._clock() - self._released_at
        return max(0.0, self.cooldown_seconds - elapsed)

    def try_acquire(self) -> bool:
        """尝试拿锁。已有加入进行中或仍在冷却期内时返回 False。"""
        if self._in_flight:
            logger.debug("加入锁被占用")
            return False
        if self._remaining_seconds() > 0:
            logger.debug("加入冷却中，剩余 %dms", self.remaining_cooldown_ms())
            return False
        self._in_flight = True
        return True

    def acquire_or_raise(self) -> None:
        """拿锁，失败时抛出 ``LockBusy`` 或 ``JoinCooldown``。"""
        if self._in_flight:
            raise LockBusy()
        remaining = self.remaining_cooldown_ms()
        if remaining > 0:
            raise JoinCooldown(remaining)
        self._in_flight = True

    def release(self) -> None:
        """结束本次加入并开始冷却。"""
        self._in_flight = False
        self._released_at = self._clock()

    def remaining_cooldown_ms(self) -> int:
        """剩余冷却时间（毫秒），仅供 UI 展示，不是锁本身。"""
        return math.ceil(self._remaining_seconds() * 1000)

    def force_reset(self) -> None:
        """管理用的逃生口：清除进行中标记与冷却。可重复调用。"""
        if self._in_flight:
            logger.warning("加入锁被强制重置")
        self._in_flight = False
        self._released_at = None
