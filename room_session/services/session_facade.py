"""
room_session.services.session_facade
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

会话门面 —— UI 与其他调用方使用的唯一入口。

- ``handle_quick_entry()`` → 加入锁 → 附近匹配 / 成员状态机 → 仓库
- ``handle_safe_exit()``   → 成员状态机离开流程（不受加入锁约束）

「当前所在房间」保存在调用方持有的 ``ClientSession`` 中并按引用传入，
门面本身不保存任何用户状态。所有加入类操作的终态都以 ``EntryResult``
返回，不会有异常穿过门面。
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from room_session.core.errors import (
    EntryCancelled,
    JoinCooldown,
    LockBusy,
    RoomSessionError,
)
from room_session.core.logging import get_logger
from room_session.db.room_repository import RoomRepository, RoomSubscription, SnapshotCallback
from room_session.db.store import RoomStore
from room_session.schemas.room import GeoPoint, RoomCreate
from room_session.schemas.session import EntryResult, QuickEntryRequest, SessionState
from room_session.services.join_lock import JoinLock
from room_session.services.location import LocationProvider
from room_session.services.membership import MembershipService
from room_session.services.profile import ProfileUpdater
from room_session.services.proximity import MatchResult, ProximityMatcher

logger = get_logger(__name__)

_INTERNAL_ERROR_CODE = "internal_error"
_INTERNAL_ERROR_MESSAGE = "加入失败，请稍后重试"


@dataclass
class ClientSession:
    """单个客户端的会话状态，由调用方（如 UI 控制器）持有。

    Attributes:
        user_id: 当前用户。
        join_lock: 本客户端专属的加入锁。
        current_room_id: 当前所在房间。
        current_room_name: 当前房间名。
        state: 会话状态。
        last_error: 最近一次失败的描述。
    """

    user_id: str
    join_lock: JoinLock = field(default_factory=JoinLock)
    current_room_id: str | None = None
    current_room_name: str | None = None
    state: SessionState = SessionState.IDLE
    last_error: str | None = None

    @property
    def in_room(self) -> bool:
        return self.current_room_id is not None

    @property
    def can_join(self) -> bool:
        return not self.join_lock.is_locked and self.join_lock.remaining_cooldown_ms() == 0

    def enter(self, room_id: str, room_name: str) -> None:
        self.current_room_id = room_id
        self.current_room_name = room_name
        self.state = SessionState.CONNECTED
        self.last_error = None

    def fail(self, message: str) -> None:
        self.last_error = message
        self.state = SessionState.CONNECTED if self.in_room else SessionState.ERROR

    def clear(self) -> None:
        self.current_room_id = None
        self.current_room_name = None
        self.state = SessionState.IDLE


class SessionFacade:
    """房间会话门面。

    Attributes:
        repository: 房间仓库。
        membership: 成员状态机。
        matcher: 附近匹配器。
        location: 定位器（可选）；请求未带坐标时用它补全。
    """

    def __init__(
        self,
        repository: RoomRepository,
        membership: MembershipService,
        matcher: ProximityMatcher,
        location: LocationProvider | None = None,
    ) -> None:
        self.repository = repository
        self.membership = membership
        self.matcher = matcher
        self.location = location

    @classmethod
    def create(
        cls,
        store: RoomStore,
        profiles: ProfileUpdater | None = None,
        location: LocationProvider | None = None,
    ) -> SessionFacade:
        """按默认配置组装全部组件。"""
        repository = RoomRepository(store)
        membership = MembershipService(repository, profiles)
        matcher = ProximityMatcher(repository, membership)
        return cls(repository, membership, matcher, location)

    # ── 加入类入口 ────────────────────────────────────────────────────

    async def handle_quick_entry(
        self,
        session: ClientSession,
        request: QuickEntryRequest,
        cancel: asyncio.Event | None = None,
    ) -> EntryResult:
        """快速进入：找到或创建附近的房间并加入。

        已在房间中（或刚从同一位置进入过）时会回到原房间，即使它已满员。

        ``cancel`` 被设置时：若加入尚未提交则直接放弃；若已提交则立即离开，
        结果均为 ``error_code="cancelled"``。
        """

        async def operation() -> MatchResult:
            coords = request.coords or await self._resolve_coords()
            return await self.matcher.quick_entry(
                request, coords=coords, cancel=cancel, current_room_id=session.current_room_id,
            )

        return await self._guarded(session, "quick_entry", operation, cancel)

    async def join_room(
        self,
        session: ClientSession,
        room_id: str,
        request: QuickEntryRequest,
    ) -> EntryResult:
        """按房间 ID 加入，与快速进入共用加入锁与结果语义。"""

        async def operation() -> MatchResult:
            outcome = await self.membership.join(
                room_id,
                request.user_id,
                request.display_name,
                request.photo_url,
                request.level,
                username=request.username,
                is_anonymous=request.is_anonymous,
            )
            return MatchResult(
                room_id=room_id, room_name=outcome.room.name, is_new_room=False, outcome=outcome,
            )

        return await self._guarded(session, "join_room", operation)

    async def create_room(
        self,
        session: ClientSession,
        params: RoomCreate,
        request: QuickEntryRequest,
    ) -> EntryResult:
        """显式创建房间并作为创建者加入。"""

        async def operation() -> MatchResult:
            room_id = await self.repository.create_room(params)
            try:
                outcome = await self.membership.join(
                    room_id,
                    request.user_id,
                    request.display_name,
                    request.photo_url,
                    request.level,
                    username=request.username,
                    is_anonymous=request.is_anonymous,
                )
            except RoomSessionError:
                await self.matcher.discard_if_empty(room_id)
                raise
            return MatchResult(
                room_id=room_id, room_name=outcome.room.name, is_new_room=True, outcome=outcome,
            )

        return await self._guarded(session, "create_room", operation)

    # ── 退出 ──────────────────────────────────────────────────────────

    async def handle_safe_exit(self, session: ClientSession, room_id: str | None = None) -> bool:
        """安全退出当前房间（或指定房间）。

        「不在任何房间」视为成功；任何失败只记日志，并强制清空会话中的
        当前房间，避免客户端认为自己同时在两个房间。不受加入锁约束。

        Returns:
            服务端成员关系是否已确认移除。返回 False 时本地状态已清空，
            但用户可能仍留在房间成员列表里，调用方可以带 ``room_id`` 重试。
        """
        target = room_id or session.current_room_id
        self.matcher.forget(session.user_id)
        if target is None:
            logger.info("没有需要退出的房间 | user=%s", session.user_id)
            return True

        previous_state = session.state
        session.state = SessionState.LEAVING
        try:
            await self.membership.leave(target, session.user_id)
            logger.info("安全退出完成 | room=%s | user=%s", target, session.user_id)
            return True
        except Exception as e:
            logger.error(
                "退出房间失败，强制清空本地状态，服务端可能仍保留成员 | room=%s | user=%s | %s",
                target, session.user_id, e, exc_info=True,
            )
            return False
        finally:
            if target == session.current_room_id:
                session.clear()
            else:
                session.state = previous_state

    # ── 其他 ──────────────────────────────────────────────────────────

    async def set_voice_state(
        self,
        session: ClientSession,
        *,
        is_muted: bool | None = None,
        is_speaking: bool | None = None,
    ) -> bool:
        """更新当前用户在所在房间中的语音状态，不在房间时返回 False。"""
        if session.current_room_id is None:
            return False
        try:
            return await self.membership.set_voice_state(
                session.current_room_id,
                session.user_id,
                is_muted=is_muted,
                is_speaking=is_speaking,
            )
        except RoomSessionError as e:
            logger.warning("语音状态更新失败 | user=%s | %s", session.user_id, e)
            return False

    def subscribe(self, room_id: str, callback: SnapshotCallback) -> RoomSubscription:
        """订阅房间快照。"""
        return self.repository.subscribe(room_id, callback)

    async def _resolve_coords(self) -> GeoPoint | None:
        if self.location is None:
            return None
        try:
            location = await self.location.locate()
        except Exception as e:
            logger.warning("定位失败，不按距离过滤 | %s", e)
            return None
        return location.as_point() if location is not None else None

    async def _leave_quietly(self, room_id: str, user_id: str) -> None:
        try:
            await self.membership.leave(room_id, user_id)
        except Exception as e:
            logger.warning("离开房间失败 | room=%s | user=%s | %s", room_id, user_id, e, exc_info=True)

    async def _guarded(
        self,
        session: ClientSession,
        label: str,
        operation: Callable[[], Awaitable[MatchResult]],
        cancel: asyncio.Event | None = None,
    ) -> EntryResult:
        """在加入锁保护下执行一次加入类操作，并把结果写回会话。"""
        lock = session.join_lock
        if not lock.try_acquire():
            error: LockBusy
            if lock.is_locked:
                error = LockBusy()
            else:
                error = JoinCooldown(lock.remaining_cooldown_ms())
            logger.info("%s 被加入锁拦截 | user=%s | %s", label, session.user_id, error.code)
            return EntryResult.from_error(error, cooldown_remaining_ms=lock.remaining_cooldown_ms())

        previous_room_id = session.current_room_id
        session.state = SessionState.JOINING
        try:
            match = await operation()
            if cancel is not None and cancel.is_set():
                # 取消 = 加入后立即离开
                logger.info("加入已提交但被取消，立即离开 | room=%s", match.room_id)
                if match.room_id != previous_room_id:
                    self.matcher.forget(session.user_id)
                    await self._leave_quietly(match.room_id, session.user_id)
                raise EntryCancelled()

            if previous_room_id is not None and previous_room_id != match.room_id:
                await self._leave_quietly(previous_room_id, session.user_id)

            session.enter(match.room_id, match.room_name)
            logger.info(
                "%s 成功 | room=%s | new=%s | user=%s",
                label, match.room_id, match.is_new_room, session.user_id,
            )
            return EntryResult.ok(match.room_id, match.room_name, is_new_room=match.is_new_room)
        except RoomSessionError as e:
            logger.info("%s 失败 | user=%s | %s", label, session.user_id, e.code)
            session.fail(e.message)
            return EntryResult.from_error(e)
        except Exception as e:
            logger.error("%s 意外错误 | user=%s | %s", label, session.user_id, e, exc_info=True)
            session.fail(_INTERNAL_ERROR_MESSAGE)
            return EntryResult(
                success=False, error=_INTERNAL_ERROR_MESSAGE, error_code=_INTERNAL_ERROR_CODE,
            )
        finally:
            lock.release()
