"""
room_session.db.room_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间仓库 —— 在 ``RoomStore`` 原子原语之上提供带类型的读写操作。

成员列表永远不做「整读 → 本地修改 → 整写」:
  - 加入走条件追加，容量 / 唯一性检查与追加在同一次原子写入中完成；
  - 离开走基于 ``version`` 的 CAS，冲突时有限次重试，耗尽后抛出
    ``ConcurrentModification``。
"""
from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from room_session.core.config import settings
from room_session.core.errors import (
    AlreadyJoined,
    ConcurrentModification,
    RoomFull,
    RoomNotFound,
    RoomValidationError,
    StoreUnavailable,
)
from room_session.core.logging import get_logger
from room_session.core.retry import with_store_retry
from room_session.db.store import AppendResult, Document, RoomStore
from room_session.schemas.room import (
    ROOM_DELETED,
    Participant,
    Room,
    RoomCreate,
    RoomSnapshot,
    RoomVisibility,
    utcnow,
)

logger = get_logger(__name__)

_PARTICIPANTS = "participants"

SnapshotCallback = Callable[[RoomSnapshot], Awaitable[None] | None]

# 离开时由调用方决定剩余成员与房主：
# (房间快照, 离开的成员, 剩余成员) -> (改写后的成员, 房主 ID)
Rewrite = Callable[
    [Room, Participant, list[Participant]],
    tuple[list[Participant], str | None],
]


def _keep_host(
    room: Room, leaving: Participant, remaining: list[Participant],
) -> tuple[list[Participant], str | None]:
    return remaining, room.host_id


@dataclass
class RemovalResult:
    """移除成员的结果。

    Attributes:
        removed: 该用户是否确实被移除。
        remaining: 移除后的成员列表（已按改写规则修正房主标记）。
        deleted: 移除后房间为空并已被删除。
        host_id: 移除后的房主 ID。
        previous_host_id: 移除前的房主 ID。
    """

    removed: bool
    remaining: list[Participant] = field(default_factory=list)
    deleted: bool = False
    host_id: str | None = None
    previous_host_id: str | None = None

    @property
    def host_changed(self) -> bool:
        return self.removed and not self.deleted and self.host_id != self.previous_host_id


class RoomSubscription:
    """一次房间订阅的句柄。调用它（或 ``cancel()``）即取消订阅。

    推送流因存储故障结束时 ``closed`` 变为 True，``error`` 保存原因。
    """

    def __init__(self, room_id: str, task: asyncio.Task[Exception | None]) -> None:
        self.room_id = room_id
        self._task = task

    def __call__(self) -> None:
        self.cancel()

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()

    @property
    def closed(self) -> bool:
        return self._task.done()

    @property
    def error(self) -> Exception | None:
        """推送流异常结束的原因；仍在运行或被取消时为 None。"""
        if not self._task.done() or self._task.cancelled():
            return None
        return self._task.result()

    def add_done_callback(self, fn: Callable[[], None]) -> None:
        """推送任务结束（取消、删除后退出或故障）时调用 ``fn``。"""
        self._task.add_done_callback(lambda _task: fn())

    async def wait_closed(self) -> None:
        """等待后台推送任务真正退出。"""
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class RoomRepository:
    """房间仓库。

    Attributes:
        store: 底层房间文档存储。
        max_attempts: CAS 冲突 / 瞬时故障的最大尝试次数。
        retry_base_delay: 重试退避的基础间隔（秒）。
    """

    def __init__(
        self,
        store: RoomStore,
        max_attempts: int | None = None,
        retry_base_delay: float | None = None,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts or settings.STORE_MAX_ATTEMPTS
        self.retry_base_delay = (
            settings.STORE_RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay
        )

    async def _retry(
        self,
        operation: Callable[[], Awaitable[Any]],
        label: str,
        retry_on: tuple[type[BaseException], ...] = (StoreUnavailable,),
    ) -> Any:
        return await with_store_retry(
            operation,
            attempts=self.max_attempts,
            base_delay=self.retry_base_delay,
            retry_on=retry_on,
            label=label,
        )

    # ── 创建 / 读取 ───────────────────────────────────────────────────

    async def create_room(self, params: RoomCreate) -> str:
        """校验参数并写入一个空房间。

        Returns:
            新房间 ID。

        Raises:
            RoomValidationError: 房间名为空或容量不为正。
            StoreUnavailable: 存储不可用（创建不是幂等操作，不自动重试）。
        """
        name = params.name.strip()
        if not name:
            raise RoomValidationError("房间名不能为空")
        if params.max_participants <= 0:
            raise RoomValidationError("房间容量必须大于 0")
        if not params.created_by:
            raise RoomValidationError("缺少创建者")

        now = utcnow()
        document: Document = {
            "name": name,
            "description": params.description.strip(),
            "visibility": RoomVisibility(params.visibility).value,
            _PARTICIPANTS: [],
            "max_participants": params.max_participants,
            "host_id": None,
            "is_active": True,
            "created_at": now,
            "created_by": params.created_by,
            "user_count": 0,
            "location": params.location.model_dump() if params.location else None,
            "last_activity": now,
        }
        room_id = await self.store.insert(document)
        logger.info(
            "房间已创建 | room=%s | name=%s | max=%d | by=%s",
            room_id, name, params.max_participants, params.created_by,
        )
        return room_id

    async def get_room(self, room_id: str) -> Room | None:
        """读取房间；不存在或已逻辑删除时返回 ``None``。"""
        doc = await self._retry(lambda: self.store.fetch(room_id), "get_room")
        if doc is None or not doc.get("is_active", True):
            return None
        return Room.from_document(doc)

    async def require_room(self, room_id: str) -> Room:
        """读取房间，不存在时抛出 ``RoomNotFound``。"""
        room = await self.get_room(room_id)
        if room is None:
            raise RoomNotFound()
        return room

    async def list_open_rooms(self, limit: int = 20) -> list[Room]:
        """返回尚未满员的活跃房间（按创建时间倒序）。"""
        docs = await self._retry(lambda: self.store.find_active(limit), "list_open_rooms")
        rooms = [Room.from_document(doc) for doc in docs]
        return [room for room in rooms if not room.is_full]

    async def list_all_rooms(self) -> list[Room]:
        """返回全部房间文档（含已逻辑删除的），供维护任务使用。"""
        docs = await self._retry(self.store.find_all, "list_all_rooms")
        return [Room.from_document(doc) for doc in docs]

    # ── 成员变更 ──────────────────────────────────────────────────────

    async def add_participant(self, room_id: str, participant: Participant) -> Participant:
        """原子地把成员追加到房间。

        ``participant.is_host`` 只是提示：真正的房主身份由存储在追加时的
        「数组是否为空」条件决定：追加进空房间的成员成为房主并写入
        ``host_id``，追加进非空房间的成员一定不是房主。

        Returns:
            实际写入的成员记录。

        Raises:
            RoomNotFound: 房间不存在或已关闭。
            RoomFull: 房间已满。
            AlreadyJoined: 用户已在房间中。
            ConcurrentModification: 房间状态在重试上限内持续变化。
        """

        async def attempt() -> Participant:
            paths = (True, False) if participant.is_host else (False, True)
            for as_host in paths:
                candidate = participant.model_copy(update={"is_host": as_host})
                extra: Document = {"last_activity": utcnow()}
                if as_host:
                    extra["host_id"] = candidate.user_id
                result = await self.store.append_unique(
                    room_id,
                    _PARTICIPANTS,
                    candidate.model_dump(),
                    key="user_id",
                    capacity_field="max_participants",
                    counter_field="user_count",
                    require_empty=as_host,
                    extra_set=extra,
                )
                if result is AppendResult.APPENDED:
                    return candidate
                if result is AppendResult.MISSING:
                    raise RoomNotFound()

            # 两条路径都被拒绝：重新读取以区分原因
            room = await self.get_room(room_id)
            if room is None:
                raise RoomNotFound()
            if room.find(participant.user_id) is not None:
                raise AlreadyJoined()
            if room.is_full:
                raise RoomFull()
            # 房间在两次尝试之间由空变非空（或反之），属于可重试的冲突
            raise ConcurrentModification()

        return await self._retry(
            attempt,
            "add_participant",
            retry_on=(StoreUnavailable, ConcurrentModification),
        )

    async def remove_participant(
        self,
        room_id: str,
        user_id: str,
        rewrite: Rewrite = _keep_host,
    ) -> RemovalResult:
        """原子地移除成员，返回移除后的成员列表。

        读取带 ``version`` 的快照，按 ``rewrite`` 计算剩余成员与房主，
        再以 CAS 写回；剩余为空时以同一版本号做条件删除。版本冲突时重试。

        Returns:
            ``RemovalResult``；房间不存在或用户不在房间时 ``removed=False``。
        """

        async def attempt() -> RemovalResult:
            room = await self.get_room(room_id)
            if room is None:
                return RemovalResult(removed=False)
            leaving = room.find(user_id)
            if leaving is None:
                return RemovalResult(
                    removed=False,
                    remaining=list(room.participants),
                    host_id=room.host_id,
                    previous_host_id=room.host_id,
                )

            remaining = [p for p in room.participants if p.user_id != user_id]
            if not remaining:
                if await self.store.delete(room_id, expected_version=room.version):
                    logger.info("房间已清空并删除 | room=%s", room_id)
                    return RemovalResult(
                        removed=True, deleted=True, previous_host_id=room.host_id,
                    )
                raise ConcurrentModification()

            remaining, host_id = rewrite(room, leaving, remaining)
            written = await self.store.compare_and_set(
                room_id,
                room.version,
                {
                    _PARTICIPANTS: [p.model_dump() for p in remaining],
                    "host_id": host_id,
                    # 直接改写成员列表时同步校正计数缓存
                    "user_count": len(remaining),
                    "last_activity": utcnow(),
                },
            )
            if not written:
                raise ConcurrentModification()
            return RemovalResult(
                removed=True,
                remaining=remaining,
                host_id=host_id,
                previous_host_id=room.host_id,
            )

        return await self._retry(
            attempt,
            "remove_participant",
            retry_on=(StoreUnavailable, ConcurrentModification),
        )

    async def replace_participants(
        self,
        room: Room,
        participants: list[Participant],
        host_id: str | None,
    ) -> bool:
        """以 ``room.version`` 为条件整体改写成员列表（维护任务用）。"""
        return await self.store.compare_and_set(
            room.id,
            room.version,
            {
                _PARTICIPANTS: [p.model_dump() for p in participants],
                "host_id": host_id,
                "user_count": len(participants),
            },
        )

    async def set_voice_state(
        self,
        room_id: str,
        user_id: str,
        *,
        is_muted: bool | None = None,
        is_speaking: bool | None = None,
    ) -> bool:
        """原子更新单个成员的静音 / 说话状态，返回该成员是否存在。"""
        changes: Document = {}
        if is_muted is not None:
            changes["is_muted"] = is_muted
        if is_speaking is not None:
            changes["is_speaking"] = is_speaking
        if not changes:
            return False
        return await self._retry(
            lambda: self.store.update_item(room_id, _PARTICIPANTS, "user_id", user_id, changes),
            "set_voice_state",
        )

    async def delete_room(self, room_id: str, expected_version: int | None = None) -> bool:
        """删除房间。幂等：删除不存在的房间不是错误。

        Returns:
            本次调用是否真的删除了房间。
        """
        deleted = await self._retry(
            lambda: self.store.delete(room_id, expected_version=expected_version),
            "delete_room",
        )
        if deleted:
            logger.info("房间已删除 | room=%s", room_id)
        return deleted

    # ── 订阅 ──────────────────────────────────────────────────────────

    def subscribe(self, room_id: str, callback: SnapshotCallback) -> RoomSubscription:
        """订阅房间变更。

        回调先收到当前快照，之后每次变更收到完整 ``Room``；房间被删除
        （或逻辑删除）时收到 ``ROOM_DELETED``。同一房间的多次订阅互相独立。
        回调可以是普通函数也可以是协程函数；回调抛出的异常只记录日志。

        必须在运行中的事件循环里调用。
        """

        async def pump() -> Exception | None:
            try:
                async for doc in self.store.watch(room_id):
                    snapshot: RoomSnapshot
                    if doc is None or not doc.get("is_active", True):
                        snapshot = ROOM_DELETED
                    else:
                        snapshot = Room.from_document(doc)
                    try:
                        result = callback(snapshot)
                        if inspect.isawaitable(result):
                            await result
                    except Exception as e:
                        logger.warning(
                            "订阅回调异常 | room=%s | %s", room_id, e, exc_info=True,
                        )
            except StoreUnavailable as e:
                logger.error("房间订阅中断 | room=%s | %s", room_id, e)
                return e
            except Exception as e:
                logger.error("房间订阅异常结束 | room=%s | %s", room_id, e, exc_info=True)
                return e
            return None

        task = asyncio.create_task(pump(), name=f"room-subscription-{room_id}")
        return RoomSubscription(room_id, task)
