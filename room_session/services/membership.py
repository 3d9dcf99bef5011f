"""
room_session.services.membership
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

成员状态机 —— 单个房间的加入 / 离开 / 房主迁移 / 自动删除。

每个房间只有两个隐式状态: ``EMPTY`` 与 ``OCCUPIED(host_id)``，
最后一个成员离开即删除房间。满员不是状态，只是加入时的前置检查。

房主迁移永远选 ``joined_at`` 最早的剩余成员（相同时按 ``user_id``），
多个客户端各自计算也会得到相同结果。
"""
from __future__ import annotations

from dataclasses import dataclass

from room_session.core.config import settings
from room_session.core.errors import AlreadyJoined, RoomFull, RoomNotFound
from room_session.core.logging import get_logger
from room_session.db.room_repository import RoomRepository
from room_session.schemas.room import Participant, Room, utcnow
from room_session.services.profile import ProfileUpdater, best_effort_profile_update

logger = get_logger(__name__)


def elect_host(participants: list[Participant]) -> Participant:
    """从非空成员列表中选出最早加入者。"""
    if not participants:
        raise ValueError("无法从空成员列表中选出房主")
    return min(participants, key=lambda p: (p.joined_at, p.user_id))


def assign_host(participants: list[Participant], host_id: str) -> list[Participant]:
    """改写每个成员的 ``is_host``，保证只有 ``host_id`` 为 True。"""
    return [p.model_copy(update={"is_host": p.user_id == host_id}) for p in participants]


@dataclass
class JoinOutcome:
    """加入结果。

    Attributes:
        room: 加入前读取的房间快照。
        participant: 房间中该用户的成员记录。
        already_joined: 用户本来就在房间中（幂等加入）。
    """

    room: Room
    participant: Participant
    already_joined: bool = False


@dataclass
class LeaveOutcome:
    """离开结果。

    Attributes:
        left: 是否真的执行了离开（房间不存在或用户不在房间时为 False）。
        room_deleted: 离开后房间被删除。
        new_host_id: 发生房主迁移时的新房主。
    """

    left: bool
    room_deleted: bool = False
    new_host_id: str | None = None


class MembershipService:
    """成员状态机。

    Attributes:
        repository: 房间仓库。
        profiles: 用户资料更新器（可选，尽力而为）。
        anonymous_name: 匿名成员的统一昵称。
    """

    def __init__(
        self,
        repository: RoomRepository,
        profiles: ProfileUpdater | None = None,
        anonymous_name: str | None = None,
    ) -> None:
        self.repository = repository
        self.profiles = profiles
        self.anonymous_name = anonymous_name or settings.ANONYMOUS_DISPLAY_NAME

    async def join(
        self,
        room_id: str,
        user_id: str,
        display_name: str,
        photo_url: str | None = None,
        level: int = 0,
        *,
        username: str | None = None,
        is_anonymous: bool = False,
    ) -> JoinOutcome:
        """加入房间。

        重复加入同一房间是幂等的：不会产生重复成员，也不会报错。
        第一个成功加入的成员成为房主。

        Args:
            room_id: 目标房间。
            user_id: 用户 ID。
            display_name: 展示昵称（匿名时被占位名替换）。
            photo_url: 头像（匿名时丢弃）。
            level: 用户等级。
            username: 用户名。
            is_anonymous: 用户主动要求匿名。

        Raises:
            RoomNotFound: 房间不存在。
            RoomFull: 房间已满。
        """
        room = await self.repository.require_room(room_id)

        existing = room.find(user_id)
        if existing is not None:
            logger.info("用户已在房间中，幂等加入 | room=%s | user=%s", room_id, user_id)
            await best_effort_profile_update(self.profiles, user_id, room_id)
            return JoinOutcome(room=room, participant=existing, already_joined=True)

        if room.is_full:
            logger.info(
                "房间已满 | room=%s | %d/%d", room_id, len(room.participants), room.max_participants,
            )
            raise RoomFull()

        anonymous = is_anonymous or room.is_anonymous
        participant = Participant(
            user_id=user_id,
            display_name=self.anonymous_name if anonymous else display_name,
            username=None if anonymous else username,
            photo_url=None if anonymous else photo_url,
            level=level,
            is_host=room.is_empty,
            is_anonymous=anonymous,
            joined_at=utcnow(),
        )

        try:
            stored = await self.repository.add_participant(room_id, participant)
        except AlreadyJoined:
            # 同一用户的另一次请求抢先写入
            current = await self.repository.require_room(room_id)
            member = current.find(user_id)
            if member is None:
                raise RoomNotFound() from None
            return JoinOutcome(room=current, participant=member, already_joined=True)

        logger.info(
            "用户加入房间 | room=%s | user=%s | host=%s", room_id, user_id, stored.is_host,
        )
        await best_effort_profile_update(self.profiles, user_id, room_id)
        return JoinOutcome(room=room, participant=stored)

    async def leave(self, room_id: str, user_id: str) -> LeaveOutcome:
        """离开房间。

        房间不存在或用户不在房间中都视为已离开。最后一个成员离开时删除房间；
        房主离开时迁移给最早加入的剩余成员。
        """
        result = await self.repository.remove_participant(room_id, user_id, rewrite=self._rewrite)
        if not result.removed:
            logger.info("用户不在房间中，无需离开 | room=%s | user=%s", room_id, user_id)
            return LeaveOutcome(left=False)

        await best_effort_profile_update(self.profiles, user_id, None, only_if=room_id)

        if result.deleted:
            logger.info("最后一名成员离开，房间已删除 | room=%s | user=%s", room_id, user_id)
            return LeaveOutcome(left=True, room_deleted=True)

        new_host_id = result.host_id if result.host_changed else None
        if new_host_id:
            logger.info("房主已迁移 | room=%s | %s -> %s", room_id, user_id, new_host_id)
        logger.info(
            "用户离开房间 | room=%s | user=%s | 剩余 %d", room_id, user_id, len(result.remaining),
        )
        return LeaveOutcome(left=True, new_host_id=new_host_id)

    async def set_voice_state(
        self,
        room_id: str,
        user_id: str,
        *,
        is_muted: bool | None = None,
        is_speaking: bool | None = None,
    ) -> bool:
        """更新成员语音状态，与成员关系无关，不影响房主。"""
        return await self.repository.set_voice_state(
            room_id, user_id, is_muted=is_muted, is_speaking=is_speaking,
        )

    @staticmethod
    def _rewrite(
        room: Room,
        leaving: Participant,
        remaining: list[Participant],
    ) -> tuple[list[Participant], str | None]:
        """计算离开后的房主并修正所有成员的房主标记。"""
        was_host = leaving.is_host or room.host_id == leaving.user_id
        host_id = room.host_id
        if was_host or host_id not in {p.user_id for p in remaining}:
            host_id = elect_host(remaining).user_id
        return assign_host(remaining, host_id), host_id
