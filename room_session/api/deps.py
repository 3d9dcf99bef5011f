"""
room_session.api.deps
~~~~~~~~~~~~~~~~~~~~~

路由依赖：从 ``app.state`` 取出门面与会话注册表。
"""
from __future__ import annotations

from fastapi import Request, WebSocket

from room_session.schemas.api_response import ApiResponse, status_for
from room_session.schemas.session import EntryResult
from room_session.services.session_facade import ClientSession, SessionFacade


class SessionRegistry:
    """按用户保存 ``ClientSession``，每个用户一把独立的加入锁。

    不在房间、没有进行中的加入且冷却已结束的会话没有需要保留的状态，
    由 ``prune()`` 回收；新用户创建会话时也会顺带回收一次。
    """

    def __init__(self) -> None:
        self._sessions: dict[str, ClientSession] = {}

    def get(self, user_id: str) -> ClientSession:
        session = self._sessions.get(user_id)
        if session is None:
            self.prune()
            session = ClientSession(user_id=user_id)
            self._sessions[user_id] = session
        return session

    def prune(self) -> int:
        """回收空闲会话，返回回收数量。"""
        idle = [
            user_id for user_id, session in self._sessions.items()
            if not session.in_room and session.can_join
        ]
        for user_id in idle:
            del self._sessions[user_id]
        return len(idle)

    def __len__(self) -> int:
        return len(self._sessions)


def get_facade(request: Request) -> SessionFacade:
    return request.app.state.facade


def get_sessions(request: Request) -> SessionRegistry:
    return request.app.state.sessions


def get_ws_facade(websocket: WebSocket) -> SessionFacade:
    return websocket.app.state.facade


def entry_response(result: EntryResult) -> ApiResponse[EntryResult]:
    """把 ``EntryResult`` 包装为统一应答体。"""
    if result.success:
        return ApiResponse.ok(data=result)
    return ApiResponse.fail(
        msg=result.error or "error", code=status_for(result.error_code), data=result,
    )
