"""
room_session.api.ws
~~~~~~~~~~~~~~~~~~~

WebSocket 房间快照推送。

``/ws/rooms/{room_id}``：连接后先收到当前快照，之后每次成员变化都会收到
完整快照。消息协议（JSON）:
  - ``{"type": "room", "room": {...}}`` —— 房间快照
  - ``{"type": "deleted"}``              —— 房间已删除，服务端随后关闭连接

订阅因存储故障中断时，服务端以 1011 关闭连接，客户端应稍后重连。

客户端发送 ``ping`` 会收到 ``{"type": "pong"}``，其他文本忽略。
"""
from __future__ import annotations

import asyncio
import uuid
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from room_session.api.deps import get_ws_facade
from room_session.core.logging import get_logger, request_id_ctx_var
from room_session.schemas.room import Room, RoomSnapshot

logger = get_logger(__name__)

router: APIRouter = APIRouter()

# 接收端结束的信号（区别于 ROOM_DELETED）
_CLOSED = object()
# 订阅推送任务结束的信号
_ENDED = object()


@router.websocket("/ws/rooms/{room_id}")
async def websocket_room_endpoint(websocket: WebSocket, room_id: str) -> None:
    """订阅指定房间的快照。

    Args:
        websocket: FastAPI WebSocket 连接对象。
        room_id: 房间 ID。
    """
    ws_req_id = f"ws-{uuid.uuid4().hex[:8]}"
    token = request_id_ctx_var.set(ws_req_id)

    try:
        await websocket.accept()
        facade = get_ws_facade(websocket)
        queue: asyncio.Queue[Any] = asyncio.Queue()

        def on_snapshot(snapshot: RoomSnapshot) -> None:
            queue.put_nowait(snapshot)

        subscription = facade.subscribe(room_id, on_snapshot)
        subscription.add_done_callback(lambda: queue.put_nowait(_ENDED))
        logger.info("房间订阅已建立 | room=%s", room_id)

        async def receive_loop() -> None:
            try:
                while True:
                    message = await websocket.receive_text()
                    if message.strip().lower() == "ping":
                        await websocket.send_json({"type": "pong"})
            except WebSocketDisconnect:
                pass
            except Exception as e:
                logger.error("WebSocket 接收异常: %s | room=%s", e, room_id, exc_info=True)
            finally:
                queue.put_nowait(_CLOSED)

        async def send_loop() -> None:
            try:
                while True:
                    snapshot = await queue.get()
                    if snapshot is _CLOSED:
                        break
                    if snapshot is _ENDED:
                        logger.warning(
                            "房间订阅已结束，关闭连接 | room=%s | %s", room_id, subscription.error,
                        )
                        await websocket.close(code=1011)
                        break
                    if isinstance(snapshot, Room):
                        await websocket.send_json(
                            {"type": "room", "room": snapshot.model_dump(mode="json")},
                        )
                        continue
                    await websocket.send_json({"type": "deleted"})
                    await websocket.close()
                    break
            except Exception as e:
                logger.error("WebSocket 推送异常: %s | room=%s", e, room_id, exc_info=True)

        receiver = asyncio.create_task(receive_loop())
        try:
            await send_loop()
        finally:
            receiver.cancel()
            await asyncio.gather(receiver, return_exceptions=True)
            subscription.cancel()
            await subscription.wait_closed()
            logger.info("房间订阅已关闭 | room=%s", room_id)

    finally:
        request_id_ctx_var.reset(token)
