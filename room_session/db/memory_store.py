"""
room_session.db.memory_store
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

进程内的 ``RoomStore`` 实现。

用于本地调试（``ROOM_STORE_BACKEND=memory``）和测试。所有原语在同一把
``asyncio.Lock`` 下执行，语义与 MongoDB 实现一致；每个订阅者拥有独立的
``asyncio.Queue``，互不影响。
"""
from __future__ import annotations

import asyncio
import copy
import uuid
from collections import defaultdict
from collections.abc import AsyncIterator
from typing import Any

from room_session.core.logging import get_logger
from room_session.db.store import AppendResult, Document, RoomStore

logger = get_logger(__name__)


class MemoryRoomStore(RoomStore):
    """内存房间存储。

    Attributes:
        writes: 成功写入次数（便于测试断言）。
    """

    def __init__(self) -> None:
        self._docs: dict[str, Document] = {}
        self._lock = asyncio.Lock()
        self._watchers: dict[str, list[asyncio.Queue[Document | None]]] = defaultdict(list)
        self.writes = 0

    def _notify(self, room_id: str) -> None:
        """向该文档的所有订阅者推送当前快照（已删除则推送 None）。"""
        snapshot = self._docs.get(room_id)
        for queue in self._watchers.get(room_id, []):
            queue.put_nowait(copy.deepcopy(snapshot))

    def _committed(self, room_id: str) -> None:
        self.writes += 1
        self._notify(room_id)

    async def insert(self, document: Document) -> str:
        room_id = uuid.uuid4().hex
        async with self._lock:
            doc = copy.deepcopy(document)
            doc["id"] = room_id
            doc["version"] = 1
            self._docs[room_id] = doc
            self._committed(room_id)
        return room_id

    async def fetch(self, room_id: str) -> Document | None:
        async with self._lock:
            return copy.deepcopy(self._docs.get(room_id))

    async def find_active(self, limit: int) -> list[Document]:
        async with self._lock:
            active = [d for d in self._docs.values() if d.get("is_active", True)]
            active.sort(key=lambda d: d["created_at"], reverse=True)
            return copy.deepcopy(active[:limit])

    async def find_all(self) -> list[Document]:
        async with self._lock:
            return copy.deepcopy(list(self._docs.values()))

    async def append_unique(
        self,
        room_id: str,
        field: str,
        item: Document,
        *,
        key: str,
        capacity_field: str,
        counter_field: str,
        require_empty: bool | None = None,
        extra_set: Document | None = None,
    ) -> AppendResult:
        async with self._lock:
            doc = self._docs.get(room_id)
            if doc is None or not doc.get("is_active", True):
                return AppendResult.MISSING

            items: list[Document] = doc.setdefault(field, [])
            if any(existing.get(key) == item[key] for existing in items):
                return AppendResult.REJECTED
            if len(items) >= doc[capacity_field]:
                return AppendResult.REJECTED
            if require_empty is not None and require_empty == bool(items):
                return AppendResult.REJECTED

            items.append(copy.deepcopy(item))
            doc[counter_field] = doc.get(counter_field, 0) + 1
            if extra_set:
                doc.update(copy.deepcopy(extra_set))
            doc["version"] += 1
            self._committed(room_id)
            return AppendResult.APPENDED

    async def update_item(
        self,
        room_id: str,
        field: str,
        key: str,
        key_value: Any,
        changes: Document,
    ) -> bool:
        async with self._lock:
            doc = self._docs.get(room_id)
            if doc is None:
                return False
            for item in doc.get(field, []):
                if item.get(key) == key_value:
                    item.update(copy.deepcopy(changes))
                    doc["version"] += 1
                    self._committed(room_id)
                    return True
            return False

    async def compare_and_set(
        self,
        room_id: str,
        expected_version: int,
        changes: Document,
    ) -> bool:
        async with self._lock:
            doc = self._docs.get(room_id)
            if doc is None or doc["version"] != expected_version:
                return False
            doc.update(copy.deepcopy(changes))
            doc["version"] += 1
            self._committed(room_id)
            return True

    async def delete(self, room_id: str, expected_version: int | None = None) -> bool:
        async with self._lock:
            doc = self._docs.get(room_id)
            if doc is None:
                return False
            if expected_version is not None and doc["version"] != expected_version:
                return False
            del self._docs[room_id]
            self._committed(room_id)
            return True

    async def watch(self, room_id: str) -> AsyncIterator[Document | None]:
        queue: asyncio.Queue[Document | None] = asyncio.Queue()
        async with self._lock:
            queue.put_nowait(copy.deepcopy(self._docs.get(room_id)))
            self._watchers[room_id].append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            watchers = self._watchers.get(room_id, [])
            if queue in watchers:
                watchers.remove(queue)
            if not watchers:
                self._watchers.pop(room_id, None)
            logger.debug("内存订阅已关闭 | room=%s", room_id)
