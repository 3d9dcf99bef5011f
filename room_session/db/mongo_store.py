"""
room_session.db.mongo_store
~~~~~~~~~~~~~~~~~~~~~~~~~~~

基于 MongoDB（``motor``）的 ``RoomStore`` 实现。

每个原子原语都映射为单条 ``update_one`` / ``delete_one``，依赖 MongoDB
对单文档写入的原子性；容量检查通过 ``$expr`` + ``$size`` 放进过滤条件，
因此「检查容量」和「追加成员」之间不存在竞态窗口。

变更订阅使用 change stream（要求副本集部署）。
"""
from __future__ import annotations

import uuid
from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from typing import Any

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING
from pymongo.errors import ConnectionFailure, PyMongoError

from room_session.core.errors import StoreUnavailable
from room_session.core.logging import get_logger
from room_session.db.store import AppendResult, Document, RoomStore

logger = get_logger(__name__)

# 集合名称
_COLLECTION_NAME = "rooms"


@contextmanager
def _store_errors(
    operation: str,
    errors: type[PyMongoError] | tuple[type[PyMongoError], ...] = ConnectionFailure,
) -> Iterator[None]:
    """把 pymongo 的连接类故障统一翻译为 ``StoreUnavailable``。"""
    try:
        yield
    except errors as e:
        # AutoReconnect / NetworkTimeout / ServerSelectionTimeoutError 均为其子类
        raise StoreUnavailable(f"MongoDB 不可用（{operation}）: {e}") from e


def _to_document(raw: dict[str, Any]) -> Document:
    """``_id`` → ``id``。"""
    doc = dict(raw)
    doc["id"] = str(doc.pop("_id"))
    return doc


class MongoRoomStore(RoomStore):
    """MongoDB 房间存储。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase, collection_name: str = _COLLECTION_NAME) -> None:
        self.db = db
        self._collection = db[collection_name]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        await self._collection.create_index(
            [("is_active", 1), ("created_at", DESCENDING)],
            name="idx_active_created",
        )
        self._indexes_created = True
        logger.debug("rooms 索引已就绪")

    async def insert(self, document: Document) -> str:
        room_id = uuid.uuid4().hex
        doc = {k: v for k, v in document.items() if k != "id"}
        doc["_id"] = room_id
        doc["version"] = 1
        with _store_errors("insert"):
            await self._ensure_indexes()
            await self._collection.insert_one(doc)
        return room_id

    async def fetch(self, room_id: str) -> Document | None:
        with _store_errors("fetch"):
            raw = await self._collection.find_one({"_id": room_id})
        return _to_document(raw) if raw is not None else None

    async def find_active(self, limit: int) -> list[Document]:
        with _store_errors("find_active"):
            await self._ensure_indexes()
            cursor = (
                self._collection
                .find({"is_active": True})
                .sort("created_at", DESCENDING)
                .limit(limit)
            )
            rows = await cursor.to_list(length=limit)
        return [_to_document(row) for row in rows]

    async def find_all(self) -> list[Document]:
        with _store_errors("find_all"):
            rows = await self._collection.find({}).to_list(length=None)
        return [_to_document(row) for row in rows]

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
        size_expr = {"$size": {"$ifNull": [f"${field}", []]}}
        conditions: list[dict[str, Any]] = [{"$lt": [size_expr, f"${capacity_field}"]}]
        if require_empty is True:
            conditions.append({"$eq": [size_expr, 0]})
        elif require_empty is False:
            conditions.append({"$gt": [size_expr, 0]})

        query: dict[str, Any] = {
            "_id": room_id,
            "is_active": True,
            f"{field}.{key}": {"$ne": item[key]},
            "$expr": {"$and": conditions},
        }
        update: dict[str, Any] = {
            "$push": {field: item},
            "$inc": {counter_field: 1, "version": 1},
        }
        if extra_set:
            update["$set"] = extra_set

        with _store_errors("append_unique"):
            result = await self._collection.update_one(query, update)
            if result.modified_count:
                return AppendResult.APPENDED
            exists = await self._collection.count_documents(
                {"_id": room_id, "is_active": True}, limit=1,
            )
        return AppendResult.REJECTED if exists else AppendResult.MISSING

    async def update_item(
        self,
        room_id: str,
        field: str,
        key: str,
        key_value: Any,
        changes: Document,
    ) -> bool:
        update = {
            "$set": {f"{field}.$.{name}": value for name, value in changes.items()},
            "$inc": {"version": 1},
        }
        with _store_errors("update_item"):
            result = await self._collection.update_one(
                {"_id": room_id, f"{field}.{key}": key_value}, update,
            )
        return result.modified_count > 0

    async def compare_and_set(
        self,
        room_id: str,
        expected_version: int,
        changes: Document,
    ) -> bool:
        with _store_errors("compare_and_set"):
            result = await self._collection.update_one(
                {"_id": room_id, "version": expected_version},
                {"$set": changes, "$inc": {"version": 1}},
            )
        return result.modified_count > 0

    async def delete(self, room_id: str, expected_version: int | None = None) -> bool:
        query: dict[str, Any] = {"_id": room_id}
        if expected_version is not None:
            query["version"] = expected_version
        with _store_errors("delete"):
            result = await self._collection.delete_one(query)
        return result.deleted_count > 0

    async def watch(self, room_id: str) -> AsyncIterator[Document | None]:
        pipeline = [{"$match": {"documentKey._id": room_id}}]
        # 单机部署不支持 change stream（OperationFailure），同样按不可用处理
        with _store_errors("watch", PyMongoError):
            # 先打开 change stream 再读当前文档，避免两者之间的变更丢失
            async with self._collection.watch(pipeline, full_document="updateLookup") as stream:
                yield await self.fetch(room_id)
                async for change in stream:
                    if change["operationType"] == "delete":
                        yield None
                    elif change.get("fullDocument") is not None:
                        yield _to_document(change["fullDocument"])
                    else:
                        yield await self.fetch(room_id)
