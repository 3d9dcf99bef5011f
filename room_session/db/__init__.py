"""
room_session.db
~~~~~~~~~~~~~~~

存储层入口：MongoDB 连接管理 + 按配置选择 ``RoomStore`` 后端。

应用生命周期内最多持有一个 ``AsyncIOMotorClient``。房间订阅依赖
change stream，因此连接时会检查部署是否为副本集，不是则只告警
（加入 / 离开仍可用，订阅会立即中断）。
"""
from __future__ import annotations

from urllib.parse import urlparse, urlunparse

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from room_session.core.config import settings
from room_session.core.logging import get_logger
from room_session.db.memory_store import MemoryRoomStore
from room_session.db.mongo_store import MongoRoomStore
from room_session.db.store import RoomStore

logger = get_logger(__name__)

_client: AsyncIOMotorClient | None = None


def _mask_uri(uri: str) -> str:
    """隐藏 URI 中的密码。"""
    parsed = urlparse(uri)
    if not parsed.password:
        return uri
    netloc = f"{parsed.username}:***@{parsed.hostname}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return urlunparse(parsed._replace(netloc=netloc))


async def connect_mongo(uri: str | None = None, db_name: str | None = None) -> AsyncIOMotorDatabase:
    """建立连接池并返回数据库。应在 lifespan startup 中调用。

    Raises:
        pymongo.errors.PyMongoError: 无法连接或认证失败。
    """
    global _client
    uri = uri or settings.MONGO_URI
    db_name = db_name or settings.MONGO_DB_NAME
    # tz_aware: 读回的 datetime 带 UTC 时区，与模型层保持一致
    _client = AsyncIOMotorClient(uri, tz_aware=True)

    db = _client[db_name]
    try:
        await db.command("ping")
        hello = await _client.admin.command("hello")
    except Exception as e:
        logger.error("MongoDB 连接失败 | uri=%s | %s", _mask_uri(uri), e, exc_info=True)
        raise

    if "setName" not in hello:
        logger.warning("MongoDB 不是副本集，房间订阅（change stream）不可用")
    logger.info("MongoDB 已连接 | uri=%s | db=%s", _mask_uri(uri), db_name)
    return db


async def close_mongo() -> None:
    """关闭连接池。可重复调用。"""
    global _client
    if _client is None:
        return
    _client.close()
    _client = None
    logger.info("MongoDB 连接已关闭")


async def open_room_store() -> RoomStore:
    """按 ``ROOM_STORE_BACKEND`` 创建房间存储；mongo 后端会先建立连接。"""
    if settings.ROOM_STORE_BACKEND == "memory":
        logger.info("使用内存房间存储（数据不会持久化）")
        return MemoryRoomStore()
    db = await connect_mongo()
    return MongoRoomStore(db, settings.ROOMS_COLLECTION)
