"""
room_session.core.retry
~~~~~~~~~~~~~~~~~~~~~~~

存储操作的有限次重试（指数退避）。

只对瞬时错误重试；``RoomNotFound`` / ``RoomFull`` 这类永久性错误
不应出现在 ``retry_on`` 中，直接交还给调用方。
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from room_session.core.errors import StoreUnavailable
from room_session.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


async def with_store_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
    retry_on: tuple[type[BaseException], ...] = (StoreUnavailable,),
    label: str = "store",
) -> T:
    """执行一个异步操作，遇到 ``retry_on`` 中的错误时退避重试。

    Args:
        operation: 无参异步可调用对象，每次重试都会重新调用。
        attempts: 最大尝试次数（含第一次）。
        base_delay: 退避基础间隔，第 n 次重试前等待 ``base_delay * 2**n`` 秒。
        retry_on: 需要重试的异常类型。
        label: 日志中的操作名。

    Returns:
        ``operation`` 的返回值。

    Raises:
        最后一次尝试抛出的异常。
    """
    for attempt in range(attempts):
        try:
            return await operation()
        except retry_on as e:
            if attempt + 1 >= attempts:
                logger.warning("%s 重试耗尽 (%d 次): %s", label, attempts, e)
                raise
            delay = base_delay * (2 ** attempt)
            logger.info(
                "%s 第 %d 次失败，%.2fs 后重试: %s",
                label, attempt + 1, delay, e,
            )
            await asyncio.sleep(delay)
    raise RuntimeError("attempts 必须大于 0")
