"""
room_session.db.store
~~~~~~~~~~~~~~~~~~~~~

房间文档存储的抽象边界。

核心逻辑只依赖这里声明的原子原语，不关心底层是 MongoDB 还是内存实现:

  - 条件追加（唯一键 + 容量 + 可选「必须为空」），同时递增计数字段
  - 数组元素的定位更新
  - 基于 ``version`` 的比较并交换（CAS）
  - 整文档删除（可选条件删除）
  - 推送式变更订阅（整文档快照，删除时推送 ``None``）

所有写操作都会把文档的 ``version`` 加一。
"""
from __future__ import annotations

import abc
from collections.abc import AsyncIterator
from enum import Enum
from typing import Any

Document = dict[str, Any]


class AppendResult(str, Enum):
    """条件追加的结果。"""

    APPENDED = "appended"
    REJECTED = "rejected"  # 文档存在但条件不满足（重复 / 满员 / 非空）
    MISSING = "missing"    # 文档不存在或已逻辑删除


class RoomStore(abc.ABC):
    """房间文档存储。

    实现必须保证同一文档上的原子原语互相串行化；
    不同文档之间没有任何顺序保证。
    """

    @abc.abstractmethod
    async def insert(self, document: Document) -> str:
        """写入新文档并返回分配的 ID（``version`` 初始化为 1）。"""

    @abc.abstractmethod
    async def fetch(self, room_id: str) -> Document | None:
        """读取文档，不存在时返回 ``None``。"""

    @abc.abstractmethod
    async def find_active(self, limit: int) -> list[Document]:
        """按创建时间倒序返回最多 ``limit`` 个活跃房间。"""

    @abc.abstractmethod
    async def find_all(self) -> list[Document]:
        """返回全部房间文档（仅供维护任务使用）。"""

    @abc.abstractmethod
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
        """原子条件追加。

        仅当文档存在且 ``is_active``、``item[key]`` 不在数组中、
        数组长度小于 ``document[capacity_field]``、并且满足 ``require_empty``
        （True 要求数组为空，False 要求非空，None 不限），才追加 ``item``、
        递增 ``counter_field`` 并写入 ``extra_set``。
        """

    @abc.abstractmethod
    async def update_item(
        self,
        room_id: str,
        field: str,
        key: str,
        key_value: Any,
        changes: Document,
    ) -> bool:
        """原子更新数组中 ``item[key] == key_value`` 的那一项，返回是否命中。"""

    @abc.abstractmethod
    async def compare_and_set(
        self,
        room_id: str,
        expected_version: int,
        changes: Document,
    ) -> bool:
        """仅当当前 ``version == expected_version`` 时写入 ``changes``。"""

    @abc.abstractmethod
    async def delete(self, room_id: str, expected_version: int | None = None) -> bool:
        """删除文档。幂等；给出 ``expected_version`` 时为条件删除。

        Returns:
            本次调用是否真的删除了文档。
        """

    @abc.abstractmethod
    def watch(self, room_id: str) -> AsyncIterator[Document | None]:
        """订阅文档变更。

        先产出当前文档（不存在则为 ``None``），之后每次变更产出完整文档，
        文档被删除时产出 ``None``。
        """

    async def close(self) -> None:
        """释放资源（默认无操作）。"""
