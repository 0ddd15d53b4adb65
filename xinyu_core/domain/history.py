"""对话历史账本。

HistoryLedger 是对话记忆的唯一持有者：

- 只在尾部追加，超出容量时从头部淘汰（FIFO），始终保留最近的若干条。
- 容量修改立即生效，缩小容量会马上从头部淘汰。
- 不保存 system prompt，system 消息在构造请求时按需注入。

调用方线程（请求前追加 user）与流完成回调（请求后追加 assistant）
可能同时访问账本，所有读写操作都在同一把锁内互斥执行，
读取方只会看到完整生效的修改，不会看到淘汰到一半的状态。
"""

import threading
from collections import deque
from typing import Deque, Tuple

from xinyu_core.domain.models import Role, Turn


class HistoryLedger:
    def __init__(self, capacity: int = 10):
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self._capacity = capacity
        self._turns: Deque[Turn] = deque()
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        with self._lock:
            return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._turns)

    def append(self, role: Role, content: str) -> None:
        with self._lock:
            self._append_locked(Turn(role=role, content=content))

    def append_and_snapshot(self, role: Role, content: str) -> Tuple[Turn, ...]:
        """追加一条消息并返回追加后的快照，两步之间不会插入其他修改。"""

        with self._lock:
            self._append_locked(Turn(role=role, content=content))
            return tuple(self._turns)

    def set_capacity(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        with self._lock:
            self._capacity = capacity
            self._evict_locked()

    def snapshot(self) -> Tuple[Turn, ...]:
        """返回当前历史的不可变副本，而非实时视图。"""

        with self._lock:
            return tuple(self._turns)

    def clear(self) -> None:
        with self._lock:
            self._turns.clear()

    def _append_locked(self, turn: Turn) -> None:
        self._turns.append(turn)
        self._evict_locked()

    def _evict_locked(self) -> None:
        while len(self._turns) > self._capacity:
            self._turns.popleft()
