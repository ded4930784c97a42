"""Per-order critical sections.

State transitions for one order id are mutually exclusive; transitions
for different orders never wait on each other. ``KeyedLocks`` keeps one
``threading.Lock`` per order id while somebody holds or waits on it and
drops it afterwards, so the table does not grow with the order count.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator

from .domain import OrderBusy


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class KeyedLocks:
    """In-process lock table keyed by order id.

    Only serializes threads of the same process. Deployments running
    several worker processes should use ``repository.RowLocks`` instead.
    """

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._entries: Dict[str, _Entry] = {}

    @contextmanager
    def hold(self, order_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(order_id)
            if entry is None:
                entry = self._entries[order_id] = _Entry()
            entry.users += 1

        acquired = entry.lock.acquire(timeout=self.timeout)
        try:
            if not acquired:
                raise OrderBusy(order_id=order_id)
            yield
        finally:
            if acquired:
                entry.lock.release()
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    self._entries.pop(order_id, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
