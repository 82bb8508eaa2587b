from __future__ import annotations

import threading
import time
from collections import deque
from typing import Deque, Generic, Optional, TypeVar

from fulfillment.errors import QueueClosed

T = TypeVar("T")


class FulfillmentQueue(Generic[T]):
    """Bounded FIFO between request handlers and the single worker.

    Holds transient copies only; anything pushed here was first written to
    the pending store, so losing the contents loses nothing.
    """

    def __init__(self, capacity: int = 100) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._items: Deque[T] = deque()
        self._closed = False
        self._cond = threading.Condition()

    def push(self, item: T, timeout: Optional[float] = None) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._closed and len(self._items) >= self.capacity:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise TimeoutError("fulfillment queue is full")
                self._cond.wait(remaining)
            if self._closed:
                raise QueueClosed("fulfillment queue is closed")
            self._items.append(item)
            self._cond.notify_all()

    def pull(self) -> Optional[T]:
        """Next item, blocking while empty. ``None`` once closed and drained."""
        with self._cond:
            while not self._items and not self._closed:
                self._cond.wait()
            if not self._items:
                return None
            item = self._items.popleft()
            self._cond.notify_all()
            return item

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)
