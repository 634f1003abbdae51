"""Per-item mutual exclusion and cooperative cancellation."""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from .errors import Busy, OperationCancelled

logger = logging.getLogger(__name__)


class ItemLocks:
    """
    One lock per item id. Acquisition waits at most ``timeout`` seconds and
    then raises ``Busy`` instead of blocking the caller indefinitely.
    """

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, item_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(item_id)
            if lock is None:
                lock = self._locks[item_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, item_id: str, timeout: Optional[float] = None) -> Iterator[None]:
        lock = self._lock_for(item_id)
        wait = self.timeout if timeout is None else timeout
        if not lock.acquire(timeout=wait):
            logger.info("item %s busy after %.2fs", item_id, wait)
            raise Busy(f"Item {item_id} is busy, retry shortly")
        try:
            yield
        finally:
            lock.release()


class CancelToken:
    """
    Cancellation signal with an optional deadline (seconds from creation).

    Operations call ``check()`` before their commit point; a cancelled or
    expired token raises ``OperationCancelled`` and nothing is written.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def check(self) -> None:
        if self.cancelled:
            raise OperationCancelled()
