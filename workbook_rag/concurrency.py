"""
Locks, bounded worker pools and cancellation tokens shared by the ingestion
and query pipelines.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional

from .errors import PoolSaturated, RetrievalTimeout

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """
    Readers-writer lock with writer preference.
    - Multiple readers can hold the lock concurrently.
    - Writers have exclusive access and are favored to avoid starvation.
    Not reentrant: a reader must not acquire it again while a writer waits.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read_lock(self):
        with self._cond:
            while self._writer or self._waiting_writers > 0:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_lock(self):
        with self._cond:
            self._waiting_writers += 1
            while self._writer or self._readers > 0:
                self._cond.wait()
            self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class KeyedLocks:
    """One mutex per key (workbook id). Distinct keys never contend."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str):
        lock = self.lock_for(key)
        with lock:
            yield


class CancelToken:
    """
    Deadline and/or explicit cancellation carried by every external call.

    `remaining()` is None when there is no deadline, 0.0 once expired or
    cancelled.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self._deadline = (time.monotonic() + timeout) if timeout is not None else None
        self._event = threading.Event()
        self._parent: Optional["CancelToken"] = None

    def child(self, timeout: Optional[float]) -> "CancelToken":
        """Token that fires after `timeout` or when this one fires, whichever is first."""
        remaining = self.remaining()
        if timeout is None:
            limit = remaining
        elif remaining is None:
            limit = timeout
        else:
            limit = min(timeout, remaining)
        tok = CancelToken(limit)
        tok._parent = self
        return tok

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set() or (self._parent is not None and self._parent.cancelled):
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> Optional[float]:
        if self._event.is_set() or (self._parent is not None and self._parent.cancelled):
            return 0.0
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self, what: str = "operation") -> None:
        if self.cancelled:
            raise RetrievalTimeout(f"{what} cancelled or past its deadline")


def wait_future(fut: Future, token: Optional[CancelToken], poll: float = 0.05) -> Any:
    """
    Wait for `fut` while honoring `token`. Raises RetrievalTimeout when the
    token fires first; the future itself keeps running.
    """
    if token is None:
        return fut.result()
    while True:
        remaining = token.remaining()
        if remaining is not None and remaining <= 0.0:
            raise RetrievalTimeout("wait abandoned: token cancelled or expired")
        slice_s = poll if remaining is None else min(poll, remaining)
        try:
            return fut.result(timeout=slice_s)
        except FutureTimeout:
            continue


class BoundedExecutor:
    """
    Thread pool with bounded admission (workers + queue_size in flight).

    When full, `submit` blocks (block=True) or raises PoolSaturated, so
    callers feel backpressure instead of growing an unbounded queue.
    """

    def __init__(
        self,
        max_workers: int,
        queue_size: int = 0,
        name: str = "pool",
        block: bool = True,
        submit_timeout: Optional[float] = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.name = name
        self.block = block
        self.submit_timeout = submit_timeout
        self.capacity = max_workers + max(0, queue_size)
        self._slots = threading.BoundedSemaphore(self.capacity)
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._closed = False

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        if self._closed:
            raise RuntimeError(f"{self.name} executor is shut down")
        if self.block:
            acquired = self._slots.acquire(timeout=self.submit_timeout)
        else:
            acquired = self._slots.acquire(blocking=False)
        if not acquired:
            raise PoolSaturated(f"{self.name} pool is full ({self.capacity} tasks in flight)")
        try:
            fut = self._pool.submit(fn, *args, **kwargs)
        except Exception:
            self._slots.release()
            raise
        fut.add_done_callback(lambda _f: self._slots.release())
        return fut

    def shutdown(self, wait: bool = True) -> None:
        self._closed = True
        self._pool.shutdown(wait=wait)
