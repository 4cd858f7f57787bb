"""Background side writes.

Some publishes (the sender's self-copy, group key shares) must not block
or fail the call that triggered them. They run on a thread pool and are
returned as ``BackgroundTask`` objects so callers can still observe the
outcome; failures are logged when they happen.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTask:
    """Result channel for one background side write."""

    def __init__(self, name: str, future: Future):
        self.name = name
        self._future = future

    def __repr__(self) -> str:
        state = "done" if self.done() else "pending"
        return f"BackgroundTask({self.name!r}, {state})"

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: float | None = None) -> Any:
        """Wait for the task and return its result, re-raising its exception."""
        return self._future.result(timeout)

    def exception(self, timeout: float | None = None) -> BaseException | None:
        """Wait for the task and return its exception, or None on success."""
        return self._future.exception(timeout)

    @property
    def succeeded(self) -> bool:
        return self.done() and self._future.exception() is None


class TaskRunner:
    """Runs side writes on a private thread pool."""

    def __init__(self, max_workers: int = 4, name: str = "sealedlog"):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._pending: set[Future] = set()
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, name: str, fn: Callable[..., Any], *args, **kwargs) -> BackgroundTask:
        """Start ``fn`` in the background and return its task handle."""

        def _run() -> Any:
            try:
                return fn(*args, **kwargs)
            except Exception:
                logger.warning("Background task %s failed", name, exc_info=True)
                raise

        with self._lock:
            if self._closed:
                raise RuntimeError("TaskRunner is closed")
            future = self._executor.submit(_run)
            self._pending.add(future)

        def _finished(f: Future) -> None:
            with self._lock:
                self._pending.discard(f)

        future.add_done_callback(_finished)
        return BackgroundTask(name, future)

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def wait(self, timeout: float | None = None) -> None:
        """Wait for all pending tasks."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait_futures(pending, timeout=timeout)

    def close(self, timeout: float | None = None) -> None:
        """Wait for pending tasks, then shut the pool down."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.wait(timeout)
        self._executor.shutdown(wait=True)
