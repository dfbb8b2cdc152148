# Copyright 2025 Softwell S.r.l.
# Licensed under the Apache License, Version 2.0

"""
Thread pool for blocking native calls using ThreadPoolExecutor.

Purpose
=======
ThreadPool wraps concurrent.futures.ThreadPoolExecutor to run blocking
native calls off the loop thread. Native rendering libraries release the
GIL while they work, so threads give real parallelism without the
pickling constraints of a process pool.

Features:
- Bounded worker count (no unbounded thread creation)
- Bypass mode (pool=None) for testing without spawning threads
- Cancellation of closures that have not started
- Metrics collection (submitted, completed, failed, cancelled, avg duration)

Definition::

    class ThreadPool(BasePool):
        __slots__ = ("name", "pool", "_lock", "_metrics", "_closed")

        def __init__(
            self,
            name: str = "default",
            max_workers: int | None = None,
            initializer: Callable | None = None,
            initargs: tuple = (),
            bypass: bool = False,
        )
        def submit(self, closure, callback, priority=0) -> WorkHandle
        def shutdown(self, wait: bool = True) -> None
        @property
        def metrics(self) -> dict

Example::

    from loopexec.pools import ThreadPool

    pool = ThreadPool(name="render", max_workers=2)
    pool.submit(lambda: render(page), lambda outcome: print(outcome))

Bypass Mode::

    # For testing - the closure runs inline inside submit()
    pool = ThreadPool(name="test", bypass=True)

Environment Variable::

    # Set LOOPEXEC_POOL_BYPASS=1 to bypass all ThreadPools
    import os
    os.environ['LOOPEXEC_POOL_BYPASS'] = '1'

Design Notes
============
- Priorities are accepted and ignored; use PriorityPool when they matter.
- ThreadPoolExecutor runs done-callbacks of cancelled futures on the
  cancelling thread. Those are filtered so the completion callback only
  fires for closures that ran, or for work dropped by shutdown.
"""

from __future__ import annotations

import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from functools import partial
from typing import Any, Callable

from ..exceptions import ExecutorShutdown
from ..types import Outcome
from .base import BasePool, Completion, FinishedWork, WorkHandle

__all__ = ["ThreadPool"]


class _FutureWork(WorkHandle):
    __slots__ = ("future", "cancel_requested")

    def __init__(self, future: Future[Outcome]) -> None:
        self.future = future
        self.cancel_requested = False

    def cancel(self) -> bool:
        self.cancel_requested = True
        return self.future.cancel()

    def is_finished(self) -> bool:
        return self.future.done()

    def wait(self, timeout: float | None = None) -> bool:
        done, _ = wait_futures([self.future], timeout=timeout)
        return bool(done)


class ThreadPool(BasePool):
    """
    Pool using a local ThreadPoolExecutor.

    Attributes:
        name: Identifier for this pool (used in metrics/logging).
        pool: The ThreadPoolExecutor, or None in bypass mode.

    Example:
        >>> pool = ThreadPool(name="search", max_workers=4)
        >>> work = pool.submit(lambda: doc.search("x"), on_done)
        >>> pool.shutdown()
    """

    __slots__ = ("name", "pool", "_lock", "_metrics", "_closed")

    def __init__(
        self,
        name: str = "default",
        max_workers: int | None = None,
        initializer: Callable[..., None] | None = None,
        initargs: tuple[Any, ...] = (),
        bypass: bool = False,
    ) -> None:
        """
        Initialize ThreadPool.

        Args:
            name: Identifier for metrics and logging.
            max_workers: Number of worker threads (default: ThreadPoolExecutor's).
            initializer: Function called once per worker at startup.
            initargs: Arguments passed to initializer.
            bypass: If True, run closures inline without threads (for testing).
        """
        self.name = name
        self._lock = threading.Lock()
        self._closed = False

        # Check environment for global bypass
        env_bypass = os.environ.get("LOOPEXEC_POOL_BYPASS") == "1"

        if bypass or env_bypass:
            self.pool: ThreadPoolExecutor | None = None
        else:
            self.pool = ThreadPoolExecutor(
                max_workers=max_workers,
                thread_name_prefix=f"loopexec-{name}",
                initializer=initializer,
                initargs=initargs,
            )

        self._metrics = {
            "submitted": 0,
            "completed": 0,
            "failed": 0,
            "cancelled": 0,
            "total_duration_ms": 0.0,
        }

    @property
    def metrics(self) -> dict[str, Any]:
        """
        Return current pool metrics.

        Returns:
            Dict with name, mode, pending, submitted, completed, failed,
            cancelled, avg_duration_ms.
        """
        with self._lock:
            m = dict(self._metrics)
        finished = m["completed"] + m["failed"]
        return {
            "name": self.name,
            "mode": "bypass" if self.pool is None else "thread",
            "pending": m["submitted"] - finished - m["cancelled"],
            "submitted": m["submitted"],
            "completed": m["completed"],
            "failed": m["failed"],
            "cancelled": m["cancelled"],
            "avg_duration_ms": m["total_duration_ms"] / finished if finished > 0 else 0.0,
        }

    def submit(
        self,
        closure: Callable[[], Any],
        callback: Completion,
        priority: int = 0,
    ) -> WorkHandle:
        """
        Submit a closure for execution in the thread pool.

        Args:
            closure: The blocking work.
            callback: Receives the Outcome on the worker thread.
            priority: Ignored.

        Returns:
            WorkHandle for the submission.

        Raises:
            ExecutorShutdown: If the pool has been shut down.
        """
        if self._closed:
            raise ExecutorShutdown(f"Pool {self.name!r} is shut down")

        with self._lock:
            self._metrics["submitted"] += 1

        # Bypass mode: run synchronously
        if self.pool is None:
            self._finish(callback, Outcome.capture(closure))
            return FinishedWork()

        future = self.pool.submit(Outcome.capture, closure)
        work = _FutureWork(future)
        future.add_done_callback(partial(self._on_done, callback, work))
        return work

    def _on_done(self, callback: Completion, work: _FutureWork, future: Future[Outcome]) -> None:
        if future.cancelled():
            if work.cancel_requested:
                with self._lock:
                    self._metrics["cancelled"] += 1
                return
            outcome = Outcome.failure(ExecutorShutdown(f"Pool {self.name!r} shut down before the call ran"))
        else:
            outcome = future.result()
        self._finish(callback, outcome)

    def _finish(self, callback: Completion, outcome: Outcome) -> None:
        with self._lock:
            self._metrics["completed" if outcome.ok else "failed"] += 1
            self._metrics["total_duration_ms"] += outcome.duration_ms
        self._deliver(callback, outcome)

    def shutdown(self, wait: bool = True) -> None:
        """
        Shutdown the thread pool.

        Args:
            wait: If True, wait for queued closures to complete. If False,
                queued closures are dropped and reported as failures.
        """
        self._closed = True
        if self.pool is not None:
            self.pool.shutdown(wait=wait, cancel_futures=not wait)

    def __repr__(self) -> str:
        """Return string representation."""
        mode = "bypass" if self.pool is None else "thread"
        return f"ThreadPool(name={self.name!r}, mode={mode})"
