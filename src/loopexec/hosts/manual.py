# Copyright 2025 Softwell S.r.l.
# Licensed under the Apache License, Version 2.0

"""
ManualLoop: a minimal host loop driven by the caller.

Used by tests and by the ``bench`` command. Callbacks scheduled from any
thread are queued; the thread that calls ``run_pending()`` or
``run_until()`` becomes the loop thread.

Example::

    loop = ManualLoop()
    executor = Executor(loop)
    handle = executor.spawn(work())
    value = loop.run_until_complete(handle, timeout=5.0)
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any, Callable

__all__ = ["ManualLoop"]

logger = logging.getLogger("loopexec.hosts")


class ManualLoop:
    """
    Thread-safe callback queue run on demand.

    Attributes:
        ran: Number of callbacks run so far.
    """

    __slots__ = ("_callbacks", "_cond", "ran")

    def __init__(self) -> None:
        self._callbacks: deque[Callable[[], object]] = deque()
        self._cond = threading.Condition()
        self.ran = 0

    def call_soon_threadsafe(self, callback: Callable[[], object]) -> None:
        with self._cond:
            self._callbacks.append(callback)
            self._cond.notify()

    def run_pending(self, timeout: float = 0.0) -> int:
        """
        Run the callbacks queued so far.

        Callbacks scheduled while these run wait for the next call.

        Args:
            timeout: Seconds to wait for a first callback if none is queued.

        Returns:
            Number of callbacks run.
        """
        with self._cond:
            if not self._callbacks and timeout > 0:
                self._cond.wait(timeout)
            batch = list(self._callbacks)
            self._callbacks.clear()
        for callback in batch:
            try:
                callback()
            except Exception:
                logger.exception(f"Loop callback {callback!r} failed")
        self.ran += len(batch)
        return len(batch)

    def run_until(self, predicate: Callable[[], bool], timeout: float | None = None) -> bool:
        """
        Run callbacks until predicate() is true.

        Returns:
            True if predicate became true, False on timeout.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while not predicate():
            if deadline is None:
                wait = 0.05
            else:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                wait = min(remaining, 0.05)
            self.run_pending(timeout=wait)
        return True

    def run_until_complete(self, handle: Any, timeout: float | None = None) -> Any:
        """
        Run callbacks until the task behind handle finishes.

        Returns:
            The task's value (handle.result()).

        Raises:
            TimeoutError: If the task is still running after timeout.
        """
        if not self.run_until(handle.done, timeout):
            raise TimeoutError(f"{handle!r} did not finish within {timeout}s")
        return handle.result()

    def __len__(self) -> int:
        return len(self._callbacks)

    def __repr__(self) -> str:
        return f"ManualLoop(queued={len(self._callbacks)}, ran={self.ran})"
