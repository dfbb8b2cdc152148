# Copyright 2025 Softwell S.r.l.
# Licensed under the Apache License, Version 2.0

"""Cross-thread event that tasks can await.

An Event is the externally driven suspension point: a toolkit signal
handler, a timer callback or a worker thread calls ``set()``, and every
task suspended in ``await event.wait()`` is woken.

Example::

    document_loaded = Event()

    async def show_outline():
        await document_loaded.wait()
        return await run_blocking(read_outline, doc)

    # later, from any thread
    document_loaded.set()
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from .computation import Computation, Context
from .types import PENDING, Poll, Ready

if TYPE_CHECKING:
    from .waker import Waker

__all__ = ["Event"]


class Event:
    """Thread-safe flag whose waiters are tasks."""

    __slots__ = ("_flag", "_waiters", "_lock")

    def __init__(self) -> None:
        self._flag = False
        self._waiters: list[Waker] = []
        self._lock = threading.Lock()

    def is_set(self) -> bool:
        return self._flag

    def set(self) -> None:
        """Set the flag and wake every waiting task. Safe from any thread."""
        with self._lock:
            self._flag = True
            waiters, self._waiters = self._waiters, []
        for waker in waiters:
            waker.wake()

    def clear(self) -> None:
        with self._lock:
            self._flag = False

    def wait(self) -> Computation:
        """Computation that finishes once the flag is set."""
        return _EventWait(self)

    def _register(self, waker: Waker) -> bool:
        with self._lock:
            if self._flag:
                return False
            if waker not in self._waiters:
                self._waiters.append(waker)
            return True

    def _discard(self, waker: Waker) -> None:
        with self._lock:
            if waker in self._waiters:
                self._waiters.remove(waker)

    def __repr__(self) -> str:
        state = "set" if self._flag else "unset"
        return f"Event({state}, waiters={len(self._waiters)})"


class _EventWait(Computation):
    __slots__ = ("_event", "_waker")

    def __init__(self, event: Event) -> None:
        self._event = event
        self._waker: Waker | None = None

    def poll(self, cx: Context) -> Poll:
        if self._event.is_set() or not self._event._register(cx.waker):
            return Ready(True)
        self._waker = cx.waker
        return PENDING

    def on_cancel(self, cx: Context | None) -> None:
        if self._waker is not None:
            self._event._discard(self._waker)
