# Copyright 2025 Softwell S.r.l.
# Licensed under the Apache License, Version 2.0

"""
Blocking bridge: run native calls on worker threads, await them on the loop.

Purpose
=======
The bridge is the only sanctioned path from a computation to a blocking
call (page rendering, text search, document loading). The call runs on a
worker pool. The awaiting task is suspended and woken once the result is
in its slot.

Features:
- Submission on first poll, no resubmission on later polls
- Result slot written by the worker before the waker is invoked
- Every worker-side exception delivered as an error outcome
- Backpressure: at most ``max_pending`` calls in the pool, the rest queue
  inside the bridge until a slot frees up. Work is never dropped.
- Cancellation of calls that have not started yet
- Metrics collection (submitted, completed, failed, cancelled, deferred)

Definition::

    class BlockingHandle:
        func, args, kwargs, priority, waker
        done: bool
        def take(self) -> Outcome

    class BlockingBridge:
        def __init__(self, pool: BasePool, max_pending: int = 256, name: str = "default")
        def dispatch(self, handle: BlockingHandle) -> None
        def cancel(self, handle: BlockingHandle) -> bool
        @property
        def metrics(self) -> dict

    class BlockingFuture(Computation):
        def poll(self, cx) -> Poll            # Ready(value) or raises BlockingCallError
        def settled(self) -> Computation      # Ready(Outcome), never raises

    def run_blocking(func, *args, priority=0, **kwargs) -> BlockingFuture
    def blocking(func) -> Callable[..., BlockingFuture]

Example::

    from loopexec import run_blocking, blocking

    @blocking
    def render_page(doc, index, scale):
        return doc.page(index).render(scale)      # native, blocking

    async def show(doc):
        bitmap = await render_page(doc, 0, 2.0)
        matches = await run_blocking(doc.search, "needle", priority=2)
        return bitmap, matches

Design Notes
============
- Slot handoff: the worker assigns the outcome, then sets ``done``, then
  calls the waker. The loop thread reads ``done`` before the outcome.
  Under the GIL attribute stores are seen in program order by other
  threads, which gives the release/acquire pairing the handoff needs.
- The waker is captured once, at submission. A future is awaited by a
  single task.
- A future that is not bound to a bridge binds to the bridge of the
  executor that polls it.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from functools import partial, wraps
from typing import TYPE_CHECKING, Any, Callable, TypeVar

from .computation import Computation, Context
from .exceptions import BlockingCallError, ProtocolViolation
from .types import PENDING, Outcome, Poll, Ready

if TYPE_CHECKING:
    from .pools.base import BasePool, WorkHandle
    from .waker import Waker

__all__ = [
    "BlockingBridge",
    "BlockingFuture",
    "BlockingHandle",
    "blocking",
    "run_blocking",
]

F = TypeVar("F", bound=Callable[..., Any])

logger = logging.getLogger("loopexec.blocking")


class BlockingHandle:
    """
    One offloaded call and its result slot.

    Attributes:
        func: The blocking callable.
        args: Positional arguments captured for func.
        kwargs: Keyword arguments captured for func.
        priority: Pool priority (ignored by pools without priorities).
        waker: Waker invoked exactly once after the slot is written.
        work: Pool handle, set once the call has been submitted.
        cancelled: True once the awaiting task gave up on the call.
    """

    __slots__ = (
        "func",
        "args",
        "kwargs",
        "priority",
        "waker",
        "work",
        "cancelled",
        "done",
        "_outcome",
    )

    def __init__(
        self,
        func: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        waker: Waker,
        priority: int = 0,
    ) -> None:
        self.func = func
        self.args = args
        self.kwargs = kwargs
        self.priority = priority
        self.waker = waker
        self.work: WorkHandle | None = None
        self.cancelled = False
        self.done = False
        self._outcome: Outcome | None = None

    @property
    def func_name(self) -> str:
        return getattr(self.func, "__qualname__", repr(self.func))

    def complete(self, outcome: Outcome) -> None:
        """Write the slot. Worker thread, exactly once."""
        self._outcome = outcome
        self.done = True

    def take(self) -> Outcome:
        """Remove the outcome from the slot. Loop thread, after done."""
        outcome = self._outcome
        if outcome is None:
            raise ProtocolViolation(f"Result of {self.func_name} already taken or not ready")
        self._outcome = None
        return outcome

    def __repr__(self) -> str:
        state = "done" if self.done else ("cancelled" if self.cancelled else "pending")
        return f"BlockingHandle({self.func_name}, {state})"


class BlockingBridge:
    """
    Dispatches blocking handles to a pool with bounded concurrency.

    Attributes:
        name: Identifier used in metrics and logging.
        pool: The worker pool receiving the calls.
        max_pending: Maximum calls handed to the pool at once.
    """

    __slots__ = ("name", "pool", "max_pending", "_lock", "_in_flight", "_deferred", "_metrics")

    def __init__(self, pool: BasePool, max_pending: int = 256, name: str = "default") -> None:
        if max_pending < 1:
            raise ValueError(f"max_pending must be >= 1, got {max_pending}")
        self.name = name
        self.pool = pool
        self.max_pending = max_pending
        self._lock = threading.Lock()
        self._in_flight = 0
        self._deferred: deque[BlockingHandle] = deque()
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
        Return current bridge metrics.

        Returns:
            Dict with name, in_flight, deferred, submitted, completed,
            failed, cancelled, avg_duration_ms.
        """
        with self._lock:
            finished = self._metrics["completed"] + self._metrics["failed"]
            return {
                "name": self.name,
                "in_flight": self._in_flight,
                "deferred": len(self._deferred),
                "submitted": self._metrics["submitted"],
                "completed": self._metrics["completed"],
                "failed": self._metrics["failed"],
                "cancelled": self._metrics["cancelled"],
                "avg_duration_ms": (
                    self._metrics["total_duration_ms"] / finished if finished > 0 else 0.0
                ),
            }

    def dispatch(self, handle: BlockingHandle) -> None:
        """Submit handle to the pool, or queue it if the pool is saturated."""
        with self._lock:
            self._metrics["submitted"] += 1
            if self._in_flight >= self.max_pending:
                self._deferred.append(handle)
                logger.debug(f"Deferred {handle.func_name}: {self._in_flight} calls in flight")
                return
            self._in_flight += 1
        self._submit(handle)

    def cancel(self, handle: BlockingHandle) -> bool:
        """
        Give up on handle.

        Returns True if the call will never run. A call already running
        finishes on its worker, and its wake lands on a finished task.
        """
        if handle.done or handle.cancelled:
            return False
        handle.cancelled = True
        with self._lock:
            if handle in self._deferred:
                self._deferred.remove(handle)
                self._metrics["cancelled"] += 1
                return True
        work = handle.work
        if work is not None and work.cancel():
            with self._lock:
                self._metrics["cancelled"] += 1
            self._release()
            return True
        return False

    def _submit(self, handle: BlockingHandle) -> None:
        call = partial(handle.func, *handle.args, **handle.kwargs)
        try:
            handle.work = self.pool.submit(
                call, partial(self._on_complete, handle), priority=handle.priority
            )
        except Exception as e:
            logger.warning(f"Pool {self.pool.name!r} rejected {handle.func_name}: {e}")
            self._on_complete(handle, Outcome.failure(e))

    def _on_complete(self, handle: BlockingHandle, outcome: Outcome) -> None:
        """Pool completion callback. Runs on the worker thread."""
        with self._lock:
            self._metrics["completed" if outcome.ok else "failed"] += 1
            self._metrics["total_duration_ms"] += outcome.duration_ms
        handle.complete(outcome)
        handle.waker.wake()
        self._release()

    def _release(self) -> None:
        """Hand the freed slot to the next deferred call that is still wanted."""
        while True:
            with self._lock:
                if not self._deferred:
                    self._in_flight -= 1
                    return
                handle = self._deferred.popleft()
                if handle.cancelled:
                    self._metrics["cancelled"] += 1
                    logger.debug(f"Dropped cancelled {handle.func_name} before submitting")
                    continue
            self._submit(handle)
            return

    def __repr__(self) -> str:
        return f"BlockingBridge(name={self.name!r}, max_pending={self.max_pending})"


class BlockingFuture(Computation):
    """
    Awaitable result of one blocking call.

    Awaiting returns the call's value or raises BlockingCallError chained
    to the original exception. Use settled() to get the Outcome instead.
    """

    __slots__ = ("_func", "_args", "_kwargs", "_priority", "_bridge", "_handle", "_outcome")

    def __init__(
        self,
        func: Callable[..., Any],
        args: tuple[Any, ...] = (),
        kwargs: dict[str, Any] | None = None,
        priority: int = 0,
        bridge: BlockingBridge | None = None,
    ) -> None:
        self._func = func
        self._args = args
        self._kwargs = kwargs or {}
        self._priority = priority
        self._bridge = bridge
        self._handle: BlockingHandle | None = None
        self._outcome: Outcome | None = None

    @property
    def submitted(self) -> bool:
        return self._handle is not None

    def poll(self, cx: Context) -> Poll:
        outcome = self.poll_outcome(cx)
        if outcome is None:
            return PENDING
        if outcome.ok:
            return Ready(outcome.unwrap())
        assert outcome.error is not None
        raise BlockingCallError(
            getattr(self._func, "__qualname__", repr(self._func)), repr(outcome.error)
        ) from outcome.error

    def poll_outcome(self, cx: Context) -> Outcome | None:
        """Poll without raising: the Outcome once available, else None."""
        if self._outcome is not None:
            return self._outcome
        handle = self._handle
        if handle is None:
            bridge = self._bridge
            if bridge is None:
                if cx.executor is None:
                    raise ProtocolViolation("run_blocking() polled outside an executor")
                bridge = self._bridge = cx.executor.bridge
            handle = self._handle = BlockingHandle(
                self._func, self._args, self._kwargs, cx.waker, self._priority
            )
            bridge.dispatch(handle)
            return None
        if not handle.done:
            return None
        self._outcome = handle.take()
        return self._outcome

    def settled(self) -> Computation:
        """Computation resolving to this call's Outcome, success or failure."""
        return _Settled(self)

    def on_cancel(self, cx: Context | None) -> None:
        handle = self._handle
        if handle is not None and not handle.done and self._bridge is not None:
            self._bridge.cancel(handle)

    def __repr__(self) -> str:
        name = getattr(self._func, "__qualname__", repr(self._func))
        return f"BlockingFuture({name}, submitted={self.submitted})"


class _Settled(Computation):
    __slots__ = ("_future",)

    def __init__(self, future: BlockingFuture) -> None:
        self._future = future

    def poll(self, cx: Context) -> Poll:
        outcome = self._future.poll_outcome(cx)
        if outcome is None:
            return PENDING
        return Ready(outcome)

    def on_cancel(self, cx: Context | None) -> None:
        self._future.on_cancel(cx)


def run_blocking(func: Callable[..., Any], *args: Any, priority: int = 0, **kwargs: Any) -> BlockingFuture:
    """
    Run func(*args, **kwargs) on a worker thread and await its result.

    The call is submitted when the returned future is first polled, by the
    executor polling it.

    Args:
        func: Blocking callable. Runs on a worker thread only.
        *args: Positional arguments for func.
        priority: Pool priority, higher runs first on priority pools.
        **kwargs: Keyword arguments for func.

    Returns:
        BlockingFuture to await.
    """
    return BlockingFuture(func, args, kwargs, priority=priority)


def blocking(func: F) -> Callable[..., BlockingFuture]:
    """
    Decorate a blocking function so that calling it returns a BlockingFuture.

    Example:
        >>> @blocking
        ... def load(path):
        ...     return open_document(path)
        >>>
        >>> doc = await load("report.pdf")
    """

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> BlockingFuture:
        return BlockingFuture(func, args, kwargs)

    return wrapper
