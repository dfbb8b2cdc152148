# Copyright 2025 Softwell S.r.l.
# Licensed under the Apache License, Version 2.0

"""
Thread pool with priority levels and cancellable work items.

Purpose
=======
A viewer requests far more tiles than it will eventually show. Tiles in
the viewport must render before prefetched ones, and tiles scrolled out of
view must be dropped before they waste a worker. PriorityPool runs a fixed
set of threads over one FIFO per priority level, highest level first.

Features:
- Fixed thread count, started at construction
- ``priorities`` levels, 0 lowest; FIFO order inside a level
- O(1) cancellation of queued items (cancelled items are skipped on pop)
- ``set_priority`` moves a queued item to another level
- Optional Monitor hooks (on_execute, on_complete, on_canceled)

Definition::

    class PriorityPool(BasePool):
        def __init__(
            self,
            name: str = "default",
            max_workers: int | None = None,
            priorities: int = 3,
            monitor: Monitor | None = None,
        )
        def submit(self, closure, callback, priority=0) -> WorkItem
        def shutdown(self, wait: bool = True) -> None
        @property
        def metrics(self) -> dict

Example::

    pool = PriorityPool(name="tiles", max_workers=2, priorities=3)
    prefetch = pool.submit(render_tile_a, on_tile, priority=0)
    visible = pool.submit(render_tile_b, on_tile, priority=2)

    # tile a scrolled into view
    prefetch.set_priority(2)

    # tile b scrolled away before rendering
    visible.cancel()
"""

from __future__ import annotations

import logging
import os
import threading
from collections import deque
from enum import Enum
from typing import Any, Callable

from ..exceptions import ExecutorShutdown
from ..types import Outcome
from .base import BasePool, Completion, Monitor, WorkHandle

__all__ = ["PriorityPool", "WorkItem"]

logger = logging.getLogger("loopexec.pools.priority")


class WorkState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    CANCELLED = "cancelled"


class WorkItem(WorkHandle):
    """A closure queued in a PriorityPool."""

    __slots__ = ("closure", "callback", "state", "_priority", "_pool", "_finished")

    def __init__(
        self,
        pool: PriorityPool,
        closure: Callable[[], Any],
        callback: Completion,
        priority: int,
    ) -> None:
        self.closure = closure
        self.callback = callback
        self.state = WorkState.QUEUED
        self._priority = priority
        self._pool = pool
        self._finished = threading.Event()

    @property
    def priority(self) -> int:
        return self._priority

    def set_priority(self, priority: int) -> None:
        self._pool._reprioritize(self, priority)

    def cancel(self) -> bool:
        return self._pool._cancel(self)

    def is_finished(self) -> bool:
        return self._finished.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._finished.wait(timeout)

    def __repr__(self) -> str:
        return f"WorkItem(priority={self._priority}, state={self.state.value})"


class PriorityPool(BasePool):
    """
    Fixed-size thread pool with priority queues.

    Attributes:
        name: Identifier for metrics and logging.
        priorities: Number of priority levels.
        monitor: Lifecycle hooks, shared by all items.
    """

    def __init__(
        self,
        name: str = "default",
        max_workers: int | None = None,
        priorities: int = 3,
        monitor: Monitor | None = None,
    ) -> None:
        if priorities < 1:
            raise ValueError(f"priorities must be >= 1, got {priorities}")
        workers = max_workers if max_workers is not None else min(32, (os.cpu_count() or 1) + 4)
        if workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {workers}")

        self.name = name
        self.priorities = priorities
        self.monitor = monitor or Monitor()
        self._queues: list[deque[WorkItem]] = [deque() for _ in range(priorities)]
        self._cond = threading.Condition()
        self._running = True
        self._metrics = {
            "submitted": 0,
            "completed": 0,
            "failed": 0,
            "cancelled": 0,
            "total_duration_ms": 0.0,
        }
        self._threads = [
            threading.Thread(
                target=self._process,
                name=f"loopexec-{name}-{index}",
                daemon=True,
            )
            for index in range(workers)
        ]
        for thread in self._threads:
            thread.start()

    @property
    def metrics(self) -> dict[str, Any]:
        """
        Return current pool metrics.

        Returns:
            Dict with name, mode, workers, queued (per level), pending,
            submitted, completed, failed, cancelled, avg_duration_ms.
        """
        with self._cond:
            m = dict(self._metrics)
            queued = [
                sum(1 for item in queue if item.state is WorkState.QUEUED)
                for queue in self._queues
            ]
        finished = m["completed"] + m["failed"]
        return {
            "name": self.name,
            "mode": "priority",
            "workers": len(self._threads),
            "queued": queued,
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
    ) -> WorkItem:
        """
        Queue a closure at the given priority.

        Raises:
            ValueError: If priority is out of range.
            ExecutorShutdown: If the pool has been shut down.
        """
        self._check_priority(priority)
        item = WorkItem(self, closure, callback, priority)
        with self._cond:
            if not self._running:
                raise ExecutorShutdown(f"Pool {self.name!r} is shut down")
            self._queues[priority].append(item)
            self._metrics["submitted"] += 1
            self._cond.notify()
        return item

    def shutdown(self, wait: bool = True) -> None:
        """
        Stop the workers.

        Args:
            wait: If True, drain the queues before stopping. If False, queued
                items are dropped and their callbacks receive an
                ExecutorShutdown failure.
        """
        dropped: list[WorkItem] = []
        with self._cond:
            if wait:
                while self._running and any(
                    item.state is WorkState.QUEUED for queue in self._queues for item in queue
                ):
                    self._cond.wait(0.05)
            self._running = False
            for queue in self._queues:
                dropped.extend(item for item in queue if item.state is WorkState.QUEUED)
                queue.clear()
            for item in dropped:
                item.state = WorkState.DONE
            self._cond.notify_all()

        for item in dropped:
            self._finish(item, Outcome.failure(ExecutorShutdown(f"Pool {self.name!r} shut down before the call ran")))

        if wait:
            current = threading.current_thread()
            for thread in self._threads:
                if thread is not current:
                    thread.join()

    def _check_priority(self, priority: int) -> None:
        if not 0 <= priority < self.priorities:
            raise ValueError(f"priority must be in [0, {self.priorities}), got {priority}")

    def _pop(self) -> WorkItem | None:
        with self._cond:
            while self._running:
                for queue in reversed(self._queues):
                    while queue:
                        item = queue.popleft()
                        if item.state is WorkState.QUEUED:
                            item.state = WorkState.RUNNING
                            self._cond.notify_all()
                            return item
                self._cond.wait()
        return None

    def _process(self) -> None:
        while True:
            item = self._pop()
            if item is None:
                return
            self._hook(self.monitor.on_execute)
            outcome = Outcome.capture(item.closure)
            self._hook(self.monitor.on_complete)
            self._finish(item, outcome)

    def _finish(self, item: WorkItem, outcome: Outcome) -> None:
        with self._cond:
            item.state = WorkState.DONE
            self._metrics["completed" if outcome.ok else "failed"] += 1
            self._metrics["total_duration_ms"] += outcome.duration_ms
        self._deliver(item.callback, outcome)
        item._finished.set()

    def _cancel(self, item: WorkItem) -> bool:
        with self._cond:
            if item.state is not WorkState.QUEUED:
                return False
            # Left in its deque; _pop() skips it.
            item.state = WorkState.CANCELLED
            self._metrics["cancelled"] += 1
        item._finished.set()
        self._hook(self.monitor.on_canceled)
        return True

    def _reprioritize(self, item: WorkItem, priority: int) -> None:
        self._check_priority(priority)
        with self._cond:
            old = item._priority
            item._priority = priority
            if item.state is WorkState.QUEUED and old != priority:
                self._queues[old].remove(item)
                self._queues[priority].append(item)

    def _hook(self, hook: Callable[[], None]) -> None:
        try:
            hook()
        except Exception:
            logger.exception(f"Monitor hook {hook.__name__} failed in pool {self.name!r}")

    def __repr__(self) -> str:
        return f"PriorityPool(name={self.name!r}, workers={len(self._threads)}, priorities={self.priorities})"
