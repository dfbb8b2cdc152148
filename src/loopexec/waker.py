# Copyright 2025 Softwell S.r.l.
# Licensed under the Apache License, Version 2.0

"""
Ready queue and wakers.

Purpose
=======
The ReadyQueue holds the ids of tasks that need another poll. Any thread
may push, only the loop thread drains. A Waker is the cross-thread handle
that pushes one specific task.

Definition::

    class ReadyQueue:
        def push(self, task: Task) -> bool
        def drain(self, limit: int | None = None) -> list[TaskId]
        def restore(self, task_ids: list[TaskId]) -> None
        def begin_poll(self, task: Task) -> None
        def end_poll(self, task: Task) -> TaskState

    class Scheduler:
        def wake(self, task_id: TaskId) -> bool

    class Waker:
        def wake(self) -> None
        def will_wake(self, other: Waker) -> bool

Queued flag protocol
====================
- push() tests and sets ``task.queued`` under the queue lock. A task that
  is already queued is not appended again, however many threads wake it.
- begin_poll() clears the flag strictly before the executor calls poll.
  A wake that lands while the poll runs therefore re-queues the task and
  is picked up by the next batch. No wake is lost, and the current poll is
  never re-entered.
- end_poll() settles the post-poll state under the same lock: READY if a
  wake arrived during the poll, WAITING otherwise.

Design Notes
============
- The lock covers one deque operation and one flag. It is never held while
  calling back into the host loop.
- push() reports the empty -> non-empty transition through ``on_ready`` so
  the executor notifies the host loop once per burst of wakes.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable

from .task import Task, TaskId, TaskState, TaskTable

__all__ = ["ReadyQueue", "Scheduler", "Waker"]

logger = logging.getLogger("loopexec.waker")


class ReadyQueue:
    """
    FIFO of task ids awaiting a poll, each present at most once.

    Attributes:
        on_ready: Called (outside the lock) when a push makes the queue
            non-empty.
    """

    __slots__ = ("_entries", "_lock", "on_ready")

    def __init__(self, on_ready: Callable[[], None] | None = None) -> None:
        self._entries: deque[TaskId] = deque()
        self._lock = threading.Lock()
        self.on_ready = on_ready

    def push(self, task: Task) -> bool:
        """Queue task unless it is already queued. Safe from any thread."""
        with self._lock:
            task.wakes += 1
            if task.queued:
                return False
            task.queued = True
            if task.state in (TaskState.CREATED, TaskState.WAITING):
                task.state = TaskState.READY
            was_empty = not self._entries
            self._entries.append(task.id)
        if was_empty and self.on_ready is not None:
            self.on_ready()
        return True

    def drain(self, limit: int | None = None) -> list[TaskId]:
        """Pop a snapshot of at most limit ids. Loop thread only."""
        with self._lock:
            count = len(self._entries)
            if limit is not None:
                count = min(count, limit)
            return [self._entries.popleft() for _ in range(count)]

    def restore(self, task_ids: list[TaskId]) -> None:
        """Put drained ids back at the head, in order. Their flags are still set."""
        with self._lock:
            self._entries.extendleft(reversed(task_ids))

    def begin_poll(self, task: Task) -> None:
        with self._lock:
            task.queued = False
            task.state = TaskState.POLLING

    def end_poll(self, task: Task) -> TaskState:
        with self._lock:
            task.state = TaskState.READY if task.queued else TaskState.WAITING
            return task.state

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._entries


class Scheduler:
    """The producer side shared by all wakers of one executor."""

    __slots__ = ("table", "queue")

    def __init__(self, table: TaskTable, queue: ReadyQueue) -> None:
        self.table = table
        self.queue = queue

    def wake(self, task_id: TaskId) -> bool:
        """
        Request another poll of task_id.

        Returns True if the id was pushed. Waking an unknown, tombstoned or
        terminal task is a no-op.
        """
        task = self.table.get(task_id)
        if task is None or task.state.terminal:
            logger.debug(f"Ignoring wake for finished task {task_id}")
            return False
        return self.queue.push(task)


class Waker:
    """
    Cross-thread handle that requests a poll of one task.

    Immutable: copies compare equal and wake the same task. Holds only the
    task id, so it may outlive the task safely.

    Example:
        >>> waker = current_context().waker
        >>> threading.Thread(target=waker.wake).start()
    """

    __slots__ = ("_task_id", "_scheduler")

    def __init__(self, task_id: TaskId, scheduler: Scheduler) -> None:
        self._task_id = task_id
        self._scheduler = scheduler

    @property
    def task_id(self) -> TaskId:
        return self._task_id

    def wake(self) -> None:
        self._scheduler.wake(self._task_id)

    def will_wake(self, other: Waker) -> bool:
        """True if both wakers target the same task of the same executor."""
        return self == other

    def __copy__(self) -> Waker:
        return self

    def __deepcopy__(self, memo: dict[int, object]) -> Waker:
        return self

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Waker):
            return NotImplemented
        return self._task_id == other._task_id and self._scheduler is other._scheduler

    def __hash__(self) -> int:
        return hash((self._task_id, id(self._scheduler)))

    def __repr__(self) -> str:
        return f"Waker(task={self._task_id})"
