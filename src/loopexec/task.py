# Copyright 2025 Softwell S.r.l.
# Licensed under the Apache License, Version 2.0

"""
Task cells and the generation-checked task table.

Purpose
=======
A Task is the executor's record of one spawned computation: the
computation itself, its lifecycle state, the ready-queue flag and the join
state shared with the caller's TaskHandle. Tasks live in a TaskTable, an
arena of slots addressed by TaskId.

Definition::

    class TaskId(NamedTuple):
        index: int          # slot in the arena
        generation: int     # bumped each time the slot is freed

    class TaskState(str, Enum):
        CREATED, READY, POLLING, WAITING, COMPLETED, CANCELLED

    class TaskTable:
        def insert(self, computation) -> Task
        def get(self, task_id: TaskId) -> Task | None
        def remove(self, task_id: TaskId) -> bool

State machine::

    CREATED -> READY -> POLLING -> READY      (woken during the poll)
                                -> WAITING    (suspended, no pending wake)
                                -> COMPLETED  (returned or raised)
                                -> CANCELLED  (cancellation honoured)
    WAITING -> READY                          (waker invoked)

Design Notes
============
- Wakers hold a TaskId, never a Task. A TaskId whose generation no longer
  matches its slot is tombstoned: get() returns None and the wake is a
  no-op. A reused slot can therefore never be reached by a stale waker.
- get() takes no lock. It reads the slot's cell once and compares the full
  id, so a concurrent remove() is observed either before or after, never
  half-way.
- insert() and remove() serialise on a short lock because spawn() may be
  called from any thread.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterator, NamedTuple

from .types import Outcome

if TYPE_CHECKING:
    from .computation import Computation
    from .waker import Waker

__all__ = ["JoinState", "Task", "TaskId", "TaskState", "TaskTable"]

logger = logging.getLogger("loopexec.task")


class TaskId(NamedTuple):
    """Process-local task identifier: arena index plus generation."""

    index: int
    generation: int

    def __str__(self) -> str:
        return f"{self.index}v{self.generation}"


class TaskState(str, Enum):
    CREATED = "created"
    READY = "ready"
    POLLING = "polling"
    WAITING = "waiting"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.CANCELLED)


class JoinState:
    """
    Completion sink shared between a Task and its TaskHandle.

    Outlives the Task: the executor frees the task slot as soon as the task
    is terminal, while handles keep reading the outcome from here.

    Attributes:
        outcome: Final outcome, None while the task runs.
        cancelled: True if the task ended by cancellation.
    """

    __slots__ = ("outcome", "cancelled", "_waiters", "_callbacks", "_lock")

    def __init__(self) -> None:
        self.outcome: Outcome | None = None
        self.cancelled = False
        self._waiters: list[Waker] = []
        self._callbacks: list[Callable[[], Any]] = []
        self._lock = threading.Lock()

    @property
    def done(self) -> bool:
        return self.outcome is not None

    def add_waiter(self, waker: Waker) -> bool:
        """Register a waker for completion. Returns False if already done."""
        with self._lock:
            if self.outcome is not None:
                return False
            if waker not in self._waiters:
                self._waiters.append(waker)
            return True

    def discard_waiter(self, waker: Waker) -> None:
        with self._lock:
            if waker in self._waiters:
                self._waiters.remove(waker)

    def add_callback(self, callback: Callable[[], Any]) -> bool:
        """Register a callback for completion. Returns False if already done."""
        with self._lock:
            if self.outcome is not None:
                return False
            self._callbacks.append(callback)
            return True

    def finish(
        self, outcome: Outcome, cancelled: bool = False
    ) -> tuple[list[Waker], list[Callable[[], Any]]]:
        """Store the outcome and hand back everything waiting on it."""
        with self._lock:
            self.outcome = outcome
            self.cancelled = cancelled
            waiters, self._waiters = self._waiters, []
            callbacks, self._callbacks = self._callbacks, []
        return waiters, callbacks


class Task:
    """
    One spawned computation.

    Mutated only on the loop thread, except ``queued``, ``wakes`` and the
    WAITING -> READY transition, which the ReadyQueue performs under its
    lock, and ``cancel_requested`` which any thread may set.
    """

    __slots__ = (
        "id",
        "computation",
        "state",
        "queued",
        "wakes",
        "polls",
        "cancel_requested",
        "join",
    )

    def __init__(self, task_id: TaskId, computation: Computation) -> None:
        self.id = task_id
        self.computation = computation
        self.state = TaskState.CREATED
        self.queued = False
        self.wakes = 0
        self.polls = 0
        self.cancel_requested = False
        self.join = JoinState()

    def __repr__(self) -> str:
        return f"Task(id={self.id}, state={self.state.value})"


class _Slot:
    __slots__ = ("generation", "task")

    def __init__(self) -> None:
        self.generation = 0
        self.task: Task | None = None


class TaskTable:
    """
    Arena of tasks addressed by generation-checked ids.

    Example:
        >>> table = TaskTable()
        >>> task = table.insert(computation)
        >>> table.get(task.id) is task
        True
        >>> table.remove(task.id)
        True
        >>> table.get(task.id) is None      # tombstoned
        True
    """

    __slots__ = ("_slots", "_free", "_lock", "_live")

    def __init__(self) -> None:
        self._slots: list[_Slot] = []
        self._free: list[int] = []
        self._lock = threading.Lock()
        self._live = 0

    def insert(self, computation: Computation) -> Task:
        with self._lock:
            if self._free:
                index = self._free.pop()
                slot = self._slots[index]
            else:
                index = len(self._slots)
                slot = _Slot()
                self._slots.append(slot)
            task = Task(TaskId(index, slot.generation), computation)
            slot.task = task
            self._live += 1
        return task

    def get(self, task_id: TaskId) -> Task | None:
        """Return the live task for task_id, or None if unknown or tombstoned."""
        try:
            slot = self._slots[task_id.index]
        except IndexError:
            return None
        task = slot.task
        if task is None or task.id != task_id:
            return None
        return task

    def remove(self, task_id: TaskId) -> bool:
        """Free the slot of task_id and tombstone the id."""
        with self._lock:
            task = self.get(task_id)
            if task is None:
                return False
            slot = self._slots[task_id.index]
            slot.task = None
            slot.generation += 1
            self._free.append(task_id.index)
            self._live -= 1
        logger.debug(f"Task {task_id} removed")
        return True

    def __len__(self) -> int:
        return self._live

    def __iter__(self) -> Iterator[Task]:
        for slot in list(self._slots):
            task = slot.task
            if task is not None:
                yield task

    def __contains__(self, task_id: object) -> bool:
        return isinstance(task_id, TaskId) and self.get(task_id) is not None
