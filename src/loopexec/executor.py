# Copyright 2025 Softwell S.r.l.
# Licensed under the Apache License, Version 2.0

"""
Executor: single-threaded task driver hosted by a foreign event loop.

Purpose
=======
The Executor owns the task table and the ready queue. It never runs a
loop: when the ready queue becomes non-empty it asks the host loop, once,
to call ``run_one_batch()`` on the loop thread. Each batch polls a bounded
snapshot of the ready tasks and returns, so the host keeps control of its
own thread.

Features:
- spawn() from any thread; returns a TaskHandle
- One host notification per burst of wakes (a single wakeup token)
- Bounded batches; work woken after the snapshot waits for the next batch
- Task failures are contained: the task completes with the error
- Cooperative cancellation with exactly one cleanup poll
- run_blocking() onto the executor's pool via a BlockingBridge

Definition::

    class Executor:
        def __init__(self, host: HostLoop, pool: BasePool | None = None,
                     config: ExecutorConfig | None = None)
        def spawn(self, computation) -> TaskHandle
        def run_one_batch(self) -> int
        def run_blocking(self, func, *args, priority=0, **kwargs) -> BlockingFuture
        def cancel(self, task_id: TaskId) -> bool
        def shutdown(self, wait: bool = True) -> None
        @property
        def metrics(self) -> dict
        @staticmethod
        def current() -> Executor | None

    class TaskHandle(Computation):
        id: TaskId
        def done(self) -> bool
        def cancelled(self) -> bool
        def result(self) -> Any
        def exception(self) -> BaseException | None
        def cancel(self) -> bool
        def detach(self) -> TaskHandle
        def add_done_callback(self, fn: Callable[[TaskHandle], Any]) -> None

Example::

    loop = ManualLoop()
    executor = Executor(loop, config=ExecutorConfig(workers=2))

    async def thumbnail(doc, page):
        pixels = await run_blocking(render_page, doc, page, scale=0.2)
        return encode_png(pixels)

    handle = executor.spawn(thumbnail(doc, 0))
    png = loop.run_until_complete(handle)

Cancellation
============
Dropping the last reference to a TaskHandle, or calling cancel(), requests
cancellation. The task is polled once more with ``cx.cancelled`` set: the
computation's on_cancel() runs (coroutines receive TaskCancelled at their
suspension point, so ``finally`` blocks run) and the task ends CANCELLED.
Call detach() to keep a task running without holding its handle.

A handle may be collected by the cycle collector on any thread, even one
holding an executor lock. Its finalizer only records the task id in a
lock-free queue. The next batch cancels the recorded tasks before it
drains the ready queue.

Awaiting a handle whose task failed raises the task's error in the
awaiting task. Awaiting a cancelled task raises TaskCancelled, which
cancels the awaiting task unless it catches it.

Design Notes
============
- run_one_batch(), shutdown() and done callbacks run on the loop thread.
  spawn() and cancel() are safe from any thread.
- An executor created without a pool builds one from its config and shuts
  it down with itself. A pool passed in stays owned by the caller.
- The executor holds no TaskHandle. A handle with done callbacks is kept
  alive by them until the task finishes.
- Protocol violations (re-entered batches, a task found mid-poll, a poll
  returning neither Ready nor PENDING) raise in strict mode and are logged
  at WARNING otherwise.
"""

from __future__ import annotations

import logging
import queue
import threading
from functools import partial
from typing import TYPE_CHECKING, Any, Callable

from .blocking import BlockingBridge, BlockingFuture
from .computation import Computation, Context, _current_context, as_computation
from .config import ExecutorConfig
from .exceptions import ExecutorShutdown, ProtocolViolation, TaskCancelled, TaskNotFinished
from .pools import PriorityPool, ThreadPool
from .task import JoinState, Task, TaskId, TaskState, TaskTable
from .types import PENDING, Outcome, Poll, Ready
from .waker import ReadyQueue, Scheduler, Waker

if TYPE_CHECKING:
    from .hosts.base import HostLoop
    from .pools.base import BasePool

__all__ = ["Executor", "TaskHandle"]

logger = logging.getLogger("loopexec.executor")

POOL_FACTORIES: dict[str, Callable[..., BasePool]] = {
    "thread": ThreadPool,
    "priority": PriorityPool,
}


class TaskHandle(Computation):
    """
    Caller-side handle to a spawned task.

    Awaitable from other tasks: ``value = await handle``.

    Attributes:
        id: The task's id.
    """

    __slots__ = ("id", "_executor", "_join", "_detached", "__weakref__")

    def __init__(self, task_id: TaskId, executor: Executor, join: JoinState) -> None:
        self.id = task_id
        self._executor = executor
        self._join = join
        self._detached = False

    def done(self) -> bool:
        return self._join.done

    def cancelled(self) -> bool:
        return self._join.done and self._join.cancelled

    def result(self) -> Any:
        """
        Return the task's value.

        Raises:
            TaskNotFinished: If the task is still running.
            TaskCancelled: If the task ended cancelled.
            Exception: Whatever the task raised.
        """
        outcome = self._join.outcome
        if outcome is None:
            raise TaskNotFinished(f"Task {self.id} has not finished")
        if self._join.cancelled:
            raise TaskCancelled(f"Task {self.id} was cancelled")
        return outcome.unwrap()

    def exception(self) -> BaseException | None:
        """Return the task's error, or None if it returned normally."""
        outcome = self._join.outcome
        if outcome is None:
            raise TaskNotFinished(f"Task {self.id} has not finished")
        if self._join.cancelled:
            raise TaskCancelled(f"Task {self.id} was cancelled")
        return outcome.error

    def cancel(self) -> bool:
        """Request cancellation. Returns False if the task already finished."""
        if self._join.done:
            return False
        return self._executor.cancel(self.id)

    def detach(self) -> TaskHandle:
        """Let the task run to completion even if this handle is dropped."""
        self._detached = True
        return self

    def add_done_callback(self, fn: Callable[[TaskHandle], Any]) -> None:
        """
        Call fn(handle) on the loop thread once the task finishes.

        Called immediately if the task already finished.
        """
        callback = partial(fn, self)
        if not self._join.add_callback(callback):
            callback()

    def poll(self, cx: Context) -> Poll:
        if self._join.add_waiter(cx.waker):
            return PENDING
        return Ready(self.result())

    def on_cancel(self, cx: Context | None) -> None:
        if cx is not None:
            self._join.discard_waiter(cx.waker)

    def __del__(self) -> None:
        if not self._detached and not self._join.done:
            self._executor._drop(self.id)

    def __repr__(self) -> str:
        if not self._join.done:
            state = "pending"
        elif self._join.cancelled:
            state = "cancelled"
        else:
            state = "done"
        return f"TaskHandle(id={self.id}, {state})"


class Executor:
    """
    Cooperative executor driven by a host event loop.

    Attributes:
        host: The host loop notified when tasks become ready.
        config: Resolved configuration.
        pool: Worker pool running blocking calls.
        bridge: Dispatcher of blocking calls onto the pool.
    """

    def __init__(
        self,
        host: HostLoop,
        pool: BasePool | None = None,
        config: ExecutorConfig | None = None,
    ) -> None:
        self.host = host
        self.config = config if config is not None else ExecutorConfig()
        self.name = self.config.name
        self.batch_size = self.config.batch_size
        self.strict = self.config.strict

        self._owns_pool = pool is None
        if pool is None:
            pool = self._create_pool()
        self.pool = pool
        self.bridge = BlockingBridge(pool, max_pending=self.config.max_pending, name=self.name)

        self._table = TaskTable()
        self._queue = ReadyQueue(on_ready=self._notify)
        self._scheduler = Scheduler(self._table, self._queue)

        self._notify_lock = threading.Lock()
        self._notified = False
        self._dropped: queue.SimpleQueue[TaskId] = queue.SimpleQueue()
        self._spawn_lock = threading.Lock()
        self._in_batch = False
        self._closed = False
        self._metrics = {
            "spawned": 0,
            "completed": 0,
            "failed": 0,
            "cancelled": 0,
            "polls": 0,
            "batches": 0,
        }
        logger.debug(f"Executor {self.name!r} created with {self.pool!r}")

    def _create_pool(self) -> BasePool:
        """Create the executor's own pool; it is shut down with the executor."""
        kwargs: dict[str, Any] = {"max_workers": self.config.workers}
        if self.config.pool == "priority":
            kwargs["priorities"] = self.config.priorities
        return POOL_FACTORIES[self.config.pool](name=self.name, **kwargs)

    @staticmethod
    def current() -> Executor | None:
        """Return the executor polling a task on this thread, if any."""
        cx = _current_context.get()
        return cx.executor if cx is not None else None

    @property
    def metrics(self) -> dict[str, Any]:
        """
        Return executor metrics.

        Returns:
            Dict with name, live, queued, spawned, completed, failed,
            cancelled, polls, batches, bridge and pool.
        """
        return {
            "name": self.name,
            "live": len(self._table),
            "queued": len(self._queue),
            **self._metrics,
            "bridge": self.bridge.metrics,
            "pool": self.pool.metrics,
        }

    def spawn(self, computation: Any) -> TaskHandle:
        """
        Register a computation as a new task and queue its first poll.

        Safe from any thread.

        Args:
            computation: A Computation, a coroutine or an awaitable.

        Returns:
            TaskHandle; dropping it before the task finishes cancels the task.

        Raises:
            ExecutorShutdown: If shutdown() was called.
            TypeError: If computation cannot be polled.
        """
        if self._closed:
            if hasattr(computation, "close"):
                computation.close()
            raise ExecutorShutdown(f"Executor {self.name!r} is shut down")
        task = self._table.insert(as_computation(computation))
        with self._spawn_lock:
            self._metrics["spawned"] += 1
        handle = TaskHandle(task.id, self, task.join)
        logger.debug(f"Spawned task {task.id}: {task.computation!r}")
        self._queue.push(task)
        return handle

    def run_blocking(
        self, func: Callable[..., Any], *args: Any, priority: int = 0, **kwargs: Any
    ) -> BlockingFuture:
        """Like loopexec.run_blocking(), bound to this executor's bridge."""
        return BlockingFuture(func, args, kwargs, priority=priority, bridge=self.bridge)

    def cancel(self, task_id: TaskId) -> bool:
        """
        Request cancellation of a task. Safe from any thread.

        Returns:
            False if the task is unknown or already finished.
        """
        task = self._table.get(task_id)
        if task is None or task.state.terminal:
            return False
        task.cancel_requested = True
        self._queue.push(task)
        return True

    def run_one_batch(self) -> int:
        """
        Poll a bounded snapshot of the ready tasks. Loop thread only.

        Returns:
            Number of tasks polled.
        """
        if self._in_batch:
            self._violation("run_one_batch() re-entered from inside a poll")
            return 0
        with self._notify_lock:
            self._notified = False

        self._cancel_dropped()
        self._in_batch = True
        batch = self._queue.drain(self.batch_size)
        polled = 0
        index = 0
        try:
            while index < len(batch):
                task_id = batch[index]
                index += 1
                task = self._table.get(task_id)
                if task is None or task.state.terminal:
                    logger.debug(f"Skipping finished task {task_id}")
                    continue
                if task.state is TaskState.POLLING:
                    self._violation(f"Task {task_id} drained while it is being polled")
                    continue
                polled += 1
                self._poll(task)
        finally:
            if index < len(batch):
                self._queue.restore(batch[index:])
            self._in_batch = False
            self._metrics["batches"] += 1
            self._metrics["polls"] += polled
            if self._queue:
                self._notify()
        return polled

    def shutdown(self, wait: bool = True) -> None:
        """
        Cancel every live task and shut down the executor's own pool.

        Must be called on the loop thread, outside a batch. Cancelled tasks
        get their cleanup poll before this returns.

        Args:
            wait: If True, wait for blocking calls already running.
        """
        if self._closed:
            return
        self._closed = True
        live = [task for task in self._table if not task.state.terminal]
        logger.debug(f"Executor {self.name!r} shutting down, cancelling {len(live)} tasks")
        for task in live:
            task.cancel_requested = True
            self._queue.push(task)
        if not self._in_batch:
            while self._queue:
                self.run_one_batch()
        if self._owns_pool:
            self.pool.shutdown(wait=wait)

    def _poll(self, task: Task) -> None:
        self._queue.begin_poll(task)
        task.polls += 1
        cx = Context(
            Waker(task.id, self._scheduler),
            task_id=task.id,
            executor=self,
            cancelled=task.cancel_requested,
        )
        token = _current_context.set(cx)
        try:
            if task.cancel_requested:
                self._cancel_poll(task, cx)
                return
            try:
                result = task.computation.poll(cx)
            except TaskCancelled as e:
                self._finish(task, Outcome.failure(e), cancelled=True)
                return
            except Exception as e:
                logger.debug(f"Task {task.id} failed: {e!r}")
                self._finish(task, Outcome.failure(e))
                return
            except BaseException as e:
                self._finish(task, Outcome.failure(e))
                raise
        finally:
            _current_context.reset(token)

        if result is PENDING:
            self._queue.end_poll(task)
        elif isinstance(result, Ready):
            self._finish(task, Outcome.success(result.value))
        else:
            error = ProtocolViolation(f"Task {task.id} poll returned {result!r}")
            self._finish(task, Outcome.failure(error))
            self._violation(str(error))

    def _cancel_poll(self, task: Task, cx: Context) -> None:
        try:
            task.computation.on_cancel(cx)
        except TaskCancelled:
            pass
        except Exception as e:
            logger.debug(f"Cleanup of cancelled task {task.id} raised {e!r}")
        self._finish(task, Outcome.failure(TaskCancelled(f"Task {task.id} was cancelled")), cancelled=True)

    def _finish(self, task: Task, outcome: Outcome, cancelled: bool = False) -> None:
        task.state = TaskState.CANCELLED if cancelled else TaskState.COMPLETED
        self._table.remove(task.id)
        if cancelled:
            self._metrics["cancelled"] += 1
        else:
            self._metrics["completed" if outcome.ok else "failed"] += 1
        logger.debug(f"Task {task.id} {task.state.value} after {task.polls} polls")

        waiters, callbacks = task.join.finish(outcome, cancelled)
        for waker in waiters:
            waker.wake()
        # Callbacks run outside the finished task's context
        token = _current_context.set(None)
        try:
            for callback in callbacks:
                try:
                    callback()
                except Exception:
                    logger.exception(f"Done callback of task {task.id} failed")
        finally:
            _current_context.reset(token)

    def _drop(self, task_id: TaskId) -> None:
        """
        Record the cancellation of a task whose handle was collected.

        Runs from TaskHandle.__del__, possibly inside the cycle collector on
        a thread holding the ready queue lock. It therefore never waits on an
        executor lock: the id goes to a SimpleQueue, and the host is only
        notified if the notify lock is free and no batch is pending.
        """
        self._dropped.put(task_id)
        if not self._notify_lock.acquire(blocking=False):
            return
        try:
            if self._notified:
                return
            self._notified = True
        finally:
            self._notify_lock.release()
        self.host.call_soon_threadsafe(self.run_one_batch)

    def _cancel_dropped(self) -> None:
        while True:
            try:
                task_id = self._dropped.get_nowait()
            except queue.Empty:
                return
            if self.cancel(task_id):
                logger.debug(f"Handle of task {task_id} dropped, cancelled")

    def _notify(self) -> None:
        with self._notify_lock:
            if self._notified:
                return
            self._notified = True
        self.host.call_soon_threadsafe(self.run_one_batch)

    def _violation(self, message: str) -> None:
        if self.strict:
            raise ProtocolViolation(message)
        logger.warning(message)

    def __len__(self) -> int:
        return len(self._table)

    def __repr__(self) -> str:
        return f"Executor(name={self.name!r}, live={len(self._table)}, queued={len(self._queue)})"
