# Copyright 2025 Softwell S.r.l.
# Licensed under the Apache License, Version 2.0

"""
Computations: resumable state machines polled by the executor.

Purpose
=======
A computation is anything the executor can resume. It is either an
explicit state machine implementing ``Computation.poll()``, or an
``async def`` coroutine adapted by CoroutineComputation. The two mix
freely: every Computation is awaitable, and a coroutine can be wrapped
into a Computation.

Definition::

    class Context:
        waker: Waker
        task_id: TaskId | None
        executor: Executor | None
        cancelled: bool

    class Computation(ABC):
        @abstractmethod
        def poll(self, cx: Context) -> Poll
        def on_cancel(self, cx: Context | None) -> None
        def __await__(self)

    def current_context() -> Context
    def as_computation(obj) -> Computation

Combinators::

    ready(value)                 # finished immediately
    Map(inner, fn)               # Ready(fn(value))
    AndThen(inner, fn)           # sequencing: fn(value) -> next computation
    JoinAll(children)            # all children, results in order
    gather(*awaitables)          # JoinAll over awaitables
    yield_now()                  # give the loop a turn, resume next batch

Polling contract
================
- ``poll()`` returns ``Ready(value)`` when done, ``PENDING`` when
  suspended, or raises to fail the task.
- Before returning PENDING a computation must have handed ``cx.waker`` to
  whatever will complete it. A computation that suspends with no wake
  source stays suspended forever.
- Inside a coroutine, ``await`` on a Computation loops on ``poll()`` and
  yields bare ``None`` to the executor while pending. Yielding anything
  else means the coroutine awaited something foreign to this executor
  (an asyncio future, for instance) and fails the task.

Example::

    async def load_and_render(doc_path, page):
        doc = await run_blocking(open_document, doc_path)
        return await run_blocking(render_page, doc, page)

    handle = executor.spawn(load_and_render("a.pdf", 0))
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Coroutine, Generator
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any, Callable, Iterable

from .exceptions import ProtocolViolation, TaskCancelled
from .types import PENDING, Poll, Ready

if TYPE_CHECKING:
    from .executor import Executor
    from .task import TaskId
    from .waker import Waker

__all__ = [
    "AndThen",
    "Computation",
    "Context",
    "CoroutineComputation",
    "JoinAll",
    "Map",
    "as_computation",
    "current_context",
    "gather",
    "ready",
    "yield_now",
]

# Context of the poll running on this thread, set by the executor.
_current_context: ContextVar["Context | None"] = ContextVar("loopexec_context", default=None)


class Context:
    """
    What a computation receives when polled.

    Attributes:
        waker: Waker bound to the task being polled.
        task_id: Id of the task being polled (None outside an executor).
        executor: Executor running the poll (None outside an executor).
        cancelled: True during the final cleanup poll of a cancelled task.
    """

    __slots__ = ("waker", "task_id", "executor", "cancelled")

    def __init__(
        self,
        waker: Waker,
        task_id: TaskId | None = None,
        executor: Executor | None = None,
        cancelled: bool = False,
    ) -> None:
        self.waker = waker
        self.task_id = task_id
        self.executor = executor
        self.cancelled = cancelled

    def __repr__(self) -> str:
        return f"Context(task={self.task_id}, cancelled={self.cancelled})"


def current_context() -> Context:
    """
    Return the context of the poll in progress.

    Raises:
        ProtocolViolation: If called outside a poll.
    """
    cx = _current_context.get()
    if cx is None:
        raise ProtocolViolation("No task is being polled on this thread")
    return cx


class Computation(ABC):
    """
    Explicit resume-or-suspend state machine.

    Subclasses implement poll(). on_cancel() is called once when the
    awaiting task is cancelled while this computation is suspended.
    """

    __slots__ = ()

    @abstractmethod
    def poll(self, cx: Context) -> Poll:
        """Advance the computation. Return Ready(value) or PENDING."""
        ...

    def on_cancel(self, cx: Context | None) -> None:
        """Release resources held while suspended."""

    def __await__(self) -> Generator[None, None, Any]:
        while True:
            result = self.poll(current_context())
            if result is not PENDING:
                return result.value
            try:
                yield
            except BaseException:
                self.on_cancel(_current_context.get())
                raise


class CoroutineComputation(Computation):
    """Adapt a coroutine (or any ``__await__`` generator) to poll()."""

    __slots__ = ("_coro",)

    def __init__(self, coro: Coroutine[Any, Any, Any] | Generator[Any, None, Any]) -> None:
        self._coro = coro

    def poll(self, cx: Context) -> Poll:
        token = _current_context.set(cx)
        try:
            yielded = self._coro.send(None)
        except StopIteration as stop:
            return Ready(stop.value)
        finally:
            _current_context.reset(token)
        if yielded is not None:
            self._coro.close()
            raise ProtocolViolation(
                f"Computation awaited {yielded!r}, which this executor cannot drive"
            )
        return PENDING

    def on_cancel(self, cx: Context | None) -> None:
        """Throw TaskCancelled at the suspension point and run cleanup."""
        token = _current_context.set(cx) if cx is not None else None
        try:
            self._coro.throw(TaskCancelled())
        except (StopIteration, TaskCancelled):
            return
        else:
            # The coroutine swallowed the cancellation and suspended again.
            self._coro.close()
        finally:
            if token is not None:
                _current_context.reset(token)

    def __repr__(self) -> str:
        name = getattr(self._coro, "__qualname__", type(self._coro).__name__)
        return f"CoroutineComputation({name})"


def as_computation(obj: Any) -> Computation:
    """
    Turn obj into a Computation.

    Accepts Computation instances, coroutine objects and awaitables.

    Raises:
        TypeError: If obj cannot be polled.
    """
    if isinstance(obj, Computation):
        return obj
    if isinstance(obj, Coroutine):
        return CoroutineComputation(obj)
    if hasattr(obj, "__await__"):
        return CoroutineComputation(obj.__await__())
    raise TypeError(f"Expected a coroutine or Computation, got {type(obj).__name__}")


class _Ready(Computation):
    __slots__ = ("_value",)

    def __init__(self, value: Any) -> None:
        self._value = value

    def poll(self, cx: Context) -> Poll:
        return Ready(self._value)


def ready(value: Any = None) -> Computation:
    """A computation that is finished before its first poll."""
    return _Ready(value)


class Map(Computation):
    """Apply fn to the value of inner."""

    __slots__ = ("_inner", "_fn")

    def __init__(self, inner: Any, fn: Callable[[Any], Any]) -> None:
        self._inner = as_computation(inner)
        self._fn = fn

    def poll(self, cx: Context) -> Poll:
        result = self._inner.poll(cx)
        if result is PENDING:
            return PENDING
        return Ready(self._fn(result.value))

    def on_cancel(self, cx: Context | None) -> None:
        self._inner.on_cancel(cx)


class AndThen(Computation):
    """
    Sequence two computations.

    fn receives the value of the first computation and returns the second
    (a Computation or a coroutine). The second is polled in the same poll
    that finished the first.
    """

    __slots__ = ("_current", "_fn")

    def __init__(self, first: Any, fn: Callable[[Any], Any]) -> None:
        self._current = as_computation(first)
        self._fn: Callable[[Any], Any] | None = fn

    def poll(self, cx: Context) -> Poll:
        while True:
            result = self._current.poll(cx)
            if result is PENDING:
                return PENDING
            if self._fn is None:
                return result
            fn, self._fn = self._fn, None
            self._current = as_computation(fn(result.value))

    def on_cancel(self, cx: Context | None) -> None:
        self._current.on_cancel(cx)


class JoinAll(Computation):
    """
    Wait for every child, returning their values in order.

    Children are polled in order each time the task is polled. The first
    child failure fails the join, and the remaining children get
    on_cancel().
    """

    __slots__ = ("_children", "_results", "_pending")

    _MISSING = object()

    def __init__(self, children: Iterable[Any]) -> None:
        self._children = [as_computation(child) for child in children]
        self._results: list[Any] = [self._MISSING] * len(self._children)
        self._pending = len(self._children)

    def poll(self, cx: Context) -> Poll:
        for index, child in enumerate(self._children):
            if self._results[index] is not self._MISSING:
                continue
            try:
                result = child.poll(cx)
            except BaseException:
                self._cancel_rest(cx, skip=index)
                raise
            if result is not PENDING:
                self._results[index] = result.value
                self._pending -= 1
        if self._pending:
            return PENDING
        return Ready(list(self._results))

    def on_cancel(self, cx: Context | None) -> None:
        self._cancel_rest(cx)

    def _cancel_rest(self, cx: Context | None, skip: int = -1) -> None:
        for index, child in enumerate(self._children):
            if index != skip and self._results[index] is self._MISSING:
                child.on_cancel(cx)


def gather(*awaitables: Any) -> JoinAll:
    """Join on several awaitables: ``values = await gather(a, b, c)``."""
    return JoinAll(awaitables)


class _YieldNow(Computation):
    __slots__ = ("_yielded",)

    def __init__(self) -> None:
        self._yielded = False

    def poll(self, cx: Context) -> Poll:
        if self._yielded:
            return Ready(None)
        self._yielded = True
        cx.waker.wake()
        return PENDING


def yield_now() -> Computation:
    """Suspend once and resume in the next batch."""
    return _YieldNow()
