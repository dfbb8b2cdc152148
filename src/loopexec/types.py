# Copyright 2025 Softwell S.r.l.
# Licensed under the Apache License, Version 2.0

"""Poll result types for loopexec.

Purpose
=======
This module defines the small value types that flow between computations,
the executor and the worker pools. They carry no behaviour beyond
construction and unwrapping.

Type Definitions
================

PENDING
    Singleton returned by ``Computation.poll()`` when the computation is
    suspended. The computation must have arranged for its waker to be
    invoked before returning it.

Ready(value)
    Returned by ``Computation.poll()`` when the computation has finished.
    ``Ready`` is a NamedTuple so ``poll.value`` reads naturally.

    Definition::

        Poll = Ready | PendingType

Outcome
    Result of a unit of blocking work: either a value or the exception the
    work raised. Built on the worker thread by ``Outcome.capture()``, read on
    the loop thread.

    Definition::

        class Outcome:
            ok: bool
            value: Any          # raises if the outcome is a failure
            error: BaseException | None
            def unwrap(self) -> Any

Example::

    outcome = Outcome.capture(lambda: 21 + 21)
    assert outcome.ok and outcome.unwrap() == 42

    outcome = Outcome.capture(lambda: 1 / 0)
    assert isinstance(outcome.error, ZeroDivisionError)
"""

from __future__ import annotations

import time
from typing import Any, Callable, NamedTuple, Union

__all__ = ["PENDING", "Outcome", "PendingType", "Poll", "Ready"]


class PendingType:
    """Type of the PENDING singleton."""

    __slots__ = ()
    _instance: PendingType | None = None

    def __new__(cls) -> PendingType:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "PENDING"

    def __reduce__(self) -> str:
        return "PENDING"


PENDING = PendingType()


class Ready(NamedTuple):
    """A finished poll carrying the computation's value."""

    value: Any = None


Poll = Union[Ready, PendingType]


class Outcome:
    """
    Value-or-error result of a blocking call.

    Attributes:
        ok: True when the work returned normally.
        error: The exception raised by the work, or None.
        duration_ms: Wall time spent running the work.
    """

    __slots__ = ("ok", "_value", "error", "duration_ms")

    def __init__(
        self,
        ok: bool,
        value: Any = None,
        error: BaseException | None = None,
        duration_ms: float = 0.0,
    ) -> None:
        self.ok = ok
        self._value = value
        self.error = error
        self.duration_ms = duration_ms

    @classmethod
    def success(cls, value: Any, duration_ms: float = 0.0) -> Outcome:
        return cls(True, value=value, duration_ms=duration_ms)

    @classmethod
    def failure(cls, error: BaseException, duration_ms: float = 0.0) -> Outcome:
        return cls(False, error=error, duration_ms=duration_ms)

    @classmethod
    def capture(cls, closure: Callable[[], Any]) -> Outcome:
        """
        Run closure and capture its result.

        Every exception, including BaseException subclasses, is turned into a
        failure outcome. This is the worker-thread boundary: nothing raised
        by blocking work may escape a worker.
        """
        start = time.perf_counter()
        try:
            value = closure()
        except BaseException as exc:  # noqa: BLE001
            return cls.failure(exc, (time.perf_counter() - start) * 1000)
        return cls.success(value, (time.perf_counter() - start) * 1000)

    @property
    def value(self) -> Any:
        """The returned value. Raises the captured error for failures."""
        return self.unwrap()

    def unwrap(self) -> Any:
        """Return the value or raise the captured error."""
        if not self.ok:
            assert self.error is not None
            raise self.error
        return self._value

    def __repr__(self) -> str:
        if self.ok:
            return f"Outcome.success({self._value!r})"
        return f"Outcome.failure({self.error!r})"
