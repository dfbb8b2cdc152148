# Copyright 2025 Softwell S.r.l.
# Licensed under the Apache License, Version 2.0

"""
Base pool interface.

Purpose
=======
Defines the thread-pool submission primitive the executor consumes from
its host: ``submit(closure, callback)``. All pools (plain thread pool,
priority pool, or a host toolkit's own pool wrapped in an adapter) must
implement the BasePool interface.

Definition::

    class BasePool(ABC):
        name: str

        @abstractmethod
        def submit(self, closure: Callable[[], Any], callback: Callable[[Outcome], None],
                   priority: int = 0) -> WorkHandle
            '''Run closure on a worker, then callback(outcome) on that worker.'''

        @abstractmethod
        def shutdown(self, wait: bool = True) -> None
            '''Shutdown the pool.'''

        @property
        @abstractmethod
        def metrics(self) -> dict[str, Any]
            '''Return pool metrics.'''

    class WorkHandle(ABC):
        def cancel(self) -> bool
        def is_finished(self) -> bool
        def wait(self, timeout: float | None = None) -> bool
        priority: int
        def set_priority(self, priority: int) -> None

    class Monitor:
        def on_execute(self) -> None
        def on_complete(self) -> None
        def on_canceled(self) -> None

Callback contract
=================
- callback is invoked exactly once per submission, with an Outcome,
  unless cancel() returned True for that submission.
- Work dropped at shutdown is reported as a failure outcome carrying
  ExecutorShutdown, never silently discarded.
- Neither closure nor callback may let an exception escape a worker
  thread. Pools capture closure errors into the Outcome and log callback
  errors.

Design Notes
============
- Metrics dict must include: name, pending, submitted, completed, failed,
  cancelled.
- Monitor hooks run on worker threads (on_canceled on the cancelling
  thread) and must be cheap.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

from ..types import Outcome

__all__ = ["BasePool", "Completion", "FinishedWork", "Monitor", "WorkHandle"]

Completion = Callable[[Outcome], None]

logger = logging.getLogger("loopexec.pools")


class Monitor:
    """
    Hooks observing the lifecycle of pool work.

    Subclass and override what you need. The default implementation does
    nothing.
    """

    def on_execute(self) -> None:
        """A worker started running a closure."""

    def on_complete(self) -> None:
        """A closure finished, successfully or with an error."""

    def on_canceled(self) -> None:
        """A queued closure was cancelled before it started."""


class WorkHandle(ABC):
    """Handle to one submitted closure."""

    __slots__ = ()

    @abstractmethod
    def cancel(self) -> bool:
        """
        Cancel the closure if it has not started.

        Returns:
            True if the closure will never run and its callback will never
            be invoked.
        """
        ...

    @abstractmethod
    def is_finished(self) -> bool:
        """True once the closure ran or was cancelled."""
        ...

    @abstractmethod
    def wait(self, timeout: float | None = None) -> bool:
        """Block until finished. Returns False on timeout. Never call on the loop thread."""
        ...

    @property
    def priority(self) -> int:
        return 0

    def set_priority(self, priority: int) -> None:
        """Change the priority of a queued closure. No-op by default."""


class BasePool(ABC):
    """
    Abstract base class for all worker pools.

    Subclasses must implement:
    - submit(): Run a closure on a worker and report its Outcome
    - shutdown(): Clean up threads
    - metrics: Return performance metrics

    Attributes:
        name: Identifier for this pool instance.

    Example:
        >>> class InlinePool(BasePool):
        ...     name = "inline"
        ...     def submit(self, closure, callback, priority=0):
        ...         callback(Outcome.capture(closure))
        ...         return FinishedWork()
        ...     def shutdown(self, wait=True): pass
        ...     @property
        ...     def metrics(self): return {"name": self.name}
    """

    name: str

    @abstractmethod
    def submit(
        self,
        closure: Callable[[], Any],
        callback: Completion,
        priority: int = 0,
    ) -> WorkHandle:
        """
        Submit a closure for execution on a worker thread.

        Args:
            closure: Zero-argument callable; the blocking work.
            callback: Receives the Outcome on the worker thread.
            priority: Scheduling priority, higher first (where supported).

        Returns:
            WorkHandle for cancellation and inspection.

        Raises:
            ExecutorShutdown: If the pool has been shut down.
        """
        ...

    @abstractmethod
    def shutdown(self, wait: bool = True) -> None:
        """
        Shutdown the pool and release its threads.

        Args:
            wait: If True, let queued work finish before returning.
        """
        ...

    @property
    @abstractmethod
    def metrics(self) -> dict[str, Any]:
        """Return pool metrics."""
        ...

    @staticmethod
    def _deliver(callback: Completion, outcome: Outcome) -> None:
        """Invoke callback on the worker thread, logging instead of raising."""
        try:
            callback(outcome)
        except Exception:
            logger.exception("Pool completion callback failed")

    def __repr__(self) -> str:
        """Return string representation."""
        return f"{self.__class__.__name__}(name={self.name!r})"


class FinishedWork(WorkHandle):
    """WorkHandle for a closure that already ran inline."""

    __slots__ = ()

    def cancel(self) -> bool:
        return False

    def is_finished(self) -> bool:
        return True

    def wait(self, timeout: float | None = None) -> bool:
        return True
