# Copyright 2025 Softwell S.r.l.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Exception classes for loopexec.

Module Structure
----------------
All exceptions inherit from ExecutorError so callers can catch the whole
family with a single clause:

1. TaskCancelled - A task was cancelled before it produced a result
2. TaskNotFinished - A result was requested from a task still running
3. BlockingCallError - Blocking work raised inside a worker thread
4. ProtocolViolation - The executor was driven in a way it does not allow
5. ExecutorShutdown - Work was submitted after shutdown()

Design Decisions
----------------
- Errors are local to the task that produced them. A task error is never
  raised out of run_one_batch(); the executor stores it in the
  task's join state and the handle holder sees it.
- BlockingCallError always chains the original exception (``__cause__``),
  so tracebacks from the worker thread are preserved.
- ProtocolViolation is raised only in strict mode. Otherwise the executor
  logs it and carries on to preserve liveness.

Example:
    >>> try:
    ...     value = await run_blocking(render_page, doc, 3)
    ... except BlockingCallError as e:
    ...     logger.error(f"render failed: {e.__cause__!r}")
"""

from __future__ import annotations

__all__ = [
    "BlockingCallError",
    "ExecutorError",
    "ExecutorShutdown",
    "ProtocolViolation",
    "TaskCancelled",
    "TaskNotFinished",
]


class ExecutorError(Exception):
    """Base exception for executor operations."""

    pass


class TaskCancelled(ExecutorError):
    """
    Signal that a task has been cancelled.

    Thrown into a cancelled coroutine at its suspension point so that
    ``finally`` blocks and context managers run, and raised by
    TaskHandle.result() for a task that ended cancelled.
    """

    pass


class TaskNotFinished(ExecutorError):
    """Raised when the result of a still running task is requested."""

    pass


class BlockingCallError(ExecutorError):
    """
    Blocking work failed inside a worker thread.

    Attributes:
        func_name: Name of the callable that failed.
    """

    def __init__(self, func_name: str, detail: str = "") -> None:
        self.func_name = func_name
        self.detail = detail
        message = f"Blocking call {func_name} failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    def __repr__(self) -> str:
        """Return detailed string representation."""
        return f"BlockingCallError(func_name={self.func_name!r}, detail={self.detail!r})"


class ProtocolViolation(ExecutorError):
    """The executor was asked to do something its protocol forbids."""

    pass


class ExecutorShutdown(ExecutorError):
    """Raised when spawning on an executor that has been shut down."""

    pass
