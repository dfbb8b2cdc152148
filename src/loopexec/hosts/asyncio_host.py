# Copyright 2025 Softwell S.r.l.
# Licensed under the Apache License, Version 2.0

"""
AsyncioHost: run the executor on an asyncio event loop.

Purpose
=======
Lets an asyncio application (or an async test) host the executor. Batches
run as ordinary loop callbacks, and ``wrap_handle()`` bridges a task into
an asyncio future so that asyncio code can ``await`` it.

Example::

    async def main():
        executor = Executor(AsyncioHost())
        handle = executor.spawn(render_all())
        pages = await executor.host.wrap_handle(handle)

Design Notes
============
- Executor computations must not await asyncio futures directly. Doing so
  fails the task with ProtocolViolation; use ``wrap_handle()`` in the
  other direction only.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Callable

from ..exceptions import TaskCancelled

if TYPE_CHECKING:
    from ..executor import TaskHandle

__all__ = ["AsyncioHost"]


class AsyncioHost:
    """
    HostLoop adapter for an asyncio event loop.

    Attributes:
        loop: The event loop batches run on.
    """

    __slots__ = ("loop",)

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self.loop = loop if loop is not None else asyncio.get_running_loop()

    def call_soon_threadsafe(self, callback: Callable[[], object]) -> None:
        self.loop.call_soon_threadsafe(callback)

    def wrap_handle(self, handle: TaskHandle) -> asyncio.Future:
        """
        Return an asyncio future resolved with the task's result.

        A cancelled task cancels the future.
        """
        future = self.loop.create_future()

        def transfer(done: TaskHandle) -> None:
            if future.done():
                return
            if done.cancelled():
                future.cancel()
                return
            try:
                future.set_result(done.result())
            except TaskCancelled:
                future.cancel()
            except Exception as e:
                future.set_exception(e)

        handle.add_done_callback(
            lambda done: self.loop.call_soon_threadsafe(transfer, done)
        )
        return future

    def __repr__(self) -> str:
        return f"AsyncioHost(loop={self.loop!r})"
