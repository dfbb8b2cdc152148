# Copyright 2025 Softwell S.r.l.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""loopexec - Cooperative task executor for blocking native work on a host event loop.

Main components:
    Executor: Polls ready tasks in bounded batches when the host loop asks
    TaskHandle: Awaitable, cancellable handle to a spawned task
    run_blocking: Offload a blocking call to a worker thread and await it
    Event: Cross-thread flag that tasks can await

Computations:
    Computation: Explicit poll() state machine, awaitable from coroutines
    Map, AndThen, JoinAll, gather, ready, yield_now: Combinators

Pools:
    ThreadPool: concurrent.futures based worker pool, bypass mode for tests
    PriorityPool: Priority levels and cancellable queued work

Hosts:
    ManualLoop: Caller-driven loop for tests and scripts
    AsyncioHost: Run the executor on an asyncio event loop

Usage:
    from loopexec import Executor, ManualLoop, run_blocking

    async def page_count(path):
        doc = await run_blocking(open_document, path)
        return await run_blocking(doc.count_pages)

    loop = ManualLoop()
    executor = Executor(loop)
    pages = loop.run_until_complete(executor.spawn(page_count("a.pdf")))
"""

__version__ = "0.1.0"

from .blocking import BlockingBridge, BlockingFuture, blocking, run_blocking
from .computation import (
    AndThen,
    Computation,
    Context,
    CoroutineComputation,
    JoinAll,
    Map,
    as_computation,
    current_context,
    gather,
    ready,
    yield_now,
)
from .config import ConfigError, ExecutorConfig
from .exceptions import (
    BlockingCallError,
    ExecutorError,
    ExecutorShutdown,
    ProtocolViolation,
    TaskCancelled,
    TaskNotFinished,
)
from .executor import Executor, TaskHandle
from .hosts import AsyncioHost, HostLoop, ManualLoop
from .pools import BasePool, Monitor, PriorityPool, ThreadPool, WorkHandle
from .sync import Event
from .task import TaskId, TaskState
from .types import PENDING, Outcome, Poll, Ready
from .waker import Waker

__all__ = [
    # Executor
    "Executor",
    "TaskHandle",
    "TaskId",
    "TaskState",
    "Waker",
    # Computations
    "Computation",
    "Context",
    "CoroutineComputation",
    "AndThen",
    "JoinAll",
    "Map",
    "as_computation",
    "current_context",
    "gather",
    "ready",
    "yield_now",
    # Poll results
    "PENDING",
    "Outcome",
    "Poll",
    "Ready",
    # Blocking work
    "BlockingBridge",
    "BlockingFuture",
    "blocking",
    "run_blocking",
    "Event",
    # Pools
    "BasePool",
    "Monitor",
    "PriorityPool",
    "ThreadPool",
    "WorkHandle",
    # Hosts
    "AsyncioHost",
    "HostLoop",
    "ManualLoop",
    # Configuration
    "ConfigError",
    "ExecutorConfig",
    # Exceptions
    "BlockingCallError",
    "ExecutorError",
    "ExecutorShutdown",
    "ProtocolViolation",
    "TaskCancelled",
    "TaskNotFinished",
]
