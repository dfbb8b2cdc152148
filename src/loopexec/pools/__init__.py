# Copyright 2025 Softwell S.r.l.
# Licensed under the Apache License, Version 2.0

"""
Worker pools for blocking native calls.

This package provides the thread-pool submission primitive the executor
consumes: ``submit(closure, callback)``. Only pool workers ever run the
blocking native calls; the loop thread never does.

Available pools:
- ThreadPool: concurrent.futures ThreadPoolExecutor, bypass mode for tests
- PriorityPool: fixed threads, priority levels, cancellable queued items

Usage::

    from loopexec.pools import PriorityPool

    pool = PriorityPool(name="tiles", max_workers=2, priorities=3)
    work = pool.submit(render_tile, on_rendered, priority=2)
"""

from .base import BasePool, FinishedWork, Monitor, WorkHandle
from .local import ThreadPool
from .priority import PriorityPool, WorkItem

__all__ = [
    "BasePool",
    "FinishedWork",
    "Monitor",
    "PriorityPool",
    "ThreadPool",
    "WorkHandle",
    "WorkItem",
]
