# Copyright 2025 Softwell S.r.l.
# Licensed under the Apache License, Version 2.0

"""
Host loop adapters.

The executor is driven by a foreign event loop it does not own. Any object
with ``call_soon_threadsafe(callback)`` qualifies (see HostLoop).

Available hosts:
- ManualLoop: caller-driven loop for tests and the bench command
- AsyncioHost: asyncio event loop, with a bridge from task handles to futures
"""

from .asyncio_host import AsyncioHost
from .base import HostLoop
from .manual import ManualLoop

__all__ = ["AsyncioHost", "HostLoop", "ManualLoop"]
