# Copyright 2025 Softwell S.r.l.
# Licensed under the Apache License, Version 2.0

"""
Host loop interface.

Purpose
=======
The executor never runs a loop of its own. It rides on the host's event
loop (the GUI toolkit's main loop, an asyncio loop, or a test loop) and
needs exactly one capability from it: schedule a callback to run on the
loop thread, from any thread.

Definition::

    class HostLoop(Protocol):
        def call_soon_threadsafe(self, callback: Callable[[], object]) -> object

Adapting a GUI toolkit::

    class GLibHost:
        def call_soon_threadsafe(self, callback):
            GLib.idle_add(lambda: callback() and False)

Design Notes
============
- asyncio event loops satisfy the protocol as they are.
- The callback must run on the loop thread, after the call returns. Hosts
  that run it inline break the executor's reentrancy guard.
"""

from __future__ import annotations

from typing import Callable, Protocol, runtime_checkable

__all__ = ["HostLoop"]


@runtime_checkable
class HostLoop(Protocol):
    """Anything that can schedule a callback on its loop thread."""

    def call_soon_threadsafe(self, callback: Callable[[], object]) -> object:
        ...
