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

"""
loopexec CLI entry point.

Usage:
    loopexec bench                          # 1000 tasks on 4 worker threads
    loopexec bench --tasks 200 --workers 2  # Smaller run
    loopexec bench --pool priority          # Use the priority pool

Every task awaits one blocking call that sleeps 1-10 ms and returns the
task's index. The run fails unless every task returns its own index.
"""

from __future__ import annotations

import logging
import random
import sys
import time

import orjson

DEFAULT_TASKS = 1000
BENCH_TIMEOUT = 120.0


def _take_option(argv: list[str], flag: str, default: str) -> tuple[str, list[str]]:
    """Remove ``flag VALUE`` from argv, returning the value and the rest."""
    if flag not in argv:
        return default, argv
    index = argv.index(flag)
    if index + 1 >= len(argv):
        raise ValueError(f"{flag} requires a value")
    return argv[index + 1], argv[:index] + argv[index + 2 :]


def _sleep_and_return(index: int, seconds: float) -> int:
    time.sleep(seconds)
    return index


def cmd_bench(argv: list[str]) -> int:
    """Run the end-to-end scenario and print executor metrics as JSON."""
    from .config import ConfigError, ExecutorConfig
    from .executor import Executor
    from .hosts import ManualLoop

    try:
        tasks_arg, argv = _take_option(argv, "--tasks", str(DEFAULT_TASKS))
        level, argv = _take_option(argv, "--log-level", "WARNING")
        tasks = int(tasks_arg)
        config = ExecutorConfig(argv=argv)
    except (ValueError, ConfigError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    loop = ManualLoop()
    executor = Executor(loop, config=config)
    finished = 0

    def on_done(handle: object) -> None:
        nonlocal finished
        finished += 1

    async def job(index: int) -> int:
        delay = random.uniform(0.001, 0.01)
        return await executor.run_blocking(_sleep_and_return, index, delay)

    print(f"loopexec bench: {tasks} tasks, {config.workers} workers, {config.pool} pool", flush=True)
    start = time.perf_counter()
    handles = [executor.spawn(job(index)) for index in range(tasks)]
    for handle in handles:
        handle.add_done_callback(on_done)

    try:
        if not loop.run_until(lambda: finished == tasks, timeout=BENCH_TIMEOUT):
            print(f"Error: {tasks - finished} tasks still running after {BENCH_TIMEOUT}s", file=sys.stderr)
            return 1
        elapsed = time.perf_counter() - start

        wrong = [index for index, handle in enumerate(handles) if handle.exception() or handle.result() != index]
        if wrong:
            print(f"Error: {len(wrong)} tasks returned a wrong result, first at index {wrong[0]}", file=sys.stderr)
            return 1

        metrics = executor.metrics
        metrics["elapsed_ms"] = round(elapsed * 1000, 3)
        print(orjson.dumps(metrics, option=orjson.OPT_INDENT_2).decode(), flush=True)
    finally:
        executor.shutdown()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = sys.argv[1:] if argv is None else argv

    # Handle --version
    if "--version" in args or "-v" in args:
        from . import __version__

        print(f"loopexec {__version__}")
        return 0

    # Handle --help
    if "--help" in args or "-h" in args or not args:
        print("Usage: loopexec bench [options]")
        print()
        print("Options:")
        print(f"  --tasks N          Number of tasks (default: {DEFAULT_TASKS})")
        print("  --workers N        Worker threads (default: 4)")
        print("  --pool TYPE        thread or priority (default: thread)")
        print("  --log-level LEVEL  Logging level (default: WARNING)")
        print("  --version, -v      Show version")
        print("  --help, -h         Show this help")
        return 0

    subcommand = args[0]
    if subcommand != "bench":
        print(f"Error: unknown subcommand '{subcommand}'", file=sys.stderr)
        return 1

    return cmd_bench(args[1:])


if __name__ == "__main__":
    sys.exit(main())
