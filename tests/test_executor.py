# Copyright 2025 Softwell S.r.l.
# Licensed under the Apache License, Version 2.0

"""Tests for Executor and TaskHandle."""

from __future__ import annotations

import gc
import random
import threading
import time
from typing import Any

import pytest

from loopexec import (
    BlockingCallError,
    Computation,
    Context,
    Event,
    Executor,
    ExecutorConfig,
    ExecutorShutdown,
    ManualLoop,
    PriorityPool,
    ProtocolViolation,
    Ready,
    TaskCancelled,
    TaskNotFinished,
    ThreadPool,
    current_context,
    gather,
    ready,
    run_blocking,
    yield_now,
)
from loopexec.types import PENDING


def sleep_and_return(index: int, seconds: float) -> int:
    time.sleep(seconds)
    return index


class Foreign:
    """An awaitable from another event loop."""

    def __await__(self):  # type: ignore[no-untyped-def]
        yield "foreign-future"


class Parked(Computation):
    """Never finishes; keeps its waker for other threads."""

    def __init__(self) -> None:
        self.waker: Any = None

    def poll(self, cx: Context) -> Any:
        self.waker = cx.waker
        return PENDING


@pytest.fixture
def loop() -> ManualLoop:
    return ManualLoop()


@pytest.fixture
def executor(loop: ManualLoop):
    executor = Executor(loop, config=ExecutorConfig(name="test", workers=4))
    yield executor
    executor.shutdown()


# =============================================================================
# Spawning and completion
# =============================================================================


class TestSpawn:
    """Tests for spawn() and task completion."""

    def test_runs_to_completion(self, executor: Executor, loop: ManualLoop) -> None:
        """A spawned coroutine runs and its value reaches the handle."""

        async def add(a: int, b: int) -> int:
            return a + b

        handle = executor.spawn(add(1, 2))
        assert not handle.done()
        assert loop.run_until_complete(handle, timeout=5.0) == 3
        assert handle.done()
        assert len(executor) == 0
        assert executor.metrics["completed"] == 1

    def test_accepts_computations(self, executor: Executor, loop: ManualLoop) -> None:
        """Explicit computations can be spawned directly."""
        handle = executor.spawn(ready("page"))
        assert loop.run_until_complete(handle, timeout=5.0) == "page"

    def test_rejects_plain_values(self, executor: Executor) -> None:
        """Values that cannot be polled are refused."""
        with pytest.raises(TypeError):
            executor.spawn(42)

    def test_one_notification_per_burst(self, executor: Executor, loop: ManualLoop) -> None:
        """Several spawns before the loop runs schedule one batch."""
        handles = [executor.spawn(ready(i)) for i in range(3)]
        assert len(loop) == 1
        loop.run_pending()
        assert all(handle.done() for handle in handles)

    def test_result_before_finish(self, executor: Executor) -> None:
        """result() on a running task raises TaskNotFinished."""
        handle = executor.spawn(ready())
        with pytest.raises(TaskNotFinished):
            handle.result()
        with pytest.raises(TaskNotFinished):
            handle.exception()

    def test_spawn_from_worker_thread(self, executor: Executor, loop: ManualLoop) -> None:
        """spawn() is safe from a thread other than the loop thread."""
        handles: list[Any] = []
        thread = threading.Thread(target=lambda: handles.append(executor.spawn(ready(7))))
        thread.start()
        thread.join()
        assert loop.run_until_complete(handles[0], timeout=5.0) == 7

    def test_spawn_count_from_many_threads(self, executor: Executor, loop: ManualLoop) -> None:
        """Concurrent spawns are all counted."""
        handles: list[Any] = []
        handles_lock = threading.Lock()

        def spawner() -> None:
            for i in range(200):
                handle = executor.spawn(ready(i)).detach()
                with handles_lock:
                    handles.append(handle)

        threads = [threading.Thread(target=spawner) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert executor.metrics["spawned"] == 1600
        assert loop.run_until(lambda: all(h.done() for h in handles), timeout=10.0)

    def test_current_executor(self, executor: Executor, loop: ManualLoop) -> None:
        """Executor.current() is the polling executor, None elsewhere."""

        async def which() -> Any:
            return Executor.current()

        assert loop.run_until_complete(executor.spawn(which()), timeout=5.0) is executor
        assert Executor.current() is None

    def test_repr(self, executor: Executor) -> None:
        """repr shows the name and counts."""
        assert "test" in repr(executor)


# =============================================================================
# Batches
# =============================================================================


class TestBatches:
    """Tests for run_one_batch()."""

    def test_batch_size_bounds_each_batch(self, loop: ManualLoop) -> None:
        """No batch polls more than batch_size tasks."""
        executor = Executor(loop, config=ExecutorConfig(workers=1, batch_size=2))
        try:
            handles = [executor.spawn(ready(i)) for i in range(5)]
            assert executor.run_one_batch() == 2
            assert executor.run_one_batch() == 2
            assert executor.run_one_batch() == 1
            assert executor.run_one_batch() == 0
            assert [handle.result() for handle in handles] == [0, 1, 2, 3, 4]
        finally:
            executor.shutdown()

    def test_leftover_work_renotifies_host(self, loop: ManualLoop) -> None:
        """A batch that leaves work queued asks the host for another turn."""
        executor = Executor(loop, config=ExecutorConfig(workers=1, batch_size=1))
        try:
            handles = [executor.spawn(ready(i)) for i in range(3)]
            assert loop.run_until(lambda: all(h.done() for h in handles), timeout=5.0)
            assert executor.metrics["batches"] >= 3
        finally:
            executor.shutdown()

    def test_mid_poll_wake_waits_for_next_batch(self, executor: Executor) -> None:
        """A task that wakes itself is polled once per batch, not re-entered."""

        async def spin() -> int:
            for _ in range(3):
                await yield_now()
            return 3

        handle = executor.spawn(spin())
        for expected_polls in (1, 2, 3):
            assert executor.run_one_batch() == 1
            assert executor.metrics["polls"] == expected_polls
        assert executor.run_one_batch() == 1
        assert handle.result() == 3

    def test_flooding_task_cannot_starve_others(self, executor: Executor) -> None:
        """Every ready task gets a poll in each batch."""
        stop: list[bool] = []

        async def flood() -> None:
            while not stop:
                await yield_now()

        async def victim() -> str:
            await yield_now()
            return "rendered"

        flooder = executor.spawn(flood())
        handle = executor.spawn(victim())
        executor.run_one_batch()
        executor.run_one_batch()
        assert handle.result() == "rendered"
        stop.append(True)
        executor.run_one_batch()
        assert flooder.done()

    def test_batch_time_is_bounded_under_wake_flood(self, loop: ManualLoop) -> None:
        """Wakes flooding in from other threads neither stretch a batch nor delay a newcomer."""
        executor = Executor(loop, config=ExecutorConfig(workers=1, batch_size=8))
        parked = [Parked() for _ in range(32)]
        for computation in parked:
            executor.spawn(computation).detach()
        while executor.run_one_batch():
            pass
        stop = threading.Event()

        def hammer() -> None:
            while not stop.is_set():
                for computation in parked:
                    computation.waker.wake()

        threads = [threading.Thread(target=hammer, daemon=True) for _ in range(4)]
        for thread in threads:
            thread.start()
        try:
            newcomer = executor.spawn(ready("on time"))
            durations: list[float] = []
            # 32 parked ids at most are ahead of the newcomer
            for _ in range(5):
                started = time.perf_counter()
                assert executor.run_one_batch() <= 8
                durations.append(time.perf_counter() - started)
            assert newcomer.result() == "on time"
            assert max(durations) < 1.0
        finally:
            stop.set()
            for thread in threads:
                thread.join()
            executor.shutdown()

    def test_reentrant_batch_is_ignored(self, executor: Executor, loop: ManualLoop) -> None:
        """Calling run_one_batch() from inside a poll does nothing outside strict mode."""

        async def reenter() -> int:
            return current_context().executor.run_one_batch()  # type: ignore[union-attr]

        assert loop.run_until_complete(executor.spawn(reenter()), timeout=5.0) == 0


# =============================================================================
# Failures
# =============================================================================


class TestFailures:
    """Tests for failure isolation."""

    def test_failure_completes_task_with_error(self, executor: Executor, loop: ManualLoop) -> None:
        """An exception fails only its own task."""

        async def broken() -> None:
            raise ValueError("bad page tree")

        async def fine() -> str:
            return "ok"

        bad = executor.spawn(broken())
        good = executor.spawn(fine())
        assert loop.run_until(lambda: bad.done() and good.done(), timeout=5.0)

        assert isinstance(bad.exception(), ValueError)
        with pytest.raises(ValueError, match="bad page tree"):
            bad.result()
        assert good.result() == "ok"
        assert good.exception() is None
        assert executor.metrics["failed"] == 1
        assert executor.metrics["completed"] == 1

    def test_blocking_error_reaches_task(self, executor: Executor, loop: ManualLoop) -> None:
        """An error in blocking work surfaces as BlockingCallError in the task."""

        def corrupt() -> None:
            raise OSError("truncated file")

        async def load() -> None:
            await run_blocking(corrupt)

        handle = executor.spawn(load())
        with pytest.raises(BlockingCallError) as exc_info:
            loop.run_until_complete(handle, timeout=5.0)
        assert isinstance(exc_info.value.__cause__, OSError)

    def test_blocking_error_can_be_handled(self, executor: Executor, loop: ManualLoop) -> None:
        """Tasks can recover from failed blocking calls."""

        async def load() -> str:
            try:
                await run_blocking(lambda: 1 / 0)
            except BlockingCallError:
                return "fallback"
            return "unreachable"

        assert loop.run_until_complete(executor.spawn(load()), timeout=5.0) == "fallback"

    def test_foreign_awaitable_fails_task(self, executor: Executor, loop: ManualLoop) -> None:
        """Awaiting another loop's future fails the task, not the executor."""

        async def confused() -> None:
            await Foreign()

        handle = executor.spawn(confused())
        with pytest.raises(ProtocolViolation):
            loop.run_until_complete(handle, timeout=5.0)

    def test_bad_poll_result_fails_task(self, executor: Executor, loop: ManualLoop) -> None:
        """A poll returning neither Ready nor PENDING fails the task."""

        class Sloppy(Computation):
            def poll(self, cx: Context) -> Any:
                return 42

        handle = executor.spawn(Sloppy())
        loop.run_until(handle.done, timeout=5.0)
        assert isinstance(handle.exception(), ProtocolViolation)


class TestStrictMode:
    """Tests for strict protocol checking."""

    @pytest.fixture
    def strict(self, loop: ManualLoop):
        executor = Executor(loop, config=ExecutorConfig(workers=1, strict=True))
        yield executor
        executor.shutdown()

    def test_bad_poll_result_raises(self, strict: Executor) -> None:
        """In strict mode violations escape run_one_batch()."""

        class Sloppy(Computation):
            def poll(self, cx: Context) -> Any:
                return "not a poll result"

        handle = strict.spawn(Sloppy())
        with pytest.raises(ProtocolViolation):
            strict.run_one_batch()
        assert isinstance(handle.exception(), ProtocolViolation)

    def test_remaining_batch_survives_violation(self, strict: Executor) -> None:
        """Tasks drained after the violation are polled by the next batch."""

        class Sloppy(Computation):
            def poll(self, cx: Context) -> Any:
                return None

        strict.spawn(Sloppy()).detach()
        after = strict.spawn(ready("next"))
        with pytest.raises(ProtocolViolation):
            strict.run_one_batch()
        assert not after.done()
        strict.run_one_batch()
        assert after.result() == "next"

    def test_reentrant_batch_fails_task(self, strict: Executor) -> None:
        """Re-entering run_one_batch() in strict mode fails the polling task."""

        async def reenter() -> None:
            current_context().executor.run_one_batch()  # type: ignore[union-attr]

        handle = strict.spawn(reenter())
        strict.run_one_batch()
        assert isinstance(handle.exception(), ProtocolViolation)


# =============================================================================
# Waking
# =============================================================================


class SelfWaking(Computation):
    """Wakes itself from inside poll and from another thread, every poll."""

    def __init__(self, rounds: int) -> None:
        self.rounds = rounds
        self.polls = 0
        self.active = False
        self.overlaps = 0

    def poll(self, cx: Context) -> Any:
        if self.active:
            self.overlaps += 1
        self.active = True
        try:
            self.polls += 1
            if self.polls >= self.rounds:
                return Ready(self.polls)
            thread = threading.Thread(target=cx.waker.wake)
            thread.start()
            cx.waker.wake()
            thread.join()
            return PENDING
        finally:
            self.active = False


class TestWaking:
    """Tests for the wake protocol as seen through the executor."""

    def test_duplicate_wakes_do_not_duplicate_polls(self, executor: Executor) -> None:
        """Concurrent wakes during a poll cause exactly one more poll."""
        computation = SelfWaking(rounds=20)
        handle = executor.spawn(computation)
        for _ in range(20):
            assert executor.run_one_batch() == 1
        assert handle.result() == 20
        assert computation.overlaps == 0
        assert executor.metrics["polls"] == 20

    def test_wake_after_completion_is_noop(self, executor: Executor, loop: ManualLoop) -> None:
        """Wakers of finished tasks may still be called safely."""

        async def grab_waker() -> Any:
            return current_context().waker

        waker = loop.run_until_complete(executor.spawn(grab_waker()), timeout=5.0)
        waker.wake()
        assert executor.metrics["queued"] == 0

    def test_no_lost_wakeups_under_concurrency(self, executor: Executor, loop: ManualLoop) -> None:
        """Events set from racing threads always resume their tasks."""
        events = [Event() for _ in range(200)]

        async def waiter(event: Event) -> bool:
            await event.wait()
            return True

        handles = [executor.spawn(waiter(event)) for event in events]
        loop.run_pending()

        def setter(chunk: list[Event], seed: int) -> None:
            rng = random.Random(seed)
            for event in chunk:
                time.sleep(rng.random() / 2000)
                event.set()

        threads = [
            threading.Thread(target=setter, args=(events[i::4], i)) for i in range(4)
        ]
        for thread in threads:
            thread.start()
        assert loop.run_until(lambda: all(h.done() for h in handles), timeout=30.0)
        for thread in threads:
            thread.join()
        assert all(handle.result() for handle in handles)

    def test_storm_of_wakes_from_threads(self, executor: Executor, loop: ManualLoop) -> None:
        """Tasks hammered by wakes from many threads are never polled concurrently."""
        computations = [SelfWaking(rounds=10) for _ in range(20)]
        handles = [executor.spawn(c) for c in computations]
        stop = threading.Event()

        def hammer() -> None:
            while not stop.is_set():
                for handle in handles:
                    executor._scheduler.wake(handle.id)
                time.sleep(0.0001)

        threads = [threading.Thread(target=hammer) for _ in range(4)]
        for thread in threads:
            thread.start()
        try:
            assert loop.run_until(lambda: all(h.done() for h in handles), timeout=30.0)
        finally:
            stop.set()
            for thread in threads:
                thread.join()
        assert sum(c.overlaps for c in computations) == 0


# =============================================================================
# Joining tasks
# =============================================================================


class TestJoin:
    """Tests for awaiting handles and done callbacks."""

    def test_await_child(self, executor: Executor, loop: ManualLoop) -> None:
        """A task can await another task's handle."""

        async def child() -> int:
            return await run_blocking(sleep_and_return, 21, 0.001)

        async def parent() -> int:
            return (await executor.spawn(child())) * 2

        assert loop.run_until_complete(executor.spawn(parent()), timeout=5.0) == 42

    def test_await_failed_child(self, executor: Executor, loop: ManualLoop) -> None:
        """A child's error is raised in the awaiting parent."""

        async def child() -> None:
            raise KeyError("missing font")

        async def parent() -> str:
            try:
                await executor.spawn(child())
            except KeyError:
                return "handled"
            return "unreachable"

        assert loop.run_until_complete(executor.spawn(parent()), timeout=5.0) == "handled"

    def test_gather_children(self, executor: Executor, loop: ManualLoop) -> None:
        """gather() joins several blocking calls from one task."""

        async def render_all() -> list[int]:
            return await gather(*(run_blocking(sleep_and_return, i, 0.001) for i in range(5)))

        assert loop.run_until_complete(executor.spawn(render_all()), timeout=5.0) == [0, 1, 2, 3, 4]

    def test_done_callback(self, executor: Executor, loop: ManualLoop) -> None:
        """Done callbacks run once the task finishes, or at once if it already has."""
        seen: list[Any] = []
        handle = executor.spawn(ready("value"))
        handle.add_done_callback(lambda h: seen.append(("before", h.result())))
        loop.run_until_complete(handle, timeout=5.0)
        handle.add_done_callback(lambda h: seen.append(("after", h.result())))
        assert seen == [("before", "value"), ("after", "value")]

    def test_done_callback_runs_outside_task_context(
        self, executor: Executor, loop: ManualLoop
    ) -> None:
        """A done callback does not see the finished task as the current one."""
        seen: list[Any] = []

        def record(handle: Any) -> None:
            seen.append(Executor.current())
            with pytest.raises(ProtocolViolation):
                current_context()
            seen.append("checked")

        handle = executor.spawn(ready("value"))
        handle.add_done_callback(record)
        loop.run_until_complete(handle, timeout=5.0)
        assert seen == [None, "checked"]

    def test_failing_done_callback_is_logged(
        self, executor: Executor, loop: ManualLoop, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A broken callback does not disturb the executor."""
        handle = executor.spawn(ready())
        handle.add_done_callback(lambda h: 1 / 0)
        other = executor.spawn(ready("still fine"))
        loop.run_until(lambda: handle.done() and other.done(), timeout=5.0)
        assert other.result() == "still fine"
        assert "Done callback" in caplog.text


# =============================================================================
# Cancellation
# =============================================================================


class TestCancellation:
    """Tests for cooperative cancellation."""

    def test_cancel_runs_cleanup(self, executor: Executor, loop: ManualLoop) -> None:
        """A cancelled task gets one cleanup poll, then ends CANCELLED."""
        never = Event()
        log: list[str] = []

        async def waits() -> None:
            try:
                await never.wait()
            finally:
                log.append("released")

        handle = executor.spawn(waits())
        loop.run_pending()
        assert handle.cancel()
        assert loop.run_until(handle.done, timeout=5.0)

        assert handle.cancelled()
        assert log == ["released"]
        with pytest.raises(TaskCancelled):
            handle.result()
        assert executor.metrics["cancelled"] == 1
        assert not handle.cancel()

    def test_dropping_handle_cancels(self, executor: Executor, loop: ManualLoop) -> None:
        """Dropping the only handle cancels the task."""
        started: list[bool] = []

        async def body() -> None:
            started.append(True)

        executor.spawn(body())
        assert loop.run_until(lambda: len(executor) == 0, timeout=5.0)
        assert started == []
        assert executor.metrics["cancelled"] == 1

    def test_detached_task_runs(self, executor: Executor, loop: ManualLoop) -> None:
        """detach() lets a task run without its handle."""
        started: list[bool] = []

        async def body() -> None:
            started.append(True)

        executor.spawn(body()).detach()
        assert loop.run_until(lambda: len(executor) == 0, timeout=5.0)
        assert started == [True]
        assert executor.metrics["completed"] == 1

    def test_cancel_during_blocking_call(self, executor: Executor, loop: ManualLoop) -> None:
        """Cancelling a task whose blocking call is running does not wait for it."""
        release = threading.Event()

        async def stuck() -> None:
            await run_blocking(release.wait, 5.0)

        handle = executor.spawn(stuck())
        executor.run_one_batch()
        handle.cancel()
        try:
            assert loop.run_until(handle.done, timeout=5.0)
            assert handle.cancelled()
        finally:
            release.set()

        # The late completion frees its slot in the bridge
        assert loop.run_until(lambda: executor.bridge.metrics["in_flight"] == 0, timeout=5.0)
        metrics = executor.bridge.metrics
        assert metrics["completed"] == 1
        assert metrics["deferred"] == 0
        assert executor.metrics["live"] == 0

    def test_collected_handle_does_not_take_executor_locks(
        self, executor: Executor, loop: ManualLoop
    ) -> None:
        """A handle collected while the ready queue is locked defers its cancellation."""
        never = Event()
        log: list[str] = []

        async def waits() -> None:
            try:
                await never.wait()
            finally:
                log.append("released")

        class Holder:
            pass

        def collect_under_queue_lock() -> None:
            with executor._queue._lock:
                gc.collect()

        gc.disable()
        try:
            holder = Holder()
            holder.self = holder  # type: ignore[attr-defined]
            holder.handle = executor.spawn(waits())  # type: ignore[attr-defined]
            loop.run_pending()
            del holder
            collector = threading.Thread(target=collect_under_queue_lock, daemon=True)
            collector.start()
            collector.join(timeout=5.0)
            assert not collector.is_alive()
        finally:
            gc.enable()

        assert loop.run_until(lambda: len(executor) == 0, timeout=5.0)
        assert log == ["released"]
        assert executor.metrics["cancelled"] == 1

    def test_cancelled_child_cancels_parent(self, executor: Executor, loop: ManualLoop) -> None:
        """Awaiting a cancelled task raises TaskCancelled in the parent."""
        never = Event()

        async def child() -> None:
            await never.wait()

        child_handle = executor.spawn(child())

        async def parent() -> None:
            await child_handle

        parent_handle = executor.spawn(parent())
        loop.run_pending()
        child_handle.cancel()
        assert loop.run_until(parent_handle.done, timeout=5.0)
        assert parent_handle.cancelled()

    def test_shutdown_cancels_live_tasks(self, loop: ManualLoop) -> None:
        """shutdown() cancels live tasks and refuses new ones."""
        executor = Executor(loop, config=ExecutorConfig(workers=1))
        never = Event()
        log: list[str] = []

        async def waits() -> None:
            try:
                await never.wait()
            finally:
                log.append("closed")

        handle = executor.spawn(waits())
        loop.run_pending()
        executor.shutdown()

        assert handle.cancelled()
        assert log == ["closed"]
        with pytest.raises(ExecutorShutdown):
            executor.spawn(waits())


# =============================================================================
# Pools
# =============================================================================


class TestPools:
    """Tests for the executor's worker pool."""

    def test_default_pool_from_config(self, executor: Executor) -> None:
        """Without a pool the executor builds a ThreadPool."""
        assert isinstance(executor.pool, ThreadPool)
        metrics = executor.metrics
        assert metrics["pool"]["name"] == "test"
        assert metrics["bridge"]["submitted"] == 0

    def test_priority_pool_from_config(self, loop: ManualLoop) -> None:
        """pool = "priority" builds a PriorityPool."""
        executor = Executor(loop, config=ExecutorConfig(workers=2, pool="priority", priorities=3))
        try:
            assert isinstance(executor.pool, PriorityPool)

            async def urgent() -> int:
                return await executor.run_blocking(sleep_and_return, 9, 0.001, priority=2)

            assert loop.run_until_complete(executor.spawn(urgent()), timeout=5.0) == 9
        finally:
            executor.shutdown()

    def test_own_pool_is_shut_down(self, loop: ManualLoop) -> None:
        """A pool built from config is shut down with the executor."""
        executor = Executor(loop, config=ExecutorConfig(workers=1))
        pool = executor.pool
        executor.shutdown()
        with pytest.raises(ExecutorShutdown):
            pool.submit(lambda: None, lambda outcome: None)

    def test_caller_pool_is_not_shut_down(self, loop: ManualLoop) -> None:
        """A pool passed in stays usable after the executor shuts down."""
        pool = ThreadPool(name="shared", bypass=True)
        executor = Executor(loop, pool=pool)

        async def inline() -> str:
            return await run_blocking(lambda: "inline")

        assert loop.run_until_complete(executor.spawn(inline()), timeout=5.0) == "inline"
        executor.shutdown()
        pool.submit(lambda: None, lambda outcome: None)
        assert pool.metrics["completed"] == 2


# =============================================================================
# End to end
# =============================================================================


class TestEndToEnd:
    """The whole path: spawn, offload, wake, complete."""

    def test_thousand_blocking_tasks(self, executor: Executor, loop: ManualLoop) -> None:
        """1000 tasks each sleeping 1-10 ms on a worker all return their index."""
        rng = random.Random(1234)

        async def job(index: int, delay: float) -> int:
            return await run_blocking(sleep_and_return, index, delay)

        handles = [executor.spawn(job(i, rng.uniform(0.001, 0.01))) for i in range(1000)]
        assert loop.run_until(lambda: all(h.done() for h in handles), timeout=60.0)

        assert [handle.result() for handle in handles] == list(range(1000))
        metrics = executor.metrics
        assert metrics["completed"] == 1000
        assert metrics["failed"] == 0
        assert metrics["live"] == 0
        assert metrics["bridge"]["completed"] == 1000
