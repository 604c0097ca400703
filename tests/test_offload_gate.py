"""Tests for OffloadGate using thread workers."""

import asyncio
import threading
import time

import pytest

from loopguard.config.settings import GateConfig
from loopguard.exceptions import (
    CapacityExceededError,
    GateClosedError,
    InvalidWorkItemError,
    WorkCancelledError,
    WorkerExecutionError,
    WorkTimeoutError,
)
from loopguard.models.work_item import CancellationToken, WorkItem, WorkState, WorkTag
from loopguard.services.offload_gate import OffloadGate, Route

import worker_fixtures


def _cpu_threads():
    return {t for t in threading.enumerate() if t.name.startswith("cpu-thread")}


async def fetch(value, delay=0.01):
    await asyncio.sleep(delay)
    return value


async def failing_fetch():
    await asyncio.sleep(0)
    raise ConnectionError("peer went away")


class TestRouting:
    """Tests for the dispatch decision."""

    def test_inline_plain_callable(self, thread_config):
        gate = OffloadGate(thread_config)
        assert gate.route(WorkItem.inline(worker_fixtures.add, 1, 2)) == Route.INLINE

    def test_inline_coroutine_runs_natively(self, thread_config):
        gate = OffloadGate(thread_config)
        assert gate.route(WorkItem.inline(fetch, 1)) == Route.NATIVE

    def test_cpu_bound_follows_worker_kind(self):
        assert OffloadGate(GateConfig(worker_kind="thread")).route(WorkItem.cpu(worker_fixtures.square, 2)) == Route.THREAD
        assert OffloadGate(GateConfig(worker_kind="process")).route(WorkItem.cpu(worker_fixtures.square, 2)) == Route.PROCESS

    def test_cpu_bound_coroutine_rejected(self, thread_config):
        gate = OffloadGate(thread_config)
        with pytest.raises(InvalidWorkItemError):
            gate.route(WorkItem.cpu(fetch, 1))

    def test_blocking_io_prefers_native_then_thread(self, thread_config):
        gate = OffloadGate(thread_config)
        assert gate.route(WorkItem.io(fetch, 1)) == Route.NATIVE
        assert gate.route(WorkItem.io(worker_fixtures.sleep_then_return, 0)) == Route.THREAD

    def test_blocking_io_escalates_without_thread_pool(self):
        gate = OffloadGate(GateConfig(worker_kind="process", io_workers=0))
        assert gate.io_pool is None
        assert gate.route(WorkItem.io(worker_fixtures.sleep_then_return, 0)) == Route.PROCESS

    def test_overrides_applied(self, thread_config):
        gate = OffloadGate(thread_config, max_workers=5)
        assert gate.config.max_workers == 5
        assert gate.cpu_pool.max_workers == 5


class TestInlineExecution:
    """Tests for inline-safe items."""

    @pytest.mark.asyncio
    async def test_inline_runs_synchronously(self, thread_gate):
        future = thread_gate.submit(WorkItem.inline(worker_fixtures.add, 2, 3))
        assert future.done()
        assert await future == 5
        assert thread_gate.stats["inline"] == 1
        assert thread_gate.stats["completed"] == 1

    @pytest.mark.asyncio
    async def test_inline_runs_on_loop_thread(self, thread_gate):
        name = await thread_gate.run(worker_fixtures.current_thread_name, tag=WorkTag.INLINE_SAFE)
        assert name == threading.current_thread().name

    @pytest.mark.asyncio
    async def test_inline_failure_is_wrapped(self, thread_gate):
        future = thread_gate.submit(WorkItem.inline(worker_fixtures.boom, "inline failure"))
        with pytest.raises(WorkerExecutionError) as exc_info:
            await future
        assert exc_info.value.original_message == "inline failure"
        assert isinstance(exc_info.value.__cause__, ValueError)

    @pytest.mark.asyncio
    async def test_inline_coroutine(self, thread_gate):
        assert await thread_gate.submit(WorkItem.inline(fetch, "hello")) == "hello"
        assert thread_gate.stats["native"] == 1


class TestOffloadedExecution:
    """Tests for cpu-bound and blocking-io items on thread workers."""

    @pytest.mark.asyncio
    async def test_cpu_bound_runs_off_the_loop_thread(self, thread_gate):
        name = await thread_gate.run(worker_fixtures.current_thread_name)
        assert name != threading.current_thread().name
        assert name.startswith("cpu-thread-")

    @pytest.mark.asyncio
    async def test_blocking_io_uses_io_pool(self, thread_gate):
        name = await thread_gate.run(worker_fixtures.current_thread_name, tag=WorkTag.BLOCKING_IO)
        assert name.startswith("io-thread-")
        assert thread_gate.io_pool.stats["completed"] == 1

    @pytest.mark.asyncio
    async def test_blocking_io_native_coroutine(self, thread_gate):
        assert await thread_gate.run(fetch, 7, tag=WorkTag.BLOCKING_IO) == 7
        assert thread_gate.io_pool.stats["slots_created"] == 0

    @pytest.mark.asyncio
    async def test_native_coroutine_failure_is_wrapped(self, thread_gate):
        with pytest.raises(WorkerExecutionError) as exc_info:
            await thread_gate.run(failing_fetch, tag=WorkTag.BLOCKING_IO)
        assert exc_info.value.original_type == "builtins.ConnectionError"
        assert isinstance(exc_info.value.__cause__, ConnectionError)

    @pytest.mark.asyncio
    async def test_blocking_io_escalates_to_cpu_pool(self):
        gate = OffloadGate(GateConfig(max_workers=1, worker_kind="thread", io_workers=0))
        try:
            assert await gate.run(worker_fixtures.add, 1, 2, tag=WorkTag.BLOCKING_IO) == 3
            assert gate.cpu_pool.stats["completed"] == 1
        finally:
            await gate.shutdown()

    @pytest.mark.asyncio
    async def test_loop_stays_live_during_cpu_bound_work(self, thread_gate):
        work = thread_gate.submit(WorkItem.cpu(worker_fixtures.busy_for, 0.5))

        async def tick():
            await asyncio.sleep(0)
            return "tick"

        ticker = asyncio.create_task(tick())
        done, _ = await asyncio.wait({work, ticker}, return_when=asyncio.FIRST_COMPLETED)

        assert ticker in done
        assert not work.done()
        assert await work > 0

    @pytest.mark.asyncio
    async def test_no_queueing_within_capacity(self, thread_gate):
        futures = [thread_gate.submit(WorkItem.cpu(worker_fixtures.sleep_then_return, 0.05, i)) for i in range(2)]

        assert thread_gate.cpu_pool.stats["running"] == 2
        assert thread_gate.cpu_pool.stats["queued"] == 0
        assert await asyncio.gather(*futures) == [0, 1]

    @pytest.mark.asyncio
    async def test_excess_items_queue(self, thread_gate):
        futures = [thread_gate.submit(WorkItem.cpu(worker_fixtures.sleep_then_return, 0.05, i)) for i in range(5)]

        assert thread_gate.cpu_pool.stats["running"] == 2
        assert thread_gate.cpu_pool.stats["queued"] == 3

        assert await asyncio.gather(*futures) == [0, 1, 2, 3, 4]
        assert thread_gate.stats["completed"] == 5
        assert thread_gate.cpu_pool.stats["queued"] == 0
        assert thread_gate.cpu_pool.stats["running"] == 0

    @pytest.mark.asyncio
    async def test_queued_items_start_in_submission_order(self):
        gate = OffloadGate(GateConfig(max_workers=1, worker_kind="thread", io_workers=0))
        started = []

        def record(i):
            started.append(i)
            return i

        try:
            futures = [gate.submit(WorkItem.cpu(record, i)) for i in range(4)]
            await asyncio.gather(*futures)
        finally:
            await gate.shutdown()
        assert started == [0, 1, 2, 3]


class TestFailures:
    """Tests for error delivery."""

    @pytest.mark.asyncio
    async def test_worker_error_is_wrapped_and_pool_survives(self, thread_gate):
        with pytest.raises(WorkerExecutionError) as exc_info:
            await thread_gate.run(worker_fixtures.boom, "bad row")

        error = exc_info.value
        assert error.original_type == "builtins.ValueError"
        assert error.original_message == "bad row"
        assert "ValueError: bad row" in error.remote_traceback
        assert isinstance(error.__cause__, ValueError)

        assert await thread_gate.run(worker_fixtures.square, 3) == 9
        assert thread_gate.stats["failed"] == 1
        assert thread_gate.stats["completed"] == 1

    @pytest.mark.asyncio
    async def test_failure_does_not_affect_siblings(self, thread_gate):
        good = thread_gate.submit(WorkItem.cpu(worker_fixtures.sleep_then_return, 0.05, "ok"))
        bad = thread_gate.submit(WorkItem.cpu(worker_fixtures.boom))

        with pytest.raises(WorkerExecutionError):
            await bad
        assert await good == "ok"

    @pytest.mark.asyncio
    async def test_capacity_exceeded_when_queue_full(self):
        gate = OffloadGate(GateConfig(max_workers=1, worker_kind="thread", io_workers=0, queue_limit=0))
        try:
            first = gate.submit(WorkItem.cpu(worker_fixtures.sleep_then_return, 0.05, "first"))
            second = gate.submit(WorkItem.cpu(worker_fixtures.add, 1, 1))

            with pytest.raises(CapacityExceededError):
                await second
            assert await first == "first"
            assert gate.stats["rejected"] == 1
        finally:
            await gate.shutdown()

    @pytest.mark.asyncio
    async def test_resubmitting_item_rejected(self, thread_gate):
        item = WorkItem.cpu(worker_fixtures.add, 1, 1)
        assert await thread_gate.submit(item) == 2
        with pytest.raises(InvalidWorkItemError):
            await thread_gate.submit(item)

    @pytest.mark.asyncio
    async def test_cpu_bound_coroutine_rejected_as_result(self, thread_gate):
        future = thread_gate.submit(WorkItem.cpu(fetch, 1))
        with pytest.raises(InvalidWorkItemError):
            await future
        assert thread_gate.stats["rejected"] == 1

    @pytest.mark.asyncio
    async def test_pass_token_rejected_for_process_workers(self):
        gate = OffloadGate(GateConfig(worker_kind="process", io_workers=0))
        try:
            item = WorkItem(fn=worker_fixtures.cooperative_sleep, args=(1,), pass_token=True)
            with pytest.raises(InvalidWorkItemError):
                await gate.submit(item)
            assert gate.cpu_pool.stats["slots_created"] == 0
        finally:
            await gate.shutdown()


class TestTimeoutsAndCancellation:
    """Tests for deadlines and cancellation."""

    @pytest.mark.asyncio
    async def test_timeout_raises_and_reclaims_slot(self, thread_gate):
        item = WorkItem(
            fn=worker_fixtures.cooperative_sleep,
            args=(5,),
            timeout=0.2,
            pass_token=True,
        )
        started = time.monotonic()
        with pytest.raises(WorkTimeoutError) as exc_info:
            await thread_gate.submit(item)
        elapsed = time.monotonic() - started

        assert exc_info.value.timeout_seconds == 0.2
        assert 0.2 <= elapsed < 1.2
        assert item.cancel_token.cancelled is True
        assert thread_gate.cpu_pool.stats["running"] == 0
        assert thread_gate.cpu_pool.stats["terminated"] == 1
        assert thread_gate.stats["timed_out"] == 1

        # The reclaimed slot serves new work right away
        assert await asyncio.wait_for(thread_gate.run(worker_fixtures.square, 5), timeout=1) == 25

    @pytest.mark.asyncio
    async def test_timeout_reason_reaches_the_callable(self, thread_gate):
        seen = []
        item = WorkItem(fn=worker_fixtures.report_cancel_reason, args=(seen,), timeout=0.1, pass_token=True)

        with pytest.raises(WorkTimeoutError):
            await thread_gate.submit(item)

        assert item.cancel_token.reason == "timeout"
        for _ in range(100):
            if seen:
                break
            await asyncio.sleep(0.01)
        assert seen == ["timeout"]

    @pytest.mark.asyncio
    async def test_repeated_timeouts_keep_thread_count_bounded(self):
        gate = OffloadGate(GateConfig(max_workers=1, worker_kind="thread", io_workers=0))
        pool = gate.cpu_pool
        before = _cpu_threads()
        try:
            for _ in range(4):
                with pytest.raises(WorkTimeoutError):
                    await gate.run(worker_fixtures.sleep_then_return, 1.0, timeout=0.05)

            assert len(_cpu_threads() - before) <= pool.max_workers + pool.abandon_limit
            assert pool.stats["terminated"] == 2
            assert pool.stats["abandoned"] == 2
            assert pool.stats["held"] == 1

            # The held slot serves new work once its abandoned item returns
            assert await asyncio.wait_for(gate.run(worker_fixtures.add, 1, 2), timeout=3) == 3
            assert pool.stats["held"] == 0
            assert pool.stats["abandoned"] == 0
        finally:
            await gate.shutdown(drain=False)

    @pytest.mark.asyncio
    async def test_default_timeout_from_config(self):
        gate = OffloadGate(GateConfig(max_workers=1, worker_kind="thread", io_workers=0, default_timeout=0.1))
        try:
            with pytest.raises(WorkTimeoutError):
                await gate.run(worker_fixtures.sleep_then_return, 1)
        finally:
            await gate.shutdown(drain=False)

    @pytest.mark.asyncio
    async def test_timeout_covers_queue_time(self):
        gate = OffloadGate(GateConfig(max_workers=1, worker_kind="thread", io_workers=0))
        try:
            blocker = gate.submit(WorkItem.cpu(worker_fixtures.sleep_then_return, 0.5, "done"))
            queued = gate.submit(WorkItem(fn=worker_fixtures.add, args=(1, 1), timeout=0.1))

            with pytest.raises(WorkTimeoutError):
                await queued
            assert gate.cpu_pool.stats["queued"] == 0
            assert await blocker == "done"
        finally:
            await gate.shutdown()

    @pytest.mark.asyncio
    async def test_token_cancellation(self, thread_gate):
        item = WorkItem(fn=worker_fixtures.cooperative_sleep, args=(5,), pass_token=True)
        future = thread_gate.submit(item)
        await asyncio.sleep(0.05)

        item.cancel_token.cancel("user abort")

        with pytest.raises(WorkCancelledError):
            await future
        assert thread_gate.stats["cancelled"] == 1
        assert thread_gate.cpu_pool.stats["running"] == 0

    @pytest.mark.asyncio
    async def test_token_cancelled_from_another_thread(self, thread_gate):
        item = WorkItem(fn=worker_fixtures.cooperative_sleep, args=(5,), pass_token=True)
        future = thread_gate.submit(item)
        await asyncio.sleep(0.05)

        await asyncio.to_thread(item.cancel_token.cancel, "other thread")

        with pytest.raises(WorkCancelledError):
            await future

    @pytest.mark.asyncio
    async def test_precancelled_token_rejected(self, thread_gate):
        token = CancellationToken()
        token.cancel()
        future = thread_gate.submit(WorkItem(fn=worker_fixtures.add, args=(1, 2), cancel_token=token))
        with pytest.raises(WorkCancelledError):
            await future

    @pytest.mark.asyncio
    async def test_cancelling_queued_item_frees_its_place(self):
        gate = OffloadGate(GateConfig(max_workers=1, worker_kind="thread", io_workers=0))
        try:
            blocker = gate.submit(WorkItem.cpu(worker_fixtures.sleep_then_return, 0.2, "done"))
            item = WorkItem.cpu(worker_fixtures.add, 1, 1)
            queued = gate.submit(item)
            assert gate.cpu_pool.stats["queued"] == 1

            item.cancel_token.cancel()
            with pytest.raises(WorkCancelledError):
                await queued
            assert gate.cpu_pool.stats["queued"] == 0
            assert await blocker == "done"
        finally:
            await gate.shutdown()

    @pytest.mark.asyncio
    async def test_caller_cancelling_future_stops_work(self, thread_gate):
        item = WorkItem(fn=worker_fixtures.cooperative_sleep, args=(5,), pass_token=True)
        future = thread_gate.submit(item)
        await asyncio.sleep(0.05)

        future.cancel()
        await asyncio.sleep(0.05)

        assert item.cancel_token.cancelled is True
        assert thread_gate.cpu_pool.stats["running"] == 0
        assert thread_gate.in_flight == 0


class TestBatches:
    """Tests for gather and as_completed."""

    @pytest.mark.asyncio
    async def test_gather_returns_results_in_submission_order(self, thread_gate):
        items = [
            WorkItem.cpu(worker_fixtures.sleep_then_return, 0.15, "slow"),
            WorkItem.cpu(worker_fixtures.boom, "broken"),
            WorkItem.cpu(worker_fixtures.sleep_then_return, 0.01, "fast"),
        ]
        results = await thread_gate.gather(items)

        assert [r.item_id for r in results] == [i.id for i in items]
        assert results[0].value == "slow"
        assert results[1].state == WorkState.FAILED
        assert isinstance(results[1].error, WorkerExecutionError)
        assert results[2].value == "fast"

    @pytest.mark.asyncio
    async def test_gather_empty(self, thread_gate):
        assert await thread_gate.gather([]) == []

    @pytest.mark.asyncio
    async def test_gather_timeout_cancels_outstanding(self, thread_gate):
        items = [
            WorkItem.cpu(worker_fixtures.sleep_then_return, 0.01, "fast"),
            WorkItem(fn=worker_fixtures.cooperative_sleep, args=(5,), pass_token=True),
        ]
        started = time.monotonic()
        results = await thread_gate.gather(items, timeout=0.2)
        elapsed = time.monotonic() - started

        assert elapsed < 1.5
        assert results[0].ok and results[0].value == "fast"
        assert results[1].state == WorkState.TIMED_OUT
        assert isinstance(results[1].error, WorkTimeoutError)
        assert thread_gate.in_flight == 0

    @pytest.mark.asyncio
    async def test_gather_batch_cancel_token(self, thread_gate):
        batch_token = CancellationToken()
        items = [
            WorkItem(fn=worker_fixtures.cooperative_sleep, args=(5,), pass_token=True),
            WorkItem(fn=worker_fixtures.cooperative_sleep, args=(5,), pass_token=True),
        ]

        async def cancel_soon():
            await asyncio.sleep(0.05)
            batch_token.cancel()

        canceller = asyncio.create_task(cancel_soon())
        results = await thread_gate.gather(items, cancel_token=batch_token)
        await canceller

        assert [r.state for r in results] == [WorkState.CANCELLED, WorkState.CANCELLED]
        assert all(isinstance(r.error, WorkCancelledError) for r in results)

    @pytest.mark.asyncio
    async def test_as_completed_yields_in_completion_order(self, thread_gate):
        items = [
            WorkItem.cpu(worker_fixtures.sleep_then_return, 0.3, "slow"),
            WorkItem.cpu(worker_fixtures.sleep_then_return, 0.01, "fast"),
        ]
        values = [result.value async for result in thread_gate.as_completed(items)]
        assert values == ["fast", "slow"]


class TestShutdown:
    """Tests for gate shutdown."""

    @pytest.mark.asyncio
    async def test_drain_waits_for_in_flight_items(self, thread_config):
        gate = OffloadGate(thread_config)
        futures = [gate.submit(WorkItem.cpu(worker_fixtures.sleep_then_return, 0.05, i)) for i in range(4)]

        await gate.shutdown(drain=True)

        assert all(f.done() for f in futures)
        assert [f.result() for f in futures] == [0, 1, 2, 3]
        assert gate.stats["pools"]["cpu"]["closed"] is True

    @pytest.mark.asyncio
    async def test_no_submissions_after_shutdown_begins(self, thread_config):
        gate = OffloadGate(thread_config)
        pending = gate.submit(WorkItem.cpu(worker_fixtures.sleep_then_return, 0.1, "last"))
        shutdown = asyncio.create_task(gate.shutdown(drain=True))
        await asyncio.sleep(0)

        with pytest.raises(GateClosedError):
            await gate.submit(WorkItem.cpu(worker_fixtures.add, 1, 1))

        await shutdown
        assert await pending == "last"
        assert gate.closed is True

    @pytest.mark.asyncio
    async def test_no_drain_cancels_promptly(self, thread_config):
        gate = OffloadGate(thread_config)
        futures = [
            gate.submit(WorkItem(fn=worker_fixtures.cooperative_sleep, args=(5,), pass_token=True))
            for _ in range(3)
        ]
        await asyncio.sleep(0.05)

        started = time.monotonic()
        await gate.shutdown(drain=False)
        assert time.monotonic() - started < 1.0

        for future in futures:
            with pytest.raises(WorkCancelledError):
                await future
        assert gate.in_flight == 0

    @pytest.mark.asyncio
    async def test_no_drain_right_after_submit(self, thread_config):
        gate = OffloadGate(thread_config)
        futures = [gate.submit(WorkItem.cpu(worker_fixtures.add, i, i)) for i in range(3)]

        await gate.shutdown(drain=False)

        for future in futures:
            assert future.done()
            assert isinstance(future.exception(), WorkCancelledError)
        assert gate.cpu_pool.stats["running"] == 0
        assert gate.stats["cancelled"] == 3

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, thread_config):
        gate = OffloadGate(thread_config)
        await gate.shutdown()
        await gate.shutdown(drain=False)
        assert gate.closed is True

    @pytest.mark.asyncio
    async def test_context_manager_drains(self, thread_config):
        async with OffloadGate(thread_config) as gate:
            future = gate.submit(WorkItem.cpu(worker_fixtures.sleep_then_return, 0.05, "kept"))
        assert future.result() == "kept"
        assert gate.closed is True


class TestEventLog:
    """Tests for the work event log wiring."""

    @pytest.mark.asyncio
    async def test_transitions_recorded(self, tmp_path):
        log_file = tmp_path / "events.jsonl"
        gate = OffloadGate(GateConfig(max_workers=1, worker_kind="thread", io_workers=0, event_log=log_file))
        try:
            first = gate.submit(WorkItem.cpu(worker_fixtures.sleep_then_return, 0.05, 1))
            second = gate.submit(WorkItem.cpu(worker_fixtures.boom))
            await first
            with pytest.raises(WorkerExecutionError):
                await second
        finally:
            await gate.shutdown()

        entries = gate.events.read()
        first_states = [e["state"] for e in entries if e["name"] == "sleep_then_return"]
        second_states = [e["state"] for e in entries if e["name"] == "boom"]
        assert first_states == ["submitted", "executing", "completed"]
        assert second_states == ["submitted", "queued", "executing", "failed"]
        failed = [e for e in entries if e["state"] == "failed"][0]
        assert failed["route"] == "thread"
        assert failed["context"]["error"] == "WorkerExecutionError"
