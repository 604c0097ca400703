"""Offload gate: keeps blocking and CPU-bound work off the event loop thread.

The gate decides, per Work Item, where the computation runs:

- inline-safe: synchronously, right inside ``submit`` (coroutines are awaited)
- cpu-bound: on the CPU pool (process workers by default), never on the loop
- blocking-io: natively on the loop when the callable is a coroutine
  function, otherwise on the I/O thread pool, and on the CPU pool only
  when thread offload is disabled

Every submission returns an ``asyncio.Future`` that settles exactly once
with the value or one of the typed errors from ``loopguard.exceptions``.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

from ..config.constants import SHUTDOWN_GRACE_SECONDS, WORKER_KIND_PROCESS, WORKER_KIND_THREAD
from ..config.settings import GateConfig
from ..exceptions import (
    GateClosedError,
    InvalidWorkItemError,
    LoopguardError,
    WorkCancelledError,
    WorkerExecutionError,
    WorkTimeoutError,
)
from ..models.work_item import CancellationToken, WorkItem, WorkResult, WorkState, WorkTag
from ..utils.structured_logger import WorkEventLog
from .worker import invoke
from .worker_pool import WorkerPool

logger = logging.getLogger(__name__)


class Route(str, Enum):
    """Where a Work Item executes."""

    INLINE = "inline"  # synchronously on the calling context
    NATIVE = "native"  # awaited on the event loop (coroutine functions)
    THREAD = "thread"
    PROCESS = "process"


@dataclass(eq=False)
class _Ticket:
    """Book-keeping for one in-flight Work Item."""

    item: WorkItem
    route: Route
    pool: Optional[WorkerPool]
    reservation: Optional[asyncio.Future]
    submitted_at: float
    result: asyncio.Future
    task: Optional[asyncio.Task] = None
    token_hook: Optional[Callable[[], None]] = None
    claimed: bool = False  # _dispatch took over the reservation
    expired: bool = False

    def unlink_token(self) -> None:
        if self.token_hook is not None:
            self.item.cancel_token.remove_callback(self.token_hook)
            self.token_hook = None


class OffloadGate:
    """Routes Work Items to the loop, a thread pool or a process pool."""

    def __init__(self, config: Optional[GateConfig] = None, **overrides: Any):
        """Initialize the gate.

        Args:
            config: Gate configuration; read from LOOPGUARD_* variables if omitted
            **overrides: Individual GateConfig fields to override
        """
        if config is None:
            self.config = GateConfig.from_env(**overrides)
        else:
            self.config = config.with_overrides(**overrides) if overrides else config.validate()

        self.cpu_pool = WorkerPool(
            kind=self.config.worker_kind,
            max_workers=self.config.max_workers,
            queue_limit=self.config.queue_limit,
            name="cpu",
            mp_start_method=self.config.mp_start_method,
        )
        self.io_pool: Optional[WorkerPool] = None
        if self.config.io_workers:
            self.io_pool = WorkerPool(
                kind=WORKER_KIND_THREAD,
                max_workers=self.config.io_workers,
                queue_limit=self.config.queue_limit,
                name="io",
            )

        self.events = WorkEventLog(self.config.event_log) if self.config.event_log else None
        self.counters: Counter = Counter()
        self._tickets: Dict[int, _Ticket] = {}
        self._closing = False
        self._closed = False

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _pool_route(self, pool: WorkerPool) -> Route:
        return Route.PROCESS if pool.kind == WORKER_KIND_PROCESS else Route.THREAD

    def _plan(self, item: WorkItem) -> Tuple[Route, Optional[WorkerPool]]:
        if item.tag == WorkTag.INLINE_SAFE:
            return (Route.NATIVE if item.is_coroutine else Route.INLINE), None

        if item.tag == WorkTag.CPU_BOUND:
            if item.is_coroutine:
                raise InvalidWorkItemError(
                    "cpu-bound work must be a plain callable; coroutines run on the loop thread",
                    item_id=item.id,
                    name=item.name,
                )
            return self._pool_route(self.cpu_pool), self.cpu_pool

        # blocking-io: native non-blocking I/O > thread offload > process offload
        if item.is_coroutine:
            return Route.NATIVE, None
        if self.io_pool is not None:
            return Route.THREAD, self.io_pool
        return self._pool_route(self.cpu_pool), self.cpu_pool

    def route(self, item: WorkItem) -> Route:
        """Dispatch decision for ``item`` under the current configuration."""
        return self._plan(item)[0]

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, item: WorkItem) -> "asyncio.Future[Any]":
        """Hand ``item`` to the gate. Must be called with a running event loop.

        Returns:
            A future that settles with the item's value or a LoopguardError.
            Rejections arrive as already-failed futures.
        """
        loop = asyncio.get_running_loop()
        self.counters["submitted"] += 1
        self._record(item, WorkState.SUBMITTED)

        try:
            route, pool = self._admit(item)
            if route == Route.INLINE:
                return self._run_inline(item, loop)
            reservation = pool.reserve() if pool is not None else None
        except LoopguardError as e:
            self.counters["rejected"] += 1
            self._record(item, WorkState.FAILED, error=type(e).__name__)
            logger.debug("Rejected %s: %s", item.name, e)
            return _failed_future(loop, e)

        ticket = _Ticket(
            item=item,
            route=route,
            pool=pool,
            reservation=reservation,
            submitted_at=loop.time(),
            result=loop.create_future(),
        )
        self._tickets[item.id] = ticket

        if reservation is not None and not reservation.done():
            self._record(item, WorkState.QUEUED, route)

        ticket.task = loop.create_task(self._execute(ticket), name=f"loopguard-{item.id}")
        ticket.task.add_done_callback(lambda _: self._settle(ticket))
        ticket.result.add_done_callback(lambda f: self._on_result_done(ticket, f))
        ticket.token_hook = item.cancel_token.link_to_loop(loop, lambda: self._cancel_ticket(ticket))
        logger.debug("Submitted %s (#%d) via %s", item.name, item.id, route.value)
        return ticket.result

    def _admit(self, item: WorkItem) -> Tuple[Route, Optional[WorkerPool]]:
        if self._closing:
            raise GateClosedError(item_id=item.id)
        if not item.consume():
            raise InvalidWorkItemError("Work item was already submitted", item_id=item.id, name=item.name)
        if item.cancel_token.cancelled:
            raise WorkCancelledError(item_id=item.id, reason=item.cancel_token.reason)

        route, pool = self._plan(item)
        if item.pass_token and route == Route.PROCESS:
            raise InvalidWorkItemError(
                "cancel tokens cannot be passed to process workers",
                item_id=item.id,
                name=item.name,
            )
        return route, pool

    def _run_inline(self, item: WorkItem, loop: asyncio.AbstractEventLoop) -> "asyncio.Future[Any]":
        self.counters["inline"] += 1
        self._record(item, WorkState.INLINE_EXECUTING, Route.INLINE)
        outcome = invoke(item.fn, item.args, item.call_kwargs())
        if outcome.ok:
            self.counters["completed"] += 1
            self._record(item, WorkState.COMPLETED, Route.INLINE, duration=outcome.duration)
            future = loop.create_future()
            future.set_result(outcome.value)
            return future
        self.counters["failed"] += 1
        self._record(item, WorkState.FAILED, Route.INLINE, error=outcome.error_type)
        return _failed_future(loop, outcome.to_error(item_id=item.id, name=item.name))

    async def run(
        self,
        fn: Callable[..., Any],
        *args: Any,
        tag: WorkTag = WorkTag.CPU_BOUND,
        timeout: Optional[float] = None,
        name: Optional[str] = None,
        pass_token: bool = False,
        **kwargs: Any,
    ) -> Any:
        """Build a Work Item from ``fn`` and its arguments, submit it and await it."""
        item = WorkItem(
            fn=fn, args=args, kwargs=kwargs, tag=tag, timeout=timeout, name=name, pass_token=pass_token
        )
        return await self.submit(item)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _timeout_for(self, item: WorkItem) -> Optional[float]:
        return item.timeout if item.timeout is not None else self.config.default_timeout

    async def _execute(self, ticket: _Ticket) -> Any:
        item = ticket.item
        timeout = self._timeout_for(item)
        if timeout is None:
            return await self._dispatch(ticket)

        # The deadline counts from submission, queueing included
        loop = asyncio.get_running_loop()
        remaining = max(0.0, timeout - (loop.time() - ticket.submitted_at))
        timer = loop.call_later(remaining, self._expire, ticket)
        try:
            return await self._dispatch(ticket)
        except asyncio.CancelledError:
            if not ticket.expired:
                raise
            logger.warning("%s (#%d) timed out after %.3fs", item.name, item.id, timeout)
            raise WorkTimeoutError(timeout_seconds=timeout, item_id=item.id, name=item.name) from None
        finally:
            timer.cancel()

    def _expire(self, ticket: _Ticket) -> None:
        # The token carries the reason before the work is torn down
        ticket.expired = True
        ticket.unlink_token()
        ticket.item.cancel_token.cancel("timeout")
        self._cancel_ticket(ticket)

    async def _dispatch(self, ticket: _Ticket) -> Any:
        item = ticket.item
        ticket.claimed = True

        if ticket.route == Route.NATIVE:
            self._record(item, WorkState.EXECUTING, Route.NATIVE)
            self.counters["native"] += 1
            try:
                return await item.fn(*item.args, **item.call_kwargs())
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise WorkerExecutionError(
                    original_type=f"{type(e).__module__}.{type(e).__qualname__}",
                    original_message=str(e),
                    item_id=item.id,
                    name=item.name,
                ) from e

        pool = ticket.pool
        async with pool.acquire(ticket.reservation) as slot:
            self._record(item, WorkState.EXECUTING, ticket.route, worker=slot.name)
            try:
                outcome = await slot.run(item.fn, item.args, item.call_kwargs())
            except asyncio.CancelledError:
                # Abandoned mid-flight: stop the worker and signal the callable
                pool.terminate(slot)
                ticket.unlink_token()
                item.cancel_token.cancel(item.cancel_token.reason or "abandoned")
                raise
            pool.record(outcome.ok)

        if outcome.ok:
            return outcome.value
        raise outcome.to_error(item_id=item.id, name=item.name)

    def _cancel_ticket(self, ticket: _Ticket) -> None:
        if ticket.task is not None and not ticket.task.done():
            ticket.task.cancel()

    def _on_result_done(self, ticket: _Ticket, future: asyncio.Future) -> None:
        # A caller cancelling the returned future cancels the work
        if future.cancelled():
            self._cancel_ticket(ticket)

    def _settle(self, ticket: _Ticket) -> None:
        """Move the task outcome onto the caller's future and record it."""
        task, result, item = ticket.task, ticket.result, ticket.item
        self._tickets.pop(item.id, None)
        ticket.unlink_token()
        if not ticket.claimed and ticket.reservation is not None:
            # Cancelled or timed out before the coroutine ever ran
            ticket.pool.abandon(ticket.reservation)

        if task.cancelled():
            error: Optional[BaseException] = WorkCancelledError(
                item_id=item.id, reason=item.cancel_token.reason or "cancelled"
            )
        else:
            error = task.exception()

        if result.cancelled():
            state = WorkState.CANCELLED
        elif error is None:
            state = WorkState.COMPLETED
            result.set_result(task.result())
        else:
            state = _state_for(error)
            result.set_exception(error)

        self.counters[_COUNTER_FOR_STATE[state]] += 1
        context: Dict[str, Any] = {}
        if error is not None:
            context["error"] = type(error).__name__
        self._record(item, state, ticket.route, **context)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def gather(
        self,
        items: Iterable[WorkItem],
        timeout: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[WorkResult]:
        """Submit ``items`` and wait for all of them, or until ``timeout``.

        Members still running at the batch timeout are cancelled best effort
        and reported as WorkTimeoutError unless they finish first. Firing
        ``cancel_token`` cancels every outstanding member.

        Returns:
            One WorkResult per item, in submission order
        """
        items = list(items)
        if not items:
            return []

        def _cancel_members(reason: str) -> None:
            for item in items:
                item.cancel_token.cancel(reason)

        def _on_batch_cancel() -> None:
            _cancel_members("batch cancelled")

        if cancel_token is not None:
            cancel_token.add_callback(_on_batch_cancel)

        futures = [self.submit(item) for item in items]
        try:
            _, pending = await asyncio.wait(futures, timeout=timeout)
            timed_out = set()
            if pending:
                logger.warning("Batch timed out with %d of %d items outstanding", len(pending), len(items))
                for item, future in zip(items, futures):
                    if future in pending:
                        timed_out.add(item.id)
                        item.cancel_token.cancel("batch timeout")
                await asyncio.wait(pending)
        finally:
            if cancel_token is not None:
                cancel_token.remove_callback(_on_batch_cancel)

        results = []
        for item, future in zip(items, futures):
            result = _to_result(item, future)
            if item.id in timed_out and result.state == WorkState.CANCELLED:
                result = WorkResult(
                    item_id=item.id,
                    name=item.name,
                    state=WorkState.TIMED_OUT,
                    error=WorkTimeoutError(timeout_seconds=timeout, item_id=item.id, batch=True),
                )
            results.append(result)
        return results

    async def as_completed(self, items: Iterable[WorkItem]) -> AsyncIterator[WorkResult]:
        """Submit ``items`` and yield each WorkResult as soon as it settles."""
        owners = {}
        for item in items:
            owners[self.submit(item)] = item
        pending = set(owners)
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for future in done:
                    yield _to_result(owners[future], future)
        finally:
            for future in pending:
                owners[future].cancel_token.cancel("iteration closed")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closing

    @property
    def in_flight(self) -> int:
        return len(self._tickets)

    async def shutdown(self, drain: bool = True) -> None:
        """Stop accepting work and release the worker pools.

        Args:
            drain: Wait for queued and running items to finish first. When
                False, outstanding items are cancelled best effort (their
                callers see WorkCancelledError unless the item already
                finished) and workers are released right away.
        """
        self._closing = True
        tickets = list(self._tickets.values())

        if tickets:
            if drain:
                logger.debug("Draining %d in-flight items", len(tickets))
            else:
                logger.debug("Cancelling %d in-flight items", len(tickets))
                for ticket in tickets:
                    ticket.unlink_token()
                    ticket.item.cancel_token.cancel("shutdown")
                    self._cancel_ticket(ticket)
            tasks = [t.task for t in tickets if t.task is not None]
            await asyncio.wait(tasks, timeout=None if drain else SHUTDOWN_GRACE_SECONDS)

        if self._closed:
            return
        self._closed = True
        pools = [self.cpu_pool] + ([self.io_pool] if self.io_pool is not None else [])
        for pool in pools:
            await pool.close(wait=drain)
        if self.events is not None:
            await asyncio.to_thread(self.events.close)

    @property
    def stats(self) -> dict:
        """Get gate statistics."""
        return {
            **{key: self.counters[key] for key in _COUNTERS},
            "in_flight": self.in_flight,
            "closed": self._closing,
            "pools": {
                "cpu": self.cpu_pool.stats,
                "io": self.io_pool.stats if self.io_pool is not None else None,
            },
        }

    def _record(self, item: WorkItem, state: WorkState, route: Optional[Route] = None, **context: Any) -> None:
        if self.events is not None:
            self.events.record(item, state, route.value if route else None, **context)

    async def __aenter__(self):
        """Context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - drain normally, cancel when unwinding an error."""
        await self.shutdown(drain=exc_type is None)


_COUNTERS = ("submitted", "completed", "failed", "cancelled", "timed_out", "rejected", "inline", "native")

_COUNTER_FOR_STATE = {
    WorkState.COMPLETED: "completed",
    WorkState.FAILED: "failed",
    WorkState.CANCELLED: "cancelled",
    WorkState.TIMED_OUT: "timed_out",
}


def _state_for(error: BaseException) -> WorkState:
    if isinstance(error, WorkTimeoutError):
        return WorkState.TIMED_OUT
    if isinstance(error, WorkCancelledError):
        return WorkState.CANCELLED
    return WorkState.FAILED


def _failed_future(loop: asyncio.AbstractEventLoop, error: BaseException) -> asyncio.Future:
    future = loop.create_future()
    future.set_exception(error)
    return future


def _to_result(item: WorkItem, future: asyncio.Future) -> WorkResult:
    if future.cancelled():
        return WorkResult(
            item_id=item.id,
            name=item.name,
            state=WorkState.CANCELLED,
            error=WorkCancelledError(item_id=item.id),
        )
    error = future.exception()
    if error is None:
        return WorkResult(item_id=item.id, name=item.name, state=WorkState.COMPLETED, value=future.result())
    return WorkResult(item_id=item.id, name=item.name, state=_state_for(error), error=error)
