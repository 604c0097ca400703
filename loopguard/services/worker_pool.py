"""Bounded pool of worker slots for offloaded Work Items."""

import asyncio
import logging
import multiprocessing
from collections import deque
from concurrent.futures import Future
from contextlib import asynccontextmanager
from typing import AsyncIterator, Deque, List, Optional, Set

from ..config.constants import WORKER_KIND_PROCESS, WORKER_KINDS
from ..exceptions import CapacityExceededError, ConfigurationError, GateClosedError
from .worker import WorkerSlot

logger = logging.getLogger(__name__)


class WorkerPool:
    """Manages a bounded set of worker slots of one kind.

    Slots are created on demand up to max_workers and reused. Requests that
    find every slot busy wait in a FIFO queue; a released slot is handed
    straight to the oldest waiter so later arrivals cannot overtake it.

    A thread cannot be killed, so terminating a thread slot leaves its work
    running. Up to ``abandon_limit`` such threads may be left behind; past
    that, a terminated slot keeps its thread and stays busy until the
    abandoned work returns. Live threads never exceed
    ``max_workers + abandon_limit``.
    """

    def __init__(
        self,
        kind: str = WORKER_KIND_PROCESS,
        max_workers: int = 1,
        queue_limit: Optional[int] = None,
        name: str = "pool",
        mp_start_method: Optional[str] = None,
        abandon_limit: Optional[int] = None,
    ):
        """Initialize the pool.

        Args:
            kind: "process" or "thread"
            max_workers: Maximum number of concurrently running items
            queue_limit: Maximum number of waiting requests (None for unbounded)
            name: Label used in logs and slot names
            mp_start_method: multiprocessing start method for process slots
            abandon_limit: Abandoned threads allowed to keep running (defaults to max_workers)
        """
        if kind not in WORKER_KINDS:
            raise ConfigurationError(f"Unknown worker kind {kind!r}", setting="worker_kind")
        if max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1", setting="max_workers")
        self.kind = kind
        self.max_workers = max_workers
        self.queue_limit = queue_limit
        self.name = name
        self.abandon_limit = max_workers if abandon_limit is None else abandon_limit
        self._mp_context = (
            multiprocessing.get_context(mp_start_method)
            if kind == WORKER_KIND_PROCESS and mp_start_method
            else None
        )
        self._idle: List[WorkerSlot] = []
        self._busy: List[WorkerSlot] = []
        self._waiters: Deque[asyncio.Future] = deque()
        self._abandoned: List[Future] = []
        self._held: Set[WorkerSlot] = set()
        self._slots_created = 0
        self._closed = False
        self.completed = 0
        self.failed = 0
        self.terminated = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def running(self) -> int:
        """Slots currently assigned to a request (granted, not yet released)."""
        return len(self._busy)

    @property
    def queued(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    def _take_slot(self) -> WorkerSlot:
        if self._idle:
            slot = self._idle.pop()
        else:
            slot = WorkerSlot(
                self._slots_created, self.kind, pool_name=self.name, mp_context=self._mp_context
            )
            self._slots_created += 1
        self._busy.append(slot)
        return slot

    def reserve(self) -> "asyncio.Future[WorkerSlot]":
        """Claim a slot now or a place in the wait queue.

        Synchronous, so back-to-back reservations see each other.

        Raises:
            GateClosedError: If the pool is closed
            CapacityExceededError: If every slot is busy and the queue is full
        """
        if self._closed:
            raise GateClosedError("Worker pool is closed", pool=self.name)

        loop = asyncio.get_running_loop()
        reservation: asyncio.Future = loop.create_future()

        if len(self._busy) < self.max_workers and not self.queued:
            reservation.set_result(self._take_slot())
            return reservation

        if self.queue_limit is not None and self.queued >= self.queue_limit:
            raise CapacityExceededError(
                max_workers=self.max_workers, queue_limit=self.queue_limit, pool=self.name
            )

        self._waiters.append(reservation)
        logger.debug("%s: request queued (%d waiting)", self.name, self.queued)
        return reservation

    @asynccontextmanager
    async def acquire(self, reservation: Optional["asyncio.Future[WorkerSlot]"] = None) -> AsyncIterator[WorkerSlot]:
        """Wait for a reserved slot and hold it for the duration of the block.

        Args:
            reservation: Result of reserve(); a new one is made if omitted

        Yields:
            The WorkerSlot to run on
        """
        if reservation is None:
            reservation = self.reserve()

        try:
            slot = await reservation
        except asyncio.CancelledError:
            self.abandon(reservation)
            raise

        try:
            yield slot
        finally:
            self._release(slot)

    def abandon(self, reservation: asyncio.Future) -> None:
        """Give back a reservation whose owner stopped waiting (or never started)."""
        if reservation.done() and not reservation.cancelled():
            if reservation.exception() is None:
                # Granted between the cancel request and the wakeup
                self._release(reservation.result())
            return
        reservation.cancel()
        try:
            self._waiters.remove(reservation)
        except ValueError:
            pass

    def _release(self, slot: WorkerSlot) -> None:
        if self._closed:
            self._held.discard(slot)
            self._busy.remove(slot)
            slot.shutdown(wait=False)
            return

        if slot in self._held:
            pending = slot.inflight
            if pending is not None:
                # Still busy with abandoned work; released again when it returns
                loop = asyncio.get_running_loop()
                pending.add_done_callback(lambda _: _release_threadsafe(loop, self, slot))
                return
            self._held.discard(slot)
            logger.debug("%s: %s is free again", self.name, slot.name)

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Direct handoff: the slot stays busy
                waiter.set_result(slot)
                return

        self._busy.remove(slot)
        self._idle.append(slot)

    def record(self, ok: bool) -> None:
        if ok:
            self.completed += 1
        else:
            self.failed += 1

    def terminate(self, slot: WorkerSlot) -> None:
        """Abandon the work running on ``slot``; it rebuilds its worker on next use.

        Process workers are killed. A thread keeps running: it is left behind
        while fewer than ``abandon_limit`` abandoned threads are alive,
        otherwise the slot is held until the thread returns.
        """
        self.terminated += 1
        pending = None if slot.is_process else slot.inflight
        if pending is None:
            slot.terminate()
            return

        if len(self._live_abandoned()) >= self.abandon_limit:
            logger.warning(
                "%s: %d abandoned threads still running, holding %s until its work returns",
                self.name,
                len(self._abandoned),
                slot.name,
            )
            self._held.add(slot)
            return

        self._abandoned.append(pending)
        slot.terminate()

    def _live_abandoned(self) -> List[Future]:
        self._abandoned = [f for f in self._abandoned if not f.done()]
        return self._abandoned

    @property
    def abandoned(self) -> int:
        """Threads still running work that was given up on."""
        return len(self._live_abandoned()) + sum(1 for s in self._held if s.inflight is not None)

    @property
    def stats(self) -> dict:
        """Get pool statistics."""
        return {
            "name": self.name,
            "kind": self.kind,
            "max_workers": self.max_workers,
            "queue_limit": self.queue_limit,
            "running": self.running,
            "queued": self.queued,
            "idle": len(self._idle),
            "slots_created": self._slots_created,
            "completed": self.completed,
            "failed": self.failed,
            "terminated": self.terminated,
            "abandoned": self.abandoned,
            "held": len(self._held),
            "closed": self._closed,
        }

    async def close(self, wait: bool = True) -> None:
        """Stop accepting requests and release every worker.

        Args:
            wait: Wait for idle workers to exit cleanly. Busy slots are
                released by their holders, which see the pool closed.

        Abandoned threads cannot be stopped here; ``concurrent.futures``
        joins them at interpreter exit.
        """
        if self._closed:
            return
        self._closed = True

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(GateClosedError("Worker pool closed while waiting", pool=self.name))

        idle, self._idle = self._idle, []
        if wait:
            await asyncio.gather(
                *[asyncio.to_thread(slot.shutdown, True) for slot in idle],
                return_exceptions=True,
            )
        else:
            for slot in idle:
                slot.shutdown(wait=False)
            for slot in self._busy:
                slot.terminate()
        if self.abandoned:
            logger.warning("%s closed with %d abandoned threads still running", self.name, self.abandoned)
        logger.debug("%s closed (%d slots created)", self.name, self._slots_created)

    async def __aenter__(self):
        """Context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - release all workers."""
        await self.close()


def _release_threadsafe(loop: asyncio.AbstractEventLoop, pool: WorkerPool, slot: WorkerSlot) -> None:
    """Runs on the worker thread when held work returns."""
    if not loop.is_closed():
        loop.call_soon_threadsafe(pool._release, slot)
