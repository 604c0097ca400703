"""Work Item model: the unit of deferred computation handed to the gate."""

import asyncio
import inspect
import itertools
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..exceptions import WorkCancelledError


class WorkTag(str, Enum):
    """How a Work Item must be scheduled."""

    INLINE_SAFE = "inline-safe"
    CPU_BOUND = "cpu-bound"
    BLOCKING_IO = "blocking-io"


class WorkState(str, Enum):
    """Lifecycle of a Work Item."""

    SUBMITTED = "submitted"
    INLINE_EXECUTING = "inline-executing"
    QUEUED = "queued"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed-out"

    @property
    def is_terminal(self) -> bool:
        return self in (
            WorkState.COMPLETED,
            WorkState.FAILED,
            WorkState.CANCELLED,
            WorkState.TIMED_OUT,
        )


class CancellationToken:
    """Thread-safe cancellation flag.

    Can be cancelled from any thread. Thread-offloaded callables receive it
    when their item sets ``pass_token`` and are expected to poll it; the
    gate registers a callback to stop waiting on the item.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Set the flag and run registered callbacks once."""
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise WorkCancelledError(reason=self.reason)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Register a callback; runs immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    def link_to_loop(self, loop: asyncio.AbstractEventLoop, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback`` to run on ``loop`` when the token fires.

        Returns the registered wrapper so it can be removed later.
        """

        def _threadsafe() -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(callback)

        self.add_callback(_threadsafe)
        return _threadsafe

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"


_item_ids = itertools.count(1)


@dataclass(eq=False)
class WorkItem:
    """One unit of computation submitted for execution."""

    fn: Callable[..., Any]
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)
    tag: WorkTag = WorkTag.CPU_BOUND
    timeout: Optional[float] = None  # seconds, measured from submission
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    pass_token: bool = False  # inject cancel_token= into kwargs (inline/thread only)
    name: Optional[str] = None
    id: int = field(default_factory=lambda: next(_item_ids))

    def __post_init__(self) -> None:
        self.tag = WorkTag(self.tag)
        self.args = tuple(self.args)
        if self.name is None:
            self.name = getattr(self.fn, "__qualname__", None) or repr(self.fn)
        self._consumed = False

    @classmethod
    def cpu(cls, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> "WorkItem":
        return cls(fn=fn, args=args, kwargs=kwargs, tag=WorkTag.CPU_BOUND)

    @classmethod
    def io(cls, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> "WorkItem":
        return cls(fn=fn, args=args, kwargs=kwargs, tag=WorkTag.BLOCKING_IO)

    @classmethod
    def inline(cls, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> "WorkItem":
        return cls(fn=fn, args=args, kwargs=kwargs, tag=WorkTag.INLINE_SAFE)

    @property
    def is_coroutine(self) -> bool:
        """Whether calling ``fn`` produces a coroutine (native async I/O)."""
        return inspect.iscoroutinefunction(self.fn)

    @property
    def consumed(self) -> bool:
        return self._consumed

    def consume(self) -> bool:
        """Mark the item as handed to a gate. Returns False if already consumed."""
        if self._consumed:
            return False
        self._consumed = True
        return True

    def call_kwargs(self) -> Dict[str, Any]:
        if self.pass_token:
            return {**self.kwargs, "cancel_token": self.cancel_token}
        return dict(self.kwargs)


@dataclass(frozen=True)
class WorkResult:
    """Settled outcome of one Work Item inside a batch."""

    item_id: int
    name: Optional[str]
    state: WorkState
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.state == WorkState.COMPLETED

    def unwrap(self) -> Any:
        """Return the value or raise the stored error."""
        if self.error is not None:
            raise self.error
        return self.value
