"""Worker slots and the invocation wrapper that runs inside them.

A slot owns a single-worker ``concurrent.futures`` executor. Keeping one
executor per slot lets the pool abandon exactly one unit of work: a process
slot kills its worker process, a thread slot drops its executor so new work
never waits behind a thread that is still finishing an abandoned item.
"""

import asyncio
import logging
import multiprocessing
import os
import time
import traceback
from concurrent.futures import Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from ..config.constants import WORKER_KIND_PROCESS
from ..exceptions import WorkerExecutionError

logger = logging.getLogger(__name__)


@dataclass
class WorkOutcome:
    """What comes back across the worker boundary. Always picklable."""

    ok: bool
    value: Any = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    traceback: Optional[str] = None
    worker_pid: Optional[int] = None
    duration: float = 0.0
    # Only set for workers sharing memory with the caller
    exception: Optional[BaseException] = None

    def to_error(self, **context: Any) -> WorkerExecutionError:
        error = WorkerExecutionError(
            original_type=self.error_type,
            original_message=self.error_message,
            remote_traceback=self.traceback,
            worker_pid=self.worker_pid,
            **context,
        )
        if self.exception is not None:
            error.__cause__ = self.exception
        return error


def invoke(fn: Callable[..., Any], args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> WorkOutcome:
    """Run ``fn`` and capture its result or exception into a WorkOutcome."""
    started = time.perf_counter()
    pid = os.getpid()
    try:
        value = fn(*args, **kwargs)
    except Exception as e:
        return WorkOutcome(
            ok=False,
            error_type=f"{type(e).__module__}.{type(e).__qualname__}",
            error_message=str(e),
            traceback=traceback.format_exc(),
            worker_pid=pid,
            duration=time.perf_counter() - started,
            exception=e,
        )
    return WorkOutcome(ok=True, value=value, worker_pid=pid, duration=time.perf_counter() - started)


def invoke_remote(fn: Callable[..., Any], args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> WorkOutcome:
    """``invoke`` for process workers: drops the exception object so the outcome pickles."""
    outcome = invoke(fn, args, kwargs)
    outcome.exception = None
    return outcome


class WorkerSlot:
    """One execution context of a pool."""

    def __init__(
        self,
        index: int,
        kind: str,
        pool_name: str = "pool",
        mp_context: Optional[multiprocessing.context.BaseContext] = None,
    ):
        self.index = index
        self.kind = kind
        self.pool_name = pool_name
        self._mp_context = mp_context
        self._executor: Optional[Executor] = None
        self._inflight: Optional[Future] = None
        self.runs = 0
        self.terminations = 0

    @property
    def name(self) -> str:
        return f"{self.pool_name}-{self.kind}-{self.index}"

    @property
    def is_process(self) -> bool:
        return self.kind == WORKER_KIND_PROCESS

    @property
    def started(self) -> bool:
        return self._executor is not None

    @property
    def inflight(self) -> Optional[Future]:
        """Future of the last item handed to the worker, while it is still running."""
        if self._inflight is not None and not self._inflight.done():
            return self._inflight
        return None

    def _ensure_executor(self) -> Executor:
        if self._executor is None:
            if self.is_process:
                self._executor = ProcessPoolExecutor(max_workers=1, mp_context=self._mp_context)
            else:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=self.name)
            logger.debug("Started %s", self.name)
        return self._executor

    async def run(self, fn: Callable[..., Any], args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> WorkOutcome:
        """Run ``fn`` on this slot's worker without blocking the loop.

        Failures of the transport itself (unpicklable callable or result,
        worker process dying) come back as a failed WorkOutcome too.
        """
        executor = self._ensure_executor()
        target = invoke_remote if self.is_process else invoke
        self.runs += 1
        try:
            self._inflight = executor.submit(target, fn, args, kwargs)
            return await asyncio.wrap_future(self._inflight)
        except BrokenProcessPool as e:
            logger.warning("Worker process of %s died: %s", self.name, e)
            self._discard(kill=True)
            return _transport_failure(e, "worker process terminated abruptly")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Pickling errors and the like, raised by the executor machinery
            return _transport_failure(e, str(e))

    def terminate(self) -> None:
        """Abandon whatever this slot is running."""
        if self._executor is None:
            return
        self.terminations += 1
        logger.warning("Terminating %s", self.name)
        self._discard(kill=True)

    def shutdown(self, wait: bool = True) -> None:
        """Let the worker exit once it is idle."""
        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    def _discard(self, kill: bool) -> None:
        executor, self._executor = self._executor, None
        if executor is None:
            return
        if kill and isinstance(executor, ProcessPoolExecutor):
            _kill_process_workers(executor)
        executor.shutdown(wait=False, cancel_futures=True)

    def __repr__(self) -> str:
        return f"WorkerSlot({self.name!r}, started={self.started})"


def _transport_failure(exc: BaseException, message: str) -> WorkOutcome:
    return WorkOutcome(
        ok=False,
        error_type=f"{type(exc).__module__}.{type(exc).__qualname__}",
        error_message=message,
        traceback="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        exception=exc,
    )


def _kill_process_workers(executor: ProcessPoolExecutor) -> None:
    """Terminate the processes behind a ProcessPoolExecutor."""
    terminate_workers = getattr(executor, "terminate_workers", None)
    if terminate_workers is not None:
        # Python 3.14+
        terminate_workers()
        return
    # Older interpreters have no public API for this. The executor's management
    # thread notices the dead worker and reaps it.
    for process in list((getattr(executor, "_processes", None) or {}).values()):
        if process.is_alive():
            process.terminate()
