"""Exception hierarchy for loopguard.

Every failure a Work Item can end in is one of these types, so callers can
catch exactly what they care about instead of a broad ``Exception``.

Exception Hierarchy:
    LoopguardError (base)
    ├── WorkerExecutionError - the submitted callable raised
    ├── CapacityExceededError (retryable) - pool full and queue limit reached
    ├── WorkTimeoutError - deadline elapsed (also a builtin TimeoutError)
    ├── WorkCancelledError - cancelled before completion
    ├── GateClosedError - submitted after shutdown began
    ├── InvalidWorkItemError - item cannot be scheduled as tagged
    └── ConfigurationError - invalid settings or environment values

Usage:
    from loopguard.exceptions import WorkerExecutionError

    try:
        await gate.run(parse_report, path, tag=WorkTag.CPU_BOUND)
    except WorkerExecutionError as e:
        logger.info("parse failed: %s", e.original_message)
"""

from typing import Any, Optional


class LoopguardError(Exception):
    """Base exception for all loopguard errors.

    Attributes:
        message: Human-readable error description
        context: Additional context about the error (e.g., item ids, timeouts)
        retryable: Whether this error might succeed on retry
    """

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        **context: Any,
    ) -> None:
        self.message = message
        self.context = context
        self.retryable = retryable
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the error message with context."""
        if self.context:
            context_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({context_str})"
        return self.message


class WorkerExecutionError(LoopguardError):
    """The Work Item's computation raised.

    The original exception object only survives when the worker shares
    memory with the caller (inline and thread workers); it is then chained
    as ``__cause__``. Process workers send back type, message and traceback.
    """

    def __init__(
        self,
        message: str = "Work item raised",
        *,
        original_type: Optional[str] = None,
        original_message: Optional[str] = None,
        remote_traceback: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.original_type = original_type
        self.original_message = original_message
        self.remote_traceback = remote_traceback
        if original_type:
            context["original_type"] = original_type
        if original_message:
            msg = original_message
            context["original_message"] = msg[:200] + "..." if len(msg) > 200 else msg
        super().__init__(message, **context)


class CapacityExceededError(LoopguardError):
    """The pool is at maximum concurrency and its wait queue is full."""

    def __init__(
        self,
        message: str = "Worker pool at capacity",
        *,
        max_workers: Optional[int] = None,
        queue_limit: Optional[int] = None,
        **context: Any,
    ) -> None:
        if max_workers is not None:
            context["max_workers"] = max_workers
        if queue_limit is not None:
            context["queue_limit"] = queue_limit
        super().__init__(message, retryable=True, **context)


class WorkTimeoutError(LoopguardError, TimeoutError):
    """A Work Item exceeded its deadline."""

    def __init__(
        self,
        message: str = "Work item timed out",
        *,
        timeout_seconds: Optional[float] = None,
        **context: Any,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        if timeout_seconds is not None:
            context["timeout_seconds"] = timeout_seconds
        super().__init__(message, **context)


class WorkCancelledError(LoopguardError):
    """Cancellation was requested before the Work Item completed."""

    def __init__(self, message: str = "Work item cancelled", **context: Any) -> None:
        super().__init__(message, **context)


class GateClosedError(LoopguardError):
    """The gate (or pool) no longer accepts work."""

    def __init__(self, message: str = "Gate is shut down", **context: Any) -> None:
        super().__init__(message, **context)


class InvalidWorkItemError(LoopguardError):
    """A Work Item cannot be scheduled the way it is tagged."""

    pass


class ConfigurationError(LoopguardError):
    """Invalid gate configuration or environment value."""

    def __init__(
        self,
        message: str = "Invalid configuration",
        *,
        setting: Optional[str] = None,
        **context: Any,
    ) -> None:
        if setting:
            context["setting"] = setting
        super().__init__(message, **context)
