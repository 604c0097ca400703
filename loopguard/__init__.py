"""
loopguard - keep a cooperative event loop live by offloading blocking work
"""

__version__ = "0.1.0"

from loopguard.config.settings import GateConfig
from loopguard.exceptions import (
    CapacityExceededError,
    ConfigurationError,
    GateClosedError,
    InvalidWorkItemError,
    LoopguardError,
    WorkCancelledError,
    WorkerExecutionError,
    WorkTimeoutError,
)
from loopguard.models.work_item import CancellationToken, WorkItem, WorkResult, WorkState, WorkTag
from loopguard.services.offload_gate import OffloadGate, Route

__all__ = [
    "CancellationToken",
    "CapacityExceededError",
    "ConfigurationError",
    "GateClosedError",
    "GateConfig",
    "InvalidWorkItemError",
    "LoopguardError",
    "OffloadGate",
    "Route",
    "WorkCancelledError",
    "WorkerExecutionError",
    "WorkItem",
    "WorkResult",
    "WorkState",
    "WorkTag",
    "WorkTimeoutError",
]
