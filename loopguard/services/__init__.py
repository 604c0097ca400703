"""Service modules for loopguard."""

from .offload_gate import OffloadGate, Route
from .worker_pool import WorkerPool

__all__ = ['OffloadGate', 'Route', 'WorkerPool']
