"""
Centralized constants for loopguard.

Defaults for the gate and its worker pools, plus the definitions of the
environment variables that can override them.
"""

import os

# =============================================================================
# CONCURRENCY & POOL SIZES
# =============================================================================

DEFAULT_MAX_WORKERS = os.cpu_count() or 1  # CPU pool: one worker per core
DEFAULT_IO_WORKERS = min(32, DEFAULT_MAX_WORKERS + 4)  # Same sizing as ThreadPoolExecutor
DEFAULT_QUEUE_LIMIT = None  # Unbounded FIFO wait queue

WORKER_KIND_PROCESS = "process"
WORKER_KIND_THREAD = "thread"
WORKER_KINDS = (WORKER_KIND_PROCESS, WORKER_KIND_THREAD)
DEFAULT_WORKER_KIND = WORKER_KIND_PROCESS

MP_START_METHODS = ("spawn", "fork", "forkserver")

# =============================================================================
# TIMEOUTS (in seconds)
# =============================================================================

DEFAULT_TIMEOUT_SECONDS = None  # No deadline unless the item or config sets one
SHUTDOWN_GRACE_SECONDS = 5.0  # Wait for a killed worker process to exit

# =============================================================================
# DEMO
# =============================================================================

DEMO_HEARTBEAT_INTERVAL_SECONDS = 0.05
DEMO_DEFAULT_ITEMS = 4
DEMO_DEFAULT_WORK = 27  # fib(27): ~0.1-0.5s of pure Python per item

# =============================================================================
# ENVIRONMENT VARIABLES
# =============================================================================

ENV_VAR_DEFINITIONS = {
    "LOOPGUARD_MAX_WORKERS": {
        "description": "Maximum concurrent workers for cpu-bound items",
        "default": str(DEFAULT_MAX_WORKERS),
        "valid_values": None,
        "type": int,
    },
    "LOOPGUARD_WORKER_KIND": {
        "description": "Worker kind for cpu-bound items (process or thread)",
        "default": DEFAULT_WORKER_KIND,
        "valid_values": list(WORKER_KINDS),
    },
    "LOOPGUARD_IO_WORKERS": {
        "description": "Thread workers for blocking-io items (0 escalates to the cpu pool)",
        "default": str(DEFAULT_IO_WORKERS),
        "valid_values": None,
        "type": int,
    },
    "LOOPGUARD_DEFAULT_TIMEOUT": {
        "description": "Default per-item timeout in seconds (unset for none)",
        "default": None,
        "valid_values": None,
        "type": float,
    },
    "LOOPGUARD_QUEUE_LIMIT": {
        "description": "Maximum queued items per pool before rejecting (unset for unbounded)",
        "default": None,
        "valid_values": None,
        "type": int,
    },
    "LOOPGUARD_MP_START_METHOD": {
        "description": "multiprocessing start method for process workers",
        "default": None,
        "valid_values": list(MP_START_METHODS),
    },
    "LOOPGUARD_EVENT_LOG": {
        "description": "Path of a JSON-lines log of work item state transitions",
        "default": None,
        "valid_values": None,
    },
    "LOOPGUARD_LOG_LEVEL": {
        "description": "Log level for the loopguard logger",
        "default": "WARNING",
        "valid_values": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    },
}
