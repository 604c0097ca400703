"""Configuration utilities for loopguard."""

import math
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..exceptions import ConfigurationError
from .constants import (
    DEFAULT_IO_WORKERS,
    DEFAULT_MAX_WORKERS,
    DEFAULT_QUEUE_LIMIT,
    DEFAULT_TIMEOUT_SECONDS,
    DEFAULT_WORKER_KIND,
    ENV_VAR_DEFINITIONS,
    MP_START_METHODS,
    WORKER_KINDS,
)

# Environment variable -> GateConfig field
_ENV_FIELDS = {
    "LOOPGUARD_MAX_WORKERS": "max_workers",
    "LOOPGUARD_WORKER_KIND": "worker_kind",
    "LOOPGUARD_IO_WORKERS": "io_workers",
    "LOOPGUARD_DEFAULT_TIMEOUT": "default_timeout",
    "LOOPGUARD_QUEUE_LIMIT": "queue_limit",
    "LOOPGUARD_MP_START_METHOD": "mp_start_method",
    "LOOPGUARD_EVENT_LOG": "event_log",
}


def validate_env_var(name: str, value: Optional[str]) -> Tuple[bool, Optional[str]]:
    """Validate a single environment variable value.

    Args:
        name: The environment variable name.
        value: The current value (or None if not set).

    Returns:
        Tuple of (is_valid, error_message).
    """
    if name not in ENV_VAR_DEFINITIONS:
        return True, None  # Unknown vars are always valid

    # Not set is fine, the default applies
    if value is None:
        return True, None

    definition = ENV_VAR_DEFINITIONS[name]
    valid_values = definition.get("valid_values")
    value_type = definition.get("type")

    if value_type is not None:
        try:
            parsed = value_type(value)
        except ValueError:
            return False, f"Invalid value '{value}' for {name}. Expected {value_type.__name__}"
        if parsed < 0 or (isinstance(parsed, float) and math.isnan(parsed)):
            return False, f"Invalid value '{value}' for {name}. Must be a non-negative number"

    if valid_values is None:
        return True, None

    if value.lower() not in [v.lower() for v in valid_values]:
        return False, f"Invalid value '{value}' for {name}. Valid values: {valid_values}"

    return True, None


def validate_all_env_vars() -> List[str]:
    """Validate all loopguard environment variables.

    Returns:
        List of error messages (empty if all valid).
    """
    errors = []
    for name in ENV_VAR_DEFINITIONS:
        value = os.environ.get(name)
        is_valid, error = validate_env_var(name, value)
        if not is_valid:
            errors.append(error)
    return errors


def get_env_var(name: str, validate: bool = True) -> Optional[str]:
    """Get an environment variable with optional validation.

    Args:
        name: The environment variable name.
        validate: Whether to validate the value against known definitions.

    Returns:
        The environment variable value, or its default if not set.

    Raises:
        ConfigurationError: If validate=True and the value is invalid.
    """
    value = os.environ.get(name)

    if validate and value is not None:
        is_valid, error = validate_env_var(name, value)
        if not is_valid:
            raise ConfigurationError(error, setting=name)

    if value is None and name in ENV_VAR_DEFINITIONS:
        return ENV_VAR_DEFINITIONS[name].get("default")

    return value


def get_env_info() -> Dict[str, Dict[str, Any]]:
    """Get information about all loopguard environment variables.

    Returns:
        Dictionary mapping env var names to description, current value,
        whether it is set and valid, and the default.
    """
    info = {}
    for name, definition in ENV_VAR_DEFINITIONS.items():
        value = os.environ.get(name)
        is_valid, _ = validate_env_var(name, value)
        info[name] = {
            "description": definition.get("description", ""),
            "value": value,
            "is_set": value is not None,
            "valid": is_valid,
            "default": definition.get("default"),
        }
    return info


@dataclass(frozen=True)
class GateConfig:
    """Configuration surface of the offload gate."""

    max_workers: int = DEFAULT_MAX_WORKERS
    worker_kind: str = DEFAULT_WORKER_KIND
    default_timeout: Optional[float] = DEFAULT_TIMEOUT_SECONDS
    io_workers: int = DEFAULT_IO_WORKERS
    queue_limit: Optional[int] = DEFAULT_QUEUE_LIMIT
    mp_start_method: Optional[str] = None
    event_log: Optional[Path] = None

    def validate(self) -> "GateConfig":
        """Raise ConfigurationError for out-of-range values; return self."""
        if not isinstance(self.max_workers, int) or self.max_workers < 1:
            raise ConfigurationError(
                "max_workers must be a positive integer",
                setting="max_workers",
                value=self.max_workers,
            )
        if self.worker_kind not in WORKER_KINDS:
            raise ConfigurationError(
                f"worker_kind must be one of {list(WORKER_KINDS)}",
                setting="worker_kind",
                value=self.worker_kind,
            )
        if not isinstance(self.io_workers, int) or self.io_workers < 0:
            raise ConfigurationError(
                "io_workers must be a non-negative integer",
                setting="io_workers",
                value=self.io_workers,
            )
        if self.default_timeout is not None and (self.default_timeout <= 0 or math.isnan(self.default_timeout)):
            raise ConfigurationError(
                "default_timeout must be positive",
                setting="default_timeout",
                value=self.default_timeout,
            )
        if self.queue_limit is not None and self.queue_limit < 0:
            raise ConfigurationError(
                "queue_limit must not be negative",
                setting="queue_limit",
                value=self.queue_limit,
            )
        if self.mp_start_method is not None and self.mp_start_method not in MP_START_METHODS:
            raise ConfigurationError(
                f"mp_start_method must be one of {list(MP_START_METHODS)}",
                setting="mp_start_method",
                value=self.mp_start_method,
            )
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> "GateConfig":
        """Build a config from LOOPGUARD_* variables, then apply overrides.

        Precedence: keyword overrides > environment > defaults.
        """
        unknown = set(overrides) - {f.name for f in fields(cls)}
        if unknown:
            raise ConfigurationError(
                f"Unknown gate settings: {sorted(unknown)}", setting=sorted(unknown)[0]
            )

        values: Dict[str, Any] = {}
        for env_name, field_name in _ENV_FIELDS.items():
            raw = os.environ.get(env_name)
            if raw is None or raw == "":
                continue
            is_valid, error = validate_env_var(env_name, raw)
            if not is_valid:
                raise ConfigurationError(error, setting=env_name)
            values[field_name] = _coerce(field_name, raw)
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values).validate()

    def with_overrides(self, **overrides: Any) -> "GateConfig":
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown gate settings: {sorted(unknown)}", setting=sorted(unknown)[0]
            )
        return replace(self, **overrides).validate()


def _coerce(field_name: str, raw: str) -> Any:
    if field_name in ("max_workers", "io_workers", "queue_limit"):
        return int(raw)
    if field_name == "default_timeout":
        return float(raw)
    if field_name == "event_log":
        return Path(raw).expanduser()
    return raw.lower()
