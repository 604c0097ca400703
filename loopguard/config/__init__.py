from .settings import GateConfig, get_env_info, get_env_var, validate_all_env_vars, validate_env_var

__all__ = [
    "GateConfig",
    "get_env_info",
    "get_env_var",
    "validate_all_env_vars",
    "validate_env_var",
]
