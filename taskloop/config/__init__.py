"""
Configuration management for taskloop.
"""

from .loader import (
    ConfigManager,
    GlobalConfig,
    LoopConfig,
    SchedulerConfig,
    ApiConfig,
    LoggingConfig,
    DEFAULT_MAX_ITERATIONS,
    get_config_manager,
    load_global_config,
    parse_max_iterations,
    reset_config_manager,
    resolve_data_path,
)
from ..monitor import ResourceLimits

__all__ = [
    "ConfigManager",
    "GlobalConfig",
    "LoopConfig",
    "SchedulerConfig",
    "ApiConfig",
    "LoggingConfig",
    "ResourceLimits",
    "DEFAULT_MAX_ITERATIONS",
    "get_config_manager",
    "load_global_config",
    "parse_max_iterations",
    "reset_config_manager",
    "resolve_data_path",
]
