"""
CONFIG_LOADER
=============

Configuration management for taskloop.

Handles:
- Global configuration (loop, resource limits, scheduler, API, logging)
- Loading from config.json with environment overrides
- Runtime configuration access

Usage:
    from taskloop.config import get_config_manager

    config = get_config_manager().load()
    print(config.loop.max_iterations)
    print(config.resources.max_concurrent_llm_calls)

Environment overrides (applied after the file):
    LLM_MAX_ITERATIONS, DEFAULT_MODEL, STORE_DATA_PATH, LOG_LEVEL,
    TASKLOOP_API_HOST, TASKLOOP_API_PORT, RESOURCE_*
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from ..errors import ConfigError
from ..monitor import ResourceLimits

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 15
DEFAULT_MODEL = "gpt-4o-mini"


# ============================================================================
# PATH RESOLUTION
# ============================================================================

def _find_project_root() -> Path:
    """
    Find the project root directory.

    Looks for data/CONFIG/config.json as the definitive marker, walking up
    from this file; falls back to the current working directory.
    """
    current = Path(__file__).resolve().parent
    for _ in range(5):
        if (current / "data" / "CONFIG" / "config.json").exists():
            return current
        current = current.parent
    return Path.cwd()


def parse_max_iterations(raw: Optional[str], default: int = DEFAULT_MAX_ITERATIONS) -> int:
    """
    Parse an iteration limit setting.

    Non-integer values fall back to ``default``; anything below 1 is floored to 1.
    """
    if raw is None or str(raw).strip() == "":
        return default
    try:
        value = int(str(raw).strip())
    except ValueError:
        logger.warning(f"Invalid LLM_MAX_ITERATIONS={raw!r}, using {default}")
        return default
    return max(1, value)


def resolve_data_path(explicit: Optional[str] = None) -> Path:
    """Data directory: explicit path > STORE_DATA_PATH > ./data."""
    if explicit:
        return Path(explicit)
    env_path = os.environ.get("STORE_DATA_PATH")
    if env_path:
        return Path(env_path)
    return Path.cwd() / "data"


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class LoopConfig:
    """Agentic loop settings."""
    max_iterations: Optional[int] = None  # None = LLM_MAX_ITERATIONS or 15
    default_model: str = DEFAULT_MODEL
    warning_ratio: float = 0.8
    max_retries: int = 3
    base_retry_delay_ms: int = 1000
    stuck_window: int = 3
    stuck_threshold: int = 3

    def to_dict(self) -> Dict:
        return {
            "max_iterations": self.max_iterations,
            "default_model": self.default_model,
            "warning_ratio": self.warning_ratio,
            "max_retries": self.max_retries,
            "base_retry_delay_ms": self.base_retry_delay_ms,
            "stuck_window": self.stuck_window,
            "stuck_threshold": self.stuck_threshold,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "LoopConfig":
        max_iterations = data.get("max_iterations")
        return cls(
            max_iterations=max(1, int(max_iterations)) if max_iterations is not None else None,
            default_model=data.get("default_model", DEFAULT_MODEL),
            warning_ratio=float(data.get("warning_ratio", 0.8)),
            max_retries=int(data.get("max_retries", 3)),
            base_retry_delay_ms=int(data.get("base_retry_delay_ms", 1000)),
            stuck_window=int(data.get("stuck_window", 3)),
            stuck_threshold=int(data.get("stuck_threshold", 3)),
        )

    def resolve_max_iterations(self, override: Optional[int] = None, environ=None) -> int:
        """Context override > configured value > LLM_MAX_ITERATIONS > 15."""
        if override is not None:
            return max(1, int(override))
        if self.max_iterations is not None:
            return max(1, int(self.max_iterations))
        environ = os.environ if environ is None else environ
        return parse_max_iterations(environ.get("LLM_MAX_ITERATIONS"))


@dataclass
class SchedulerConfig:
    """Recurring task scheduler settings."""
    data_path: Optional[str] = None  # None = STORE_DATA_PATH or ./data
    sync_delay_seconds: float = 0.0
    cleanup_max_age_days: int = 30
    max_iterations_per_task: Optional[int] = 10
    max_parallel_stores: int = 4

    def to_dict(self) -> Dict:
        return {
            "data_path": self.data_path,
            "sync_delay_seconds": self.sync_delay_seconds,
            "cleanup_max_age_days": self.cleanup_max_age_days,
            "max_iterations_per_task": self.max_iterations_per_task,
            "max_parallel_stores": self.max_parallel_stores,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SchedulerConfig":
        return cls(
            data_path=data.get("data_path"),
            sync_delay_seconds=float(data.get("sync_delay_seconds", 0.0)),
            cleanup_max_age_days=int(data.get("cleanup_max_age_days", 30)),
            max_iterations_per_task=data.get("max_iterations_per_task", 10),
            max_parallel_stores=int(data.get("max_parallel_stores", 4)),
        )


@dataclass
class ApiConfig:
    """Admin API settings."""
    host: str = "127.0.0.1"
    port: int = 8400

    def to_dict(self) -> Dict:
        return {"host": self.host, "port": self.port}

    @classmethod
    def from_dict(cls, data: Dict) -> "ApiConfig":
        return cls(
            host=data.get("host", "127.0.0.1"),
            port=int(data.get("port", 8400)),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    log_file: Optional[str] = None  # None = data/LOGS/taskloop.log, "none" = disabled

    def to_dict(self) -> Dict:
        return {"level": self.level, "log_file": self.log_file}

    @classmethod
    def from_dict(cls, data: Dict) -> "LoggingConfig":
        return cls(
            level=data.get("level", "INFO"),
            log_file=data.get("log_file"),
        )


@dataclass
class GlobalConfig:
    """Global taskloop configuration."""
    version: str = "1.0"
    loop: LoopConfig = field(default_factory=LoopConfig)
    resources: ResourceLimits = field(default_factory=ResourceLimits)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> Dict:
        return {
            "version": self.version,
            "loop": self.loop.to_dict(),
            "resources": self.resources.to_dict(),
            "scheduler": self.scheduler.to_dict(),
            "api": self.api.to_dict(),
            "logging": self.logging.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "GlobalConfig":
        return cls(
            version=data.get("version", "1.0"),
            loop=LoopConfig.from_dict(data.get("loop", {})),
            resources=ResourceLimits.from_dict(data.get("resources", {})),
            scheduler=SchedulerConfig.from_dict(data.get("scheduler", {})),
            api=ApiConfig.from_dict(data.get("api", {})),
            logging=LoggingConfig.from_dict(data.get("logging", {})),
        )

    def apply_env(self, environ=None) -> "GlobalConfig":
        """Apply environment overrides in place and return self."""
        environ = os.environ if environ is None else environ

        if environ.get("LLM_MAX_ITERATIONS"):
            self.loop.max_iterations = parse_max_iterations(environ["LLM_MAX_ITERATIONS"])
        if environ.get("DEFAULT_MODEL"):
            self.loop.default_model = environ["DEFAULT_MODEL"]
        if environ.get("STORE_DATA_PATH"):
            self.scheduler.data_path = environ["STORE_DATA_PATH"]
        if environ.get("LOG_LEVEL"):
            self.logging.level = environ["LOG_LEVEL"].upper()
        if environ.get("TASKLOOP_API_HOST"):
            self.api.host = environ["TASKLOOP_API_HOST"]
        if environ.get("TASKLOOP_API_PORT"):
            try:
                self.api.port = int(environ["TASKLOOP_API_PORT"])
            except ValueError:
                logger.warning(f"Ignoring non-integer TASKLOOP_API_PORT={environ['TASKLOOP_API_PORT']!r}")

        self.resources = self.resources.apply_env(environ)
        return self


# ============================================================================
# CONFIG MANAGER
# ============================================================================

class ConfigManager:
    """Load and save the global configuration."""

    def __init__(self, config_path: Optional[str] = None):
        if config_path:
            self.config_path = Path(config_path)
        elif os.environ.get("TASKLOOP_CONFIG"):
            self.config_path = Path(os.environ["TASKLOOP_CONFIG"])
        else:
            self.config_path = _find_project_root() / "data" / "CONFIG" / "config.json"

        self.global_config: GlobalConfig = GlobalConfig()
        self._loaded = False

    def load(self, environ=None) -> GlobalConfig:
        """
        Load configuration from file, then apply environment overrides.

        A missing file yields defaults. An unreadable file raises ConfigError.
        """
        if self.config_path.exists():
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigError(f"Could not load config {self.config_path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"Config {self.config_path} must contain a JSON object")
            try:
                self.global_config = GlobalConfig.from_dict(data)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Invalid config {self.config_path}: {e}") from e
        else:
            logger.debug(f"No config file at {self.config_path}, using defaults")
            self.global_config = GlobalConfig()

        self.global_config.apply_env(environ)
        self._loaded = True
        return self.global_config

    def get(self) -> GlobalConfig:
        if not self._loaded:
            return self.load()
        return self.global_config

    def save(self) -> None:
        """Save the current configuration to file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w", encoding="utf-8") as f:
            json.dump(self.global_config.to_dict(), f, indent=2)


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_path: Optional[str] = None) -> ConfigManager:
    """Get or create the global config manager."""
    global _config_manager
    if _config_manager is None or config_path:
        _config_manager = ConfigManager(config_path)
        _config_manager.load()
    return _config_manager


def load_global_config() -> GlobalConfig:
    """Load global configuration."""
    return get_config_manager().get()


def reset_config_manager() -> None:
    global _config_manager
    _config_manager = None
