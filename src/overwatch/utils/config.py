"""
Configuration loader for Overwatch.

This module provides configuration management with:
- Multiple configuration sources (dicts, JSON, YAML, TOML files)
- Environment variable overrides (OVERWATCH_ prefix, ``__`` for nesting)
- Schema validation with pydantic
- Configuration merging by priority
- Optional hot reloading of configuration files
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import toml
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from watchdog.events import FileModifiedEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .errors import ConfigurationError
from .logging import get_logger


logger = get_logger("overwatch.config")

ENV_PREFIX = "OVERWATCH_"
ENV_NESTING = "__"


class ConfigSource(BaseModel):
    """Configuration source definition."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"


class DatabaseConfig(BaseModel):
    """Database configuration."""
    path: Path = Field(default_factory=lambda: Path.home() / ".overwatch" / "overwatch.db")
    journal_mode: str = "WAL"
    synchronous: str = "NORMAL"
    busy_timeout_ms: int = 5000

    @field_validator('path')
    @classmethod
    def validate_path(cls, v):
        if str(v) == ":memory:":
            return v
        return v.expanduser().absolute()


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "json"
    directory: Path = Field(default_factory=lambda: Path.home() / ".overwatch" / "logs")
    enable_console: bool = True
    enable_sentry: bool = False
    sentry_dsn: Optional[str] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class AgentTypeConfig(BaseModel):
    """Registry entry override for one agent type."""
    capabilities: List[str]
    max_concurrent_tasks: int = Field(ge=1)


class TaskQueueConfig(BaseModel):
    """Task queue configuration."""
    max_retries: Optional[int] = Field(default=5, ge=0)


class WorkloadConfig(BaseModel):
    """Workload monitor configuration."""
    check_interval: float = Field(default=30.0, gt=0)
    high_threshold: float = Field(default=75.0, ge=0, le=100)
    critical_threshold: float = Field(default=90.0, ge=0, le=100)
    spawn_task_cap: int = Field(default=3, ge=1)

    @model_validator(mode='after')
    def check_thresholds(self):
        if self.high_threshold >= self.critical_threshold:
            raise ValueError("high_threshold must be below critical_threshold")
        return self


class FailureHandlerConfig(BaseModel):
    """Child failure handler configuration."""
    failure_penalty: int = Field(default=20, ge=0, le=100)
    restart_bonus: int = Field(default=10, ge=0, le=100)
    recovery_delay: float = Field(default=0.0, ge=0)


class MutualMonitoringConfig(BaseModel):
    """Mutual monitoring configuration."""
    check_interval: float = Field(default=30.0, gt=0)
    min_health_score: int = Field(default=30, ge=0, le=100)
    heartbeat_timeout: float = Field(default=120.0, gt=0)
    auto_pair: bool = True
    record_failures: bool = True


class WatchdogConfig(BaseModel):
    """Watchdog configuration."""
    check_interval: float = Field(default=30.0, gt=0)
    heartbeat_timeout: float = Field(default=60.0, gt=0)
    ping_timeout: float = Field(default=2.0, gt=0)
    min_health_score: int = Field(default=30, ge=0, le=100)
    critical_agent_types: List[str] = Field(
        default_factory=lambda: ["self-healing-agent", "orchestrator"]
    )
    parent_reset_health: int = Field(default=50, ge=0, le=100)


class SelfHealingConfig(BaseModel):
    """Process-level self-healing supervisor configuration."""
    enabled: bool = True
    monitoring_interval: float = Field(default=30.0, gt=0)
    failure_threshold: int = Field(default=3, ge=1)
    reset_timeout: float = Field(default=60.0, gt=0)
    max_restarts: int = Field(default=5, ge=1)
    restart_window: float = Field(default=3600.0, gt=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    backoff_base: float = Field(default=1.0, gt=0)
    backoff_cap: float = Field(default=30.0, gt=0)
    self_process_name: str = "self-healing-agent"
    heartbeat_multiplier: float = Field(default=3.0, gt=1)
    health_url: Optional[str] = None
    health_timeout: float = Field(default=5.0, gt=0)
    pm2_binary: str = "pm2"


class OrchestratorConfig(BaseModel):
    """Orchestrator configuration."""
    decompose_types: List[str] = Field(
        default_factory=lambda: ["complex_query", "multi_step", "batch_operation"]
    )
    content_threshold: int = Field(default=1000, ge=1)
    dispatch_interval: float = Field(default=10.0, gt=0)
    dispatch_batch_size: int = Field(default=50, ge=1)


class MessageBusConfig(BaseModel):
    """Message bus configuration."""
    request_timeout: float = Field(default=5.0, gt=0)
    max_history: int = Field(default=1000, ge=0)


class HealthServerConfig(BaseModel):
    """Read-only health endpoint configuration."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = Field(default=8765, ge=1, le=65535)


class OverwatchConfig(BaseModel):
    """Main Overwatch configuration."""
    app_name: str = "overwatch"
    version: str = "0.1.0"
    debug: bool = False

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    registry: Dict[str, AgentTypeConfig] = Field(default_factory=dict)
    task_queue: TaskQueueConfig = Field(default_factory=TaskQueueConfig)
    workload: WorkloadConfig = Field(default_factory=WorkloadConfig)
    failure_handler: FailureHandlerConfig = Field(default_factory=FailureHandlerConfig)
    mutual_monitoring: MutualMonitoringConfig = Field(default_factory=MutualMonitoringConfig)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)
    self_healing: SelfHealingConfig = Field(default_factory=SelfHealingConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    message_bus: MessageBusConfig = Field(default_factory=MessageBusConfig)
    health_server: HealthServerConfig = Field(default_factory=HealthServerConfig)

    enable_hot_reload: bool = False

    model_config = ConfigDict(validate_assignment=True)


class ConfigLoader:
    """Configuration loader with multiple source support."""

    def __init__(self, env_prefix: str = ENV_PREFIX):
        self.env_prefix = env_prefix
        self._sources: List[ConfigSource] = []
        self._config: Optional[OverwatchConfig] = None
        self._observers: List[Observer] = []
        self._callbacks: List[Callable[[OverwatchConfig], Any]] = []
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def add_source(
        self,
        source: Union[str, Path, Dict[str, Any]],
        priority: int = 0,
        source_type: Optional[str] = None
    ) -> None:
        """
        Add a configuration source.

        Args:
            source: File path or dict
            priority: Higher priority sources override lower ones
            source_type: json/yaml/toml/dict (detected from suffix if None)
        """
        if isinstance(source, (str, Path)):
            path = Path(source)
            self._sources.append(ConfigSource(
                path=path,
                priority=priority,
                source_type=source_type or self._detect_source_type(path)
            ))
        else:
            self._sources.append(ConfigSource(data=source, priority=priority))

        self._sources.sort(key=lambda s: s.priority)

    def _detect_source_type(self, path: Path) -> str:
        suffix = path.suffix.lower()
        if suffix == ".json":
            return "json"
        elif suffix in (".yaml", ".yml"):
            return "yaml"
        elif suffix == ".toml":
            return "toml"
        raise ConfigurationError(f"Unknown config file type: {suffix}")

    async def load(self) -> OverwatchConfig:
        """Load and validate configuration from all sources."""
        async with self._lock:
            merged: Dict[str, Any] = {}

            for source in self._sources:
                data = self._load_source(source)
                merged = self._deep_merge(merged, data)

            merged = self._deep_merge(merged, self._load_env_vars())

            try:
                self._config = OverwatchConfig(**merged)
            except ValidationError as e:
                errors = []
                for error in e.errors():
                    field = ".".join(str(x) for x in error["loc"])
                    errors.append(f"{field}: {error['msg']}")
                raise ConfigurationError(
                    f"Configuration validation failed: {'; '.join(errors)}"
                ) from e

            logger.info("configuration_loaded", sources=len(self._sources))

            if self._config.enable_hot_reload and not self._observers:
                self._setup_hot_reload()

            return self._config

    def _load_source(self, source: ConfigSource) -> Dict[str, Any]:
        if source.path is None:
            return source.data

        if not source.path.exists():
            logger.warning("config_file_not_found", path=str(source.path))
            return {}

        content = source.path.read_text()
        try:
            if source.source_type == "json":
                return json.loads(content)
            elif source.source_type == "yaml":
                return yaml.safe_load(content) or {}
            elif source.source_type == "toml":
                return toml.loads(content)
        except (json.JSONDecodeError, yaml.YAMLError, toml.TomlDecodeError) as e:
            raise ConfigurationError(f"Cannot parse {source.path}: {e}", cause=e) from e

        raise ConfigurationError(f"Unknown source type: {source.source_type}")

    def _load_env_vars(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}

        for key, value in os.environ.items():
            if not key.startswith(self.env_prefix):
                continue

            parts = key[len(self.env_prefix):].lower().split(ENV_NESTING)
            current = result
            for part in parts[:-1]:
                current = current.setdefault(part, {})
            current[parts[-1]] = self._convert_value(value)

        return result

    def _convert_value(self, value: str) -> Any:
        if value.lower() in ("true", "yes", "on"):
            return True
        elif value.lower() in ("false", "no", "off"):
            return False

        try:
            return float(value) if "." in value else int(value)
        except ValueError:
            pass

        if "," in value:
            return [v.strip() for v in value.split(",")]

        return value

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        result = base.copy()
        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    def _setup_hot_reload(self) -> None:
        self._loop = asyncio.get_running_loop()
        for source in self._sources:
            if source.path and source.path.exists():
                observer = Observer()
                handler = ConfigFileHandler(self, source.path)
                observer.schedule(handler, str(source.path.parent), recursive=False)
                observer.start()
                self._observers.append(observer)
                logger.info("hot_reload_enabled", path=str(source.path))

    def register_callback(self, callback: Callable[[OverwatchConfig], Any]) -> None:
        """Register a callback invoked with the new config after a reload."""
        self._callbacks.append(callback)

    async def reload(self) -> None:
        logger.info("reloading_configuration")
        old_config = self._config
        try:
            new_config = await self.load()
        except ConfigurationError as e:
            logger.error("reload_failed", error=str(e))
            return

        if old_config == new_config:
            return

        for callback in self._callbacks:
            try:
                if asyncio.iscoroutinefunction(callback):
                    await callback(new_config)
                else:
                    callback(new_config)
            except Exception as e:
                logger.error(
                    "callback_error",
                    callback=getattr(callback, '__name__', str(callback)),
                    error=str(e)
                )

    def get_config(self) -> OverwatchConfig:
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config

    def shutdown(self) -> None:
        for observer in self._observers:
            observer.stop()
            observer.join()
        self._observers.clear()


class ConfigFileHandler(FileSystemEventHandler):
    """Schedules a reload on the loader's event loop when its file changes."""

    def __init__(self, loader: ConfigLoader, path: Path):
        self.loader = loader
        self.path = path

    def on_modified(self, event: FileModifiedEvent) -> None:
        if event.is_directory or Path(event.src_path) != self.path:
            return
        logger.info("config_file_modified", path=event.src_path)
        if self.loader._loop is not None:
            asyncio.run_coroutine_threadsafe(self.loader.reload(), self.loader._loop)


async def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None
) -> OverwatchConfig:
    """
    Load configuration from standard locations.

    Args:
        config_paths: Additional configuration files
        extra_config: Overrides applied above every file

    Returns:
        Validated configuration
    """
    loader = ConfigLoader()

    default_paths = [
        Path.home() / ".overwatch" / "config.yaml",
        Path("./overwatch.yaml"),
        Path("./overwatch.toml"),
    ]
    for path in default_paths:
        if path.exists():
            loader.add_source(path, priority=10)

    for i, path in enumerate(config_paths or []):
        loader.add_source(path, priority=20 + i)

    if extra_config:
        loader.add_source(extra_config, priority=100)

    return await loader.load()


__all__ = [
    'OverwatchConfig',
    'DatabaseConfig',
    'LoggingConfig',
    'AgentTypeConfig',
    'TaskQueueConfig',
    'WorkloadConfig',
    'FailureHandlerConfig',
    'MutualMonitoringConfig',
    'WatchdogConfig',
    'SelfHealingConfig',
    'OrchestratorConfig',
    'MessageBusConfig',
    'HealthServerConfig',
    'ConfigLoader',
    'load_config',
]
