"""Configuration system for the elastic-flow execution engine."""

from enum import Enum
from pathlib import Path
from typing import Any, Dict, List

import psutil
import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict


class BackoffStrategy(str, Enum):
    """Function mapping a retry count to the delay before the next attempt."""

    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class OptimizationLevel(str, Enum):
    NONE = "none"
    BASIC = "basic"
    AGGRESSIVE = "aggressive"
    ADAPTIVE = "adaptive"


class _CamelModel(BaseModel):
    """Accepts both snake_case field names and camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RetryPolicy(_CamelModel):
    """Per-node retry configuration."""

    max_retries: int = Field(default=3, ge=0)
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=10000, ge=0)
    retryable_errors: List[str] = Field(
        default_factory=lambda: ["TIMEOUT", "NETWORK_ERROR", "TEMPORARY_FAILURE"]
    )

    def compute_delay_ms(self, retry_count: int) -> int:
        """Delay before retry number ``retry_count`` (1-based)."""
        retry_count = max(retry_count, 1)
        if self.backoff_strategy == BackoffStrategy.EXPONENTIAL:
            return min(self.base_delay_ms * 2 ** (retry_count - 1), self.max_delay_ms)
        if self.backoff_strategy == BackoffStrategy.LINEAR:
            return min(self.base_delay_ms * retry_count, self.max_delay_ms)
        return self.base_delay_ms


class ResourceScalingConfig(_CamelModel):
    """Elastic resource scaling policy for one execution."""

    enabled: bool = True
    min_memory: int = 256
    max_memory: int = 4096
    scale_threshold: float = Field(default=0.8, gt=0, le=1)
    scale_up_delay: int = 30000
    scale_down_delay: int = 60000


class ErrorHandlingConfig(_CamelModel):
    isolate_failed_blocks: bool = True
    enable_rollback: bool = True
    generate_alternative_paths: bool = True
    ai_assisted_recovery: bool = True
    cascade_failure_prevention: bool = True


class ExecutionConfiguration(_CamelModel):
    """Configuration consumed by a single workflow execution."""

    max_parallel_blocks: int = Field(default=4, ge=1)
    memory_limit: int = Field(default=2048, gt=0, description="Memory limit in MB")
    timeout_ms: int = Field(default=30 * 60 * 1000, gt=0)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    optimization_level: OptimizationLevel = OptimizationLevel.BASIC
    resource_scaling: ResourceScalingConfig = Field(
        default_factory=ResourceScalingConfig
    )
    error_handling: ErrorHandlingConfig = Field(default_factory=ErrorHandlingConfig)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def merge_with_default_config(
    partial: Dict[str, Any] | ExecutionConfiguration | None = None,
) -> ExecutionConfiguration:
    """Overlay a partial configuration mapping on top of the defaults.

    Nested sections are merged key by key, so ``{"retryPolicy": {"maxRetries": 1}}``
    keeps the default backoff strategy and delays.
    """
    if partial is None:
        return ExecutionConfiguration()
    if isinstance(partial, ExecutionConfiguration):
        return partial.model_copy(deep=True)

    defaults = ExecutionConfiguration().model_dump(by_alias=True)
    normalized = ExecutionConfiguration.model_validate(
        _deep_merge(defaults, _to_alias_keys(partial))
    )
    return normalized


def _to_alias_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in data.items():
        alias = to_camel(key) if "_" in key else key
        result[alias] = _to_alias_keys(value) if isinstance(value, dict) else value
    return result


class SystemCapacity(BaseModel):
    """Total capacity of the host pool shared by all executions."""

    memory: int = 8192  # MB
    cpu: float = 8.0
    storage: int = 100000  # MB
    network: int = 1000  # Mbps

    memory_cap: float = 0.8
    cpu_cap: float = 0.8
    storage_cap: float = 0.5
    network_cap: float = 0.8

    monitor_interval: float = 5.0  # seconds
    detect_from_host: bool = False

    def model_post_init(self, __context):
        """Replace memory and cpu totals with the host's figures when asked to."""
        if self.detect_from_host:
            self.memory = int(psutil.virtual_memory().total / (1024 * 1024))
            self.cpu = float(psutil.cpu_count(logical=True) or self.cpu)


class SchedulerSettings(BaseModel):
    tick_interval: float = 0.1  # seconds


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    file_enabled: bool = False
    file_path: str = "logs/elastic-flow.log"
    file_rotation: str = "10 MB"
    file_retention: str = "1 week"
    json_logs: bool = False


class MetricsConfig(BaseModel):
    """Metrics configuration."""

    enabled: bool = True
    engine_name: str = "elastic-flow"
    additional_labels: Dict[str, str] = Field(default_factory=dict)


class EngineSettings(BaseSettings):
    """Main engine settings."""

    model_config = SettingsConfigDict(
        env_prefix="ELASTIC_FLOW_",
        env_nested_delimiter="__",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = "development"
    debug: bool = False

    execution: ExecutionConfiguration = Field(default_factory=ExecutionConfiguration)
    capacity: SystemCapacity = Field(default_factory=SystemCapacity)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    eviction_grace_period: float = 300.0  # seconds

    @field_validator("eviction_grace_period")
    @classmethod
    def validate_grace_period(cls, v):
        if v < 0:
            raise ValueError("eviction_grace_period must not be negative")
        return v

    @classmethod
    def load_from_yaml(cls, yaml_path: str | Path) -> "EngineSettings":
        """Load settings from YAML file."""
        yaml_path = Path(yaml_path)

        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        try:
            with open(yaml_path, encoding="utf-8") as f:
                yaml_data = yaml.safe_load(f) or {}

            config_dict: Dict[str, Any] = {}
            for section in (
                "environment",
                "debug",
                "capacity",
                "scheduler",
                "logging",
                "metrics",
                "eviction_grace_period",
            ):
                if section in yaml_data:
                    config_dict[section] = yaml_data[section]

            if "execution" in yaml_data:
                config_dict["execution"] = merge_with_default_config(
                    yaml_data["execution"]
                )

            return cls(**config_dict)
        except Exception as e:
            logger.error(f"Error loading YAML configuration: {e}")
            raise

    def save_to_yaml(self, yaml_path: str | Path) -> None:
        """Write settings to a YAML file readable by ``load_from_yaml``."""
        yaml_path = Path(yaml_path)
        yaml_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode="json")
        data["execution"] = self.execution.model_dump(mode="json", by_alias=True)

        with open(yaml_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, sort_keys=False)


def load_config(config_file: str | None = None) -> EngineSettings:
    """Load settings from file or environment."""
    if config_file and Path(config_file).exists():
        logger.info(f"Loading configuration from: {config_file}")
        return EngineSettings.load_from_yaml(config_file)
    logger.info("Using default configuration with environment overrides")
    return EngineSettings()
