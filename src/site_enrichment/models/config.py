"""Configuration management for the site enrichment core."""

import os
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from site_enrichment.models.data_models import BatchOptions, PerformanceThresholds


class CacheTTLConfig(BaseModel):
    """Time-to-live per cache namespace, in seconds."""
    demographic: float = Field(default=24 * 3600, description="Demographic profile TTL")
    location_intelligence: float = Field(default=12 * 3600, description="Location intelligence TTL")
    viability: float = Field(default=12 * 3600, description="Viability assessment TTL")
    competitive: float = Field(default=6 * 3600, description="Competitive analysis TTL")
    location_analysis: float = Field(default=8 * 3600, description="Composite analysis TTL")


class EnrichmentConfig(BaseModel):
    """Resilience, scheduling and monitoring parameters."""

    # Circuit breaker
    circuit_breaker_threshold: int = Field(default=5, description="Consecutive failures before opening")
    circuit_breaker_timeout_ms: float = Field(default=60000, description="Time an open breaker rejects calls")

    # Retry
    max_retry_attempts: int = Field(default=3, description="Attempts per call when the strategy does not say")
    retry_backoff_base_ms: float = Field(default=1000, description="Base delay for exponential backoff")
    retry_max_backoff_ms: float = Field(default=30000, description="Backoff cap")
    retry_jitter_ratio: float = Field(default=0.1, description="Maximum jitter as a fraction of the delay")
    error_history_limit: int = Field(default=100, description="Errors kept per service")

    # Batch scheduling
    batch_size: int = Field(default=5, description="Items per chunk")
    concurrency: int = Field(default=3, description="Maximum in-flight operations")
    delay_between_batches_ms: float = Field(default=100, description="Pause between chunks")
    enable_caching: bool = Field(default=True, description="Consult the cache before calling operations")
    prioritize_by_score: bool = Field(default=True, description="Schedule higher priorities first")
    operation_timeout_ms: Optional[float] = Field(default=None, description="Per-call timeout")
    max_memory_bytes: int = Field(default=100 * 1024 * 1024, description="Memory ceiling for memory-aware batching")
    estimated_item_memory_bytes: int = Field(default=50 * 1024, description="Estimated memory per in-flight item")
    memory_reclaim_pause_ms: float = Field(default=500, description="Pause when memory exceeds the ceiling")

    # Monitoring
    max_response_time_ms: float = Field(default=5000, description="Slow operation threshold")
    max_error_rate: float = Field(default=0.05, description="Rolling error rate threshold")
    min_cache_hit_rate: float = Field(default=0.7, description="Expected minimum cache hit rate")
    max_monitor_memory_bytes: int = Field(default=512 * 1024 * 1024, description="Process memory alert threshold")
    max_concurrent_requests: int = Field(default=50, description="In-flight tracked operations threshold")
    max_events_to_keep: int = Field(default=10000, description="Performance event history size")
    max_alerts_to_keep: int = Field(default=1000, description="Alert history size")

    # Cache
    cache_max_entries: int = Field(default=10000, description="Maximum in-memory cache entries")
    cache_coordinate_precision: int = Field(default=3, description="Decimal places used in cache keys")
    cache_ttl: CacheTTLConfig = Field(default_factory=CacheTTLConfig)

    # Run
    total_timeout: float = Field(default=300.0, description="Maximum run time in seconds")
    log_level: str = Field(default="INFO", description="Logging level")
    output_directory: str = Field(default="out", description="Output directory for results")
    output_filename: str = Field(default="enrichment.json", description="Output JSON filename")

    @field_validator(
        'circuit_breaker_threshold',
        'max_retry_attempts',
        'error_history_limit',
        'batch_size',
        'concurrency',
        'cache_max_entries',
    )
    @classmethod
    def validate_positive_int(cls, v: int, info) -> int:
        """Validate counts are positive."""
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive, got: {v}")
        return v

    @field_validator('circuit_breaker_timeout_ms', 'total_timeout')
    @classmethod
    def validate_timeout(cls, v: float, info) -> float:
        """Validate timeouts are positive."""
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive, got: {v}")
        return v

    @field_validator('delay_between_batches_ms')
    @classmethod
    def validate_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"delay_between_batches_ms must be non-negative, got: {v}")
        return v

    @property
    def output_path(self) -> Path:
        """Get full output file path."""
        return Path(self.output_directory) / self.output_filename

    def batch_options(self, **overrides) -> BatchOptions:
        """Build scheduler options from the configured defaults."""
        options = {
            "batch_size": self.batch_size,
            "concurrency": self.concurrency,
            "delay_between_batches_ms": self.delay_between_batches_ms,
            "enable_caching": self.enable_caching,
            "prioritize_by_score": self.prioritize_by_score,
            "operation_timeout_ms": self.operation_timeout_ms,
        }
        options.update(overrides)
        return BatchOptions(**options)

    def thresholds(self) -> PerformanceThresholds:
        """Build monitor thresholds from the configured values."""
        return PerformanceThresholds(
            max_response_time_ms=self.max_response_time_ms,
            max_error_rate=self.max_error_rate,
            min_cache_hit_rate=self.min_cache_hit_rate,
            max_memory_bytes=self.max_monitor_memory_bytes,
            max_concurrent_requests=self.max_concurrent_requests,
        )

    # Environment variable overrides
    @classmethod
    def from_env(cls) -> "EnrichmentConfig":
        """Create configuration with environment variable overrides."""
        config = cls()

        env_mappings = {
            "CIRCUIT_BREAKER_THRESHOLD": "circuit_breaker_threshold",
            "CIRCUIT_BREAKER_TIMEOUT_MS": "circuit_breaker_timeout_ms",
            "MAX_RETRY_ATTEMPTS": "max_retry_attempts",
            "ERROR_HISTORY_LIMIT": "error_history_limit",
            "ENRICHMENT_BATCH_SIZE": "batch_size",
            "ENRICHMENT_CONCURRENCY": "concurrency",
            "ENRICHMENT_DELAY_BETWEEN_BATCHES_MS": "delay_between_batches_ms",
            "ENRICHMENT_LOG_LEVEL": "log_level",
            "ENRICHMENT_TIMEOUT": "total_timeout",
        }

        values = {}
        for env_var, field_name in env_mappings.items():
            if env_var in os.environ:
                value = os.environ[env_var]
                field_info = cls.model_fields[field_name]
                if field_info.annotation == int:
                    values[field_name] = int(value)
                elif field_info.annotation == float:
                    values[field_name] = float(value)
                else:
                    values[field_name] = value

        if values:
            # Re-validate so bad environment values fail loudly
            config = cls(**{**config.model_dump(), **values})
        return config


class ConfigManager:
    """Manages configuration loading with override precedence."""

    def __init__(self, config_file: Optional[Path] = None):
        self.config_file = config_file or Path("config/config.yaml")
        self._config: Optional[EnrichmentConfig] = None

    def load_config(self, cli_overrides: Optional[Dict] = None) -> EnrichmentConfig:
        """
        Load configuration with override precedence: CLI > ENV > YAML.

        Args:
            cli_overrides: Optional dictionary of CLI flag overrides

        Returns:
            Fully merged EnrichmentConfig instance

        Raises:
            ValueError: If configuration validation fails
        """
        config_dict = {}

        if self.config_file.exists():
            with open(self.config_file, 'r') as f:
                yaml_config = yaml.safe_load(f)
                if yaml_config:
                    config_dict.update(yaml_config)

        base_config = EnrichmentConfig(**config_dict)
        env_config = EnrichmentConfig.from_env()

        merged_dict = base_config.model_dump()
        env_dict = env_config.model_dump()

        # Only override with env values that differ from defaults
        default_dict = EnrichmentConfig().model_dump()
        for key, value in env_dict.items():
            if value != default_dict[key]:
                merged_dict[key] = value

        if cli_overrides:
            cli_overrides = {k: v for k, v in cli_overrides.items() if v is not None}
            merged_dict.update(cli_overrides)

        self._config = EnrichmentConfig(**merged_dict)
        return self._config

    @property
    def config(self) -> EnrichmentConfig:
        """Get the loaded configuration."""
        if self._config is None:
            self._config = self.load_config()
        return self._config
