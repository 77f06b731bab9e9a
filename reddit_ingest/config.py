"""Configuration handling for the Reddit archive ingestion core."""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from reddit_ingest.models.source import SourceType

KNOWN_SOURCE_TYPES = [source.value for source in SourceType]
MALFORMED_ITEM_STRATEGIES = ["pass_through", "skip", "error"]


@dataclass
class ValidationConfig:
    """Line validation and archive sampling configuration."""

    enabled: bool = True
    sample_lines: int = 100


@dataclass
class DecompressorConfig:
    """External decompression utility configuration."""

    binary: str = "zstd"
    # Pushshift dumps are compressed with a 2 GB window
    args: List[str] = field(default_factory=lambda: ["-dc", "--long=31"])
    processing_timeout_ms: int = 300000  # 5 minutes
    max_line_bytes: int = 16 * 1024 * 1024
    validation: ValidationConfig = field(default_factory=ValidationConfig)


@dataclass
class BatchConfig:
    """Batch coordinator, adaptive sizing and checkpoint configuration."""

    batch_size: int = 1000
    min_batch_size: int = 100
    max_batch_size: int = 5000
    max_memory_usage_mb: int = 512
    enable_checkpoints: bool = True
    enable_resource_monitoring: bool = True
    adaptive_batch_sizing: bool = True
    progress_reporting_interval_ms: int = 5000
    checkpoint_interval_lines: int = 10000
    resource_check_interval_ms: int = 1000
    memory_warning_ratio: float = 0.8
    shrink_factor: float = 0.75
    growth_factor: float = 1.25
    quiet_batches_before_growth: int = 5
    pressure_pause_ms: int = 0
    checkpoint_dir: str = "data/checkpoints"
    max_checkpoints_per_job: int = 100


@dataclass
class MergeConfig:
    """Temporal merge configuration."""

    timestamp_tolerance: int = 60  # seconds
    enable_gap_detection: bool = True
    gap_detection_threshold: float = 4  # hours
    priority_order: List[str] = field(default_factory=lambda: list(KNOWN_SOURCE_TYPES))
    validate_timestamps: bool = True
    max_batch_size: int = 10000


@dataclass
class DuplicateConfig:
    """Duplicate detection configuration."""

    max_time_difference_seconds: int = 3600
    max_batch_size: int = 10000
    enable_source_overlap_analysis: bool = True
    enable_performance_tracking: bool = False
    cache_size: int = 50000
    malformed_item_strategy: str = "pass_through"


@dataclass
class MonitoringConfig:
    """Monitoring configuration."""

    enable_prometheus: bool = False
    prometheus_port: int = 8000


def _apply_section(target: Any, values: Optional[Dict[str, Any]]) -> Any:
    """Copy known keys from a YAML mapping onto a config dataclass."""
    if not isinstance(values, dict):
        return target
    for key, value in values.items():
        if hasattr(target, key) and not isinstance(getattr(target, key), ValidationConfig):
            setattr(target, key, value)
    return target


@dataclass
class Config:
    """Application configuration combining environment variables and YAML config."""

    log_level: str = "INFO"
    output_dir: str = "data/output"
    decompressor: DecompressorConfig = field(default_factory=DecompressorConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    duplicates: DuplicateConfig = field(default_factory=DuplicateConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    @classmethod
    def from_files(cls, config_path: str, env_path: Optional[str] = None) -> "Config":
        """
        Load configuration from YAML file and environment variables.

        Args:
            config_path: Path to YAML configuration file
            env_path: Optional path to .env file (defaults to .env in current directory)

        Returns:
            Config instance with merged configuration
        """
        if env_path:
            load_dotenv(env_path)
        else:
            load_dotenv()

        config = cls()

        if os.path.exists(config_path):
            with open(config_path, "r", encoding="utf-8") as file:
                yaml_config = yaml.safe_load(file)

            if yaml_config:
                for key in ("log_level", "output_dir"):
                    if key in yaml_config:
                        setattr(config, key, yaml_config[key])

                decompressor_yaml = yaml_config.get("decompressor")
                _apply_section(config.decompressor, decompressor_yaml)
                if isinstance(decompressor_yaml, dict):
                    _apply_section(config.decompressor.validation, decompressor_yaml.get("validation"))

                _apply_section(config.batch, yaml_config.get("batch"))
                _apply_section(config.merge, yaml_config.get("merge"))
                _apply_section(config.duplicates, yaml_config.get("duplicates"))
                _apply_section(config.monitoring, yaml_config.get("monitoring"))

        # Environment overrides win over the YAML file
        if os.getenv("INGEST_ZSTD_BINARY"):
            config.decompressor.binary = os.environ["INGEST_ZSTD_BINARY"]
        if os.getenv("INGEST_CHECKPOINT_DIR"):
            config.batch.checkpoint_dir = os.environ["INGEST_CHECKPOINT_DIR"]
        if os.getenv("INGEST_MAX_MEMORY_MB"):
            config.batch.max_memory_usage_mb = int(os.environ["INGEST_MAX_MEMORY_MB"])
        if os.getenv("INGEST_LOG_LEVEL"):
            config.log_level = os.environ["INGEST_LOG_LEVEL"]

        return config

    def validate(self) -> List[str]:
        """
        Validate configuration and return a list of validation errors.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []

        if not self.decompressor.binary:
            errors.append("decompressor.binary must be specified")
        if self.decompressor.processing_timeout_ms <= 0:
            errors.append("decompressor.processing_timeout_ms must be greater than 0")
        if self.decompressor.max_line_bytes <= 0:
            errors.append("decompressor.max_line_bytes must be greater than 0")
        if self.decompressor.validation.sample_lines <= 0:
            errors.append("decompressor.validation.sample_lines must be greater than 0")

        batch = self.batch
        if batch.min_batch_size <= 0:
            errors.append("batch.min_batch_size must be greater than 0")
        if batch.max_batch_size < batch.min_batch_size:
            errors.append("batch.max_batch_size must be >= batch.min_batch_size")
        if not batch.min_batch_size <= batch.batch_size <= batch.max_batch_size:
            errors.append("batch.batch_size must lie between min_batch_size and max_batch_size")
        if batch.max_memory_usage_mb <= 0:
            errors.append("batch.max_memory_usage_mb must be greater than 0")
        if not 0 < batch.memory_warning_ratio <= 1:
            errors.append("batch.memory_warning_ratio must be in (0, 1]")
        if not 0 < batch.shrink_factor < 1:
            errors.append("batch.shrink_factor must be in (0, 1)")
        if batch.growth_factor <= 1:
            errors.append("batch.growth_factor must be greater than 1")
        if batch.quiet_batches_before_growth <= 0:
            errors.append("batch.quiet_batches_before_growth must be greater than 0")
        if batch.resource_check_interval_ms <= 0:
            errors.append("batch.resource_check_interval_ms must be greater than 0")
        if batch.max_checkpoints_per_job <= 0:
            errors.append("batch.max_checkpoints_per_job must be greater than 0")

        merge = self.merge
        if merge.timestamp_tolerance < 0:
            errors.append("merge.timestamp_tolerance must not be negative")
        if merge.gap_detection_threshold <= 0:
            errors.append("merge.gap_detection_threshold must be greater than 0")
        if not merge.priority_order:
            errors.append("merge.priority_order must not be empty")
        unknown = [s for s in merge.priority_order if s not in KNOWN_SOURCE_TYPES]
        if unknown:
            errors.append(f"merge.priority_order contains unknown source types: {unknown}")
        if merge.max_batch_size <= 0:
            errors.append("merge.max_batch_size must be greater than 0")

        duplicates = self.duplicates
        if duplicates.max_batch_size <= 0:
            errors.append("duplicates.max_batch_size must be greater than 0")
        if duplicates.max_time_difference_seconds < 0:
            errors.append("duplicates.max_time_difference_seconds must not be negative")
        if duplicates.cache_size <= 0:
            errors.append("duplicates.cache_size must be greater than 0")
        if duplicates.malformed_item_strategy not in MALFORMED_ITEM_STRATEGIES:
            errors.append(
                f"duplicates.malformed_item_strategy must be one of {MALFORMED_ITEM_STRATEGIES}"
            )

        if self.monitoring.prometheus_port <= 0:
            errors.append("monitoring.prometheus_port must be a positive integer")

        return errors
