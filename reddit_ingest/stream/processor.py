"""Configured entry point for streaming archive files."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from reddit_ingest.config import DecompressorConfig
from reddit_ingest.exceptions import IngestError, StreamProcessorError
from reddit_ingest.models.mapping import COMMENT, SUBMISSION, classify_item
from reddit_ingest.models.stream import ProcessingMetrics
from reddit_ingest.monitoring.processing_metrics import ProcessingMetricsCollector
from reddit_ingest.stream.decompressor import ArchiveDecompressor, ItemHandler, Validator

logger = logging.getLogger(__name__)

MIN_SAMPLE_VALID_RATIO = 0.5


def is_archive_record(item: Any) -> bool:
    """Default line validator: a JSON object with an id, a timestamp and a known shape."""
    if not isinstance(item, dict):
        return False
    if not item.get("id") or item.get("created_utc") in (None, ""):
        return False
    return classify_item(item) is not None


@dataclass
class SetupValidation:
    valid: bool
    issues: List[str] = field(default_factory=list)
    decompressor_version: Optional[str] = None


@dataclass
class ArchiveSample:
    """What the first lines of an archive look like."""

    file_path: str
    lines_sampled: int
    valid_lines: int
    error_lines: int
    submissions: int = 0
    comments: int = 0
    subreddits: Dict[str, int] = field(default_factory=dict)

    @property
    def valid_ratio(self) -> float:
        return self.valid_lines / self.lines_sampled if self.lines_sampled else 0.0


class StreamProcessor:
    """Runs the decompressor with configured limits and records every run."""

    def __init__(
        self,
        config: DecompressorConfig,
        decompressor: Optional[ArchiveDecompressor] = None,
        metrics_collector: Optional[ProcessingMetricsCollector] = None,
        prometheus_exporter=None,
    ):
        """
        Initialize the stream processor.

        Args:
            config: Decompressor configuration
            decompressor: Decompressor to use (built from config if omitted)
            metrics_collector: Collector receiving per-file metrics
            prometheus_exporter: Optional Prometheus exporter for metrics
        """
        self.config = config
        self.decompressor = decompressor or ArchiveDecompressor(
            command=[config.binary, *config.args],
            line_limit=config.max_line_bytes,
        )
        self.metrics_collector = metrics_collector or ProcessingMetricsCollector()
        self.prometheus_exporter = prometheus_exporter

    def default_validator(self) -> Optional[Validator]:
        return is_archive_record if self.config.validation.enabled else None

    async def process_file(
        self,
        file_path: str,
        item_handler: ItemHandler,
        validator: Optional[Validator] = None,
        max_lines: Optional[int] = None,
        timeout_ms: Optional[int] = None,
    ) -> ProcessingMetrics:
        """
        Stream one archive through ``item_handler`` and record the run's metrics.

        Aborted runs are recorded too, with the counters reached before the failure.

        Args:
            file_path: Archive to process
            item_handler: Receives ``(item, line_number)`` for each valid line
            validator: Line validator; defaults to is_archive_record when validation is enabled
            max_lines: Optional early-stop limit
            timeout_ms: Deadline override; defaults to the configured processing timeout

        Returns:
            ProcessingMetrics for the run
        """
        start_time = datetime.now(timezone.utc)
        try:
            metrics = await self.decompressor.stream_decompress(
                file_path,
                item_handler,
                validator=validator or self.default_validator(),
                timeout_ms=timeout_ms or self.config.processing_timeout_ms,
                max_lines=max_lines,
            )
        except IngestError as e:
            self.metrics_collector.record_file_metrics(
                file_path,
                start_time,
                datetime.now(timezone.utc),
                e.partial_metrics or ProcessingMetrics(),
                error_code=e.error_code,
            )
            if self.prometheus_exporter:
                self.prometheus_exporter.record_stream_failure(e.error_code)
            raise

        self.metrics_collector.record_file_metrics(
            file_path, start_time, datetime.now(timezone.utc), metrics
        )
        if self.prometheus_exporter:
            self.prometheus_exporter.record_stream_metrics(
                metrics.valid_lines, metrics.error_lines, metrics.handler_errors
            )
            self.prometheus_exporter.set_process_memory(metrics.memory_usage.final)
        return metrics

    async def validate_setup(self) -> SetupValidation:
        """
        Check that the decompression utility and configuration are usable.

        Returns:
            SetupValidation listing every problem found
        """
        issues: List[str] = []

        info = await self.decompressor.validate_installation()
        if not info.available:
            issues.append(f"Decompression utility '{info.binary}' unavailable: {info.error}")

        if self.config.processing_timeout_ms <= 0:
            issues.append("Invalid processing timeout configuration")
        if self.config.validation.sample_lines <= 0:
            issues.append("Invalid validation sample size")

        for issue in issues:
            logger.error(f"Setup validation: {issue}")

        return SetupValidation(valid=not issues, issues=issues, decompressor_version=info.version)

    async def sample_file(self, file_path: str) -> ArchiveSample:
        """
        Read the first ``validation.sample_lines`` lines of an archive.

        Raises:
            StreamProcessorError: When validation is enabled and fewer than half of
                the sampled lines are valid records
        """
        sample_size = self.config.validation.sample_lines
        counts = {SUBMISSION: 0, COMMENT: 0}
        subreddits: Dict[str, int] = {}

        def collect(item: Any, line_number: int) -> None:
            kind = classify_item(item)
            if kind in counts:
                counts[kind] += 1
            subreddit = str(item.get("subreddit") or "unknown").lower() if isinstance(item, dict) else "unknown"
            subreddits[subreddit] = subreddits.get(subreddit, 0) + 1

        metrics = await self.decompressor.stream_decompress(
            file_path,
            collect,
            validator=is_archive_record,
            timeout_ms=self.config.processing_timeout_ms,
            max_lines=sample_size,
        )

        sample = ArchiveSample(
            file_path=file_path,
            lines_sampled=metrics.total_lines,
            valid_lines=metrics.valid_lines,
            error_lines=metrics.error_lines,
            submissions=counts[SUBMISSION],
            comments=counts[COMMENT],
            subreddits=subreddits,
        )
        logger.info(
            f"Sampled {sample.lines_sampled} lines of {file_path}: "
            f"{sample.valid_ratio:.0%} valid, {sample.submissions} submissions, {sample.comments} comments"
        )

        if self.config.validation.enabled:
            if sample.lines_sampled == 0:
                raise StreamProcessorError.validation(file_path, "archive contains no records", lines_sampled=0)
            if sample.valid_ratio < MIN_SAMPLE_VALID_RATIO:
                raise StreamProcessorError.validation(
                    file_path,
                    f"only {sample.valid_lines} of {sample.lines_sampled} sampled lines are valid records",
                    lines_sampled=sample.lines_sampled,
                    valid_lines=sample.valid_lines,
                )
        return sample
