"""Prometheus metrics for monitoring archive ingestion."""

import logging
import time
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

# Define metrics
LINES_PROCESSED = Counter(
    "reddit_ingest_lines_processed_total",
    "Archive lines processed, by outcome",
    ["result"],
)

HANDLER_ERRORS = Counter(
    "reddit_ingest_handler_errors_total",
    "Item handler failures absorbed by the stream",
)

STREAM_FAILURES = Counter(
    "reddit_ingest_stream_failures_total",
    "Fatal stream failures",
    ["error_code"],
)

BATCHES_COMMITTED = Counter(
    "reddit_ingest_batches_committed_total",
    "Batches handed to the content pipeline",
)

CURRENT_BATCH_SIZE = Gauge(
    "reddit_ingest_current_batch_size",
    "Batch size selected by the adaptive sizer",
    ["job_id"],
)

PROCESS_MEMORY_BYTES = Gauge(
    "reddit_ingest_process_memory_bytes",
    "Resident memory of the ingestion process",
)

MEMORY_WARNINGS = Counter(
    "reddit_ingest_memory_warnings_total",
    "Memory warnings raised by the resource monitor",
)

CHECKPOINT_FAILURES = Counter(
    "reddit_ingest_checkpoint_failures_total",
    "Checkpoint writes that failed",
)

ACTIVE_JOBS = Gauge(
    "reddit_ingest_active_jobs",
    "Archive jobs currently running",
)

MERGED_ITEMS = Counter(
    "reddit_ingest_merged_items_total",
    "Records placed on the merged timeline, by source",
    ["source_type"],
)

MERGE_GAPS = Counter(
    "reddit_ingest_merge_gaps_total",
    "Coverage gaps detected during merges, by severity",
    ["severity"],
)

DUPLICATES_DETECTED = Counter(
    "reddit_ingest_duplicates_detected_total",
    "Duplicates filtered out, by the source of the dropped copy",
    ["source_type"],
)

MERGE_DURATION = Histogram(
    "reddit_ingest_merge_duration_seconds",
    "Duration of temporal merge calls in seconds",
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)


class PrometheusExporter:
    """Prometheus metrics exporter for the ingestion core."""

    def __init__(self, port: int = 8000):
        """
        Initialize the Prometheus exporter.

        Args:
            port: Port to expose metrics on
        """
        self.port = port
        self.server_started = False

    def start_server(self) -> None:
        """Start the Prometheus metrics server."""
        if not self.server_started:
            try:
                start_http_server(self.port)
                self.server_started = True
                logger.info(f"Started Prometheus metrics server on port {self.port}")
            except Exception as e:
                logger.error(f"Failed to start Prometheus metrics server: {str(e)}")

    def record_stream_metrics(self, valid_lines: int, error_lines: int, handler_errors: int) -> None:
        """
        Record the line counters of one finished stream run.

        Args:
            valid_lines: Lines parsed and accepted
            error_lines: Lines rejected by parsing or validation
            handler_errors: Handler failures absorbed during the run
        """
        LINES_PROCESSED.labels(result="valid").inc(valid_lines)
        LINES_PROCESSED.labels(result="error").inc(error_lines)
        HANDLER_ERRORS.inc(handler_errors)

    def record_stream_failure(self, error_code: str) -> None:
        STREAM_FAILURES.labels(error_code=error_code).inc()

    def record_batch_committed(self) -> None:
        BATCHES_COMMITTED.inc()

    def set_batch_size(self, job_id: str, size: int) -> None:
        CURRENT_BATCH_SIZE.labels(job_id=job_id).set(size)

    def set_process_memory(self, memory_bytes: int) -> None:
        PROCESS_MEMORY_BYTES.set(memory_bytes)

    def record_memory_warning(self) -> None:
        MEMORY_WARNINGS.inc()

    def record_checkpoint_failure(self) -> None:
        CHECKPOINT_FAILURES.inc()

    def job_started(self) -> None:
        ACTIVE_JOBS.inc()

    def job_finished(self) -> None:
        ACTIVE_JOBS.dec()

    def record_merged_items(self, source_type: str, count: int) -> None:
        """
        Record records merged from one source.

        Args:
            source_type: Source type value (e.g., 'archive', 'api-chronological')
            count: Number of records
        """
        MERGED_ITEMS.labels(source_type=source_type).inc(count)

    def record_gap(self, severity: str) -> None:
        MERGE_GAPS.labels(severity=severity).inc()

    def record_duplicate(self, source_type: str) -> None:
        DUPLICATES_DETECTED.labels(source_type=source_type).inc()

    def time_merge(self) -> "MergeTimer":
        """
        Create a context manager for timing merge calls.

        Returns:
            MergeTimer context manager
        """
        return MergeTimer()


class MergeTimer:
    """Context manager for timing merge calls."""

    def __init__(self):
        self.start_time: Optional[float] = None

    def __enter__(self) -> "MergeTimer":
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.start_time is not None:
            duration = time.time() - self.start_time
            MERGE_DURATION.observe(duration)
