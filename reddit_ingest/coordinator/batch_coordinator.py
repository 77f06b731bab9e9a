"""Checkpointed, memory-aware batch processing of archive files."""

import asyncio
import hashlib
import inspect
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from reddit_ingest.config import BatchConfig
from reddit_ingest.coordinator.batch_sizer import AdaptiveBatchSizer
from reddit_ingest.coordinator.checkpoints import CheckpointManager
from reddit_ingest.exceptions import BatchProcessingError, StreamAborted, StreamProcessorError
from reddit_ingest.models.checkpoint import ProcessingCheckpoint
from reddit_ingest.models.jobs import BatchJobResult, JobProgress, JobStatus
from reddit_ingest.models.records import ContentBatchResult
from reddit_ingest.monitoring.resource_monitor import ResourceMonitor
from reddit_ingest.stream.processor import StreamProcessor

logger = logging.getLogger(__name__)

ESTIMATED_LINES_PER_MB = 5000


class ContentPipeline(Protocol):
    """Downstream consumer receiving each accumulated batch of raw items."""

    async def process_batch(self, raw_items: List[Any]) -> ContentBatchResult:
        ...


def job_id_for(file_path: str) -> str:
    """Stable job identity for an archive: the same path always maps to the same job."""
    absolute = os.path.abspath(file_path)
    stem = os.path.basename(absolute).split(".")[0]
    digest = hashlib.sha1(absolute.encode("utf-8")).hexdigest()[:12]
    return f"batch_{stem}_{digest}"


@dataclass
class _Job:
    """Mutable state of one running archive job. Never shared between jobs."""

    job_id: str
    file_path: str
    file_size: int
    estimated_total_lines: int
    sizer: AdaptiveBatchSizer
    status: JobStatus = JobStatus.INITIALIZING
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_monotonic: float = field(default_factory=time.monotonic)
    buffer: List[Any] = field(default_factory=list)
    processed_lines: int = 0
    last_line_number: int = 0
    batches_processed: int = 0
    downstream_valid: int = 0
    downstream_invalid: int = 0
    checkpoints_written: int = 0
    last_checkpoint_lines: int = 0
    last_checkpoint_at: float = field(default_factory=time.monotonic)
    latest_checkpoint: Optional[ProcessingCheckpoint] = None
    resumed_from: Optional[str] = None

    @property
    def current_batch_size(self) -> int:
        return self.sizer.current_size

    def completion_percentage(self) -> float:
        return min(100.0, self.processed_lines / self.estimated_total_lines * 100)

    def estimated_byte_position(self) -> int:
        ratio = min(1.0, self.processed_lines / self.estimated_total_lines)
        return int(self.file_size * ratio)


class BatchProcessingCoordinator:
    """
    Drives archive files through the stream processor in adaptively sized batches.

    Each job moves through initializing, running and (while under memory
    pressure) paused_by_resource_pressure, and ends completed or failed.
    Checkpoint and resource-monitor failures are logged and never fail a job.
    Any error from the stream or the content pipeline fails the job, leaves a
    failure checkpoint behind and is re-raised unchanged.
    """

    def __init__(
        self,
        config: BatchConfig,
        stream_processor: StreamProcessor,
        content_pipeline: ContentPipeline,
        checkpoint_manager: Optional[CheckpointManager] = None,
        resource_monitor: Optional[ResourceMonitor] = None,
        prometheus_exporter=None,
    ):
        """
        Initialize the coordinator.

        Args:
            config: Batch configuration
            stream_processor: Stream processor used to read archives
            content_pipeline: Receives every accumulated batch
            checkpoint_manager: Checkpoint writer; required when checkpoints are enabled
            resource_monitor: Memory monitor; required when resource monitoring is enabled
            prometheus_exporter: Optional Prometheus exporter for metrics
        """
        self.config = config
        self.stream_processor = stream_processor
        self.content_pipeline = content_pipeline
        self.checkpoint_manager = checkpoint_manager
        self.resource_monitor = resource_monitor
        self.prometheus_exporter = prometheus_exporter
        self._jobs: Dict[str, _Job] = {}

    @property
    def checkpoints_enabled(self) -> bool:
        return self.config.enable_checkpoints and self.checkpoint_manager is not None

    @property
    def monitoring_enabled(self) -> bool:
        return self.config.enable_resource_monitoring and self.resource_monitor is not None

    async def process_archive_file(self, file_path: str) -> BatchJobResult:
        """
        Process one archive file as a job.

        A previous unfinished checkpoint for the same file is reported as a
        logical resume; the stream is still read from the start of the file.

        Args:
            file_path: Compressed NDJSON archive

        Returns:
            BatchJobResult with aggregated metrics

        Raises:
            BatchProcessingError: The job for this file is already running
            StreamProcessorError: The file cannot be read, or the stream failed
            Exception: Whatever the content pipeline raised, unchanged
        """
        file_path = os.path.abspath(file_path)
        job_id = job_id_for(file_path)
        if job_id in self._jobs:
            raise BatchProcessingError.job_already_running(job_id)

        try:
            file_size = os.path.getsize(file_path)
        except OSError as e:
            raise StreamProcessorError.file_access(file_path, str(e)) from e

        size_mb = file_size / (1024 * 1024)
        job = _Job(
            job_id=job_id,
            file_path=file_path,
            file_size=file_size,
            estimated_total_lines=max(1, int(size_mb * ESTIMATED_LINES_PER_MB)),
            sizer=AdaptiveBatchSizer.for_file(self.config, file_size),
        )
        self._jobs[job_id] = job
        if self.prometheus_exporter:
            self.prometheus_exporter.job_started()
            self.prometheus_exporter.set_batch_size(job_id, job.current_batch_size)

        logger.info(
            f"Starting job {job_id} for {file_path} ({size_mb:.1f}MB, "
            f"~{job.estimated_total_lines} lines, batch size {job.current_batch_size})"
        )

        try:
            await self._prepare_checkpoints(job)
            await self._start_monitoring(job)
            job.status = JobStatus.RUNNING

            async def handle_item(item: Any, line_number: int) -> None:
                job.buffer.append(item)
                job.processed_lines += 1
                job.last_line_number = line_number
                if self.monitoring_enabled:
                    self.resource_monitor.record_progress(job_id, job.processed_lines)
                if len(job.buffer) >= job.current_batch_size:
                    try:
                        await self._flush(job)
                    except Exception as e:
                        raise StreamAborted(
                            f"Content pipeline failed for job {job_id}",
                            {"phase": "content_pipeline", "job_id": job_id, "line": line_number},
                        ) from e

            metrics = await self.stream_processor.process_file(file_path, handle_item)
            if job.buffer:
                await self._flush(job)

            job.status = JobStatus.COMPLETED
            elapsed_ms = (time.monotonic() - job.started_monotonic) * 1000
            await self._write_checkpoint(
                job,
                "completion",
                completion_percentage=100.0,
                last_byte_position=job.file_size,
                metrics={
                    "total_lines": metrics.total_lines,
                    "valid_lines": metrics.valid_lines,
                    "error_lines": metrics.error_lines,
                    "processing_time_ms": elapsed_ms,
                },
            )

            result = BatchJobResult(
                job_id=job_id,
                file_path=file_path,
                success=True,
                total_processed_lines=metrics.total_lines,
                valid_items=metrics.valid_lines,
                error_count=metrics.error_lines + job.downstream_invalid,
                batches_processed=job.batches_processed,
                processing_time_ms=elapsed_ms,
                stream_metrics=metrics,
                downstream_valid_items=job.downstream_valid,
                downstream_invalid_items=job.downstream_invalid,
                final_batch_size=job.current_batch_size,
                resumed_from_checkpoint=job.resumed_from,
                checkpoints_written=job.checkpoints_written,
            )
            logger.info(
                f"Job {job_id} completed: {result.total_processed_lines} lines, "
                f"{result.valid_items} valid, {result.error_count} errors, "
                f"{result.batches_processed} batches in {elapsed_ms:.0f}ms"
            )
            return result

        except StreamAborted as aborted:
            original = aborted.__cause__ or aborted
            await self._fail(job, original)
            raise original
        except Exception as error:
            await self._fail(job, error)
            raise
        finally:
            await self._stop_monitoring(job)
            self._jobs.pop(job_id, None)
            if self.prometheus_exporter:
                self.prometheus_exporter.job_finished()

    async def resume_job(self, job_id: str) -> BatchJobResult:
        """
        Re-run an unfinished job from its latest checkpoint.

        Raises:
            BatchProcessingError: No checkpoint exists or the job already completed
        """
        if self.checkpoint_manager is None:
            raise BatchProcessingError.checkpoint_not_found(job_id)
        checkpoint = await self.checkpoint_manager.get_latest(job_id)
        if checkpoint is None:
            raise BatchProcessingError.checkpoint_not_found(job_id)
        if checkpoint.completed:
            raise BatchProcessingError.job_already_completed(job_id)

        logger.info(
            f"Resuming job {job_id} from checkpoint {checkpoint.checkpoint_id} "
            f"({checkpoint.processed_lines} lines processed previously)"
        )
        return await self.process_archive_file(checkpoint.file_path)

    async def get_job_progress(self, job_id: str) -> Optional[JobProgress]:
        """
        Report progress of an active job.

        Returns:
            JobProgress, or None when no job with this id is running
        """
        job = self._jobs.get(job_id)
        if job is None:
            return None

        if job.latest_checkpoint is not None:
            processed = job.latest_checkpoint.processed_lines
            percentage = job.latest_checkpoint.completion_percentage
        else:
            processed = job.processed_lines
            percentage = job.completion_percentage()

        stats = self.resource_monitor.get_current_stats(job_id) if self.monitoring_enabled else None
        if stats is not None:
            rate = stats.processing_rate
        else:
            elapsed = time.monotonic() - job.started_monotonic
            rate = job.processed_lines / elapsed if elapsed > 0 else 0.0

        eta = None
        if rate > 0:
            eta = max(0, job.estimated_total_lines - job.processed_lines) / rate

        return JobProgress(
            job_id=job_id,
            file_path=job.file_path,
            status=job.status,
            processed_lines=processed,
            completion_percentage=percentage,
            current_batch_size=job.current_batch_size,
            started_at=job.started_at,
            memory_mb=stats.memory_mb if stats else None,
            processing_rate=rate,
            estimated_time_remaining_s=eta,
            resumed_from_checkpoint=job.resumed_from,
        )

    def get_active_jobs(self) -> Dict[str, JobStatus]:
        return {job_id: job.status for job_id, job in self._jobs.items()}

    def get_configuration(self) -> Dict[str, Any]:
        """Resolved batch sizing bounds and feature flags."""
        return {
            "batch_size": self.config.batch_size,
            "min_batch_size": self.config.min_batch_size,
            "max_batch_size": self.config.max_batch_size,
            "max_memory_usage_mb": self.config.max_memory_usage_mb,
            "adaptive_batch_sizing": self.config.adaptive_batch_sizing,
            "enable_checkpoints": self.checkpoints_enabled,
            "enable_resource_monitoring": self.monitoring_enabled,
            "progress_reporting_interval_ms": self.config.progress_reporting_interval_ms,
            "checkpoint_interval_lines": self.config.checkpoint_interval_lines,
            "resource_check_interval_ms": self.config.resource_check_interval_ms,
            "processing_timeout_ms": self.stream_processor.config.processing_timeout_ms,
        }

    async def _prepare_checkpoints(self, job: _Job) -> None:
        if not self.checkpoints_enabled:
            return
        try:
            latest = await self.checkpoint_manager.get_latest(job.job_id)
        except Exception as e:
            logger.warning(f"Could not read checkpoints for {job.job_id}: {e}")
            latest = None

        if latest is not None and not latest.completed:
            job.resumed_from = latest.checkpoint_id
            job.latest_checkpoint = latest
            logger.info(
                f"Resuming job {job.job_id} from checkpoint {latest.checkpoint_id}: "
                f"{latest.processed_lines} lines, {latest.completion_percentage:.1f}% "
                f"({latest.checkpoint_type}); the archive is re-read from the start"
            )
            return

        await self._write_checkpoint(job, "initial")

    async def _flush(self, job: _Job) -> None:
        batch, job.buffer = job.buffer, []
        result = self.content_pipeline.process_batch(batch)
        if inspect.isawaitable(result):
            result = await result

        job.batches_processed += 1
        job.downstream_valid += result.valid_items
        job.downstream_invalid += result.invalid_items
        if self.prometheus_exporter:
            self.prometheus_exporter.record_batch_committed()

        await self._maybe_checkpoint(job)

        job.sizer.next_batch_size()
        if self.prometheus_exporter:
            self.prometheus_exporter.set_batch_size(job.job_id, job.current_batch_size)

        if job.sizer.consecutive_warnings and self.config.pressure_pause_ms > 0:
            job.status = JobStatus.PAUSED_BY_RESOURCE_PRESSURE
            await asyncio.sleep(self.config.pressure_pause_ms / 1000)
        job.status = JobStatus.RUNNING

    async def _maybe_checkpoint(self, job: _Job) -> None:
        lines_since = job.processed_lines - job.last_checkpoint_lines
        ms_since = (time.monotonic() - job.last_checkpoint_at) * 1000
        if (
            lines_since >= self.config.checkpoint_interval_lines
            or ms_since >= self.config.progress_reporting_interval_ms
        ):
            await self._write_checkpoint(job, "progress")

    async def _write_checkpoint(
        self,
        job: _Job,
        checkpoint_type: str,
        completion_percentage: Optional[float] = None,
        last_byte_position: Optional[int] = None,
        metrics: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> Optional[ProcessingCheckpoint]:
        if not self.checkpoints_enabled:
            return None
        try:
            checkpoint = await self.checkpoint_manager.write(
                job.job_id,
                job.file_path,
                checkpoint_type,
                processed_lines=job.processed_lines,
                last_byte_position=(
                    last_byte_position if last_byte_position is not None else job.estimated_byte_position()
                ),
                completion_percentage=(
                    completion_percentage if completion_percentage is not None else job.completion_percentage()
                ),
                batch_config_snapshot=self._config_snapshot(job),
                metrics=metrics,
                error_message=error_message,
            )
        except Exception as e:
            logger.warning(f"Failed to write {checkpoint_type} checkpoint for {job.job_id}: {e}")
            if self.prometheus_exporter:
                self.prometheus_exporter.record_checkpoint_failure()
            return None

        job.latest_checkpoint = checkpoint
        job.checkpoints_written += 1
        job.last_checkpoint_lines = job.processed_lines
        job.last_checkpoint_at = time.monotonic()
        return checkpoint

    def _config_snapshot(self, job: _Job) -> Dict[str, Any]:
        return {
            "current_batch_size": job.current_batch_size,
            "base_batch_size": job.sizer.base_size,
            "min_batch_size": job.sizer.min_size,
            "max_batch_size": job.sizer.max_size,
            "adaptive_batch_sizing": self.config.adaptive_batch_sizing,
            "max_memory_usage_mb": self.config.max_memory_usage_mb,
        }

    async def _fail(self, job: _Job, error: BaseException) -> None:
        job.status = JobStatus.FAILED
        logger.error(
            f"Job {job.job_id} failed after {job.processed_lines} lines: {error}",
            exc_info=error,
        )
        await self._write_checkpoint(
            job,
            "failure",
            error_message=f"{type(error).__name__}: {error}",
        )

    async def _start_monitoring(self, job: _Job) -> None:
        if not self.monitoring_enabled:
            return

        def on_memory_warning(memory_bytes: int) -> None:
            job.sizer.record_memory_warning()
            if job.status == JobStatus.RUNNING:
                job.status = JobStatus.PAUSED_BY_RESOURCE_PRESSURE
            logger.warning(
                f"Memory pressure on job {job.job_id}: {memory_bytes / 1024 / 1024:.0f}MB, "
                f"batch size will shrink from {job.current_batch_size}"
            )

        async def on_memory_exhaustion(memory_bytes: int) -> None:
            logger.error(
                f"Memory nearly exhausted on job {job.job_id} "
                f"({memory_bytes / 1024 / 1024:.0f}MB), writing emergency checkpoint"
            )
            await self._write_checkpoint(
                job, "emergency", metrics={"memory_bytes": memory_bytes}
            )

        try:
            await self.resource_monitor.start_monitoring(
                job.job_id,
                on_memory_warning,
                interval_ms=self.config.resource_check_interval_ms,
                memory_limit_bytes=self.config.max_memory_usage_mb * 1024 * 1024,
                warning_ratio=self.config.memory_warning_ratio,
                on_memory_exhaustion=on_memory_exhaustion,
            )
        except Exception as e:
            logger.warning(f"Resource monitoring unavailable for {job.job_id}: {e}")

    async def _stop_monitoring(self, job: _Job) -> None:
        if not self.monitoring_enabled:
            return
        try:
            await self.resource_monitor.stop_monitoring(job.job_id)
        except Exception as e:
            logger.warning(f"Failed to stop resource monitoring for {job.job_id}: {e}")
