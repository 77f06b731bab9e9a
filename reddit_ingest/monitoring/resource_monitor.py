"""Periodic memory sampling for running archive jobs."""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional, Union

import psutil

from reddit_ingest.models.jobs import ResourceStats

logger = logging.getLogger(__name__)

MemoryCallback = Callable[[int], Union[None, Awaitable[None]]]

EXHAUSTION_RATIO = 0.95


def process_rss() -> int:
    """Resident set size of the current process in bytes."""
    return psutil.Process().memory_info().rss


@dataclass
class _JobMonitor:
    on_memory_warning: MemoryCallback
    on_memory_exhaustion: Optional[MemoryCallback]
    interval_s: float
    memory_limit_bytes: int
    warning_ratio: float
    started: float = field(default_factory=time.monotonic)
    processed_lines: int = 0
    warnings_issued: int = 0
    last_stats: Optional[ResourceStats] = None
    task: Optional["asyncio.Task[None]"] = None


class ResourceMonitor:
    """
    Samples process memory for each monitored job on its own asyncio task.

    A warning callback fires when memory reaches ``warning_ratio`` of the job's
    limit, and the exhaustion callback additionally fires at 95% of it.
    Sampling and callback failures are logged and never stop the job.
    """

    def __init__(
        self,
        memory_sampler: Optional[Callable[[], int]] = None,
        prometheus_exporter=None,
    ):
        """
        Initialize the resource monitor.

        Args:
            memory_sampler: Returns current memory in bytes (defaults to process RSS)
            prometheus_exporter: Optional Prometheus exporter for metrics
        """
        self._sample_memory = memory_sampler or process_rss
        self.prometheus_exporter = prometheus_exporter
        self._jobs: Dict[str, _JobMonitor] = {}

    def is_monitoring(self, job_id: str) -> bool:
        return job_id in self._jobs

    async def start_monitoring(
        self,
        job_id: str,
        on_memory_warning: MemoryCallback,
        interval_ms: int = 1000,
        memory_limit_bytes: int = 512 * 1024 * 1024,
        warning_ratio: float = 0.8,
        on_memory_exhaustion: Optional[MemoryCallback] = None,
    ) -> ResourceStats:
        """
        Start sampling memory for a job.

        Args:
            job_id: Job to monitor; restarting an active job replaces its monitor
            on_memory_warning: Called with the current memory in bytes on a warning
            interval_ms: Sampling interval
            memory_limit_bytes: Memory ceiling for the job
            warning_ratio: Fraction of the ceiling at which warnings start
            on_memory_exhaustion: Optional callback for usage at or above 95% of the ceiling

        Returns:
            The initial sample
        """
        if job_id in self._jobs:
            await self.stop_monitoring(job_id)

        monitor = _JobMonitor(
            on_memory_warning=on_memory_warning,
            on_memory_exhaustion=on_memory_exhaustion,
            interval_s=interval_ms / 1000,
            memory_limit_bytes=memory_limit_bytes,
            warning_ratio=warning_ratio,
        )
        self._jobs[job_id] = monitor
        stats = self._collect(job_id, monitor)
        monitor.task = asyncio.create_task(self._run(job_id, monitor))

        logger.info(
            f"Started resource monitoring for {job_id}: "
            f"limit {memory_limit_bytes / 1024 / 1024:.0f}MB, interval {interval_ms}ms, "
            f"current {stats.memory_mb:.0f}MB"
        )
        return stats

    async def stop_monitoring(self, job_id: str) -> None:
        monitor = self._jobs.pop(job_id, None)
        if monitor is None:
            return
        if monitor.task is not None and not monitor.task.done():
            monitor.task.cancel()
            try:
                await monitor.task
            except asyncio.CancelledError:
                pass
        logger.debug(f"Stopped resource monitoring for {job_id}")

    def get_current_stats(self, job_id: str) -> Optional[ResourceStats]:
        """
        Take a fresh sample for a monitored job.

        Returns:
            ResourceStats, or None if the job is not being monitored
        """
        monitor = self._jobs.get(job_id)
        if monitor is None:
            return None
        try:
            return self._collect(job_id, monitor)
        except Exception as e:
            logger.warning(f"Could not sample resources for {job_id}: {e}")
            return monitor.last_stats

    def record_progress(self, job_id: str, processed_lines: int) -> None:
        monitor = self._jobs.get(job_id)
        if monitor is not None:
            monitor.processed_lines = processed_lines

    async def check_now(self, job_id: str) -> Optional[ResourceStats]:
        """Run one threshold check immediately, outside the sampling interval."""
        monitor = self._jobs.get(job_id)
        if monitor is None:
            return None
        return await self._check(job_id, monitor)

    async def _run(self, job_id: str, monitor: _JobMonitor) -> None:
        while True:
            await asyncio.sleep(monitor.interval_s)
            try:
                await self._check(job_id, monitor)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Resource check failed for {job_id}: {e}")

    async def _check(self, job_id: str, monitor: _JobMonitor) -> ResourceStats:
        stats = self._collect(job_id, monitor)
        ratio = stats.memory_bytes / monitor.memory_limit_bytes

        if ratio >= monitor.warning_ratio:
            monitor.warnings_issued += 1
            logger.warning(
                f"Memory warning for {job_id}: {stats.memory_mb:.0f}MB "
                f"({stats.memory_percent_of_limit:.0f}% of limit)"
            )
            if self.prometheus_exporter:
                self.prometheus_exporter.record_memory_warning()
            await self._invoke(job_id, monitor.on_memory_warning, stats.memory_bytes)

            if ratio >= EXHAUSTION_RATIO and monitor.on_memory_exhaustion is not None:
                logger.warning(f"Memory exhaustion threshold reached for {job_id}")
                await self._invoke(job_id, monitor.on_memory_exhaustion, stats.memory_bytes)

        return stats

    def _collect(self, job_id: str, monitor: _JobMonitor) -> ResourceStats:
        memory = self._sample_memory()
        elapsed = time.monotonic() - monitor.started
        stats = ResourceStats(
            job_id=job_id,
            memory_bytes=memory,
            memory_percent_of_limit=memory / monitor.memory_limit_bytes * 100,
            processing_rate=monitor.processed_lines / elapsed if elapsed > 0 else 0.0,
            sampled_at=datetime.now(timezone.utc),
            warnings_issued=monitor.warnings_issued,
        )
        monitor.last_stats = stats
        if self.prometheus_exporter:
            self.prometheus_exporter.set_process_memory(memory)
        return stats

    @staticmethod
    async def _invoke(job_id: str, callback: MemoryCallback, memory_bytes: int) -> None:
        try:
            result = callback(memory_bytes)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Memory callback failed for {job_id}: {e}")
