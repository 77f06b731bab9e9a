"""Per-file and aggregate statistics for archive stream runs."""

import logging
import os
import re
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from reddit_ingest.models.stream import ProcessingMetrics

logger = logging.getLogger(__name__)

# Pushshift dumps are named "<subreddit>_submissions.zst" / "<subreddit>_comments.zst"
ARCHIVE_NAME_PATTERN = re.compile(r"^(?P<subreddit>.+?)_(?P<file_type>submissions|comments)(\..*)?$")

SLOW_LINES_PER_SECOND = 1000
FAST_LINES_PER_SECOND = 5000
HIGH_ERROR_RATE_PERCENT = 5.0
LOW_MEMORY_EFFICIENCY_PERCENT = 80.0


def parse_archive_name(file_path: str) -> Tuple[str, str]:
    """
    Derive subreddit and file type from an archive file name.

    Args:
        file_path: Path such as ``/dumps/wallstreetbets_comments.zst``

    Returns:
        (subreddit, file_type); ("unknown", "unknown") when the name does not match
    """
    match = ARCHIVE_NAME_PATTERN.match(os.path.basename(file_path))
    if not match:
        return "unknown", "unknown"
    return match.group("subreddit").lower(), match.group("file_type")


@dataclass(frozen=True)
class FileMetrics:
    """Metrics of one stream run, tagged with the file it came from."""

    file_path: str
    file_type: str
    subreddit: str
    start_time: datetime
    end_time: datetime
    metrics: ProcessingMetrics
    error_code: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error_code is None


class ProcessingMetricsCollector:
    """
    Accumulates stream metrics across files and jobs.

    Several jobs may report at once, so every access goes through a lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._files: List[FileMetrics] = []

    def record_file_metrics(
        self,
        file_path: str,
        start_time: datetime,
        end_time: datetime,
        metrics: ProcessingMetrics,
        subreddit: Optional[str] = None,
        file_type: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> FileMetrics:
        """
        Record the metrics of one stream run, finished or aborted.

        Args:
            file_path: Archive that was processed
            start_time: Wall-clock start of the run
            end_time: Wall-clock end of the run
            metrics: Counters produced by the decompressor
            subreddit: Override for the subreddit parsed from the file name
            file_type: Override for the file type parsed from the file name
            error_code: Error code of the failure that aborted the run, if any

        Returns:
            The stored FileMetrics entry
        """
        parsed_subreddit, parsed_type = parse_archive_name(file_path)
        entry = FileMetrics(
            file_path=file_path,
            file_type=file_type or parsed_type,
            subreddit=subreddit or parsed_subreddit,
            start_time=start_time,
            end_time=end_time,
            metrics=metrics,
            error_code=error_code,
        )
        with self._lock:
            self._files.append(entry)

        outcome = "" if entry.succeeded else f" (aborted: {error_code})"
        logger.info(
            f"Recorded metrics for {entry.subreddit}/{entry.file_type}{outcome}: "
            f"{metrics.total_lines} lines ({metrics.valid_lines} valid, {metrics.error_lines} errors), "
            f"{metrics.lines_per_second:.0f} lines/s, "
            f"peak memory {metrics.memory_usage.peak / 1024 / 1024:.0f}MB"
        )
        if metrics.error_rate > HIGH_ERROR_RATE_PERCENT:
            logger.warning(
                f"High error rate for {file_path}: {metrics.error_rate:.2f}% of lines rejected"
            )
        return entry

    def get_aggregated_metrics(self) -> Dict[str, Any]:
        """
        Aggregate all recorded runs.

        Returns:
            Dictionary with totals, speed, error rate, memory efficiency and a
            per-subreddit breakdown
        """
        with self._lock:
            files = list(self._files)

        if not files:
            return {
                "total_files": 0,
                "failed_files": 0,
                "total_lines": 0,
                "total_valid_lines": 0,
                "total_error_lines": 0,
                "total_handler_errors": 0,
                "total_processing_time_ms": 0.0,
                "average_processing_speed": 0.0,
                "memory_efficiency": 0.0,
                "peak_memory_bytes": 0,
                "error_rate": 0.0,
                "subreddit_breakdown": {},
            }

        total_lines = sum(f.metrics.total_lines for f in files)
        total_error_lines = sum(f.metrics.error_lines for f in files)
        total_time = sum(f.metrics.processing_time_ms for f in files)

        breakdown: Dict[str, Dict[str, Any]] = {}
        for f in files:
            entry = breakdown.setdefault(
                f.subreddit, {"files": 0, "lines": 0, "valid_lines": 0, "processing_time_ms": 0.0}
            )
            entry["files"] += 1
            entry["lines"] += f.metrics.total_lines
            entry["valid_lines"] += f.metrics.valid_lines
            entry["processing_time_ms"] += f.metrics.processing_time_ms

        return {
            "total_files": len(files),
            "failed_files": sum(1 for f in files if not f.succeeded),
            "total_lines": total_lines,
            "total_valid_lines": sum(f.metrics.valid_lines for f in files),
            "total_error_lines": total_error_lines,
            "total_handler_errors": sum(f.metrics.handler_errors for f in files),
            "total_processing_time_ms": total_time,
            "average_processing_speed": total_lines / (total_time / 1000) if total_time > 0 else 0.0,
            "memory_efficiency": self._memory_efficiency(files),
            "peak_memory_bytes": max(f.metrics.memory_usage.peak for f in files),
            "error_rate": total_error_lines / total_lines * 100 if total_lines else 0.0,
            "subreddit_breakdown": breakdown,
        }

    def get_subreddit_metrics(self, subreddit: str) -> List[FileMetrics]:
        with self._lock:
            return [f for f in self._files if f.subreddit == subreddit.lower()]

    def get_performance_summary(self) -> Dict[str, Any]:
        """
        Rate overall throughput and flag problems.

        Returns:
            Dictionary with "overall", "warnings" and "recommendations"
        """
        aggregated = self.get_aggregated_metrics()
        warnings: List[str] = []
        recommendations: List[str] = []

        if aggregated["total_files"] == 0:
            return {"overall": "No Data", "warnings": warnings, "recommendations": recommendations}

        speed = aggregated["average_processing_speed"]
        if speed < SLOW_LINES_PER_SECOND:
            warnings.append(f"Processing speed is below optimal ({speed:.0f} lines/sec)")
            recommendations.append("Consider increasing batch size or optimizing processing logic")

        if aggregated["error_rate"] > HIGH_ERROR_RATE_PERCENT:
            warnings.append(f"High error rate detected ({aggregated['error_rate']:.2f}%)")
            recommendations.append("Review data validation and error handling logic")

        if aggregated["memory_efficiency"] < LOW_MEMORY_EFFICIENCY_PERCENT:
            warnings.append(
                f"Memory efficiency below optimal ({aggregated['memory_efficiency']:.1f}%)"
            )
            recommendations.append("Consider optimizing memory usage or reducing batch sizes")

        overall = "Good"
        if len(warnings) > 2:
            overall = "Needs Improvement"
        elif warnings:
            overall = "Fair"
        elif speed > FAST_LINES_PER_SECOND and aggregated["error_rate"] < 1:
            overall = "Excellent"

        return {"overall": overall, "warnings": warnings, "recommendations": recommendations}

    def get_raw_metrics(self) -> List[FileMetrics]:
        with self._lock:
            return list(self._files)

    def reset(self) -> None:
        with self._lock:
            self._files.clear()
        logger.info("Processing metrics reset")

    @staticmethod
    def _memory_efficiency(files: List[FileMetrics]) -> float:
        # 100% when peak memory never rose above the starting point
        avg_initial = sum(f.metrics.memory_usage.initial for f in files) / len(files)
        avg_peak = sum(f.metrics.memory_usage.peak for f in files) / len(files)
        if avg_initial <= 0:
            return 100.0
        growth = avg_peak / avg_initial
        return max(0.0, min(100.0, 100 - (growth - 1) * 50))
