"""Job state exposed by the batch coordinator and resource monitor."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from reddit_ingest.models.stream import ProcessingMetrics


class JobStatus(str, Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    PAUSED_BY_RESOURCE_PRESSURE = "paused_by_resource_pressure"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ResourceStats:
    """Latest sample taken by the resource monitor for one job."""

    job_id: str
    memory_bytes: int
    memory_percent_of_limit: float
    processing_rate: float  # lines per second
    sampled_at: datetime
    warnings_issued: int = 0

    @property
    def memory_mb(self) -> float:
        return self.memory_bytes / (1024 * 1024)


@dataclass
class JobProgress:
    job_id: str
    file_path: str
    status: JobStatus
    processed_lines: int
    completion_percentage: float
    current_batch_size: int
    started_at: datetime
    memory_mb: Optional[float] = None
    processing_rate: Optional[float] = None
    estimated_time_remaining_s: Optional[float] = None
    resumed_from_checkpoint: Optional[str] = None


@dataclass
class BatchJobResult:
    """Aggregated outcome of one archive job."""

    job_id: str
    file_path: str
    success: bool
    total_processed_lines: int
    valid_items: int
    error_count: int
    batches_processed: int
    processing_time_ms: float
    stream_metrics: ProcessingMetrics
    downstream_valid_items: int = 0
    downstream_invalid_items: int = 0
    final_batch_size: int = 0
    resumed_from_checkpoint: Optional[str] = None
    checkpoints_written: int = 0
