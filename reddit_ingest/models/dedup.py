"""Data structures produced by the duplicate detection engine."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from reddit_ingest.models.source import SourceType


@dataclass(frozen=True)
class ContentIdentifier:
    """Fingerprint of a record: prefix-stripped id plus record kind."""

    id: str
    kind: str  # "post" | "comment"

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.id}"


@dataclass(frozen=True)
class DuplicateSourceInfo:
    source_type: SourceType
    timestamp: int
    first_seen: datetime
    batch_id: Optional[str] = None


@dataclass
class DuplicateCheckResult:
    identifier: ContentIdentifier
    is_duplicate: bool
    current_source: DuplicateSourceInfo
    original_source: Optional[DuplicateSourceInfo] = None
    time_diff_seconds: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OverlapPattern:
    sources: List[SourceType]
    count: int
    percentage: float


@dataclass
class TemporalOverlapAnalysis:
    avg_time_diff_hours: float = 0.0
    max_time_diff_hours: float = 0.0
    time_diff_distribution: Dict[str, int] = field(default_factory=dict)


@dataclass
class SourceOverlapAnalysis:
    """
    Which sources produced the items of a batch and how duplicates moved between them.

    ``overlap_matrix`` is keyed ``"ORIGINAL→CURRENT"`` using source enum names,
    e.g. ``"ARCHIVE→API_CHRONOLOGICAL"``.
    """

    source_breakdown: Dict[str, int] = field(default_factory=dict)
    overlap_matrix: Dict[str, int] = field(default_factory=dict)
    common_overlap_patterns: List[OverlapPattern] = field(default_factory=list)
    temporal_overlap: TemporalOverlapAnalysis = field(default_factory=TemporalOverlapAnalysis)


@dataclass
class DuplicatePerformanceMetrics:
    start_time: datetime
    end_time: datetime
    duration_ms: float
    throughput_per_second: float


@dataclass
class BatchDuplicateAnalysis:
    """
    Summary of one detect-and-filter call.

    ``total_items == unique_items + duplicates_found``; malformed items dropped
    by the ``skip`` strategy are reported in ``skipped_items`` only.
    """

    detection_results: List[DuplicateCheckResult]
    total_items: int
    duplicates_found: int
    unique_items: int
    duplicate_rate: float
    skipped_items: int = 0
    passed_through_items: int = 0
    source_overlap_analysis: Optional[SourceOverlapAnalysis] = None
    performance_metrics: Optional[DuplicatePerformanceMetrics] = None


@dataclass
class DuplicateDetectionStats:
    total_items_processed: int = 0
    total_duplicates_detected: int = 0
    overall_duplicate_rate: float = 0.0
    sessions_completed: int = 0
    avg_session_size: float = 0.0
    last_session: Optional[BatchDuplicateAnalysis] = None
