"""Data structures for temporal merging of archive and live API records."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Union

from reddit_ingest.models.records import CommentRecord, SubmissionRecord
from reddit_ingest.models.source import SourceType

ContentRecord = Union[SubmissionRecord, CommentRecord]


@dataclass(frozen=True)
class SourceMetadata:
    """Attribution attached to every merged record. Immutable once created."""

    source_type: SourceType
    original_id: str
    permalink: str
    collection_timestamp: datetime
    source_path: Optional[str] = None
    processing_batch_id: Optional[str] = None


@dataclass
class MergedRecord:
    """A submission or comment placed on the merged timeline."""

    kind: str  # "submission" | "comment"
    payload: ContentRecord
    source_metadata: SourceMetadata
    normalized_timestamp: int
    is_valid: bool = True
    validation_issues: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class GapAnalysisResult:
    """A stretch of the merged timeline with no records from any source."""

    gap_type: str  # "missing-coverage" | "sparse-data" | "source-transition"
    start_timestamp: int
    end_timestamp: int
    duration_hours: float
    affected_sources: List[SourceType]
    severity: str  # "low" | "medium" | "high"
    description: str
    mitigation_suggestions: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class TemporalRange:
    earliest: int = 0
    latest: int = 0
    span_hours: float = 0.0


@dataclass
class MergeProcessingStats:
    merge_start_time: datetime
    merge_end_time: datetime
    merge_duration_ms: float
    duplicates_detected: int
    gaps_detected: List[GapAnalysisResult] = field(default_factory=list)


@dataclass
class TemporalMergeBatch:
    """Ordered, attributed output of one merge call."""

    batch_id: str
    merged_items: List[MergedRecord]
    submissions: List[SubmissionRecord]
    comments: List[CommentRecord]
    total_items: int
    valid_items: int
    invalid_items: int
    source_breakdown: Dict[str, int]
    temporal_range: TemporalRange
    processing_stats: MergeProcessingStats
    validation: Optional["MergeValidationResult"] = None


@dataclass(frozen=True)
class MergeValidationIssue:
    issue_type: str  # timestamp_inconsistency | attribution_missing | data_gap | source_overlap
    severity: str  # error | warning | info
    message: str
    affected_items: int
    suggested_fix: Optional[str] = None


@dataclass
class MergeValidationResult:
    """
    Quality gate outcome for a merged batch.

    ``is_valid`` is False when any error-severity issue exists.
    ``validation_passed`` reports whether ``quality_score`` reached 70.
    """

    is_valid: bool
    validation_passed: bool
    issues: List[MergeValidationIssue]
    quality_score: float
    recommendations: List[str] = field(default_factory=list)
