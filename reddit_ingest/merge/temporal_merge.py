"""Temporal merge of archive and live API records into one attributed timeline."""

import dataclasses
import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from reddit_ingest.config import MergeConfig
from reddit_ingest.exceptions import DataMergeError, IngestError, MergeValidationError
from reddit_ingest.models.mapping import COMMENT, SUBMISSION, comment_permalink
from reddit_ingest.models.merge import (
    GapAnalysisResult,
    MergedRecord,
    MergeProcessingStats,
    MergeValidationIssue,
    MergeValidationResult,
    SourceMetadata,
    TemporalMergeBatch,
    TemporalRange,
)
from reddit_ingest.models.records import ApiContentBatch, ContentBatchResult
from reddit_ingest.models.source import SourceType

logger = logging.getLogger(__name__)

# Quality score penalties: (points per issue, cap)
OUT_OF_ORDER_PENALTY = (10, 50)
MISSING_ATTRIBUTION_PENALTY = (5, 30)
HIGH_GAP_PENALTY = (3, 20)
PASSING_QUALITY_SCORE = 70

GAP_MITIGATIONS = [
    "Consider expanding collection time range",
    "Review collection frequency for affected sources",
]
GENERAL_RECOMMENDATIONS = [
    "Review merge configuration parameters",
    "Verify data source integrity before merge",
]


def normalize_timestamp(value: Any) -> Optional[int]:
    """
    Convert a numeric or numeric-string timestamp to integer epoch seconds.

    Args:
        value: Raw ``created_utc`` value from an archive or API record

    Returns:
        Seconds since the epoch, or None if the value is not a positive number
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = int(text)
        except ValueError:
            try:
                number = float(text)
            except ValueError:
                return None
    else:
        return None

    if isinstance(number, float) and not math.isfinite(number):
        return None
    seconds = int(number)
    return seconds if seconds > 0 else None


def _iso(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _gap_severity(duration_hours: float) -> str:
    if duration_hours > 24:
        return "high"
    if duration_hours > 6:
        return "medium"
    return "low"


def _penalty(count: int, rule: Tuple[int, int]) -> int:
    per_issue, cap = rule
    return min(count * per_issue, cap)


class TemporalMergeEngine:
    """
    Merges one historical (archive) batch with one live API batch.

    The merge is an all-or-nothing, in-memory operation: it either returns a
    fully ordered and attributed ``TemporalMergeBatch`` or raises a
    ``DataMergeError``. Near-duplicates are counted for statistics only; removing
    them is the job of the duplicate detector.
    """

    def __init__(self, config: Optional[MergeConfig] = None, prometheus_exporter=None):
        """
        Initialize the merge engine.

        Args:
            config: Default merge configuration for every call
            prometheus_exporter: Optional Prometheus metrics exporter
        """
        self.config = config or MergeConfig()
        self.prometheus_exporter = prometheus_exporter

    def merge_temporal_data(
        self,
        historical_batch: ContentBatchResult,
        api_batch: ApiContentBatch,
        config: Optional[MergeConfig] = None,
        **overrides: Any,
    ) -> TemporalMergeBatch:
        """
        Merge archive and API records into one chronologically ordered batch.

        Args:
            historical_batch: Records extracted from an archive
            api_batch: Records collected from the live API
            config: Optional configuration replacing the engine default for this call
            **overrides: Individual MergeConfig fields to override for this call

        Returns:
            TemporalMergeBatch with ordered items, statistics and gap analysis

        Raises:
            DataMergeError: If the input is too large or the merge fails
            MergeValidationError: If the merged batch fails the quality gate
        """
        merge_config = config or self.config
        if overrides:
            merge_config = dataclasses.replace(merge_config, **overrides)

        batch_id = f"merge_{uuid.uuid4().hex[:12]}"
        start_time = datetime.now(timezone.utc)

        input_size = (
            len(historical_batch.submissions)
            + len(historical_batch.comments)
            + len(api_batch.posts)
            + len(api_batch.comments)
        )
        if input_size > merge_config.max_batch_size:
            raise DataMergeError.batch_too_large(input_size, merge_config.max_batch_size)
        try:
            api_source = SourceType.parse(api_batch.source_type)
        except ValueError as e:
            raise DataMergeError.unknown_source_type(api_batch.source_type, api_batch.batch_id) from e

        logger.info(
            f"Merging {input_size} items from historical batch {historical_batch.batch_id} "
            f"and {api_source.value} batch {api_batch.batch_id}"
        )

        try:
            if self.prometheus_exporter:
                with self.prometheus_exporter.time_merge():
                    batch = self._merge(
                        batch_id, start_time, historical_batch, api_batch, merge_config
                    )
            else:
                batch = self._merge(batch_id, start_time, historical_batch, api_batch, merge_config)
        except IngestError:
            raise
        except Exception as e:
            logger.error(f"Temporal merge {batch_id} failed: {str(e)}", exc_info=True)
            raise DataMergeError(
                f"Temporal data merge failed: {str(e)}",
                {"phase": "merge_execution", "batch_id": batch_id, "input_size": input_size},
            ) from e

        if self.prometheus_exporter:
            for source_type, count in batch.source_breakdown.items():
                if count:
                    self.prometheus_exporter.record_merged_items(source_type, count)
            for gap in batch.processing_stats.gaps_detected:
                self.prometheus_exporter.record_gap(gap.severity)

        logger.info(
            f"Merge {batch_id} complete: {batch.total_items} items, "
            f"{batch.processing_stats.duplicates_detected} near-duplicates, "
            f"{len(batch.processing_stats.gaps_detected)} gaps, "
            f"{batch.processing_stats.merge_duration_ms:.1f}ms"
        )
        return batch

    def _merge(
        self,
        batch_id: str,
        start_time: datetime,
        historical_batch: ContentBatchResult,
        api_batch: ApiContentBatch,
        config: MergeConfig,
    ) -> TemporalMergeBatch:
        items = self._historical_items(historical_batch, start_time)
        items.extend(self._api_items(api_batch))

        ordered = self._order(items, config)

        gaps: List[GapAnalysisResult] = []
        if config.enable_gap_detection:
            gaps = self.analyze_temporal_gaps(ordered, config.gap_detection_threshold)

        duplicates = self.count_near_duplicates(ordered, config.timestamp_tolerance)

        source_breakdown = {source.value: 0 for source in SourceType}
        for item in ordered:
            source_breakdown[item.source_metadata.source_type.value] += 1

        end_time = datetime.now(timezone.utc)
        valid_items = sum(1 for item in ordered if item.is_valid)

        batch = TemporalMergeBatch(
            batch_id=batch_id,
            merged_items=ordered,
            submissions=[item.payload for item in ordered if item.kind == SUBMISSION],
            comments=[item.payload for item in ordered if item.kind == COMMENT],
            total_items=len(ordered),
            valid_items=valid_items,
            invalid_items=len(ordered) - valid_items,
            source_breakdown=source_breakdown,
            temporal_range=self._temporal_range(ordered),
            processing_stats=MergeProcessingStats(
                merge_start_time=start_time,
                merge_end_time=end_time,
                merge_duration_ms=(end_time - start_time).total_seconds() * 1000,
                duplicates_detected=duplicates,
                gaps_detected=gaps,
            ),
        )

        if config.validate_timestamps:
            validation = self.validate_merge_batch(batch)
            batch.validation = validation
            if not validation.is_valid:
                logger.error(
                    f"Merge {batch_id} failed validation with quality score "
                    f"{validation.quality_score:.1f}"
                )
                raise MergeValidationError(validation.issues, validation.quality_score, batch_id)

        return batch

    def _historical_items(
        self, batch: ContentBatchResult, collected_at: datetime
    ) -> List[MergedRecord]:
        items = []
        source_path = f"batch:{batch.batch_id}"
        for kind, records in ((SUBMISSION, batch.submissions), (COMMENT, batch.comments)):
            for record in records:
                item = self._build_item(
                    kind,
                    record,
                    SourceType.ARCHIVE,
                    collected_at,
                    source_path,
                    batch.batch_id,
                )
                if item is not None:
                    items.append(item)
        return items

    def _api_items(self, batch: ApiContentBatch) -> List[MergedRecord]:
        items = []
        source_type = SourceType.parse(batch.source_type)
        source_path = f"api:{source_type.value}"
        for kind, records in ((SUBMISSION, batch.posts), (COMMENT, batch.comments)):
            for record in records:
                item = self._build_item(
                    kind,
                    record,
                    source_type,
                    batch.collection_timestamp,
                    source_path,
                    batch.batch_id,
                )
                if item is not None:
                    items.append(item)
        return items

    def _build_item(
        self,
        kind: str,
        record: Dict[str, Any],
        source_type: SourceType,
        collected_at: datetime,
        source_path: str,
        processing_batch_id: Optional[str],
    ) -> Optional[MergedRecord]:
        timestamp = normalize_timestamp(record.get("created_utc"))
        if timestamp is None:
            error = DataMergeError.timestamp_normalization(
                record.get("created_utc"), source_type.value, record.get("id")
            )
            logger.warning(f"Dropping item: {error.message}")
            return None

        original_id = str(record.get("id") or "")
        subreddit = record.get("subreddit") or ""
        permalink = record.get("permalink")
        if not permalink:
            if kind == SUBMISSION:
                permalink = f"https://reddit.com/r/{subreddit}/comments/{original_id}"
            else:
                permalink = comment_permalink(subreddit, record.get("link_id"), original_id)

        issues = []
        if not original_id:
            issues.append("missing original id")

        payload = dict(record)
        payload["created_utc"] = timestamp

        return MergedRecord(
            kind=kind,
            payload=payload,
            source_metadata=SourceMetadata(
                source_type=source_type,
                original_id=original_id,
                permalink=permalink,
                collection_timestamp=collected_at,
                source_path=source_path,
                processing_batch_id=processing_batch_id,
            ),
            normalized_timestamp=timestamp,
            is_valid=not issues,
            validation_issues=issues,
        )

    @staticmethod
    def _order(items: List[MergedRecord], config: MergeConfig) -> List[MergedRecord]:
        priority = {SourceType.parse(source): index for index, source in enumerate(config.priority_order)}
        fallback = len(priority)

        def sort_key(item: MergedRecord):
            return (
                item.normalized_timestamp,
                priority.get(item.source_metadata.source_type, fallback),
                0 if item.kind == SUBMISSION else 1,
                item.source_metadata.original_id,
            )

        try:
            return sorted(items, key=sort_key)
        except (TypeError, ValueError) as e:
            raise DataMergeError.temporal_ordering(len(items), str(e)) from e

    @staticmethod
    def analyze_temporal_gaps(
        items: List[MergedRecord], threshold_hours: float
    ) -> List[GapAnalysisResult]:
        """
        Find stretches between consecutive ordered items longer than the threshold.

        Args:
            items: Merged items in timeline order
            threshold_hours: Minimum gap length to report

        Returns:
            One GapAnalysisResult per gap, in timeline order
        """
        gaps = []
        for previous, current in zip(items, items[1:]):
            duration_hours = (current.normalized_timestamp - previous.normalized_timestamp) / 3600
            if duration_hours <= threshold_hours:
                continue

            before = previous.source_metadata.source_type
            after = current.source_metadata.source_type
            gaps.append(
                GapAnalysisResult(
                    gap_type="missing-coverage",
                    start_timestamp=previous.normalized_timestamp,
                    end_timestamp=current.normalized_timestamp,
                    duration_hours=duration_hours,
                    affected_sources=[before, after],
                    severity=_gap_severity(duration_hours),
                    description=(
                        f"{duration_hours:.1f}h gap between {before.value} and {after.value}"
                    ),
                    mitigation_suggestions=list(GAP_MITIGATIONS),
                )
            )

        if gaps:
            logger.info(f"Detected {len(gaps)} temporal gaps over {threshold_hours}h")
        return gaps

    @staticmethod
    def count_near_duplicates(items: List[MergedRecord], tolerance_seconds: int) -> int:
        """Count items whose (id, kind) was already seen within ``tolerance_seconds``."""
        first_seen: Dict[str, int] = {}
        duplicates = 0
        for item in items:
            key = f"{item.source_metadata.original_id}-{item.kind}"
            seen_at = first_seen.get(key)
            if seen_at is None:
                first_seen[key] = item.normalized_timestamp
            elif abs(item.normalized_timestamp - seen_at) <= tolerance_seconds:
                duplicates += 1
        return duplicates

    def validate_merge_batch(self, batch: TemporalMergeBatch) -> MergeValidationResult:
        """
        Score a merged batch and list its quality issues.

        Args:
            batch: Merged batch to check

        Returns:
            MergeValidationResult; ``is_valid`` is False if any error-severity issue exists
        """
        issues: List[MergeValidationIssue] = []
        items = batch.merged_items

        out_of_order = sum(
            1
            for previous, current in zip(items, items[1:])
            if current.normalized_timestamp < previous.normalized_timestamp
        )
        if out_of_order:
            issues.append(
                MergeValidationIssue(
                    issue_type="timestamp_inconsistency",
                    severity="error",
                    message=f"{out_of_order} items are out of chronological order",
                    affected_items=out_of_order,
                    suggested_fix="Re-sort merged items by normalized timestamp",
                )
            )

        missing_attribution = sum(
            1
            for item in items
            if not item.source_metadata.original_id or not item.source_metadata.source_type
        )
        if missing_attribution:
            issues.append(
                MergeValidationIssue(
                    issue_type="attribution_missing",
                    severity="error",
                    message=f"{missing_attribution} items are missing source attribution",
                    affected_items=missing_attribution,
                    suggested_fix="Ensure every input record carries an id",
                )
            )

        high_gaps = [gap for gap in batch.processing_stats.gaps_detected if gap.severity == "high"]
        if high_gaps:
            issues.append(
                MergeValidationIssue(
                    issue_type="data_gap",
                    severity="warning",
                    message=f"{len(high_gaps)} high-severity coverage gaps detected",
                    affected_items=len(high_gaps),
                    suggested_fix="Collect additional data for the uncovered time ranges",
                )
            )

        score = 100 - (
            _penalty(out_of_order, OUT_OF_ORDER_PENALTY)
            + _penalty(missing_attribution, MISSING_ATTRIBUTION_PENALTY)
            + _penalty(len(high_gaps), HIGH_GAP_PENALTY)
        )
        score = max(0, score)

        recommendations: List[str] = []
        for issue in issues:
            if issue.suggested_fix and issue.suggested_fix not in recommendations:
                recommendations.append(issue.suggested_fix)
        if issues:
            recommendations.extend(GENERAL_RECOMMENDATIONS)

        return MergeValidationResult(
            is_valid=not any(issue.severity == "error" for issue in issues),
            validation_passed=score >= PASSING_QUALITY_SCORE,
            issues=issues,
            quality_score=float(score),
            recommendations=recommendations,
        )

    @staticmethod
    def _temporal_range(items: List[MergedRecord]) -> TemporalRange:
        if not items:
            return TemporalRange()
        earliest = items[0].normalized_timestamp
        latest = items[-1].normalized_timestamp
        return TemporalRange(earliest=earliest, latest=latest, span_hours=(latest - earliest) / 3600)

    def convert_to_llm_input(self, batch: TemporalMergeBatch) -> Dict[str, Any]:
        """
        Project a merged batch onto the flat post/comment shape used downstream.

        Args:
            batch: Merged batch

        Returns:
            Dict with ``posts``, ``comments`` and ``source_metadata`` keys
        """
        posts = []
        comments = []
        for item in batch.merged_items:
            record = item.payload
            created_at = _iso(item.normalized_timestamp)
            if item.kind == SUBMISSION:
                posts.append(
                    {
                        "post_id": record.get("id"),
                        "title": record.get("title") or "",
                        "content": record.get("selftext") or "",
                        "subreddit": record.get("subreddit"),
                        "created_at": created_at,
                        "upvotes": record.get("score", 0),
                        "url": record.get("url") or item.source_metadata.permalink,
                        "comments": [],
                    }
                )
            else:
                comments.append(
                    {
                        "comment_id": record.get("id"),
                        "content": record.get("body") or "",
                        "author": record.get("author"),
                        "upvotes": record.get("score", 0),
                        "created_at": created_at,
                        "parent_id": record.get("parent_id") or None,
                        "url": item.source_metadata.permalink,
                    }
                )

        temporal_range = batch.temporal_range
        return {
            "posts": posts,
            "comments": comments,
            "source_metadata": {
                "batch_id": batch.batch_id,
                "merge_timestamp": batch.processing_stats.merge_end_time.isoformat(),
                "source_breakdown": dict(batch.source_breakdown),
                "temporal_range": {
                    "earliest": _iso(temporal_range.earliest) if temporal_range.earliest else None,
                    "latest": _iso(temporal_range.latest) if temporal_range.latest else None,
                    "span_hours": temporal_range.span_hours,
                },
            },
        }
