"""Fingerprint-based duplicate detection across archive and API sources."""

import dataclasses
import logging
import math
import re
import threading
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from reddit_ingest.config import MALFORMED_ITEM_STRATEGIES, DuplicateConfig
from reddit_ingest.exceptions import DuplicateDetectionError, DuplicateValidationError
from reddit_ingest.models.dedup import (
    BatchDuplicateAnalysis,
    ContentIdentifier,
    DuplicateCheckResult,
    DuplicateDetectionStats,
    DuplicatePerformanceMetrics,
    DuplicateSourceInfo,
    OverlapPattern,
    SourceOverlapAnalysis,
    TemporalOverlapAnalysis,
)
from reddit_ingest.models.mapping import COMMENT, SUBMISSION
from reddit_ingest.models.merge import MergedRecord
from reddit_ingest.models.source import SourceType

logger = logging.getLogger(__name__)

ID_PREFIX = re.compile(r"^t[0-9]_")

# (label, lower bound hours inclusive, upper bound hours exclusive)
TIME_DIFF_BUCKETS = [
    ("0-1h", 0, 1),
    ("1-6h", 1, 6),
    ("6-24h", 6, 24),
    ("1-7d", 24, 168),
    (">7d", 168, math.inf),
]
TOP_OVERLAP_PATTERNS = 5
EVICTION_RATIO = 0.1


class MalformedItem(Exception):
    """Internal signal: an item has no usable kind, source or id."""


class DuplicateDetector:
    """
    Detects records seen before from any source.

    A record is identified by its prefix-stripped id and its kind. The first
    occurrence is remembered; a later occurrence within
    ``max_time_difference_seconds`` of it is a duplicate and is filtered out.
    Fingerprints and running statistics live until ``clear_cache()``.

    The instance may be shared between jobs: every public call holds a lock.
    """

    def __init__(self, config: Optional[DuplicateConfig] = None, prometheus_exporter=None):
        """
        Initialize the duplicate detector.

        Args:
            config: Default configuration for every call
            prometheus_exporter: Optional Prometheus metrics exporter
        """
        self.config = config or DuplicateConfig()
        self.prometheus_exporter = prometheus_exporter
        self._seen: "OrderedDict[str, DuplicateSourceInfo]" = OrderedDict()
        self._stats = DuplicateDetectionStats()
        self._lock = threading.RLock()

    def detect_and_filter_duplicates(
        self,
        items: List[MergedRecord],
        config: Optional[DuplicateConfig] = None,
        **overrides: Any,
    ) -> Tuple[List[MergedRecord], BatchDuplicateAnalysis]:
        """
        Remove duplicates from a batch of merged records.

        Args:
            items: Merged records, usually in timeline order
            config: Optional configuration replacing the default for this call
            **overrides: Individual DuplicateConfig fields to override for this call

        Returns:
            Tuple of (records kept, batch analysis)

        Raises:
            DuplicateValidationError: If the configuration or batch size is invalid
            DuplicateDetectionError: If a malformed item is met under the ``error`` strategy
        """
        detection_config = config or self.config
        if overrides:
            detection_config = dataclasses.replace(detection_config, **overrides)
        self._validate(items, detection_config)

        start_time = datetime.now(timezone.utc)
        logger.info(f"Starting duplicate detection for {len(items)} items")

        with self._lock:
            try:
                filtered, results, skipped, passed_through = self._process(items, detection_config)
            except DuplicateDetectionError:
                raise
            except Exception as e:
                logger.error(f"Duplicate detection failed: {str(e)}", exc_info=True)
                raise DuplicateDetectionError.batch_failed(len(items), str(e)) from e

            analysis = self._analyze(
                results, len(items) - skipped, skipped, passed_through, start_time, detection_config
            )
            self._update_stats(analysis)

        logger.info(
            f"Duplicate detection complete: kept {len(filtered)} of {len(items)} items, "
            f"{analysis.duplicates_found} duplicates ({analysis.duplicate_rate:.1f}%)"
        )
        return filtered, analysis

    def check_single_item(self, item: MergedRecord) -> DuplicateCheckResult:
        """
        Check one record against the fingerprint table and remember it.

        Args:
            item: Merged record to check

        Returns:
            DuplicateCheckResult for the record

        Raises:
            DuplicateDetectionError: If no identifier can be derived from the record
        """
        with self._lock:
            try:
                identifier = self._identifier(item)
            except MalformedItem as e:
                raise DuplicateDetectionError.identifier_generation(
                    _original_id(item), _kind(item)
                ) from e

            result = self._detect(identifier, item, self.config)
            if result.is_duplicate:
                self._record_duplicate(result)
            else:
                self._track(identifier, result.current_source)
            return result

    def get_stats(self) -> DuplicateDetectionStats:
        """Return a copy of the running statistics."""
        with self._lock:
            return dataclasses.replace(self._stats)

    def clear_cache(self) -> None:
        """Forget every fingerprint and reset the running statistics."""
        with self._lock:
            self._seen.clear()
            self._stats = DuplicateDetectionStats()
        logger.info("Duplicate detection cache and statistics cleared")

    @property
    def cache_size(self) -> int:
        return len(self._seen)

    @staticmethod
    def _validate(items: List[MergedRecord], config: DuplicateConfig) -> None:
        if config.max_batch_size <= 0:
            raise DuplicateValidationError(
                f"max_batch_size must be greater than 0, got {config.max_batch_size}",
                {"phase": "validation", "field": "max_batch_size", "value": config.max_batch_size},
            )
        if config.max_time_difference_seconds < 0:
            raise DuplicateValidationError(
                "max_time_difference_seconds must not be negative",
                {
                    "phase": "validation",
                    "field": "max_time_difference_seconds",
                    "value": config.max_time_difference_seconds,
                },
            )
        if config.malformed_item_strategy not in MALFORMED_ITEM_STRATEGIES:
            raise DuplicateValidationError(
                f"Unknown malformed item strategy {config.malformed_item_strategy!r}",
                {"phase": "validation", "field": "malformed_item_strategy"},
            )
        if len(items) > config.max_batch_size:
            raise DuplicateValidationError(
                f"Batch of {len(items)} items exceeds max_batch_size {config.max_batch_size}",
                {"phase": "validation", "size": len(items), "limit": config.max_batch_size},
            )

    def _process(self, items: List[MergedRecord], config: DuplicateConfig):
        filtered: List[MergedRecord] = []
        results: List[DuplicateCheckResult] = []
        skipped = 0
        passed_through = 0
        # New fingerprints are committed only once the whole batch succeeds
        staged: "OrderedDict[str, Tuple[ContentIdentifier, DuplicateSourceInfo]]" = OrderedDict()

        for item in items:
            try:
                identifier = self._identifier(item)
            except MalformedItem as e:
                strategy = config.malformed_item_strategy
                if strategy == "error":
                    raise DuplicateDetectionError.identifier_generation(
                        _original_id(item), _kind(item)
                    ) from e
                if strategy == "skip":
                    logger.warning(f"Skipping malformed item: {str(e)}")
                    skipped += 1
                else:
                    logger.info(f"Passing malformed item through unchecked: {str(e)}")
                    passed_through += 1
                    filtered.append(item)
                continue

            staged_entry = staged.get(identifier.key)
            result = self._detect(
                identifier, item, config, staged_entry[1] if staged_entry else None
            )
            results.append(result)
            if result.is_duplicate:
                logger.debug(
                    f"Duplicate {identifier.key} from {result.current_source.source_type.value}, "
                    f"first seen in {result.original_source.source_type.value} "
                    f"{result.time_diff_seconds:.0f}s apart"
                )
            else:
                filtered.append(item)
                staged[identifier.key] = (identifier, result.current_source)
                staged.move_to_end(identifier.key)

        for identifier, source in staged.values():
            self._track(identifier, source, config.cache_size)
        for result in results:
            if result.is_duplicate:
                self._record_duplicate(result)

        return filtered, results, skipped, passed_through

    @staticmethod
    def _identifier(item: Any) -> ContentIdentifier:
        kind = _kind(item)
        if kind is None:
            raise MalformedItem(f"unrecognized record kind {getattr(item, 'kind', None)!r}")
        if getattr(item, "source_metadata", None) is None:
            raise MalformedItem("record has no source metadata")

        normalized_id = ID_PREFIX.sub("", _original_id(item).strip())
        if not normalized_id:
            raise MalformedItem("record id is empty")
        return ContentIdentifier(id=normalized_id, kind=kind)

    def _detect(
        self,
        identifier: ContentIdentifier,
        item: MergedRecord,
        config: DuplicateConfig,
        pending: Optional[DuplicateSourceInfo] = None,
    ) -> DuplicateCheckResult:
        metadata = item.source_metadata
        current = DuplicateSourceInfo(
            source_type=SourceType.parse(metadata.source_type),
            timestamp=item.normalized_timestamp,
            first_seen=datetime.now(timezone.utc),
            batch_id=metadata.processing_batch_id,
        )

        original = pending or self._seen.get(identifier.key)
        if original is None:
            return DuplicateCheckResult(identifier=identifier, is_duplicate=False, current_source=current)

        time_diff = abs(current.timestamp - original.timestamp)
        if time_diff <= config.max_time_difference_seconds:
            return DuplicateCheckResult(
                identifier=identifier,
                is_duplicate=True,
                current_source=current,
                original_source=original,
                time_diff_seconds=time_diff,
                metadata={"original_batch": original.batch_id, "current_batch": current.batch_id},
            )

        return DuplicateCheckResult(
            identifier=identifier,
            is_duplicate=False,
            current_source=current,
            time_diff_seconds=time_diff,
            metadata={"note": "same id seen before but outside the time window"},
        )

    def _track(
        self, identifier: ContentIdentifier, source: DuplicateSourceInfo, cache_size: Optional[int] = None
    ) -> None:
        # A reoccurrence outside the window replaces the remembered occurrence
        self._seen[identifier.key] = source
        self._seen.move_to_end(identifier.key)

        limit = cache_size or self.config.cache_size
        if limit and len(self._seen) > limit:
            evict = math.ceil(len(self._seen) * EVICTION_RATIO)
            for _ in range(evict):
                self._seen.popitem(last=False)
            logger.debug(f"Evicted {evict} fingerprints, {len(self._seen)} remain")

    def _record_duplicate(self, result: DuplicateCheckResult) -> None:
        if self.prometheus_exporter:
            self.prometheus_exporter.record_duplicate(result.current_source.source_type.value)

    def _analyze(
        self,
        results: List[DuplicateCheckResult],
        total_items: int,
        skipped: int,
        passed_through: int,
        start_time: datetime,
        config: DuplicateConfig,
    ) -> BatchDuplicateAnalysis:
        duplicates = sum(1 for result in results if result.is_duplicate)

        performance = None
        if config.enable_performance_tracking:
            end_time = datetime.now(timezone.utc)
            duration_ms = max((end_time - start_time).total_seconds() * 1000, 1.0)
            performance = DuplicatePerformanceMetrics(
                start_time=start_time,
                end_time=end_time,
                duration_ms=duration_ms,
                throughput_per_second=total_items / (duration_ms / 1000),
            )

        overlap = None
        if config.enable_source_overlap_analysis:
            overlap = self._overlap_analysis(results)

        return BatchDuplicateAnalysis(
            detection_results=results,
            total_items=total_items,
            duplicates_found=duplicates,
            unique_items=total_items - duplicates,
            duplicate_rate=(duplicates / total_items * 100) if total_items else 0.0,
            skipped_items=skipped,
            passed_through_items=passed_through,
            source_overlap_analysis=overlap,
            performance_metrics=performance,
        )

    @staticmethod
    def _overlap_analysis(results: List[DuplicateCheckResult]) -> SourceOverlapAnalysis:
        source_breakdown = {source.value: 0 for source in SourceType}
        overlap_matrix: Dict[str, int] = {}
        diff_hours: List[float] = []

        for result in results:
            source_breakdown[result.current_source.source_type.value] += 1
            if result.is_duplicate and result.original_source is not None:
                key = f"{result.original_source.source_type.name}→{result.current_source.source_type.name}"
                overlap_matrix[key] = overlap_matrix.get(key, 0) + 1
                diff_hours.append((result.time_diff_seconds or 0) / 3600)

        patterns = [
            OverlapPattern(
                sources=[SourceType[name] for name in key.split("→")],
                count=count,
                percentage=count / len(results) * 100,
            )
            for key, count in sorted(overlap_matrix.items(), key=lambda entry: -entry[1])
        ][:TOP_OVERLAP_PATTERNS]

        distribution = {
            label: sum(1 for hours in diff_hours if low <= hours < high)
            for label, low, high in TIME_DIFF_BUCKETS
        }

        return SourceOverlapAnalysis(
            source_breakdown=source_breakdown,
            overlap_matrix=overlap_matrix,
            common_overlap_patterns=patterns,
            temporal_overlap=TemporalOverlapAnalysis(
                avg_time_diff_hours=sum(diff_hours) / len(diff_hours) if diff_hours else 0.0,
                max_time_diff_hours=max(diff_hours) if diff_hours else 0.0,
                time_diff_distribution=distribution,
            ),
        )

    def _update_stats(self, analysis: BatchDuplicateAnalysis) -> None:
        stats = self._stats
        stats.total_items_processed += analysis.total_items
        stats.total_duplicates_detected += analysis.duplicates_found
        stats.sessions_completed += 1
        if stats.total_items_processed:
            stats.overall_duplicate_rate = (
                stats.total_duplicates_detected / stats.total_items_processed * 100
            )
        stats.avg_session_size = stats.total_items_processed / stats.sessions_completed
        stats.last_session = analysis


def _kind(item: Any) -> Optional[str]:
    kind = getattr(item, "kind", None)
    if kind == SUBMISSION:
        return "post"
    if kind == COMMENT:
        return "comment"
    return None


def _original_id(item: Any) -> str:
    payload = getattr(item, "payload", None)
    if isinstance(payload, dict) and payload.get("id"):
        return str(payload["id"])
    metadata = getattr(item, "source_metadata", None)
    return str(getattr(metadata, "original_id", "") or "")
