"""Exception types raised by the ingestion core.

Every error carries an ``error_code`` and a ``context`` dict (phase, ids, counts)
so callers can branch on structured data rather than on message text.
"""

from typing import Any, Dict, List, Optional


class IngestError(Exception):
    """Base class for all ingestion errors."""

    error_code = "INGEST_ERROR"
    # ProcessingMetrics of the stream run that was interrupted, when one had started
    partial_metrics: Optional[Any] = None

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
        }


class StreamProcessorError(IngestError):
    """Fatal error while decompressing or reading an archive stream."""

    error_code = "STREAM_PROCESSOR_ERROR"

    @classmethod
    def file_access(cls, file_path: str, reason: str) -> "StreamProcessorError":
        return cls(
            f"Cannot access archive file {file_path}: {reason}",
            {"phase": "file_access", "file_path": file_path},
            error_code="FILE_ACCESS_ERROR",
        )

    @classmethod
    def decompression(
        cls, file_path: str, reason: str, exit_code: Optional[int] = None, stderr: str = ""
    ) -> "StreamProcessorError":
        return cls(
            f"Decompression failed for {file_path}: {reason}",
            {
                "phase": "decompression",
                "file_path": file_path,
                "exit_code": exit_code,
                "stderr": stderr,
            },
            error_code="DECOMPRESSION_ERROR",
        )

    @classmethod
    def validation(cls, file_path: str, reason: str, **counts: Any) -> "StreamProcessorError":
        context = {"phase": "validation", "file_path": file_path}
        context.update(counts)
        return cls(
            f"Archive validation failed for {file_path}: {reason}",
            context,
            error_code="VALIDATION_ERROR",
        )


class StreamTimeoutError(StreamProcessorError):
    """The decompression run did not finish before its deadline."""

    error_code = "PROCESSING_TIMEOUT"

    def __init__(self, file_path: str, timeout_ms: int, lines_seen: int = 0):
        super().__init__(
            f"Processing of {file_path} timed out after {timeout_ms}ms",
            {
                "phase": "decompression",
                "file_path": file_path,
                "timeout_ms": timeout_ms,
                "lines_seen": lines_seen,
            },
        )
        self.timeout_ms = timeout_ms


class DecompressorUnavailableError(StreamProcessorError):
    """The external decompression utility is missing or cannot be spawned."""

    error_code = "DECOMPRESSOR_UNAVAILABLE"

    def __init__(self, binary: str, reason: str):
        super().__init__(
            f"Decompression utility '{binary}' is not available: {reason}",
            {"phase": "setup", "binary": binary},
        )
        self.binary = binary


class StreamAborted(IngestError):
    """Raised by an item handler to stop the stream and propagate a failure.

    Ordinary handler exceptions are logged and absorbed per item; this one
    terminates the decompression subprocess and is re-raised to the caller.
    """

    error_code = "STREAM_ABORTED"


class BatchProcessingError(IngestError):
    """Errors raised by the batch processing coordinator."""

    error_code = "BATCH_PROCESSING_ERROR"

    @classmethod
    def checkpoint_not_found(cls, job_id: str) -> "BatchProcessingError":
        return cls(
            f"No checkpoint found for job {job_id}",
            {"phase": "resume", "job_id": job_id},
            error_code="CHECKPOINT_NOT_FOUND",
        )

    @classmethod
    def job_already_completed(cls, job_id: str) -> "BatchProcessingError":
        return cls(
            f"Job {job_id} has already completed",
            {"phase": "resume", "job_id": job_id},
            error_code="JOB_ALREADY_COMPLETED",
        )

    @classmethod
    def job_already_running(cls, job_id: str) -> "BatchProcessingError":
        return cls(
            f"Job {job_id} is already running",
            {"phase": "start", "job_id": job_id},
            error_code="JOB_ALREADY_RUNNING",
        )


class DataMergeError(IngestError):
    """Fatal errors raised by the temporal merge engine."""

    error_code = "DATA_MERGE_ERROR"

    @classmethod
    def timestamp_normalization(cls, raw_timestamp: Any, source_type: str, item_id: Any) -> "DataMergeError":
        return cls(
            f"Cannot normalize timestamp {raw_timestamp!r} of {item_id} from {source_type}",
            {
                "phase": "timestamp_normalization",
                "raw_timestamp": raw_timestamp,
                "source_type": source_type,
                "item_id": item_id,
            },
            error_code="TIMESTAMP_NORMALIZATION",
        )

    @classmethod
    def batch_too_large(cls, size: int, limit: int) -> "DataMergeError":
        return cls(
            f"Merge input of {size} items exceeds the limit of {limit}",
            {"phase": "input_validation", "size": size, "limit": limit},
            error_code="BATCH_TOO_LARGE",
        )

    @classmethod
    def unknown_source_type(cls, source_type: Any, batch_id: str) -> "DataMergeError":
        return cls(
            f"Unknown source type {source_type!r} for API batch {batch_id}",
            {"phase": "input_validation", "source_type": str(source_type), "batch_id": batch_id},
            error_code="UNKNOWN_SOURCE_TYPE",
        )

    @classmethod
    def temporal_ordering(cls, item_count: int, reason: str) -> "DataMergeError":
        return cls(
            f"Failed to order {item_count} merged items: {reason}",
            {"phase": "temporal_ordering", "item_count": item_count, "reason": reason},
            error_code="TEMPORAL_ORDERING",
        )


class MergeValidationError(DataMergeError):
    """The merged batch failed the quality gate.

    ``issues`` holds the full list of validation issues and ``quality_score``
    the 0-100 score so callers can decide whether to retry with a relaxed config.
    """

    error_code = "MERGE_VALIDATION_FAILED"

    def __init__(self, issues: List[Any], quality_score: float, batch_id: str = ""):
        error_count = sum(1 for issue in issues if getattr(issue, "severity", "") == "error")
        super().__init__(
            f"Merge validation failed with {error_count} error(s), quality score {quality_score:.1f}",
            {
                "phase": "validation",
                "batch_id": batch_id,
                "issue_count": len(issues),
                "error_count": error_count,
                "quality_score": quality_score,
            },
        )
        self.issues = list(issues)
        self.quality_score = quality_score


class DuplicateDetectionError(IngestError):
    """Identifier derivation or batch processing failure in duplicate detection."""

    error_code = "DUPLICATE_DETECTION_ERROR"

    @classmethod
    def identifier_generation(cls, item_id: Any, kind: str) -> "DuplicateDetectionError":
        return cls(
            f"Cannot derive a duplicate-detection identifier from id {item_id!r} ({kind})",
            {"phase": "identifier_generation", "original_id": item_id, "kind": kind},
            error_code="IDENTIFIER_GENERATION_FAILED",
        )

    @classmethod
    def batch_failed(cls, item_count: int, reason: str) -> "DuplicateDetectionError":
        return cls(
            f"Duplicate detection failed for a batch of {item_count} items: {reason}",
            {"phase": "batch_processing", "item_count": item_count, "reason": reason},
            error_code="BATCH_ANALYSIS_FAILED",
        )


class DuplicateValidationError(DuplicateDetectionError):
    """Invalid duplicate detection configuration or input, raised before processing."""

    error_code = "DUPLICATE_VALIDATION_FAILED"
