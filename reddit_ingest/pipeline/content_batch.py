"""Default content pipeline: normalizes raw archive objects batch by batch."""

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional

from reddit_ingest.models.mapping import (
    COMMENT,
    SUBMISSION,
    classify_item,
    raw_to_comment,
    raw_to_submission,
)
from reddit_ingest.models.records import ContentBatchResult
from reddit_ingest.storage.data_sink import DataSink

logger = logging.getLogger(__name__)

REMOVED_MARKERS = ("[removed]", "[deleted]")


class ContentBatchProcessor:
    """
    Turns raw archive objects into normalized submissions and comments.

    Items that cannot be classified or mapped, and items rejected by the
    quality filters, are counted as invalid and listed in ``errors``; they
    never fail the batch.
    """

    def __init__(
        self,
        submission_sink: Optional[DataSink] = None,
        comment_sink: Optional[DataSink] = None,
        min_score: Optional[int] = None,
        exclude_deleted_authors: bool = False,
        exclude_removed_content: bool = True,
    ):
        """
        Initialize the content batch processor.

        Args:
            submission_sink: Optional sink receiving accepted submissions
            comment_sink: Optional sink receiving accepted comments
            min_score: Drop records scoring below this value
            exclude_deleted_authors: Drop records whose author was deleted
            exclude_removed_content: Drop records whose text was removed or deleted
        """
        self.submission_sink = submission_sink
        self.comment_sink = comment_sink
        self.min_score = min_score
        self.exclude_deleted_authors = exclude_deleted_authors
        self.exclude_removed_content = exclude_removed_content

    async def process_batch(self, raw_items: List[Any]) -> ContentBatchResult:
        """
        Normalize one batch of raw archive objects.

        Args:
            raw_items: Parsed JSON objects from the archive stream

        Returns:
            ContentBatchResult with accepted records and per-item errors
        """
        result = ContentBatchResult(batch_id=f"content_{uuid.uuid4().hex[:12]}")

        for index, raw in enumerate(raw_items):
            result.total_processed += 1
            kind = classify_item(raw)
            if kind is None:
                self._reject(result, index, raw, "unrecognized item shape")
                continue

            try:
                record = raw_to_submission(raw) if kind == SUBMISSION else raw_to_comment(raw)
            except (KeyError, TypeError, ValueError) as e:
                self._reject(result, index, raw, f"mapping failed: {e}")
                continue

            reason = self._filter_reason(record, kind)
            if reason:
                self._reject(result, index, raw, reason)
                continue

            result.valid_items += 1
            if kind == SUBMISSION:
                result.submissions.append(record)
            else:
                result.comments.append(record)

        await self._write_to_sinks(result)

        logger.debug(
            f"Batch {result.batch_id}: {result.valid_items}/{result.total_processed} accepted "
            f"({len(result.submissions)} submissions, {len(result.comments)} comments)"
        )
        return result

    def _filter_reason(self, record: Dict[str, Any], kind: str) -> Optional[str]:
        if self.min_score is not None and record.get("score", 0) < self.min_score:
            return f"score below {self.min_score}"
        if self.exclude_deleted_authors and record.get("author") == "[deleted]":
            return "author deleted"
        if self.exclude_removed_content:
            text = record.get("selftext") if kind == SUBMISSION else record.get("body")
            if text in REMOVED_MARKERS:
                return "content removed"
        return None

    @staticmethod
    def _reject(result: ContentBatchResult, index: int, raw: Any, reason: str) -> None:
        result.invalid_items += 1
        item_id = raw.get("id") if isinstance(raw, dict) else None
        result.errors.append({"index": index, "id": item_id, "reason": reason})

    async def _write_to_sinks(self, result: ContentBatchResult) -> None:
        # Sinks do blocking file or database I/O
        if self.submission_sink is not None and result.submissions:
            await asyncio.to_thread(self.submission_sink.append, result.submissions)
        if self.comment_sink is not None and result.comments:
            await asyncio.to_thread(self.comment_sink.append, result.comments)
