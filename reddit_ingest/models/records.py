"""Normalized record shapes shared by the stream, merge and dedup layers."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, TypedDict

from reddit_ingest.models.source import SourceType


class SubmissionRecord(TypedDict, total=False):
    """
    A normalized Reddit submission, from an archive dump or the live API.

    ``id`` is the base36 id, optionally carrying the ``t3_`` prefix.
    ``created_utc`` is seconds since the epoch; API feeds sometimes deliver it as a string.
    """

    id: str
    created_utc: Any
    subreddit: str
    title: str
    selftext: Optional[str]
    author: Optional[str]
    score: int
    num_comments: int
    url: Optional[str]
    permalink: Optional[str]
    over_18: bool


class CommentRecord(TypedDict, total=False):
    """A normalized Reddit comment. ``link_id`` points at the parent submission (``t3_``)."""

    id: str
    created_utc: Any
    subreddit: str
    body: str
    author: Optional[str]
    score: int
    link_id: Optional[str]
    parent_id: Optional[str]
    permalink: Optional[str]


@dataclass
class ContentBatchResult:
    """Outcome of one downstream content-pipeline batch.

    Also used as the historical input of a temporal merge.
    """

    batch_id: str
    submissions: List[SubmissionRecord] = field(default_factory=list)
    comments: List[CommentRecord] = field(default_factory=list)
    total_processed: int = 0
    valid_items: int = 0
    invalid_items: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ApiContentBatch:
    """Records collected from the live API in one collection run."""

    source_type: SourceType
    posts: List[SubmissionRecord] = field(default_factory=list)
    comments: List[CommentRecord] = field(default_factory=list)
    collection_timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    batch_id: Optional[str] = None
