"""Mapping functions to convert raw archive JSON objects to our record models."""

import logging
from typing import Any, Dict, Optional

from reddit_ingest.models.records import CommentRecord, SubmissionRecord

logger = logging.getLogger(__name__)

SUBMISSION = "submission"
COMMENT = "comment"


def classify_item(raw: Dict[str, Any]) -> Optional[str]:
    """
    Decide whether a raw archive object is a submission or a comment.

    Args:
        raw: Parsed JSON object from one archive line

    Returns:
        "submission", "comment", or None when the shape is not recognized
    """
    if not isinstance(raw, dict):
        return None
    name = str(raw.get("name") or "")
    if name.startswith("t3_") or "title" in raw:
        return SUBMISSION
    if name.startswith("t1_") or "body" in raw or "link_id" in raw:
        return COMMENT
    return None


def _author(raw: Dict[str, Any]) -> str:
    # Deleted accounts come through as null or "[deleted]"
    return raw.get("author") or "[deleted]"


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def raw_to_submission(raw: Dict[str, Any]) -> SubmissionRecord:
    """
    Convert a raw archive submission object to a SubmissionRecord.

    Args:
        raw: Parsed JSON object for a submission

    Returns:
        A SubmissionRecord with the submission data
    """
    subreddit = str(raw.get("subreddit") or "").lower()
    permalink = raw.get("permalink")
    if permalink and permalink.startswith("/"):
        permalink = f"https://reddit.com{permalink}"

    record: SubmissionRecord = {
        "id": str(raw["id"]),
        "created_utc": raw.get("created_utc"),
        "subreddit": subreddit,
        "title": raw.get("title") or "",
        "selftext": raw.get("selftext") or None,
        "author": _author(raw),
        "score": _int(raw.get("score")),
        "num_comments": _int(raw.get("num_comments")),
        "url": raw.get("url"),
        "permalink": permalink or f"https://reddit.com/r/{subreddit}/comments/{raw['id']}",
        "over_18": bool(raw.get("over_18", False)),
    }
    return record


def raw_to_comment(raw: Dict[str, Any]) -> CommentRecord:
    """
    Convert a raw archive comment object to a CommentRecord.

    Args:
        raw: Parsed JSON object for a comment

    Returns:
        A CommentRecord with the comment data
    """
    subreddit = str(raw.get("subreddit") or "").lower()
    link_id = raw.get("link_id")
    permalink = raw.get("permalink")
    if permalink and permalink.startswith("/"):
        permalink = f"https://reddit.com{permalink}"
    if not permalink:
        permalink = comment_permalink(subreddit, link_id, str(raw["id"]))

    record: CommentRecord = {
        "id": str(raw["id"]),
        "created_utc": raw.get("created_utc"),
        "subreddit": subreddit,
        "body": raw.get("body") or "",
        "author": _author(raw),
        "score": _int(raw.get("score")),
        "link_id": link_id,
        "parent_id": raw.get("parent_id"),
        "permalink": permalink,
    }
    return record


def comment_permalink(subreddit: str, link_id: Optional[str], comment_id: str) -> str:
    """Build a comment URL when the source did not provide one."""
    post_id = (link_id or "").replace("t3_", "")
    return f"https://reddit.com/r/{subreddit}/comments/{post_id}/_/{comment_id}"
