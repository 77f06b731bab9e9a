"""Project-level pytest configuration and shared fixtures."""

import json
from datetime import datetime, timezone

import pytest

from reddit_ingest.models.mapping import SUBMISSION
from reddit_ingest.models.merge import MergedRecord, SourceMetadata
from reddit_ingest.models.source import SourceType


def submission(item_id: str, created_utc, subreddit: str = "wallstreetbets", **extra):
    record = {
        "id": item_id,
        "created_utc": created_utc,
        "subreddit": subreddit,
        "title": f"Title {item_id}",
        "selftext": f"Body of {item_id}",
        "author": "testuser",
        "score": 10,
        "num_comments": 0,
        "url": f"https://reddit.com/r/{subreddit}/comments/{item_id}",
        "permalink": f"https://reddit.com/r/{subreddit}/comments/{item_id}",
        "over_18": False,
    }
    record.update(extra)
    return record


def comment(item_id: str, created_utc, link_id: str = "t3_post1", subreddit: str = "stocks", **extra):
    record = {
        "id": item_id,
        "created_utc": created_utc,
        "subreddit": subreddit,
        "body": f"Comment {item_id}",
        "author": "commenter",
        "score": 3,
        "link_id": link_id,
        "parent_id": link_id,
        "permalink": None,
    }
    record.update(extra)
    return record


def merged_record(
    item_id: str,
    timestamp: int,
    source_type: SourceType = SourceType.ARCHIVE,
    kind: str = SUBMISSION,
    batch_id: str = "batch-1",
) -> MergedRecord:
    payload = submission(item_id, timestamp) if kind == SUBMISSION else comment(item_id, timestamp)
    return MergedRecord(
        kind=kind,
        payload=payload,
        source_metadata=SourceMetadata(
            source_type=source_type,
            original_id=item_id,
            permalink=f"https://reddit.com/comments/{item_id}",
            collection_timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
            processing_batch_id=batch_id,
        ),
        normalized_timestamp=timestamp,
    )


@pytest.fixture
def make_submission():
    """Factory for normalized submission records."""
    return submission


@pytest.fixture
def make_comment():
    """Factory for normalized comment records."""
    return comment


@pytest.fixture
def make_merged_record():
    """Factory for merged records as produced by the temporal merge engine."""
    return merged_record


@pytest.fixture
def write_ndjson(tmp_path):
    """Write lines (dicts are JSON-encoded, strings written as-is) to an NDJSON file."""

    def _write(lines, name="sample_submissions.ndjson"):
        path = tmp_path / name
        with open(path, "w", encoding="utf-8") as f:
            for line in lines:
                f.write((line if isinstance(line, str) else json.dumps(line)) + "\n")
        return str(path)

    return _write


@pytest.fixture
def raw_submission():
    """Factory for raw archive submission objects as they appear in a dump."""

    def _raw(item_id: str, created_utc: int = 1609459200, subreddit: str = "stocks", **extra):
        raw = {
            "id": item_id,
            "name": f"t3_{item_id}",
            "created_utc": created_utc,
            "subreddit": subreddit,
            "title": f"Title {item_id}",
            "selftext": "some text",
            "author": "poster",
            "score": 5,
            "num_comments": 1,
            "url": f"https://reddit.com/r/{subreddit}/comments/{item_id}",
            "permalink": f"/r/{subreddit}/comments/{item_id}/title/",
        }
        raw.update(extra)
        return raw

    return _raw


@pytest.fixture
def raw_comment():
    """Factory for raw archive comment objects."""

    def _raw(item_id: str, created_utc: int = 1609459300, link_id: str = "t3_abc", **extra):
        raw = {
            "id": item_id,
            "name": f"t1_{item_id}",
            "created_utc": created_utc,
            "subreddit": "stocks",
            "body": f"comment {item_id}",
            "author": "commenter",
            "score": 2,
            "link_id": link_id,
            "parent_id": link_id,
        }
        raw.update(extra)
        return raw

    return _raw

