"""Tests for the temporal merge engine."""

from unittest.mock import MagicMock

import pytest

from reddit_ingest.config import MergeConfig
from reddit_ingest.exceptions import DataMergeError, MergeValidationError
from reddit_ingest.merge.temporal_merge import TemporalMergeEngine, normalize_timestamp
from reddit_ingest.models.records import ApiContentBatch, ContentBatchResult
from reddit_ingest.models.source import SourceType


def historical(submissions=(), comments=(), batch_id="hist-1"):
    return ContentBatchResult(batch_id=batch_id, submissions=list(submissions), comments=list(comments))


def api(posts=(), comments=(), source_type=SourceType.API_CHRONOLOGICAL, batch_id="api-1"):
    return ApiContentBatch(
        source_type=source_type, posts=list(posts), comments=list(comments), batch_id=batch_id
    )


def ids(batch):
    return [item.source_metadata.original_id for item in batch.merged_items]


@pytest.fixture
def engine():
    return TemporalMergeEngine()


def test_merges_historical_and_api_items(engine, make_submission):
    batch = engine.merge_temporal_data(
        historical([make_submission("hist1", 1609459200)]),
        api([make_submission("api1", 1672531200)]),
    )

    assert batch.total_items == 2
    assert batch.valid_items == 2
    assert batch.invalid_items == 0
    assert ids(batch) == ["hist1", "api1"]
    assert batch.source_breakdown["archive"] == 1
    assert batch.source_breakdown["api-chronological"] == 1
    assert batch.source_breakdown["api-keyword"] == 0
    assert batch.temporal_range.earliest == 1609459200
    assert batch.temporal_range.latest == 1672531200
    assert batch.temporal_range.span_hours == pytest.approx((1672531200 - 1609459200) / 3600)


def test_source_metadata_is_attached(engine, make_submission):
    batch = engine.merge_temporal_data(
        historical([make_submission("hist1", 1000)], batch_id="hist-42"),
        api([make_submission("api1", 2000)], source_type="api-keyword", batch_id="api-7"),
    )

    archive_item, api_item = batch.merged_items
    assert archive_item.source_metadata.source_type is SourceType.ARCHIVE
    assert archive_item.source_metadata.source_path == "batch:hist-42"
    assert archive_item.source_metadata.processing_batch_id == "hist-42"
    assert api_item.source_metadata.source_type is SourceType.API_KEYWORD
    assert api_item.source_metadata.source_path == "api:api-keyword"
    assert api_item.source_metadata.processing_batch_id == "api-7"


def test_equal_timestamps_follow_priority_then_kind_then_id(engine, make_submission, make_comment):
    batch = engine.merge_temporal_data(
        historical(
            submissions=[make_submission("z", 5000), make_submission("m", 5000)],
            comments=[make_comment("a", 5000)],
        ),
        api([make_submission("b", 5000)], source_type=SourceType.API_KEYWORD),
    )

    assert ids(batch) == ["m", "z", "a", "b"]
    assert [item.kind for item in batch.merged_items] == [
        "submission", "submission", "comment", "submission",
    ]


def test_custom_priority_order(engine, make_submission):
    batch = engine.merge_temporal_data(
        historical([make_submission("a", 5000)]),
        api([make_submission("b", 5000)], source_type=SourceType.API_KEYWORD),
        priority_order=["api-keyword", "archive", "api-chronological", "api-on-demand"],
    )

    assert ids(batch) == ["b", "a"]


def test_output_is_sorted_by_timestamp(engine, make_submission, make_comment):
    batch = engine.merge_temporal_data(
        historical([make_submission("s3", 3000), make_submission("s1", 1000)], [make_comment("c2", 2000)]),
        api([make_submission("a4", 4000), make_submission("a0", 500)]),
    )

    timestamps = [item.normalized_timestamp for item in batch.merged_items]
    assert timestamps == sorted(timestamps)
    assert ids(batch) == ["a0", "s1", "c2", "s3", "a4"]
    assert [c["id"] for c in batch.comments] == ["c2"]
    assert [s["id"] for s in batch.submissions] == ["a0", "s1", "s3", "a4"]


def test_merge_is_idempotent(engine, make_submission, make_comment):
    hist = historical([make_submission("s1", 1000), make_submission("s2", 1000)], [make_comment("c1", 900)])
    api_batch = api([make_submission("a1", 1000), make_submission("s1", 1010)])

    first = engine.merge_temporal_data(hist, api_batch)
    second = engine.merge_temporal_data(hist, api_batch)

    assert first.source_breakdown == second.source_breakdown
    assert first.temporal_range == second.temporal_range
    assert ids(first) == ids(second)
    assert first.batch_id != second.batch_id


def test_thirty_hour_gap_is_one_high_severity_gap(engine, make_submission):
    start = 1609459200
    batch = engine.merge_temporal_data(
        historical([make_submission("before", start)]),
        api([make_submission("after", start + 30 * 3600)]),
        gap_detection_threshold=4,
    )

    gaps = batch.processing_stats.gaps_detected
    assert len(gaps) == 1
    gap = gaps[0]
    assert gap.severity == "high"
    assert gap.gap_type == "missing-coverage"
    assert gap.duration_hours == pytest.approx(30)
    assert gap.affected_sources == [SourceType.ARCHIVE, SourceType.API_CHRONOLOGICAL]
    assert gap.description == "30.0h gap between archive and api-chronological"
    assert gap.mitigation_suggestions


@pytest.mark.parametrize(
    "hours, severity",
    [(5, "low"), (10, "medium"), (25, "high")],
)
def test_gap_severity(engine, make_submission, hours, severity):
    batch = engine.merge_temporal_data(
        historical([make_submission("a", 1000)]),
        api([make_submission("b", 1000 + hours * 3600)]),
    )

    assert [gap.severity for gap in batch.processing_stats.gaps_detected] == [severity]


def test_gaps_below_threshold_and_disabled_detection(engine, make_submission):
    hist = historical([make_submission("a", 1000)])
    api_batch = api([make_submission("b", 1000 + 3 * 3600)])

    assert engine.merge_temporal_data(hist, api_batch).processing_stats.gaps_detected == []

    long_gap = api([make_submission("b", 1000 + 48 * 3600)])
    disabled = engine.merge_temporal_data(hist, long_gap, enable_gap_detection=False)
    assert disabled.processing_stats.gaps_detected == []


def test_counts_near_duplicates_without_removing_them(engine, make_submission):
    batch = engine.merge_temporal_data(
        historical([make_submission("same", 1000)]),
        api([make_submission("same", 1030)]),
    )

    assert batch.processing_stats.duplicates_detected == 1
    assert batch.total_items == 2


def test_reoccurrence_outside_tolerance_is_not_counted(engine, make_submission):
    batch = engine.merge_temporal_data(
        historical([make_submission("same", 1000)]),
        api([make_submission("same", 1000 + 61)]),
    )

    assert batch.processing_stats.duplicates_detected == 0


def test_numeric_string_timestamps_are_normalized(engine, make_submission):
    batch = engine.merge_temporal_data(
        historical([make_submission("hist1", 1609459200)]),
        api([make_submission("api1", "1609459300")]),
    )

    assert [item.normalized_timestamp for item in batch.merged_items] == [1609459200, 1609459300]
    assert batch.merged_items[1].payload["created_utc"] == 1609459300


def test_unparseable_timestamps_drop_only_that_item(engine, make_submission):
    batch = engine.merge_temporal_data(
        historical([make_submission("good", 1000), make_submission("bad", "yesterday")]),
        api([make_submission("none", None), make_submission("api1", 2000)]),
    )

    assert ids(batch) == ["good", "api1"]
    assert batch.total_items == 2


def test_missing_ids_fail_validation(engine, make_submission):
    with pytest.raises(MergeValidationError) as excinfo:
        engine.merge_temporal_data(
            historical([make_submission("", 1000)]),
            api([make_submission("api1", 1100)]),
        )

    error = excinfo.value
    assert error.quality_score == 95
    assert [issue.issue_type for issue in error.issues] == ["attribution_missing"]
    assert error.context["phase"] == "validation"
    assert isinstance(error, DataMergeError)


def test_validation_can_be_disabled(engine, make_submission):
    batch = engine.merge_temporal_data(
        historical([make_submission("", 1000)]),
        api([make_submission("api1", 1100)]),
        validate_timestamps=False,
    )

    assert batch.validation is None
    assert batch.invalid_items == 1
    assert batch.valid_items == 1


def test_high_gaps_lower_the_quality_score_without_failing(engine, make_submission):
    batch = engine.merge_temporal_data(
        historical([make_submission("a", 1000), make_submission("b", 1000 + 30 * 3600)]),
        api([make_submission("c", 1000 + 60 * 3600)]),
    )

    validation = batch.validation
    assert validation.is_valid
    assert validation.validation_passed
    assert validation.quality_score == 94
    assert validation.issues[0].issue_type == "data_gap"
    assert validation.issues[0].severity == "warning"
    assert "Review merge configuration parameters" in validation.recommendations


def test_clean_batch_has_perfect_score(engine, make_submission):
    batch = engine.merge_temporal_data(
        historical([make_submission("a", 1000)]),
        api([make_submission("b", 1100)]),
    )

    assert batch.validation.quality_score == 100
    assert batch.validation.issues == []
    assert batch.validation.recommendations == []


def test_rejects_oversized_input(make_submission):
    engine = TemporalMergeEngine(MergeConfig(max_batch_size=2))

    with pytest.raises(DataMergeError) as excinfo:
        engine.merge_temporal_data(
            historical([make_submission("a", 1000), make_submission("b", 1001)]),
            api([make_submission("c", 1002)]),
        )

    assert excinfo.value.error_code == "BATCH_TOO_LARGE"
    assert excinfo.value.context["size"] == 3


def test_rejects_unknown_api_source_type(engine, make_submission):
    with pytest.raises(DataMergeError) as excinfo:
        engine.merge_temporal_data(
            historical([make_submission("a", 1000)]),
            api([make_submission("b", 1001)], source_type="api-firehose"),
        )

    assert excinfo.value.error_code == "UNKNOWN_SOURCE_TYPE"
    assert excinfo.value.context["phase"] == "input_validation"
    assert excinfo.value.context["source_type"] == "api-firehose"
    assert isinstance(excinfo.value.__cause__, ValueError)


def test_unexpected_failures_are_wrapped(engine, make_submission, mocker):
    mocker.patch.object(TemporalMergeEngine, "_order", side_effect=RuntimeError("boom"))

    with pytest.raises(DataMergeError) as excinfo:
        engine.merge_temporal_data(historical([make_submission("a", 1000)]), api())

    assert excinfo.value.context["phase"] == "merge_execution"
    assert isinstance(excinfo.value.__cause__, RuntimeError)


def test_records_prometheus_metrics(make_submission):
    exporter = MagicMock()
    engine = TemporalMergeEngine(prometheus_exporter=exporter)

    engine.merge_temporal_data(
        historical([make_submission("a", 1000)]),
        api([make_submission("b", 1000 + 30 * 3600)]),
    )

    exporter.time_merge.assert_called_once()
    exporter.record_merged_items.assert_any_call("archive", 1)
    exporter.record_merged_items.assert_any_call("api-chronological", 1)
    exporter.record_gap.assert_called_once_with("high")


def test_convert_to_llm_input(engine, make_submission, make_comment):
    batch = engine.merge_temporal_data(
        historical(
            [make_submission("p1", 1609459200, selftext=None)],
            [make_comment("c1", 1609459260, link_id="t3_p1")],
        ),
        api(),
    )

    result = engine.convert_to_llm_input(batch)

    assert result["posts"] == [
        {
            "post_id": "p1",
            "title": "Title p1",
            "content": "",
            "subreddit": "wallstreetbets",
            "created_at": "2021-01-01T00:00:00Z",
            "upvotes": 10,
            "url": "https://reddit.com/r/wallstreetbets/comments/p1",
            "comments": [],
        }
    ]
    assert result["comments"] == [
        {
            "comment_id": "c1",
            "content": "Comment c1",
            "author": "commenter",
            "upvotes": 3,
            "created_at": "2021-01-01T00:01:00Z",
            "parent_id": "t3_p1",
            "url": "https://reddit.com/r/stocks/comments/p1/_/c1",
        }
    ]
    metadata = result["source_metadata"]
    assert metadata["batch_id"] == batch.batch_id
    assert metadata["source_breakdown"]["archive"] == 2
    assert metadata["temporal_range"]["earliest"] == "2021-01-01T00:00:00Z"


@pytest.mark.parametrize(
    "raw, expected",
    [
        (1609459200, 1609459200),
        (1609459200.9, 1609459200),
        ("1609459200", 1609459200),
        (" 1609459200 ", 1609459200),
        ("1609459200.5", 1609459200),
        (0, None),
        (-5, None),
        (True, None),
        ("", None),
        ("soon", None),
        (None, None),
        (float("nan"), None),
        ([1609459200], None),
    ],
)
def test_normalize_timestamp(raw, expected):
    assert normalize_timestamp(raw) == expected
