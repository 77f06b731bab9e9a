"""Tests for the monitoring module."""

import time
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from reddit_ingest.models.stream import MemoryUsage, ProcessingMetrics
from reddit_ingest.monitoring.metrics import PrometheusExporter
from reddit_ingest.monitoring.processing_metrics import (
    ProcessingMetricsCollector,
    parse_archive_name,
)

MB = 1024 * 1024


class TestPrometheusExporter(unittest.TestCase):
    """Test cases for the PrometheusExporter class."""

    def setUp(self):
        """Set up test environment."""
        self.exporter = PrometheusExporter()

    def test_init(self):
        """Test initialization of metrics."""
        self.assertEqual(self.exporter.port, 8000)
        self.assertFalse(self.exporter.server_started)

    def test_start_server(self):
        """Test starting the Prometheus server."""
        with patch("reddit_ingest.monitoring.metrics.start_http_server") as mock_start_server:
            self.exporter.start_server()
            self.exporter.start_server()

            mock_start_server.assert_called_once_with(8000)
            self.assertTrue(self.exporter.server_started)

    def test_start_server_failure_is_logged(self):
        """Test that a busy port does not raise."""
        with patch("reddit_ingest.monitoring.metrics.start_http_server", side_effect=OSError("in use")):
            self.exporter.start_server()

        self.assertFalse(self.exporter.server_started)

    def test_record_stream_metrics(self):
        """Test recording the counters of a stream run."""
        with patch("reddit_ingest.monitoring.metrics.LINES_PROCESSED") as mock_lines, \
             patch("reddit_ingest.monitoring.metrics.HANDLER_ERRORS") as mock_handler_errors:
            self.exporter.record_stream_metrics(90, 10, 2)

            mock_lines.labels.assert_any_call(result="valid")
            mock_lines.labels.assert_any_call(result="error")
            mock_handler_errors.inc.assert_called_once_with(2)

    def test_record_duplicate(self):
        """Test recording a dropped duplicate."""
        with patch("reddit_ingest.monitoring.metrics.DUPLICATES_DETECTED") as mock_counter:
            self.exporter.record_duplicate("api-keyword")

            mock_counter.labels.assert_called_once_with(source_type="api-keyword")
            mock_counter.labels.return_value.inc.assert_called_once()

    def test_record_merged_items(self):
        """Test recording merged record counts."""
        with patch("reddit_ingest.monitoring.metrics.MERGED_ITEMS") as mock_counter:
            self.exporter.record_merged_items("archive", 12)

            mock_counter.labels.assert_called_once_with(source_type="archive")
            mock_counter.labels.return_value.inc.assert_called_once_with(12)

    def test_set_batch_size(self):
        """Test setting the batch size gauge."""
        with patch("reddit_ingest.monitoring.metrics.CURRENT_BATCH_SIZE") as mock_gauge:
            self.exporter.set_batch_size("batch_x", 750)

            mock_gauge.labels.assert_called_once_with(job_id="batch_x")
            mock_gauge.labels.return_value.set.assert_called_once_with(750)

    def test_time_merge(self):
        """Test merge timing."""
        with patch("reddit_ingest.monitoring.metrics.MERGE_DURATION") as mock_histogram:
            with self.exporter.time_merge() as timer:
                self.assertIsNotNone(timer.start_time)
                time.sleep(0.01)

            mock_histogram.observe.assert_called_once()


def run_metrics(total, valid, time_ms, initial=100 * MB, peak=100 * MB, handler_errors=0):
    return ProcessingMetrics(
        total_lines=total,
        valid_lines=valid,
        error_lines=total - valid,
        processing_time_ms=time_ms,
        memory_usage=MemoryUsage(initial=initial, peak=peak, final=initial),
        handler_errors=handler_errors,
    )


class TestProcessingMetricsCollector(unittest.TestCase):
    """Test cases for the ProcessingMetricsCollector class."""

    def setUp(self):
        """Set up test environment."""
        self.collector = ProcessingMetricsCollector()
        self.start = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def record(self, path, metrics, **kwargs):
        return self.collector.record_file_metrics(
            path, self.start, self.start + timedelta(seconds=1), metrics, **kwargs
        )

    def test_parse_archive_name(self):
        """Test subreddit and type detection from dump file names."""
        self.assertEqual(parse_archive_name("/dumps/WallStreetBets_comments.zst"), ("wallstreetbets", "comments"))
        self.assertEqual(parse_archive_name("stocks_submissions.ndjson"), ("stocks", "submissions"))
        self.assertEqual(parse_archive_name("/dumps/RS_2023-01.zst"), ("unknown", "unknown"))

    def test_empty_aggregate(self):
        """Test aggregation with no recorded runs."""
        aggregated = self.collector.get_aggregated_metrics()

        self.assertEqual(aggregated["total_files"], 0)
        self.assertEqual(aggregated["subreddit_breakdown"], {})
        self.assertEqual(self.collector.get_performance_summary()["overall"], "No Data")

    def test_aggregates_across_files(self):
        """Test totals, speed and per-subreddit breakdown."""
        self.record("stocks_submissions.zst", run_metrics(1000, 990, 500))
        self.record("stocks_comments.zst", run_metrics(3000, 3000, 1500, handler_errors=4))
        self.record("investing_comments.zst", run_metrics(1000, 1000, 1000))

        aggregated = self.collector.get_aggregated_metrics()

        self.assertEqual(aggregated["total_files"], 3)
        self.assertEqual(aggregated["total_lines"], 5000)
        self.assertEqual(aggregated["total_valid_lines"], 4990)
        self.assertEqual(aggregated["total_error_lines"], 10)
        self.assertEqual(aggregated["total_handler_errors"], 4)
        self.assertAlmostEqual(aggregated["average_processing_speed"], 5000 / 3)
        self.assertAlmostEqual(aggregated["error_rate"], 0.2)
        self.assertEqual(aggregated["subreddit_breakdown"]["stocks"]["files"], 2)
        self.assertEqual(aggregated["subreddit_breakdown"]["stocks"]["lines"], 4000)
        self.assertEqual(len(self.collector.get_subreddit_metrics("Stocks")), 2)

    def test_aborted_runs_are_counted(self):
        """Test that a failed run is kept with its partial counters."""
        self.record("stocks_submissions.zst", run_metrics(1000, 1000, 500))
        entry = self.record("stocks_comments.zst", run_metrics(40, 40, 100), error_code="PROCESSING_TIMEOUT")

        self.assertFalse(entry.succeeded)
        aggregated = self.collector.get_aggregated_metrics()
        self.assertEqual(aggregated["total_files"], 2)
        self.assertEqual(aggregated["failed_files"], 1)
        self.assertEqual(aggregated["total_lines"], 1040)

    def test_explicit_labels_override_file_name(self):
        """Test that callers can tag runs explicitly."""
        entry = self.record("RS_2023-01.zst", run_metrics(10, 10, 10), subreddit="all", file_type="submissions")

        self.assertEqual(entry.subreddit, "all")
        self.assertEqual(entry.file_type, "submissions")

    def test_memory_efficiency(self):
        """Test memory efficiency from initial and peak memory."""
        self.record("a_comments.zst", run_metrics(10, 10, 10, initial=100 * MB, peak=100 * MB))
        self.assertEqual(self.collector.get_aggregated_metrics()["memory_efficiency"], 100.0)

        self.collector.reset()
        self.record("a_comments.zst", run_metrics(10, 10, 10, initial=100 * MB, peak=150 * MB))
        self.assertAlmostEqual(self.collector.get_aggregated_metrics()["memory_efficiency"], 75.0)

    def test_performance_summary_excellent(self):
        """Test the rating of a fast, clean run."""
        self.record("a_comments.zst", run_metrics(10000, 10000, 1000))

        summary = self.collector.get_performance_summary()

        self.assertEqual(summary["overall"], "Excellent")
        self.assertEqual(summary["warnings"], [])

    def test_performance_summary_warnings(self):
        """Test warnings for slow, error-prone, memory-hungry runs."""
        self.record("a_comments.zst", run_metrics(100, 80, 1000, initial=100 * MB, peak=200 * MB))

        summary = self.collector.get_performance_summary()

        self.assertEqual(summary["overall"], "Needs Improvement")
        self.assertEqual(len(summary["warnings"]), 3)
        self.assertEqual(len(summary["recommendations"]), 3)

    def test_performance_summary_fair(self):
        """Test a single warning."""
        self.record("a_comments.zst", run_metrics(500, 500, 1000))

        self.assertEqual(self.collector.get_performance_summary()["overall"], "Fair")

    def test_reset(self):
        """Test that reset clears every recorded run."""
        self.record("a_comments.zst", run_metrics(10, 10, 10))
        self.collector.reset()

        self.assertEqual(self.collector.get_raw_metrics(), [])


if __name__ == "__main__":
    unittest.main()
