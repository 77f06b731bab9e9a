"""Tests for the streaming archive decompressor."""

import asyncio
import json
import sys

import pytest

from reddit_ingest.exceptions import (
    DecompressorUnavailableError,
    StreamAborted,
    StreamProcessorError,
    StreamTimeoutError,
)
from reddit_ingest.stream.decompressor import ArchiveDecompressor

VALID = {"id": "abc", "created_utc": 1609459200, "title": "hello"}


@pytest.fixture
def decompressor():
    # Plain NDJSON fixtures; cat stands in for the decompression utility
    return ArchiveDecompressor(command=["cat"])


@pytest.mark.asyncio
async def test_counts_valid_and_invalid_lines(decompressor, write_ndjson):
    path = write_ndjson([VALID, "{not json", {"id": "def", "created_utc": 1609459300}])
    calls = []

    metrics = await decompressor.stream_decompress(path, lambda item, n: calls.append((item["id"], n)))

    assert metrics.total_lines == 3
    assert metrics.valid_lines == 2
    assert metrics.error_lines == 1
    assert calls == [("abc", 1), ("def", 3)]
    assert metrics.total_lines == metrics.valid_lines + metrics.error_lines
    assert not metrics.stopped_early


@pytest.mark.asyncio
async def test_blank_lines_are_skipped_but_numbered(decompressor, write_ndjson):
    path = write_ndjson([VALID, "", "   ", VALID])
    line_numbers = []

    metrics = await decompressor.stream_decompress(path, lambda item, n: line_numbers.append(n))

    assert metrics.total_lines == 2
    assert line_numbers == [1, 4]


@pytest.mark.asyncio
async def test_validator_rejections_count_as_errors(decompressor, write_ndjson):
    path = write_ndjson([VALID, {"id": "x"}, [1, 2, 3]])
    seen = []

    metrics = await decompressor.stream_decompress(
        path,
        lambda item, n: seen.append(n),
        validator=lambda item: "created_utc" in item,
    )

    assert metrics.valid_lines == 1
    assert metrics.error_lines == 2
    assert seen == [1]


@pytest.mark.asyncio
async def test_handler_failures_do_not_count_as_line_errors(decompressor, write_ndjson):
    path = write_ndjson([VALID, VALID, VALID])
    handled = []

    def handler(item, line_number):
        if line_number == 2:
            raise RuntimeError("downstream hiccup")
        handled.append(line_number)

    metrics = await decompressor.stream_decompress(path, handler)

    assert handled == [1, 3]
    assert metrics.valid_lines == 3
    assert metrics.error_lines == 0
    assert metrics.handler_errors == 1


@pytest.mark.asyncio
async def test_async_handlers_run_in_line_order(decompressor, write_ndjson):
    path = write_ndjson([{"id": str(i), "created_utc": 1000 + i} for i in range(20)])
    order = []

    async def handler(item, line_number):
        await asyncio.sleep(0)
        order.append(line_number)

    metrics = await decompressor.stream_decompress(path, handler)

    assert order == list(range(1, 21))
    assert metrics.valid_lines == 20


@pytest.mark.asyncio
async def test_stream_aborted_propagates(decompressor, write_ndjson):
    path = write_ndjson([VALID, VALID, VALID])
    handled = []

    def handler(item, line_number):
        handled.append(line_number)
        if line_number == 2:
            raise StreamAborted("stop now")

    with pytest.raises(StreamAborted) as excinfo:
        await decompressor.stream_decompress(path, handler)

    assert handled == [1, 2]
    assert excinfo.value.partial_metrics.total_lines == 2
    assert excinfo.value.partial_metrics.valid_lines == 2


@pytest.mark.asyncio
async def test_max_lines_stops_early(decompressor, write_ndjson):
    path = write_ndjson([{"id": str(i), "created_utc": 1000 + i} for i in range(50)])
    handled = []

    metrics = await decompressor.stream_decompress(
        path, lambda item, n: handled.append(n), max_lines=5
    )

    assert metrics.total_lines == 5
    assert metrics.stopped_early
    assert handled == [1, 2, 3, 4, 5]


@pytest.mark.asyncio
async def test_max_lines_equal_to_file_length_is_not_early(decompressor, write_ndjson):
    path = write_ndjson([VALID, VALID])

    metrics = await decompressor.stream_decompress(path, lambda item, n: None, max_lines=2)

    assert metrics.total_lines == 2
    assert not metrics.stopped_early


@pytest.mark.asyncio
async def test_memory_is_tracked(decompressor, write_ndjson):
    path = write_ndjson([VALID])

    metrics = await decompressor.stream_decompress(path, lambda item, n: None)

    assert metrics.memory_usage.initial > 0
    assert metrics.memory_usage.peak >= metrics.memory_usage.initial
    assert metrics.memory_usage.peak >= metrics.memory_usage.final


@pytest.mark.asyncio
async def test_missing_file_is_a_file_access_error(decompressor, tmp_path):
    with pytest.raises(StreamProcessorError) as excinfo:
        await decompressor.stream_decompress(str(tmp_path / "missing.zst"), lambda item, n: None)

    assert excinfo.value.error_code == "FILE_ACCESS_ERROR"
    assert excinfo.value.context["phase"] == "file_access"


@pytest.mark.asyncio
async def test_missing_binary_is_unavailable_error(write_ndjson):
    decompressor = ArchiveDecompressor(command=["definitely-not-a-real-zstd-binary"])
    path = write_ndjson([VALID])

    with pytest.raises(DecompressorUnavailableError) as excinfo:
        await decompressor.stream_decompress(path, lambda item, n: None)

    assert excinfo.value.binary == "definitely-not-a-real-zstd-binary"


@pytest.mark.asyncio
async def test_non_zero_exit_is_a_decompression_error(write_ndjson):
    script = "import sys; sys.stderr.write('corrupt frame\\n'); sys.exit(3)"
    decompressor = ArchiveDecompressor(command=[sys.executable, "-c", script])
    path = write_ndjson([VALID])

    with pytest.raises(StreamProcessorError) as excinfo:
        await decompressor.stream_decompress(path, lambda item, n: None)

    error = excinfo.value
    assert error.error_code == "DECOMPRESSION_ERROR"
    assert error.context["exit_code"] == 3
    assert "corrupt frame" in error.context["stderr"]


@pytest.mark.asyncio
async def test_timeout_kills_the_subprocess(write_ndjson):
    script = (
        "import sys, time, json\n"
        "print(json.dumps({'id': 'a', 'created_utc': 1}), flush=True)\n"
        "time.sleep(30)\n"
    )
    decompressor = ArchiveDecompressor(command=[sys.executable, "-c", script])
    path = write_ndjson([VALID])
    handled = []

    with pytest.raises(StreamTimeoutError) as excinfo:
        await decompressor.stream_decompress(path, lambda item, n: handled.append(n), timeout_ms=2000)

    assert excinfo.value.error_code == "PROCESSING_TIMEOUT"
    assert excinfo.value.timeout_ms == 2000
    assert isinstance(excinfo.value, StreamProcessorError)
    assert handled == [1]
    assert excinfo.value.partial_metrics.total_lines == 1


@pytest.mark.asyncio
async def test_validate_installation_reports_version():
    script = "print('*** Zstandard CLI (64-bit) v1.5.5, by Yann Collet ***')"
    decompressor = ArchiveDecompressor(command=[sys.executable], version_args=["-c", script])

    info = await decompressor.validate_installation()

    assert info.available
    assert info.version == "1.5.5"


@pytest.mark.asyncio
async def test_validate_installation_missing_binary():
    decompressor = ArchiveDecompressor(command=["definitely-not-a-real-zstd-binary"])

    info = await decompressor.validate_installation()

    assert not info.available
    assert info.error


@pytest.mark.asyncio
async def test_oversized_lines_are_errors(write_ndjson):
    decompressor = ArchiveDecompressor(command=["cat"], line_limit=256)
    big = json.dumps({"id": "big", "created_utc": 1, "body": "x" * 100_000})
    path = write_ndjson([VALID, big, VALID, {"id": "last", "created_utc": 2}])
    handled = []

    metrics = await decompressor.stream_decompress(path, lambda item, n: handled.append((item["id"], n)))

    assert metrics.total_lines == 4
    assert metrics.error_lines == 1
    assert metrics.valid_lines == 3
    assert handled == [("abc", 1), ("abc", 3), ("last", 4)]
