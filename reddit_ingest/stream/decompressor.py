"""Streaming decompression of NDJSON archive dumps through an external utility.

The archive is never loaded into memory: the decompressor runs as a child
process and its stdout is read one line at a time. The next line is only read
after the handler for the previous one has finished, so a slow consumer slows
the subprocess down through the pipe instead of growing a buffer.
"""

import asyncio
import inspect
import json
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple, Union

import psutil

from reddit_ingest.exceptions import (
    DecompressorUnavailableError,
    IngestError,
    StreamAborted,
    StreamProcessorError,
    StreamTimeoutError,
)
from reddit_ingest.models.stream import MemoryUsage, ProcessingMetrics

logger = logging.getLogger(__name__)

ItemHandler = Callable[[Any, int], Union[None, Awaitable[None]]]
Validator = Callable[[Any], bool]

VERSION_PATTERN = re.compile(r"v(\d+\.\d+\.\d+)")
DEFAULT_COMMAND = ("zstd", "-dc", "--long=31")
DEFAULT_LINE_LIMIT = 16 * 1024 * 1024
STDERR_TAIL_BYTES = 4096


@dataclass(frozen=True)
class DecompressorInfo:
    """Result of probing the external decompression utility."""

    binary: str
    available: bool
    version: Optional[str] = None
    error: Optional[str] = None


class _RunState:
    """Mutable counters for a single stream run."""

    def __init__(self, initial_memory: int):
        self.total_lines = 0
        self.valid_lines = 0
        self.error_lines = 0
        self.handler_errors = 0
        self.stopped_early = False
        self.terminated = False
        self.initial_memory = initial_memory
        self.peak_memory = initial_memory
        self.stderr_tail = b""


class ArchiveDecompressor:
    """
    Runs a decompression command against an archive and feeds parsed lines to a handler.

    The command is ``[*command, file_path]``; it must write the decompressed
    NDJSON to stdout. Any command that does so works, which is how the tests
    run against plain text files with ``cat``.
    """

    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        line_limit: int = DEFAULT_LINE_LIMIT,
        version_args: Sequence[str] = ("--version",),
    ):
        """
        Initialize the decompressor.

        Args:
            command: Executable and arguments that decompress a file to stdout
            line_limit: Largest line, in bytes, the stream reader will buffer
            version_args: Arguments that make the executable print its version
        """
        self.command: List[str] = list(command or DEFAULT_COMMAND)
        self.line_limit = line_limit
        self.version_args = list(version_args)
        self._process_info = psutil.Process(os.getpid())

    @property
    def binary(self) -> str:
        return self.command[0]

    def _memory_rss(self) -> int:
        return self._process_info.memory_info().rss

    async def validate_installation(self, timeout_s: float = 10.0) -> DecompressorInfo:
        """
        Check that the decompression utility can be executed and report its version.

        Returns:
            DecompressorInfo; ``available`` is False when the binary is missing or fails
        """
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *self.version_args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            logger.error(f"Decompression utility '{self.binary}' cannot be executed: {e}")
            return DecompressorInfo(binary=self.binary, available=False, error=str(e))

        try:
            output, _ = await asyncio.wait_for(process.communicate(), timeout=timeout_s)
        except asyncio.TimeoutError:
            self._terminate(process)
            await process.wait()
            return DecompressorInfo(
                binary=self.binary, available=False, error=f"no response within {timeout_s}s"
            )

        text = output.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            return DecompressorInfo(
                binary=self.binary,
                available=False,
                error=f"exited with code {process.returncode}: {text[:200]}",
            )

        match = VERSION_PATTERN.search(text)
        version = match.group(1) if match else "unknown"
        logger.info(f"Decompression utility '{self.binary}' available (version {version})")
        return DecompressorInfo(binary=self.binary, available=True, version=version)

    async def stream_decompress(
        self,
        file_path: str,
        item_handler: ItemHandler,
        validator: Optional[Validator] = None,
        timeout_ms: int = 300000,
        max_lines: Optional[int] = None,
    ) -> ProcessingMetrics:
        """
        Decompress an archive and pass every valid JSON line to ``item_handler``.

        Args:
            file_path: Compressed NDJSON archive
            item_handler: Called as ``handler(item, line_number)``; may be a coroutine function
            validator: Optional predicate; items for which it returns False count as errors
            timeout_ms: Deadline for the whole run
            max_lines: Stop after this many non-blank lines

        Returns:
            ProcessingMetrics for the run

        Raises:
            StreamProcessorError: File missing or unreadable, or the utility exited with an error
            DecompressorUnavailableError: The utility could not be started
            StreamTimeoutError: The run did not finish within ``timeout_ms``
            StreamAborted: Re-raised unchanged when the handler raises it
        """
        if not os.path.isfile(file_path):
            raise StreamProcessorError.file_access(file_path, "file does not exist")
        if not os.access(file_path, os.R_OK):
            raise StreamProcessorError.file_access(file_path, "file is not readable")

        start = time.monotonic()
        state = _RunState(self._memory_rss())

        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                file_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.line_limit,
            )
        except OSError as e:
            raise DecompressorUnavailableError(self.binary, str(e)) from e

        logger.info(f"Started decompression of {file_path} (pid {process.pid})")
        stderr_task = asyncio.create_task(self._drain_stderr(process, file_path, state))

        try:
            await asyncio.wait_for(
                self._consume(process, state, item_handler, validator, max_lines),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            state.terminated = True
            await self._shutdown(process, stderr_task)
            logger.error(
                f"Decompression of {file_path} timed out after {timeout_ms}ms "
                f"({state.total_lines} lines seen)"
            )
            error = StreamTimeoutError(file_path, timeout_ms, state.total_lines)
            error.partial_metrics = self._metrics(state, start)
            raise error from None
        except IngestError as e:
            state.terminated = True
            await self._shutdown(process, stderr_task)
            e.partial_metrics = self._metrics(state, start)
            raise
        except BaseException:
            state.terminated = True
            await self._shutdown(process, stderr_task)
            raise

        await stderr_task
        return_code = process.returncode
        if return_code != 0 and not state.terminated:
            stderr = state.stderr_tail.decode("utf-8", errors="replace").strip()
            error = StreamProcessorError.decompression(
                file_path,
                f"{self.binary} exited with code {return_code}",
                exit_code=return_code,
                stderr=stderr,
            )
            error.partial_metrics = self._metrics(state, start)
            raise error

        metrics = self._metrics(state, start)
        logger.info(
            f"Finished decompression of {file_path}: {metrics.total_lines} lines, "
            f"{metrics.valid_lines} valid, {metrics.error_lines} errors, "
            f"{metrics.handler_errors} handler errors in {metrics.processing_time_ms:.0f}ms"
        )
        return metrics

    def _metrics(self, state: _RunState, start: float) -> ProcessingMetrics:
        final_memory = self._memory_rss()
        elapsed_ms = (time.monotonic() - start) * 1000
        return ProcessingMetrics(
            total_lines=state.total_lines,
            valid_lines=state.valid_lines,
            error_lines=state.error_lines,
            processing_time_ms=elapsed_ms,
            memory_usage=MemoryUsage(
                initial=state.initial_memory,
                peak=max(state.peak_memory, final_memory),
                final=final_memory,
            ),
            average_line_processing_time_ms=(
                elapsed_ms / state.total_lines if state.total_lines else 0.0
            ),
            handler_errors=state.handler_errors,
            stopped_early=state.stopped_early,
        )

    async def _consume(
        self,
        process: asyncio.subprocess.Process,
        state: _RunState,
        item_handler: ItemHandler,
        validator: Optional[Validator],
        max_lines: Optional[int],
    ) -> None:
        line_number = 0

        while True:
            raw, oversized = await self._read_line(process.stdout)
            if oversized:
                line_number += 1
                state.total_lines += 1
                state.error_lines += 1
                logger.warning(f"Line {line_number} exceeds {self.line_limit} bytes, skipped")
                continue

            if not raw:
                break
            line_number += 1

            line = raw.strip()
            if not line:
                continue

            if max_lines is not None and state.total_lines >= max_lines:
                state.stopped_early = True
                state.terminated = True
                self._terminate(process)
                logger.info(f"Reached max_lines={max_lines}, stopping stream")
                break

            state.total_lines += 1
            rss = self._memory_rss()
            if rss > state.peak_memory:
                state.peak_memory = rss

            try:
                item = json.loads(line)
            except ValueError as e:
                state.error_lines += 1
                logger.debug(f"Line {line_number}: invalid JSON ({e})")
                continue

            if validator is not None:
                try:
                    accepted = bool(validator(item))
                except Exception as e:
                    logger.debug(f"Line {line_number}: validator raised {e!r}")
                    accepted = False
                if not accepted:
                    state.error_lines += 1
                    logger.debug(f"Line {line_number}: rejected by validator")
                    continue

            state.valid_lines += 1

            try:
                result = item_handler(item, line_number)
                if inspect.isawaitable(result):
                    await result
            except StreamAborted:
                raise
            except Exception as e:
                state.handler_errors += 1
                logger.warning(f"Handler failed for line {line_number}: {e}")

        await process.wait()

    @staticmethod
    async def _read_line(stream: asyncio.StreamReader) -> Tuple[bytes, bool]:
        """Read one line, returning ``(b"", True)`` for a line over the reader limit.

        An oversized line is consumed up to and including its newline so the
        next read starts at the following line.
        """
        try:
            return await stream.readuntil(b"\n"), False
        except asyncio.IncompleteReadError as e:
            # Last line without a trailing newline, or b"" at end of stream
            return e.partial, False
        except asyncio.LimitOverrunError:
            pass

        while True:
            try:
                await stream.readuntil(b"\n")
                return b"", True
            except asyncio.IncompleteReadError:
                return b"", True
            except asyncio.LimitOverrunError as e:
                await stream.readexactly(e.consumed)

    async def _drain_stderr(
        self, process: asyncio.subprocess.Process, file_path: str, state: _RunState
    ) -> None:
        while True:
            chunk = await process.stderr.readline()
            if not chunk:
                break
            state.stderr_tail = (state.stderr_tail + chunk)[-STDERR_TAIL_BYTES:]
            message = chunk.decode("utf-8", errors="replace").strip()
            if message:
                logger.warning(f"{self.binary} stderr for {file_path}: {message}")

    def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass

    async def _shutdown(
        self, process: asyncio.subprocess.Process, stderr_task: "asyncio.Task[None]"
    ) -> None:
        self._terminate(process)
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
        if not stderr_task.done():
            stderr_task.cancel()
        try:
            await stderr_task
        except asyncio.CancelledError:
            pass
