"""Result types produced by one decompression run."""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class MemoryUsage:
    """Process resident memory in bytes, sampled during a run."""

    initial: int = 0
    peak: int = 0
    final: int = 0


@dataclass(frozen=True)
class ProcessingMetrics:
    """
    Counters for one completed or aborted stream run.

    ``total_lines`` counts non-blank lines received; it always equals
    ``valid_lines + error_lines``. Handler failures are tracked separately in
    ``handler_errors`` and never counted as line errors.
    """

    total_lines: int = 0
    valid_lines: int = 0
    error_lines: int = 0
    processing_time_ms: float = 0.0
    memory_usage: MemoryUsage = field(default_factory=MemoryUsage)
    average_line_processing_time_ms: float = 0.0
    handler_errors: int = 0
    stopped_early: bool = False

    @property
    def lines_per_second(self) -> float:
        if self.processing_time_ms <= 0:
            return 0.0
        return self.total_lines / (self.processing_time_ms / 1000)

    @property
    def error_rate(self) -> float:
        """Share of received lines that failed parsing or validation, in percent."""
        if self.total_lines == 0:
            return 0.0
        return self.error_lines / self.total_lines * 100
