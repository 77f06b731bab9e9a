"""Adaptive batch sizing driven by memory warnings."""

import logging
import math
from typing import Optional

from reddit_ingest.config import BatchConfig

logger = logging.getLogger(__name__)

SMALL_FILE_MB = 50
LARGE_FILE_MB = 500
ESTIMATED_ITEM_KB = 1


def clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(upper, value))


class AdaptiveBatchSizer:
    """
    Batch size state machine for one job.

    State is the current size plus counts of consecutive warned and quiet
    batches. Warnings are only recorded when they arrive; the size changes in
    ``next_batch_size`` at a batch boundary. Every size it returns lies in
    ``[min_batch_size, max_batch_size]``.
    """

    def __init__(self, config: BatchConfig, initial_size: Optional[int] = None):
        self.min_size = config.min_batch_size
        self.max_size = max(config.max_batch_size, config.min_batch_size)
        self.base_size = clamp(config.batch_size, self.min_size, self.max_size)
        self.shrink_factor = config.shrink_factor
        self.growth_factor = config.growth_factor
        self.quiet_batches_before_growth = config.quiet_batches_before_growth
        self.enabled = config.adaptive_batch_sizing

        self.current_size = clamp(initial_size or self.base_size, self.min_size, self.max_size)
        self.consecutive_warnings = 0
        self.consecutive_quiet = 0
        self._pending_warnings = 0

    @classmethod
    def for_file(cls, config: BatchConfig, file_size_bytes: int) -> "AdaptiveBatchSizer":
        """Pick a starting size from the archive's size and the memory ceiling."""
        if not config.adaptive_batch_sizing:
            return cls(config)

        size = config.batch_size
        file_mb = file_size_bytes / (1024 * 1024)
        if file_mb < SMALL_FILE_MB:
            size = size * 2
        elif file_mb > LARGE_FILE_MB:
            size = size // 2

        # Keep one batch under 30% of the usable memory (80% of the ceiling)
        usable_kb = config.max_memory_usage_mb * 1024 * 0.8
        memory_cap = math.floor(usable_kb * 0.3 / ESTIMATED_ITEM_KB)
        size = min(size, memory_cap)

        sizer = cls(config, initial_size=size)
        logger.debug(
            f"Initial batch size {sizer.current_size} for {file_mb:.1f}MB archive "
            f"(base {config.batch_size}, bounds [{sizer.min_size}, {sizer.max_size}])"
        )
        return sizer

    @property
    def under_pressure(self) -> bool:
        return self._pending_warnings > 0 or self.consecutive_warnings > 0

    def record_memory_warning(self) -> None:
        self._pending_warnings += 1

    def next_batch_size(self) -> int:
        """Apply recorded warnings at a batch boundary and return the size for the next batch."""
        if not self.enabled:
            self._pending_warnings = 0
            return self.current_size

        previous = self.current_size
        if self._pending_warnings:
            self.consecutive_warnings += 1
            self.consecutive_quiet = 0
            self.current_size = clamp(
                math.floor(self.current_size * self.shrink_factor), self.min_size, self.max_size
            )
        else:
            self.consecutive_warnings = 0
            self.consecutive_quiet += 1
            if (
                self.current_size < self.base_size
                and self.consecutive_quiet >= self.quiet_batches_before_growth
            ):
                grown = max(self.current_size + 1, math.ceil(self.current_size * self.growth_factor))
                self.current_size = clamp(min(grown, self.base_size), self.min_size, self.max_size)
                self.consecutive_quiet = 0
        self._pending_warnings = 0

        if self.current_size != previous:
            logger.info(f"Batch size adjusted {previous} -> {self.current_size}")
        return self.current_size

    def reset(self) -> None:
        self.current_size = self.base_size
        self.consecutive_warnings = 0
        self.consecutive_quiet = 0
        self._pending_warnings = 0
