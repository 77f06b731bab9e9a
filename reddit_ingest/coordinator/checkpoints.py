"""Checkpoint persistence for archive jobs.

Checkpoints record progress for reporting and resume intent only. The
compressed archive format has no random access, so a resumed job always
re-reads its file from the beginning.
"""

import asyncio
import json
import logging
import os
import threading
from typing import Any, Dict, List, Optional, Protocol

from reddit_ingest.models.checkpoint import CHECKPOINT_TYPES, ProcessingCheckpoint, utc_now

logger = logging.getLogger(__name__)


class CheckpointStore(Protocol):
    """
    Storage backend for checkpoints, keyed by job id.

    Implementations must tolerate concurrent writers for different jobs.
    """

    async def save(self, checkpoint: ProcessingCheckpoint) -> None:
        """Insert or replace a checkpoint."""
        ...

    async def get_latest(self, job_id: str) -> Optional[ProcessingCheckpoint]:
        """Return the most recent checkpoint of a job, or None."""
        ...

    async def list_all(self, job_id: str) -> List[ProcessingCheckpoint]:
        """Return every checkpoint of a job, oldest first."""
        ...

    async def delete(self, job_id: str, checkpoint_ids: Optional[List[str]] = None) -> int:
        """Delete the given checkpoints, or all of the job's checkpoints; return the count removed."""
        ...


def _ordering(checkpoint: ProcessingCheckpoint):
    return (checkpoint.sequence, checkpoint.timestamp)


class InMemoryCheckpointStore:
    """Checkpoint store held in process memory."""

    def __init__(self):
        self._lock = threading.Lock()
        self._checkpoints: Dict[str, Dict[str, ProcessingCheckpoint]] = {}

    async def save(self, checkpoint: ProcessingCheckpoint) -> None:
        with self._lock:
            self._checkpoints.setdefault(checkpoint.job_id, {})[checkpoint.checkpoint_id] = checkpoint

    async def get_latest(self, job_id: str) -> Optional[ProcessingCheckpoint]:
        checkpoints = await self.list_all(job_id)
        return checkpoints[-1] if checkpoints else None

    async def list_all(self, job_id: str) -> List[ProcessingCheckpoint]:
        with self._lock:
            return sorted(self._checkpoints.get(job_id, {}).values(), key=_ordering)

    async def delete(self, job_id: str, checkpoint_ids: Optional[List[str]] = None) -> int:
        with self._lock:
            job = self._checkpoints.get(job_id, {})
            if checkpoint_ids is None:
                removed = len(job)
                self._checkpoints.pop(job_id, None)
                return removed
            removed = 0
            for checkpoint_id in checkpoint_ids:
                if job.pop(checkpoint_id, None) is not None:
                    removed += 1
            return removed


class JsonFileCheckpointStore:
    """
    Checkpoint store writing one JSON file per checkpoint.

    Layout is ``<root>/<job_id>/<checkpoint_id>.json``. Files are written to a
    temporary name and renamed so a crash never leaves a truncated checkpoint.
    """

    def __init__(self, root_dir: str):
        """
        Initialize the JSON file store.

        Args:
            root_dir: Directory holding one sub-directory per job
        """
        self.root_dir = root_dir
        self._lock = threading.Lock()
        os.makedirs(root_dir, exist_ok=True)

    def _job_dir(self, job_id: str) -> str:
        return os.path.join(self.root_dir, job_id)

    async def save(self, checkpoint: ProcessingCheckpoint) -> None:
        await asyncio.to_thread(self._write, checkpoint)

    async def get_latest(self, job_id: str) -> Optional[ProcessingCheckpoint]:
        checkpoints = await self.list_all(job_id)
        return checkpoints[-1] if checkpoints else None

    async def list_all(self, job_id: str) -> List[ProcessingCheckpoint]:
        return await asyncio.to_thread(self._read_all, job_id)

    async def delete(self, job_id: str, checkpoint_ids: Optional[List[str]] = None) -> int:
        return await asyncio.to_thread(self._delete, job_id, checkpoint_ids)

    def _write(self, checkpoint: ProcessingCheckpoint) -> None:
        job_dir = self._job_dir(checkpoint.job_id)
        path = os.path.join(job_dir, f"{checkpoint.checkpoint_id}.json")
        with self._lock:
            os.makedirs(job_dir, exist_ok=True)
            tmp_path = f"{path}.tmp"
            with open(tmp_path, "w", encoding="utf-8") as file:
                json.dump(checkpoint.to_dict(), file, indent=2)
            os.replace(tmp_path, path)

    def _read_all(self, job_id: str) -> List[ProcessingCheckpoint]:
        job_dir = self._job_dir(job_id)
        with self._lock:
            if not os.path.isdir(job_dir):
                return []
            checkpoints = []
            for name in os.listdir(job_dir):
                if not name.endswith(".json"):
                    continue
                path = os.path.join(job_dir, name)
                try:
                    with open(path, "r", encoding="utf-8") as file:
                        checkpoints.append(ProcessingCheckpoint.from_dict(json.load(file)))
                except (OSError, ValueError, TypeError) as e:
                    logger.warning(f"Skipping unreadable checkpoint {path}: {e}")
        return sorted(checkpoints, key=_ordering)

    def _delete(self, job_id: str, checkpoint_ids: Optional[List[str]]) -> int:
        job_dir = self._job_dir(job_id)
        removed = 0
        with self._lock:
            if not os.path.isdir(job_dir):
                return 0
            if checkpoint_ids is None:
                names = [n for n in os.listdir(job_dir) if n.endswith(".json")]
            else:
                names = [f"{checkpoint_id}.json" for checkpoint_id in checkpoint_ids]
            for name in names:
                try:
                    os.remove(os.path.join(job_dir, name))
                    removed += 1
                except FileNotFoundError:
                    continue
            if checkpoint_ids is None and not os.listdir(job_dir):
                os.rmdir(job_dir)
        return removed


class CheckpointManager:
    """Creates typed checkpoints for a job and keeps its history bounded."""

    def __init__(self, store: CheckpointStore, max_checkpoints_per_job: int = 100):
        """
        Initialize the checkpoint manager.

        Args:
            store: Backend the checkpoints are written to
            max_checkpoints_per_job: Oldest checkpoints beyond this count are deleted
        """
        self.store = store
        self.max_checkpoints_per_job = max_checkpoints_per_job
        self._sequences: Dict[str, int] = {}

    async def write(
        self,
        job_id: str,
        file_path: str,
        checkpoint_type: str,
        processed_lines: int = 0,
        last_byte_position: int = 0,
        completion_percentage: float = 0.0,
        batch_config_snapshot: Optional[Dict[str, Any]] = None,
        metrics: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> ProcessingCheckpoint:
        """
        Persist a checkpoint of the given type.

        Args:
            job_id: Owning job
            file_path: Archive the job processes
            checkpoint_type: One of initial, progress, emergency, completion, failure
            processed_lines: Lines processed so far
            last_byte_position: Estimated position in the decompressed stream
            completion_percentage: Estimated progress, 0-100
            batch_config_snapshot: Batch settings in force when the checkpoint was taken
            metrics: Extra counters to store with the checkpoint
            error_message: Failure description for failure checkpoints

        Returns:
            The stored checkpoint
        """
        if checkpoint_type not in CHECKPOINT_TYPES:
            raise ValueError(f"Unknown checkpoint type: {checkpoint_type}")

        sequence = await self._next_sequence(job_id)
        checkpoint = ProcessingCheckpoint(
            checkpoint_id=f"{job_id}_cp_{sequence:06d}",
            job_id=job_id,
            file_path=file_path,
            processed_lines=processed_lines,
            last_byte_position=last_byte_position,
            completion_percentage=min(100.0, completion_percentage),
            timestamp=utc_now(),
            completed=checkpoint_type == "completion",
            checkpoint_type=checkpoint_type,
            sequence=sequence,
            error_message=error_message,
            batch_config_snapshot=dict(batch_config_snapshot or {}),
            metrics=dict(metrics or {}),
        )
        await self.store.save(checkpoint)
        await self._trim(job_id)

        logger.debug(
            f"Saved {checkpoint_type} checkpoint {checkpoint.checkpoint_id} "
            f"({processed_lines} lines, {checkpoint.completion_percentage:.1f}%)"
        )
        return checkpoint

    async def get_latest(self, job_id: str) -> Optional[ProcessingCheckpoint]:
        return await self.store.get_latest(job_id)

    async def get_all(self, job_id: str) -> List[ProcessingCheckpoint]:
        return await self.store.list_all(job_id)

    async def delete_checkpoints(self, job_id: str) -> int:
        removed = await self.store.delete(job_id)
        self._sequences.pop(job_id, None)
        logger.info(f"Deleted {removed} checkpoints for {job_id}")
        return removed

    async def _next_sequence(self, job_id: str) -> int:
        if job_id not in self._sequences:
            previous = await self.store.get_latest(job_id)
            # Another write for the same job may have seeded the counter meanwhile
            self._sequences.setdefault(job_id, previous.sequence if previous else 0)
        self._sequences[job_id] += 1
        return self._sequences[job_id]

    async def _trim(self, job_id: str) -> None:
        checkpoints = await self.store.list_all(job_id)
        excess = len(checkpoints) - self.max_checkpoints_per_job
        if excess > 0:
            stale = [c.checkpoint_id for c in checkpoints[:excess]]
            await self.store.delete(job_id, stale)
