"""Checkpoint model persisted by the batch coordinator."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

CHECKPOINT_TYPES = ("initial", "progress", "emergency", "completion", "failure")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProcessingCheckpoint:
    """
    A snapshot of how far one archive job has progressed.

    Failure checkpoints (``checkpoint_type == "failure"``) carry ``error_message``.
    ``last_byte_position`` is an estimate derived from processed lines; it is
    never used to seek into the compressed stream.
    """

    checkpoint_id: str
    job_id: str
    file_path: str
    processed_lines: int = 0
    last_byte_position: int = 0
    completion_percentage: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)
    completed: bool = False
    checkpoint_type: str = "progress"
    sequence: int = 0
    error_message: Optional[str] = None
    batch_config_snapshot: Dict[str, Any] = field(default_factory=dict)
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_failure(self) -> bool:
        return self.checkpoint_type == "failure"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessingCheckpoint":
        values = dict(data)
        timestamp = values.get("timestamp")
        if isinstance(timestamp, str):
            values["timestamp"] = datetime.fromisoformat(timestamp)
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{key: value for key, value in values.items() if key in known})
