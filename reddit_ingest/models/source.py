"""Source attribution types."""

from enum import Enum


class SourceType(str, Enum):
    """Where a merged record came from."""

    ARCHIVE = "archive"
    API_CHRONOLOGICAL = "api-chronological"
    API_KEYWORD = "api-keyword"
    API_ON_DEMAND = "api-on-demand"

    @classmethod
    def parse(cls, value) -> "SourceType":
        """Accept either a SourceType or its string value."""
        if isinstance(value, cls):
            return value
        return cls(value)
