"""Defines the DataSink protocol for storage backends."""

from typing import List, Mapping, Any, Protocol, Set


class DataSink(Protocol):
    """
    A protocol that defines the interface for record storage sinks.

    Any implementation (CSV, database, ...) can receive the records accepted
    by the content pipeline.
    """

    def append(self, records: List[Mapping[str, Any]]) -> int:
        """
        Append records to the storage backend.

        Args:
            records: Normalized submission or comment records.

        Returns:
            The number of records successfully appended.
        """
        ...

    def load_ids(self) -> Set[str]:
        """
        Load all record IDs already present in the storage backend.

        Returns:
            A set of unique record IDs present in the storage.
        """
        ...
