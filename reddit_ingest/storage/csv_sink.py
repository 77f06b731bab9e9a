"""CSV storage for normalized archive records."""

import csv
import logging
import os
import threading
from typing import Any, List, Mapping, Sequence, Set

import pandas as pd

logger = logging.getLogger(__name__)

SUBMISSION_COLUMNS = [
    "id", "created_utc", "subreddit", "title", "selftext",
    "author", "score", "num_comments", "url", "permalink", "over_18",
]

COMMENT_COLUMNS = [
    "id", "created_utc", "subreddit", "body", "author",
    "score", "link_id", "parent_id", "permalink",
]


class CsvSink:
    """CSV file implementation of the DataSink interface."""

    def __init__(self, csv_path: str, columns: Sequence[str] = tuple(SUBMISSION_COLUMNS)):
        """
        Initialize the CSV sink with a file path.

        Args:
            csv_path: Path to the CSV file
            columns: Column order of the file
        """
        self.csv_path = csv_path
        self.columns = list(columns)
        # append rewrites the whole file; concurrent jobs share one sink
        self._lock = threading.Lock()
        self._ensure_directory()

    def _ensure_directory(self) -> None:
        """Ensure the directory for the CSV file exists."""
        directory = os.path.dirname(self.csv_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def _file_exists(self) -> bool:
        """Check if the CSV file already exists."""
        return os.path.exists(self.csv_path) and os.path.getsize(self.csv_path) > 0

    def append(self, records: List[Mapping[str, Any]]) -> int:
        """
        Append records to the CSV file.

        Records whose id is already in the file are dropped and the file stays
        sorted by ``created_utc``.

        Args:
            records: List of normalized records to append

        Returns:
            Number of records successfully appended

        Raises:
            Exception: If the file cannot be read or written
        """
        if not records:
            return 0

        with self._lock:
            return self._rewrite(records)

    def _rewrite(self, records: List[Mapping[str, Any]]) -> int:
        try:
            df = pd.DataFrame(list(records)).reindex(columns=self.columns)
            df["id"] = df["id"].astype(str)

            if self._file_exists():
                existing_df = pd.read_csv(self.csv_path, encoding="utf-8", dtype={"id": str})
                df = pd.concat([existing_df, df], ignore_index=True)
                df = df.drop_duplicates(subset=["id"], keep="first")

            # Archive timestamps arrive as int or numeric strings
            df["created_utc"] = pd.to_numeric(df["created_utc"], errors="coerce")
            df = df.sort_values(by="created_utc", ascending=True, kind="stable")

            df.to_csv(
                self.csv_path,
                mode="w",
                index=False,
                header=True,
                quoting=csv.QUOTE_MINIMAL,
                encoding="utf-8",
            )

            count = len(records)
            logger.info(f"Appended {count} records to {self.csv_path}")
            return count

        except Exception as e:
            logger.error(f"Failed to append records to CSV: {str(e)}")
            raise

    def load_ids(self) -> Set[str]:
        """
        Load existing record IDs from the CSV file.

        Returns:
            Set of record IDs already in the CSV
        """
        if not self._file_exists():
            return set()

        try:
            ids = pd.read_csv(self.csv_path, usecols=["id"], dtype={"id": str})["id"].unique()
            id_set = set(ids)
            logger.info(f"Loaded {len(id_set)} existing record IDs from {self.csv_path}")
            return id_set

        except Exception as e:
            logger.error(f"Failed to load IDs from CSV: {str(e)}")
            return set()
