"""
Table references and per-output shared state.

``TableRotation`` and ``SchemaCache`` are shared by every writer thread of
one output; each owns a single lock.
"""

import logging
import random
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Iterable, List, Optional

from bq_ingest.errors import ConfigurationError, UnRetryableError
from bq_ingest.schema import RecordSchema

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableRef:
    """Destination table: (project, dataset, table)."""

    project: str
    dataset: str
    table: str

    def with_suffix(self, suffix: Optional[str]) -> "TableRef":
        if not suffix:
            return self
        return TableRef(self.project, self.dataset, f"{self.table}{suffix}")

    @property
    def key(self) -> str:
        return f"{self.project}.{self.dataset}.{self.table}"

    @property
    def path(self) -> str:
        return f"projects/{self.project}/datasets/{self.dataset}/tables/{self.table}"

    def to_api_repr(self) -> Dict[str, str]:
        return {
            "projectId": self.project,
            "datasetId": self.dataset,
            "tableId": self.table,
        }

    def __str__(self) -> str:
        return f"{self.project}:{self.dataset}.{self.table}"


class TableRotation:
    """Round-robin cursor over the configured table names."""

    def __init__(
        self,
        tables: Iterable[str],
        shuffle: bool = True,
        rng: Optional[random.Random] = None,
    ):
        names: List[str] = list(tables)
        if not names:
            raise ConfigurationError("'table' or 'tables' must be specified")
        if shuffle:
            (rng or random.Random()).shuffle(names)
        self._queue: Deque[str] = deque(names)
        self._lock = threading.Lock()

    def next(self) -> str:
        """Take the table at the front and move it to the back."""
        with self._lock:
            name = self._queue.popleft()
            self._queue.append(name)
            return name

    @property
    def tables(self) -> List[str]:
        with self._lock:
            return list(self._queue)


class SchemaCache:
    """
    Schemas fetched from BigQuery, refreshed after ``expire_seconds``.

    When a refresh fails the previous schema stays in use; the first fetch of
    a table has no such fallback.
    """

    def __init__(
        self,
        expire_seconds: float = 600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.expire_seconds = expire_seconds
        self._clock = clock
        self._schemas: Dict[str, RecordSchema] = {}
        self._fetched_at: Dict[str, float] = {}
        self._lock = threading.Lock()

    def peek(self, table_ref: TableRef) -> Optional[RecordSchema]:
        with self._lock:
            return self._schemas.get(table_ref.key)

    def get(
        self,
        table_ref: TableRef,
        fetch: Callable[[TableRef], Optional[List[dict]]],
    ) -> RecordSchema:
        key = table_ref.key
        with self._lock:
            now = self._clock()
            last = self._fetched_at.get(key)
            if last is not None and now - last <= self.expire_seconds:
                return self._schemas[key]

            fields = fetch(table_ref)
            if fields:
                schema = RecordSchema("record")
                schema.load_schema(fields)
                self._schemas[key] = schema
            elif key in self._schemas:
                logger.warning(f"{table_ref} uses previous schema")
            else:
                raise UnRetryableError(f"failed to fetch schema from bigquery: {table_ref}")

            self._fetched_at[key] = now
            return self._schemas[key]
