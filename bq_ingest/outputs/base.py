"""
Base BigQuery Output
--------------------
Shared plumbing of the insert and load outputs: schema resolution,
table rotation, record formatting and secondary escalation.

Subclasses implement ``write(chunk)``; callers use ``deliver(chunk)``.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Union

from bq_ingest.auth import Authenticator, GoogleAuthenticator
from bq_ingest.chunk import Chunk
from bq_ingest.config import OutputConfig, read_schema_file
from bq_ingest.errors import Error, UnRetryableError
from bq_ingest.formatter import RecordFormatter
from bq_ingest.schema import RecordSchema
from bq_ingest.tables import SchemaCache, TableRef, TableRotation
from bq_ingest.writer import BigQueryWriter

logger = logging.getLogger(__name__)

SecondaryHook = Callable[[Chunk, Error], None]


class BigQueryOutput(ABC):
    """
    Base class for BigQuery outputs.

    Args:
        config: Validated output configuration.
        authenticator: Token source; built from ``auth_method`` when omitted.
        writer: Pre-built writer, mainly for tests.
        secondary: Called with the chunk and the error when delivery fails
            for a reason retrying will not fix.
    """

    is_load = False

    def __init__(
        self,
        config: OutputConfig,
        authenticator: Optional[Authenticator] = None,
        writer: Optional[BigQueryWriter] = None,
        secondary: Optional[SecondaryHook] = None,
    ):
        self.config = config
        if writer is None:
            authenticator = authenticator or GoogleAuthenticator(config.auth_method, config.json_key)
            writer = BigQueryWriter(authenticator, config.writer_options())
        self.writer = writer
        self.secondary = secondary

        self.table_schema = config.build_schema()
        self.rotation = TableRotation(config.table_names)
        self.schema_cache = SchemaCache(config.schema_cache_expire)
        self._read_schemas: Dict[str, RecordSchema] = {}
        self._read_schemas_lock = threading.Lock()

        self.formatter = RecordFormatter(
            self.current_schema,
            time_field=config.time_field,
            time_format=config.time_format,
            tag_field=config.tag_field,
            replace_record_key=config.replace_record_key,
            key_replacements=config.key_replacements,
            is_load=self.is_load,
            line_format=config.line_format,
        )

    def table_ref(self, table: str) -> TableRef:
        return TableRef(self.config.project, self.config.dataset, table)

    def next_table(self) -> TableRef:
        return self.table_ref(self.rotation.next())

    @property
    def fetch_schema_target(self) -> TableRef:
        return self.table_ref(self.config.fetch_schema_table or self.config.table_names[0])

    def read_schema(self) -> RecordSchema:
        path = self.config.schema_path
        with self._read_schemas_lock:
            if path not in self._read_schemas:
                self._read_schemas[path] = read_schema_file(path)
                logger.debug(f"Read schema from {path}")
            return self._read_schemas[path]

    def current_schema(self) -> RecordSchema:
        """Schema used to format records, refreshing a fetched schema when expired."""
        if self.config.fetch_schema:
            return self.schema_cache.get(self.fetch_schema_target, self.writer.fetch_schema)
        if self.config.schema_path:
            return self.read_schema()
        return self.table_schema

    def get_schema(self) -> RecordSchema:
        """Schema sent along with table creation and load jobs."""
        if self.config.fetch_schema:
            cached = self.schema_cache.peek(self.fetch_schema_target)
            if cached is not None:
                return cached
        return self.current_schema()

    def format(
        self,
        tag: Optional[str],
        time: Union[datetime, int, float, None],
        record: Optional[Mapping[str, Any]],
    ) -> Optional[bytes]:
        return self.formatter.format_line(tag, time, record)

    @abstractmethod
    def write(self, chunk: Chunk) -> Any:
        pass

    def escalate(self, chunk: Chunk, error: Error) -> bool:
        """Hand a chunk to the secondary hook. Returns False if there is none."""
        if self.secondary is None:
            return False
        logger.warning(
            f"Sending chunk {chunk.unique_id_hex} to secondary: {error}"
        )
        self.secondary(chunk, error)
        return True

    def deliver(self, chunk: Chunk) -> Any:
        """
        Write a chunk. Retryable errors are raised for the caller to requeue;
        non retryable ones go to the secondary hook when one is configured.
        """
        try:
            return self.write(chunk)
        except UnRetryableError as e:
            logger.error(f"Failed to deliver chunk {chunk.unique_id_hex}: {e}")
            if self.escalate(chunk, e):
                return None
            raise

    def start(self) -> None:
        pass

    def shutdown(self) -> None:
        pass
