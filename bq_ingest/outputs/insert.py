"""
Streaming insert output (``tabledata.insertAll``).
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from bq_ingest.chunk import Chunk
from bq_ingest.config import InsertOutputConfig
from bq_ingest.errors import ConfigurationError, UnRetryableError
from bq_ingest.outputs.base import BigQueryOutput
from bq_ingest.writer import InsertResult

logger = logging.getLogger(__name__)

BRACKET_KEY = re.compile(r"""\[\s*['"]([^'"]+)['"]\s*\]""")


def record_accessor(path: str) -> Callable[[Mapping[str, Any]], Any]:
    """
    Build a getter for a record path.

    ``$.a.b`` and ``$['a']['b']`` walk nested mappings; any other string is
    a literal top-level key, dots included.
    """
    if not path.startswith(("$.", "$[")):
        if "." in path:
            logger.warning(f"'{path}' is read as a top-level key, use '$.{path}' for a nested one")
        return lambda record: record.get(path)

    rest = path[1:]
    keys: List[str] = []
    while rest:
        if rest.startswith("."):
            match = re.match(r"\.([^.\[]+)", rest)
        else:
            match = BRACKET_KEY.match(rest)
        if match is None:
            raise ConfigurationError(f"invalid record path: {path}")
        keys.append(match.group(1))
        rest = rest[match.end():]

    def get(record: Mapping[str, Any]) -> Any:
        value: Any = record
        for key in keys:
            if not isinstance(value, Mapping):
                return None
            value = value.get(key)
        return value

    return get


class InsertOutput(BigQueryOutput):
    """Delivers each chunk with one insertAll call."""

    config: InsertOutputConfig

    def __init__(self, config: InsertOutputConfig, **kwargs: Any):
        super().__init__(config, **kwargs)
        self._get_insert_id = record_accessor(config.insert_id_field) if config.insert_id_field else None

    def build_rows(self, chunk: Chunk) -> List[Dict[str, Any]]:
        now = None
        if self.config.add_insert_timestamp:
            now = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")

        rows = []
        for line in chunk.lines():
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                raise UnRetryableError(f"chunk {chunk.unique_id_hex} holds invalid JSON: {e}", e) from e
            if now is not None:
                record[self.config.add_insert_timestamp] = now
            row: Dict[str, Any] = {"json": record}
            if self._get_insert_id is not None:
                insert_id = self._get_insert_id(record)
                if insert_id is not None:
                    row["insertId"] = str(insert_id)
            rows.append(row)
        return rows

    def write(self, chunk: Chunk) -> Optional[InsertResult]:
        table_ref = self.next_table()
        rows = self.build_rows(chunk)
        if not rows:
            logger.debug(f"Chunk {chunk.unique_id_hex} is empty, nothing to insert")
            return None
        return self.writer.insert_rows(
            table_ref,
            rows,
            template_suffix=self.config.template_suffix,
            schema=self.get_schema(),
        )
