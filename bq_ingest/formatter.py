"""
Record Formatter
----------------
Turns one raw record into a delivery-ready row:

1. inject the event time and routing tag
2. optionally rewrite top-level key names into valid column names
3. apply the table schema

Pure data transformation: no network and no file I/O.
"""

import csv
import io
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Pattern, Tuple, Union

from bq_ingest.schema import RecordSchema

logger = logging.getLogger(__name__)

INVALID_KEY_CHARS = re.compile(r"[^A-Za-z0-9_]")
LINE_FORMATS = ("json", "csv")

EventTime = Union[datetime, int, float, None]
SchemaProvider = Union[RecordSchema, Callable[[], RecordSchema]]


def compile_replacements(rules: Iterable[Tuple[str, str]]) -> List[Tuple[Pattern, str]]:
    """Compile ``(pattern, replacement)`` pairs, keeping their order."""
    return [(re.compile(pattern), replacement) for pattern, replacement in rules]


def to_utc_datetime(value: EventTime) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return datetime.fromtimestamp(value, tz=timezone.utc)


class RecordFormatter:
    """
    Format raw records against a schema.

    Args:
        schema_provider: A ``RecordSchema`` or a zero-argument callable
            returning one. A callable is resolved on every call so that
            refreshed schemas take effect immediately.
        time_field: Key receiving the event time.
        time_format: ``strftime`` pattern for the injected time. Without it
            the time is injected as a UTC ``datetime``.
        tag_field: Key receiving the routing tag.
        replace_record_key: Rewrite top-level keys into column-safe names.
        key_replacements: Ordered ``(regexp, replacement)`` pairs applied
            before invalid characters are stripped.
        is_load: Format for load job files instead of insertAll.
        line_format: ``json`` or ``csv`` rendering of ``format_line``.
    """

    def __init__(
        self,
        schema_provider: SchemaProvider,
        time_field: Optional[str] = None,
        time_format: Optional[str] = None,
        tag_field: Optional[str] = None,
        replace_record_key: bool = False,
        key_replacements: Iterable[Tuple[str, str]] = (),
        is_load: bool = False,
        line_format: str = "json",
    ):
        if line_format not in LINE_FORMATS:
            raise ValueError(f"unsupported line format: {line_format}")
        self._schema_provider = schema_provider
        self.time_field = time_field
        self.time_format = time_format
        self.tag_field = tag_field
        self.replace_record_key = replace_record_key
        self.key_replacements = compile_replacements(key_replacements)
        self.is_load = is_load
        self.line_format = line_format

    @property
    def schema(self) -> RecordSchema:
        if isinstance(self._schema_provider, RecordSchema):
            return self._schema_provider
        return self._schema_provider()

    def inject(self, tag: Optional[str], time: EventTime, record: Mapping[str, Any]) -> Dict[str, Any]:
        result = dict(record)
        if self.time_field:
            event_time = to_utc_datetime(time)
            if event_time is not None and self.time_format:
                result[self.time_field] = event_time.strftime(self.time_format)
            else:
                result[self.time_field] = event_time
        if self.tag_field:
            result[self.tag_field] = tag
        return result

    def rewrite_keys(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        rewritten = {}
        for key, value in record.items():
            new_key = str(key)
            for pattern, replacement in self.key_replacements:
                new_key = pattern.sub(replacement, new_key)
            rewritten[INVALID_KEY_CHARS.sub("", new_key)] = value
        return rewritten

    def format(self, tag: Optional[str], time: EventTime, record: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
        """Return the formatted row, or None when there is nothing to send."""
        return self._format_with(self.schema, tag, time, record)

    def _format_with(
        self, schema: RecordSchema, tag: Optional[str], time: EventTime, record: Optional[Mapping[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        if record is None:
            logger.warning(f"Skipping empty record (tag={tag})")
            return None

        try:
            row = self.inject(tag, time, record)
            if self.replace_record_key:
                row = self.rewrite_keys(row)
            row = schema.format(row, self.is_load)
        except Exception:
            logger.error(f"Failed to format record: {record!r} schema={schema.to_list()!r}")
            raise

        return row or None

    def format_line(self, tag: Optional[str], time: EventTime, record: Optional[Mapping[str, Any]]) -> Optional[bytes]:
        """Formatted row as one newline terminated JSON document or CSV line."""
        schema = self.schema
        row = self._format_with(schema, tag, time, record)
        if row is None:
            return None
        if self.line_format == "csv":
            return csv_line(row, schema).encode("utf-8")
        return (json.dumps(row, ensure_ascii=False, default=str) + "\n").encode("utf-8")


def csv_value(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
    return value


def csv_line(row: Mapping[str, Any], schema: RecordSchema) -> str:
    """
    Render ``row`` as one CSV line with one column per top-level schema
    field, in schema order. Keys outside the schema are dropped.
    """
    fieldnames = [field.name for field in schema]
    if not fieldnames:
        raise ValueError("CSV rows need a non-empty schema to order their columns")
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=fieldnames, extrasaction="ignore", lineterminator="\n")
    writer.writerow({name: csv_value(row.get(name)) for name in fieldnames})
    return buffer.getvalue()
