"""
BigQuery Record Schema
----------------------
Typed field definitions and the coercion rules that turn arbitrary nested
input into BigQuery's wire representation.

A table schema is a ``RecordSchema`` tree. Leaves are ``FieldSchema`` objects
whose ``type`` selects a coercion function and whose ``mode`` decides how
absent values and sequences are handled.

Example:
    schema = RecordSchema("record")
    schema.load_schema([
        {"name": "id", "type": "INTEGER"},
        {"name": "tags", "type": "STRING", "mode": "REPEATED"},
    ])
    schema.format({"id": "42", "tags": ["a", None, "b"]})
    # {"id": 42, "tags": ["a", "b"]}
"""

import json
import logging
import re
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Union

from bq_ingest.errors import ConfigurationError

logger = logging.getLogger(__name__)

# https://cloud.google.com/bigquery/docs/reference/rest/v2/tables#TableFieldSchema.FIELDS.name
FIELD_NAME_PATTERN = re.compile(r"^[_A-Za-z][_A-Za-z0-9]{0,127}$")
INTEGER_PATTERN = re.compile(r"^-?[0-9]+$")
FLOAT_PATTERN = re.compile(r"^-?[0-9]+\.[0-9]+$")
FALSE_STRINGS = ("", "0", "false")


class FieldType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"
    DATE = "date"
    DATETIME = "datetime"
    TIME = "time"
    NUMERIC = "numeric"
    BIGNUMERIC = "bignumeric"
    JSON = "json"
    GEOGRAPHY = "geography"
    RECORD = "record"

    @classmethod
    def parse(cls, value: Union[str, "FieldType"]) -> "FieldType":
        if isinstance(value, FieldType):
            return value
        name = str(value).strip().lower()
        name = TYPE_ALIASES.get(name, name)
        try:
            return cls(name)
        except ValueError:
            raise ConfigurationError(f"Invalid field type: {value}") from None


# Standard SQL names returned by tables.get for some tables.
TYPE_ALIASES = {
    "int64": "integer",
    "float64": "float",
    "bool": "boolean",
    "struct": "record",
    "decimal": "numeric",
    "bigdecimal": "bignumeric",
}


class FieldMode(str, Enum):
    NULLABLE = "nullable"
    REQUIRED = "required"
    REPEATED = "repeated"

    @classmethod
    def parse(cls, value: Union[str, "FieldMode", None], field_name: str = "") -> "FieldMode":
        if value is None:
            return cls.NULLABLE
        if isinstance(value, FieldMode):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"Unrecognized mode for {field_name}: {value}"
            ) from None


def _dump_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def format_timestamp(value: datetime) -> str:
    """Render ``YYYY-MM-DD HH:MM:SS.ffffff+HH:MM`` (naive values are UTC)."""
    value = _as_utc(value)
    offset = value.strftime("%z")
    return value.strftime("%Y-%m-%d %H:%M:%S.%f") + f"{offset[:3]}:{offset[3:5]}"


def _coerce_string(value: Any, is_load: bool) -> str:
    if isinstance(value, (dict, list, tuple)):
        return _dump_json(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _coerce_json(value: Any, is_load: bool) -> Any:
    # load files embed the JSON as is, insertAll needs a string
    if is_load:
        return value
    return _dump_json(value)


def _coerce_integer(value: Any, is_load: bool) -> int:
    if isinstance(value, (int, float, Decimal)):
        try:
            return int(value)
        except (OverflowError, ValueError, InvalidOperation):
            raise ValueError(f"invalid INTEGER value: {value!r}") from None
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return int(Decimal(text))
    except (InvalidOperation, OverflowError, ValueError):
        raise ValueError(f"invalid INTEGER value: {value!r}") from None


def _coerce_float(value: Any, is_load: bool) -> float:
    return float(value)


def _coerce_numeric(value: Any, is_load: bool) -> str:
    if isinstance(value, bool):
        raise ValueError(f"invalid NUMERIC value: {value!r}")
    if isinstance(value, float):
        value = repr(value)
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"invalid NUMERIC value: {value!r}") from None
    if not number.is_finite():
        raise ValueError(f"invalid NUMERIC value: {value!r}")
    return format(number, "f")


def _coerce_boolean(value: Any, is_load: bool) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in FALSE_STRINGS
    return bool(value)


def _coerce_timestamp(value: Any, is_load: bool) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, date):
        return format_timestamp(datetime(value.year, value.month, value.day))
    if isinstance(value, str):
        if INTEGER_PATTERN.match(value):
            return int(value)
        if FLOAT_PATTERN.match(value):
            return float(value)
    return value


def _coerce_date(value: Any, is_load: bool) -> Any:
    if isinstance(value, (datetime, date)):
        return value.strftime("%Y-%m-%d")
    return value


def _coerce_datetime(value: Any, is_load: bool) -> Any:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%dT%H:%M:%S.%f")
    return value


def _coerce_time(value: Any, is_load: bool) -> Any:
    if isinstance(value, (datetime, time)):
        return value.strftime("%H:%M:%S.%f")
    return value


COERCIONS: Dict[FieldType, Callable[[Any, bool], Any]] = {
    FieldType.STRING: _coerce_string,
    FieldType.GEOGRAPHY: _coerce_string,
    FieldType.JSON: _coerce_json,
    FieldType.INTEGER: _coerce_integer,
    FieldType.FLOAT: _coerce_float,
    FieldType.NUMERIC: _coerce_numeric,
    FieldType.BIGNUMERIC: _coerce_numeric,
    FieldType.BOOLEAN: _coerce_boolean,
    FieldType.TIMESTAMP: _coerce_timestamp,
    FieldType.DATE: _coerce_date,
    FieldType.DATETIME: _coerce_datetime,
    FieldType.TIME: _coerce_time,
}


class FieldSchema:
    """One named, typed, mode-qualified field."""

    def __init__(
        self,
        name: str,
        field_type: Union[str, FieldType] = FieldType.STRING,
        mode: Union[str, FieldMode, None] = FieldMode.NULLABLE,
    ):
        self.mode = FieldMode.parse(mode, name)
        # https://cloud.google.com/bigquery/docs/schemas#column_names
        if not isinstance(name, str) or not FIELD_NAME_PATTERN.match(name):
            raise ConfigurationError(f"invalid bigquery field name: '{name}'")
        self.name = name
        self.type = FieldType.parse(field_type)

    def format(self, value: Any, is_load: bool = False) -> Any:
        """Apply mode handling, then the type coercion."""
        if self.mode is FieldMode.NULLABLE:
            return None if value is None else self.format_one(value, is_load)

        if self.mode is FieldMode.REQUIRED:
            if value is None:
                logger.warning(f"Required field {self.name} cannot be null")
                return None
            return self.format_one(value, is_load)

        if value is None:
            return []
        if not isinstance(value, (list, tuple)):
            raise TypeError(
                f"REPEATED field {self.name} expects a list, got {type(value).__name__}"
            )
        formatted = []
        for element in value:
            if element is None:
                continue
            result = self.format_one(element, is_load)
            if result is not None:
                formatted.append(result)
        return formatted

    def format_one(self, value: Any, is_load: bool = False) -> Any:
        return COERCIONS[self.type](value, is_load)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.value.upper(),
            "mode": self.mode.value.upper(),
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.name!r}, {self.type.value!r}, {self.mode.value!r})"


class RecordSchema(FieldSchema):
    """
    A RECORD field, and the root of a table schema.

    Children keep insertion order, which is the column order sent to
    BigQuery when a table is created or a load job carries the schema.
    """

    def __init__(self, name: str = "record", mode: Union[str, FieldMode, None] = FieldMode.NULLABLE):
        super().__init__(name, FieldType.RECORD, mode)
        self._fields: Dict[str, FieldSchema] = {}

    def __getitem__(self, name: str) -> FieldSchema:
        return self._fields[name]

    def __contains__(self, name: object) -> bool:
        return name in self._fields

    def __iter__(self) -> Iterator[FieldSchema]:
        return iter(self._fields.values())

    def __len__(self) -> int:
        return len(self._fields)

    def get(self, name: str) -> Optional[FieldSchema]:
        return self._fields.get(name)

    @property
    def empty(self) -> bool:
        return not self._fields

    def to_list(self) -> List[Dict[str, Any]]:
        """Return the ``schema.fields`` payload of the BigQuery API."""
        return [field.to_dict() for field in self._fields.values()]

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["fields"] = self.to_list()
        return result

    def load_schema(self, fields: List[Mapping[str, Any]], allow_overwrite: bool = True) -> None:
        """
        Register fields from a declarative list.

        Args:
            fields: ``[{"name", "type", "mode"?, "fields"?}, ...]`` as found in
                BigQuery JSON schema files and ``tables.get`` responses.
            allow_overwrite: Replace fields that already exist. When False,
                existing fields are kept as they are.

        Raises:
            ConfigurationError: On a missing or unknown type, an invalid name
                or mode, or a RECORD without nested fields.
        """
        for field in fields:
            if "type" not in field:
                raise ConfigurationError("field must have type")

            name = field.get("name")
            field_type = FieldType.parse(field["type"])

            if name in self._fields and not allow_overwrite:
                continue

            if field_type is FieldType.RECORD:
                if "fields" not in field:
                    raise ConfigurationError("record field must have fields")
                record = RecordSchema(name, field.get("mode"))
                record.load_schema(field["fields"], allow_overwrite)
                self._fields[name] = record
            else:
                self._fields[name] = FieldSchema(name, field_type, field.get("mode"))

    def register_field(self, name: str, field_type: Union[str, FieldType]) -> None:
        """
        Register a single NULLABLE field, creating parent records for dotted
        names (``"request.path"``).

        A name already registered as TIMESTAMP may be registered again; any
        other duplicate is a configuration error.
        """
        existing = self._fields.get(name)
        if existing is not None and existing.type is not FieldType.TIMESTAMP:
            raise ConfigurationError(f"field {name} is registered twice")

        if "." in name:
            record_name, field_name = name.split(".", 1)
            self._register_record_field(record_name).register_field(field_name, field_type)
            return

        field_type = FieldType.parse(field_type)
        if field_type is FieldType.RECORD:
            self._fields[name] = RecordSchema(name)
        else:
            self._fields[name] = FieldSchema(name, field_type)

    def _register_record_field(self, name: str) -> "RecordSchema":
        existing = self._fields.get(name)
        if existing is None:
            record = RecordSchema(name)
            self._fields[name] = record
            return record
        if not isinstance(existing, RecordSchema):
            raise ConfigurationError(
                f"field {name} is required to be a record but already registered as {existing!r}"
            )
        return existing

    def format_one(self, record: Any, is_load: bool = False) -> Dict[str, Any]:
        if not isinstance(record, Mapping):
            raise TypeError(
                f"RECORD field {self.name} expects a mapping, got {type(record).__name__}"
            )
        row: Dict[str, Any] = {}
        for key, value in record.items():
            if value is None:
                continue
            field = self._fields.get(key)
            if field is None:
                row[key] = value
                continue
            formatted = field.format(value, is_load)
            if formatted is not None:
                row[key] = formatted
        return row


def schema_from_fields(fields: List[Mapping[str, Any]], name: str = "record") -> RecordSchema:
    """Build a root ``RecordSchema`` from a declarative field list."""
    schema = RecordSchema(name)
    schema.load_schema(fields)
    return schema
