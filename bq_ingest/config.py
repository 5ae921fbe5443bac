"""
Output Configuration
--------------------
Pydantic models describing one BigQuery output, loaded from YAML.

Example (``output.yaml``)::

    method: insert
    project: my-project
    dataset: logs
    tables: [access_1, access_2]
    auth_method: json_key
    json_key: /secrets/sa.json
    time_field: time
    schema:
      - {name: time, type: TIMESTAMP}
      - {name: status, type: INTEGER}
    insert_id_field: $.request.id
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from bq_ingest.auth import AUTH_METHODS
from bq_ingest.errors import ConfigurationError
from bq_ingest.schema import FieldType, RecordSchema
from bq_ingest.writer import WriterOptions

logger = logging.getLogger(__name__)

SOURCE_FORMATS = {
    "json": "NEWLINE_DELIMITED_JSON",
    "csv": "CSV",
}
FIELD_SHORTHANDS = {
    "field_string": FieldType.STRING,
    "field_integer": FieldType.INTEGER,
    "field_float": FieldType.FLOAT,
    "field_boolean": FieldType.BOOLEAN,
    "field_timestamp": FieldType.TIMESTAMP,
}


def _split_names(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [name.strip() for name in value.split(",") if name.strip()]


class KeyReplacement(BaseModel):
    """One ordered key rewriting rule."""

    model_config = ConfigDict(extra="forbid")

    regexp: str = Field(..., description="Pattern searched in record keys")
    replacement: str = Field("", description="Replacement text")


class OutputConfig(BaseModel):
    """Settings shared by insert and load outputs."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid", populate_by_name=True)

    method: Literal["insert", "load"]

    auth_method: str = Field("application_default", description="json_key, compute_engine or application_default")
    json_key: Optional[str] = Field(None, description="Service account key file path or JSON")

    project: Optional[str] = Field(
        default_factory=lambda: os.getenv("GCP_PROJECT_ID"),
        description="GCP project (defaults to GCP_PROJECT_ID)",
    )
    dataset: str = Field(..., description="Destination dataset")
    table: Optional[str] = Field(None, description="Destination table")
    tables: Optional[List[str]] = Field(None, description="Tables used round-robin")
    location: Optional[str] = Field(None, description="Job location, required outside US and EU")

    auto_create_table: bool = False
    ignore_unknown_values: bool = False

    schema_fields: Optional[List[Dict[str, Any]]] = Field(None, alias="schema", description="Declarative field list")
    schema_path: Optional[str] = Field(None, description="JSON file holding a field list")
    fetch_schema: bool = Field(False, description="Use the live table schema")
    fetch_schema_table: Optional[str] = None
    schema_cache_expire: float = Field(600, ge=0)

    field_string: Optional[str] = None
    field_integer: Optional[str] = None
    field_float: Optional[str] = None
    field_boolean: Optional[str] = None
    field_timestamp: Optional[str] = None

    time_field: Optional[str] = None
    time_format: Optional[str] = None
    tag_field: Optional[str] = None

    replace_record_key: bool = False
    replace_record_key_regexp: List[KeyReplacement] = Field(default_factory=list)

    request_timeout_sec: Optional[float] = None
    request_open_timeout_sec: Optional[float] = 60

    time_partitioning_type: Optional[str] = None
    time_partitioning_field: Optional[str] = None
    time_partitioning_expiration: Optional[float] = None
    require_partition_filter: bool = False
    clustering_fields: Optional[List[str]] = None

    @field_validator("auth_method")
    @classmethod
    def check_auth_method(cls, value: str) -> str:
        if value not in AUTH_METHODS:
            raise ValueError(f"unrecognized 'auth_method': {value}")
        return value

    @field_validator("time_partitioning_type")
    @classmethod
    def check_partitioning_type(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        if value.lower() not in ("day", "hour", "month", "year"):
            raise ValueError(f"unsupported time_partitioning_type: {value}")
        return value.lower()

    @model_validator(mode="after")
    def check_destination(self) -> "OutputConfig":
        if not self.project:
            raise ValueError("'project' must be specified (or set GCP_PROJECT_ID)")
        if (self.table is None) == (self.tables is None):
            raise ValueError("'table' or 'tables' must be specified, and both are invalid")
        if self.tables is not None and not self.tables:
            raise ValueError("'tables' must not be empty")
        if self.auth_method == "json_key" and not self.json_key:
            raise ValueError("'json_key' must be specified if auth_method == 'json_key'")
        if self.fetch_schema and (self.schema_fields or self.schema_path):
            raise ValueError("'fetch_schema' cannot be combined with 'schema' or 'schema_path'")
        if self.schema_fields is not None and self.schema_path:
            raise ValueError("'schema' and 'schema_path' are exclusive")
        return self

    @property
    def table_names(self) -> List[str]:
        return list(self.tables) if self.tables is not None else [self.table]

    @property
    def key_replacements(self) -> List[tuple]:
        return [(rule.regexp, rule.replacement) for rule in self.replace_record_key_regexp]

    @property
    def source_format_api(self) -> str:
        return "NEWLINE_DELIMITED_JSON"

    @property
    def line_format(self) -> str:
        return "json"

    def build_schema(self) -> RecordSchema:
        """
        Build the configured (non fetched) schema: the declarative list plus
        the ``field_*`` shorthands.
        """
        schema = RecordSchema("record")
        if self.schema_fields:
            schema.load_schema(self.schema_fields)
        for option, field_type in FIELD_SHORTHANDS.items():
            for name in _split_names(getattr(self, option)):
                schema.register_field(name, field_type)
        return schema

    def writer_options(self) -> WriterOptions:
        return WriterOptions(
            location=self.location,
            ignore_unknown_values=self.ignore_unknown_values,
            source_format=self.source_format_api,
            auto_create_table=self.auto_create_table,
            time_partitioning_type=self.time_partitioning_type,
            time_partitioning_field=self.time_partitioning_field,
            time_partitioning_expiration=self.time_partitioning_expiration,
            require_partition_filter=self.require_partition_filter,
            clustering_fields=self.clustering_fields,
            timeout_sec=self.request_timeout_sec,
            open_timeout_sec=self.request_open_timeout_sec,
        )


class InsertOutputConfig(OutputConfig):
    """Streaming insert (``tabledata.insertAll``) output."""

    method: Literal["insert"] = "insert"

    template_suffix: Optional[str] = None
    skip_invalid_rows: bool = False
    insert_id_field: Optional[str] = Field(None, description="Row identity path, 'a.b' or '$.a.b'")
    add_insert_timestamp: Optional[str] = Field(None, description="Field receiving the send time")
    allow_retry_insert_errors: bool = False

    def writer_options(self) -> WriterOptions:
        options = super().writer_options()
        options.skip_invalid_rows = self.skip_invalid_rows
        options.allow_retry_insert_errors = self.allow_retry_insert_errors
        options.strict_insert_errors = self.insert_id_field is not None
        return options


class LoadOutputConfig(OutputConfig):
    """Load job (``jobs.insert``) output."""

    method: Literal["load"] = "load"

    source_format: Literal["json", "csv"] = "json"
    max_bad_records: int = Field(0, ge=0)
    prevent_duplicate_load: bool = False
    wait_job_interval: float = Field(10, gt=0)
    async_job_polling: bool = True

    @model_validator(mode="after")
    def check_csv_schema(self) -> "LoadOutputConfig":
        if self.source_format != "csv" or self.fetch_schema or self.schema_fields or self.schema_path:
            return self
        if not any(getattr(self, option) for option in FIELD_SHORTHANDS):
            raise ValueError("source_format csv needs a schema to order its columns")
        return self

    @property
    def source_format_api(self) -> str:
        return SOURCE_FORMATS[self.source_format]

    @property
    def line_format(self) -> str:
        return self.source_format

    def writer_options(self) -> WriterOptions:
        options = super().writer_options()
        options.max_bad_records = self.max_bad_records
        options.wait_job_interval = self.wait_job_interval
        return options


AnyOutputConfig = Union[InsertOutputConfig, LoadOutputConfig]


def config_from_dict(data: Dict[str, Any]) -> AnyOutputConfig:
    """
    Validate a mapping into the output config selected by ``method``.

    Raises:
        ConfigurationError: On an unknown method, invalid options or an
            invalid declarative schema.
    """
    if not isinstance(data, dict):
        raise ConfigurationError("output configuration must be a mapping")

    method = data.get("method", "insert")
    if method == "insert":
        model = InsertOutputConfig
    elif method == "load":
        model = LoadOutputConfig
    else:
        raise ConfigurationError(f"unrecognized 'method': {method}")

    try:
        config = model.model_validate({**data, "method": method})
    except ValidationError as e:
        raise ConfigurationError(f"invalid output configuration: {e}") from e

    # fail at startup on a broken schema, not on the first record
    config.build_schema()
    return config


def load_config(path: Union[str, Path]) -> AnyOutputConfig:
    """Load and validate a YAML output configuration file."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to load {path}: {e}") from e
    logger.debug(f"Loaded output configuration from {path}")
    return config_from_dict(data)


def read_schema_file(path: Union[str, Path]) -> RecordSchema:
    """Read a JSON field list (``[{"name", "type", ...}]``) into a schema."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            fields = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Failed to read schema file {path}: {e}") from e
    schema = RecordSchema("record")
    schema.load_schema(fields)
    return schema
