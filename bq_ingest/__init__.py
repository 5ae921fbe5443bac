"""
BigQuery Ingest
---------------
Format semi-structured records against a BigQuery table schema and deliver
them by streaming insert or by load job.
"""

from bq_ingest.errors import (
    BigQueryIngestError,
    ConfigurationError,
    RetryableError,
    TableCreatedError,
    UnRetryableError,
)
from bq_ingest.formatter import RecordFormatter
from bq_ingest.schema import FieldMode, FieldSchema, FieldType, RecordSchema
from bq_ingest.tables import TableRef
from bq_ingest.upload import LoadRequestBody
from bq_ingest.writer import BigQueryWriter, WriterOptions

__version__ = "0.1.0"

__all__ = [
    "BigQueryIngestError",
    "BigQueryWriter",
    "ConfigurationError",
    "FieldMode",
    "FieldSchema",
    "FieldType",
    "LoadRequestBody",
    "RecordFormatter",
    "RecordSchema",
    "RetryableError",
    "TableCreatedError",
    "TableRef",
    "UnRetryableError",
    "WriterOptions",
]
