"""
BigQuery Outputs
----------------
Insert and load outputs built on the shared ``BigQueryOutput`` base.
"""

from typing import Any

from bq_ingest.config import AnyOutputConfig, LoadOutputConfig
from bq_ingest.outputs.base import BigQueryOutput
from bq_ingest.outputs.insert import InsertOutput
from bq_ingest.outputs.load import LoadOutput


def create_output(config: AnyOutputConfig, **kwargs: Any) -> BigQueryOutput:
    """Instantiate the output matching ``config.method``."""
    if isinstance(config, LoadOutputConfig):
        return LoadOutput(config, **kwargs)
    return InsertOutput(config, **kwargs)


__all__ = ["BigQueryOutput", "InsertOutput", "LoadOutput", "create_output"]
