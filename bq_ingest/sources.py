"""
JSONL Sources
-------------
Read newline delimited JSON records from the local filesystem or from
Google Cloud Storage (``gs://bucket/path``).
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from google.cloud import storage

logger = logging.getLogger(__name__)


def is_gcs_path(path: str) -> bool:
    """Check if path is a GCS URI"""
    return path.startswith("gs://")


def parse_gcs_uri(uri: str) -> Tuple[str, str]:
    """Parse GCS URI into bucket and blob path"""
    parts = uri.replace("gs://", "", 1).split("/", 1)
    bucket_name = parts[0]
    blob_path = parts[1] if len(parts) > 1 else ""
    return bucket_name, blob_path


class JsonlSource:
    """
    Line reader for one JSONL input.

    Args:
        source: GCS URI or local file path
        storage_client: Client used for ``gs://`` sources; created lazily
        project_id: Project for the lazily created storage client
    """

    def __init__(
        self,
        source: str,
        storage_client: Optional[storage.Client] = None,
        project_id: Optional[str] = None,
    ):
        self.source = source
        self.project_id = project_id
        self._storage_client = storage_client

    @property
    def storage_client(self) -> storage.Client:
        if self._storage_client is None:
            self._storage_client = storage.Client(project=self.project_id)
        return self._storage_client

    @property
    def name(self) -> str:
        if is_gcs_path(self.source):
            return self.source.split("/")[-1]
        return Path(self.source).name

    def read_lines(self) -> List[str]:
        if is_gcs_path(self.source):
            bucket_name, blob_path = parse_gcs_uri(self.source)
            blob = self.storage_client.bucket(bucket_name).blob(blob_path)
            lines = blob.download_as_text().splitlines()
            logger.info(f"Downloaded {len(lines)} lines from {self.source}")
            return lines

        with open(self.source, "r", encoding="utf-8") as f:
            lines = f.read().splitlines()
        logger.info(f"Read {len(lines)} lines from {self.source}")
        return lines

    def records(self) -> Iterator[Dict[str, Any]]:
        """Yield parsed records; invalid lines are logged and skipped."""
        for line_num, line in enumerate(self.read_lines(), 1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning(f"Invalid JSON on line {line_num} of {self.name}: {e}")
                continue
            if not isinstance(record, dict):
                logger.warning(f"Line {line_num} of {self.name} is not a JSON object, skipped")
                continue
            yield record
