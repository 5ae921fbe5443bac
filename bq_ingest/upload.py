"""
Load Job Request Body
---------------------
Multipart body for ``jobs.insert?uploadType=multipart``, served
incrementally so a large payload never has to be concatenated with the
metadata in memory.

Body layout::

    --xxx
    Content-Type: application/json; charset=UTF-8

    {
      "configuration": {
        "load": {
          "sourceFormat": "NEWLINE_DELIMITED_JSON",
          "schema": {"fields": [...]},
          "destinationTable": {"projectId": ..., "datasetId": ..., "tableId": ...}
        }
      }
    }
    --xxx
    Content-Type: application/octet-stream

    <payload>--xxx--

All offsets are byte offsets, so a multi-byte payload is never split on
character boundaries.
"""

import io
import json
import os
import stat
from typing import Any, BinaryIO, Dict, List, Optional, Union

from bq_ingest.tables import TableRef

BOUNDARY = "xxx"
CONTENT_TYPE = f"multipart/related; boundary={BOUNDARY}"
MULTIPART_BOUNDARY = f"--{BOUNDARY}\n".encode("ascii")
MULTIPART_BOUNDARY_END = f"--{BOUNDARY}--\n".encode("ascii")
CONTENT_TYPE_FIRST = b"Content-Type: application/json; charset=UTF-8\n\n"
CONTENT_TYPE_SECOND = b"Content-Type: application/octet-stream\n\n"

Payload = Union[bytes, bytearray, memoryview, BinaryIO]


def _payload_size(payload: Any) -> Optional[int]:
    """Bytes remaining in ``payload``, or None if it cannot be told without reading."""
    if not getattr(payload, "seekable", lambda: False)():
        return None
    try:
        fileno = payload.fileno()
    except (AttributeError, OSError, io.UnsupportedOperation):
        fileno = None
    try:
        if fileno is not None:
            stat_result = os.fstat(fileno)
            if stat.S_ISREG(stat_result.st_mode):
                return stat_result.st_size - payload.tell()
        position = payload.tell()
        end = payload.seek(0, io.SEEK_END)
        payload.seek(position)
        return end - position
    except OSError:
        # pipes and sockets may claim to be seekable
        return None


class LoadRequestBody:
    """
    Read-only binary stream over the three regions of a load request.

    Args:
        table: Destination table.
        fields: ``schema.fields`` payload, or None to omit the schema.
        payload: Formatted rows, as bytes or a binary file object. A file
            object is read at most once.
        source_format: ``NEWLINE_DELIMITED_JSON`` or ``CSV``.
        load_options: Extra keys of ``configuration.load``.
        job_reference: Optional ``jobReference`` of the job.
    """

    CONTENT_TYPE = CONTENT_TYPE

    def __init__(
        self,
        table: TableRef,
        fields: Optional[List[Dict[str, Any]]],
        payload: Payload,
        source_format: str = "NEWLINE_DELIMITED_JSON",
        load_options: Optional[Dict[str, Any]] = None,
        job_reference: Optional[Dict[str, Any]] = None,
    ):
        load: Dict[str, Any] = {"sourceFormat": source_format}
        if fields is not None:
            load["schema"] = {"fields": fields}
        load["destinationTable"] = table.to_api_repr()
        load.update(load_options or {})
        self.metadata: Dict[str, Any] = {"configuration": {"load": load}}
        if job_reference:
            self.metadata["jobReference"] = job_reference

        metadata_json = json.dumps(self.metadata, indent=2, ensure_ascii=False)
        self._header = (
            MULTIPART_BOUNDARY
            + CONTENT_TYPE_FIRST
            + metadata_json.encode("utf-8")
            + b"\n"
            + MULTIPART_BOUNDARY
            + CONTENT_TYPE_SECOND
        )
        self._footer = MULTIPART_BOUNDARY_END

        self._payload_source: Optional[Any] = None
        self._payload: Optional[bytes] = None
        if isinstance(payload, (bytes, bytearray, memoryview)):
            self._payload = bytes(payload)
            payload_size = len(self._payload)
        else:
            self._payload_source = payload
            payload_size = _payload_size(payload)
            if payload_size is None:
                payload_size = len(self._load_payload())

        self._header_size = len(self._header)
        self._contents_size = self._header_size + payload_size
        self._total_size = self._contents_size + len(self._footer)

        self._position = 0
        self._eof = False

    def _load_payload(self) -> bytes:
        if self._payload is None:
            data = self._payload_source.read()
            self._payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
            self._payload_source = None
        return self._payload

    def __len__(self) -> int:
        return self._total_size

    @property
    def eof(self) -> bool:
        return self._eof

    def readable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._position

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_CUR:
            offset += self._position
        elif whence == io.SEEK_END:
            offset += self._total_size
        if offset < 0:
            raise ValueError(f"negative seek position {offset}")
        self._position = min(offset, self._total_size)
        self._eof = self._position >= self._total_size
        return self._position

    def rewind(self) -> None:
        self._position = 0
        self._eof = False

    def read(self, size: Optional[int] = -1) -> bytes:
        """
        Return up to ``size`` bytes from the cursor; ``None`` or a negative
        size reads everything that is left. Returns ``b""`` at end of stream.
        """
        if size == 0:
            return b""
        if self._eof:
            return b""
        if size is None or size < 0 or size >= self._total_size - self._position:
            data = self._slice(self._position, self._total_size)
            self._position = self._total_size
            self._eof = True
            return data

        end = self._position + size
        data = self._slice(self._position, end)
        self._position = end
        return data

    def readinto(self, buffer: Any) -> int:
        view = memoryview(buffer).cast("B")
        data = self.read(len(view))
        view[: len(data)] = data
        return len(data)

    def to_bytes(self) -> bytes:
        self.rewind()
        return self.read()

    def _slice(self, start: int, end: int) -> bytes:
        parts = []
        if start < self._header_size:
            parts.append(self._header[start:min(end, self._header_size)])
        if start < self._contents_size and end > self._header_size:
            payload = self._load_payload()
            parts.append(
                payload[max(start, self._header_size) - self._header_size:
                        min(end, self._contents_size) - self._header_size]
            )
        if end > self._contents_size:
            parts.append(
                self._footer[max(start, self._contents_size) - self._contents_size:
                             end - self._contents_size]
            )
        return b"".join(parts)
