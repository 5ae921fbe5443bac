"""
Chunks of formatted rows, one JSON document per line.

A chunk is the unit of delivery: one insertAll call or one load job.
"""

import io
import os
import uuid
from abc import ABC, abstractmethod
from typing import BinaryIO, Iterator, Optional


class Chunk(ABC):
    """Buffered rows plus the identity used for deterministic load job ids."""

    def __init__(self, tag: Optional[str] = None, unique_id: Optional[bytes] = None):
        self.tag = tag
        self.unique_id = unique_id or uuid.uuid4().bytes

    @property
    def unique_id_hex(self) -> str:
        return self.unique_id.hex()

    @abstractmethod
    def open(self) -> BinaryIO:
        """Return a fresh binary reader positioned at the first row."""
        pass

    @property
    @abstractmethod
    def size(self) -> int:
        pass

    def lines(self) -> Iterator[bytes]:
        with self.open() as reader:
            for line in reader:
                line = line.strip()
                if line:
                    yield line

    def __len__(self) -> int:
        return sum(1 for _ in self.lines())


class MemoryChunk(Chunk):
    def __init__(self, data: bytes = b"", tag: Optional[str] = None, unique_id: Optional[bytes] = None):
        super().__init__(tag, unique_id)
        self._buffer = bytearray(data)

    def append(self, line: bytes) -> None:
        self._buffer.extend(line)
        if not line.endswith(b"\n"):
            self._buffer.extend(b"\n")

    def open(self) -> BinaryIO:
        return io.BytesIO(bytes(self._buffer))

    @property
    def size(self) -> int:
        return len(self._buffer)


class FileChunk(Chunk):
    def __init__(self, path: str, tag: Optional[str] = None, unique_id: Optional[bytes] = None):
        super().__init__(tag, unique_id)
        self.path = path

    def open(self) -> BinaryIO:
        return open(self.path, "rb")

    @property
    def size(self) -> int:
        return os.path.getsize(self.path)
