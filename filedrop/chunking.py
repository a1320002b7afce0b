import mimetypes
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Union

from .errors import OutOfOrderChunk, SizeMismatch
from .models import FileMetadata

CHUNK_SIZE = 16384


class FileSource:
    """Random access, read-only view of the bytes being sent."""

    def __init__(self, name: str, size: int, content_type: Optional[str] = None):
        self.name = name
        self.size = size
        self.content_type = content_type or "application/octet-stream"

    def read(self, offset: int, length: int) -> bytes:
        raise NotImplementedError

    @property
    def metadata(self) -> FileMetadata:
        return FileMetadata(name=self.name, size=self.size, content_type=self.content_type)


class BytesSource(FileSource):
    def __init__(self, data: bytes, name: str = "file", content_type: Optional[str] = None):
        super().__init__(name, len(data), content_type)
        self._data = data

    def read(self, offset: int, length: int) -> bytes:
        return self._data[offset:offset + length]


class PathSource(FileSource):
    def __init__(self, path: Union[str, Path], content_type: Optional[str] = None):
        path = Path(path)
        guessed, _ = mimetypes.guess_type(path.name)
        super().__init__(path.name, path.stat().st_size, content_type or guessed)
        self.path = path

    def read(self, offset: int, length: int) -> bytes:
        with self.path.open("rb") as f:
            f.seek(offset)
            return f.read(length)


def iter_chunks(source: FileSource, chunk_size: int = CHUNK_SIZE, offset: int = 0) -> Iterator[bytes]:
    """Lazily yield the chunks of `source` starting at byte `offset`.

    Restarting from the last acknowledged offset yields exactly the
    remaining chunks; an empty source yields nothing.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if offset < 0 or offset > source.size:
        raise ValueError(f"offset {offset} outside 0..{source.size}")
    while offset < source.size:
        chunk = source.read(offset, min(chunk_size, source.size - offset))
        if not chunk:
            raise SizeMismatch(source.size, offset)
        yield chunk
        offset += len(chunk)


def chunk_count(size: int, chunk_size: int = CHUNK_SIZE) -> int:
    return -(-size // chunk_size)


@dataclass
class ReceivedFile:
    metadata: FileMetadata
    data: bytes

    def save(self, directory: Union[str, Path]) -> Path:
        # only the base name, a peer must not pick the directory
        target = Path(directory) / os.path.basename(self.metadata.name)
        target.write_bytes(self.data)
        return target


class ChunkAssembler:
    """Receive side accumulation for one file at a time."""

    def __init__(self):
        self.metadata: Optional[FileMetadata] = None
        self.received = 0
        self._parts: List[bytes] = []

    @property
    def active(self) -> bool:
        return self.metadata is not None

    def start(self, metadata: FileMetadata) -> None:
        self.metadata = metadata
        self.received = 0
        self._parts = []

    def add(self, chunk: bytes) -> bool:
        """Append a chunk. True once the declared size has been reached."""
        if self.metadata is None:
            raise OutOfOrderChunk("Received a file chunk before its metadata")
        if self.received + len(chunk) > self.metadata.size:
            raise SizeMismatch(self.metadata.size, self.received + len(chunk))
        self._parts.append(chunk)
        self.received += len(chunk)
        return self.received == self.metadata.size

    @property
    def complete(self) -> bool:
        return self.metadata is not None and self.received == self.metadata.size

    def finish(self) -> ReceivedFile:
        if not self.complete:
            raise SizeMismatch(self.metadata.size if self.metadata else 0, self.received)
        received = ReceivedFile(metadata=self.metadata, data=b"".join(self._parts))
        self.reset()
        return received

    def reset(self) -> None:
        self.metadata = None
        self.received = 0
        self._parts = []
