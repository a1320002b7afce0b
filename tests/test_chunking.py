"""
Tests for filedrop/chunking.py
"""

import os

import pytest

from filedrop.chunking import (
    CHUNK_SIZE,
    BytesSource,
    ChunkAssembler,
    FileSource,
    PathSource,
    ReceivedFile,
    chunk_count,
    iter_chunks,
)
from filedrop.errors import OutOfOrderChunk, SizeMismatch
from filedrop.models import FileMetadata


class TestIterChunks:
    def test_forty_thousand_bytes(self):
        data = os.urandom(40000)
        chunks = list(iter_chunks(BytesSource(data)))
        assert [len(c) for c in chunks] == [16384, 16384, 7232]
        assert b"".join(chunks) == data

    def test_empty_source_yields_nothing(self):
        assert list(iter_chunks(BytesSource(b""))) == []
        assert chunk_count(0) == 0

    @pytest.mark.parametrize("size", [1, CHUNK_SIZE - 1, CHUNK_SIZE, CHUNK_SIZE + 1, 3 * CHUNK_SIZE])
    def test_sizes_around_chunk_boundary(self, size):
        data = bytes(range(256)) * (size // 256 + 1)
        source = BytesSource(data[:size])
        chunks = list(iter_chunks(source))
        assert len(chunks) == chunk_count(size)
        assert all(len(c) == CHUNK_SIZE for c in chunks[:-1])
        assert sum(map(len, chunks)) == size

    def test_restart_from_offset(self):
        data = os.urandom(50000)
        source = BytesSource(data)
        first = next(iter_chunks(source, 16384))

        rest = list(iter_chunks(source, 16384, offset=len(first)))

        assert first + b"".join(rest) == data
        assert [len(c) for c in rest] == [16384, 16384, 848]

    def test_is_lazy(self):
        reads = []

        class Recording(BytesSource):
            def read(self, offset, length):
                reads.append(offset)
                return super().read(offset, length)

        chunks = iter_chunks(Recording(b"x" * 100), 10)
        next(chunks)
        assert reads == [0]

    def test_short_read_is_size_mismatch(self):
        class Truncated(FileSource):
            def read(self, offset, length):
                return b"" if offset >= 10 else b"y" * min(length, 10 - offset)

        with pytest.raises(SizeMismatch):
            list(iter_chunks(Truncated("t", 30), 8))

    @pytest.mark.parametrize("chunk_size,offset", [(0, 0), (-1, 0), (10, -1), (10, 101)])
    def test_invalid_arguments(self, chunk_size, offset):
        with pytest.raises(ValueError):
            list(iter_chunks(BytesSource(b"z" * 100), chunk_size, offset))


class TestSources:
    def test_path_source(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_bytes(b"hello world")

        source = PathSource(path)

        assert source.metadata == FileMetadata(name="notes.txt", size=11, content_type="text/plain")
        assert b"".join(iter_chunks(source, 4)) == b"hello world"

    def test_default_content_type(self):
        assert BytesSource(b"abc").metadata.content_type == "application/octet-stream"

    def test_metadata_wire_shape(self):
        metadata = BytesSource(b"abc", name="a.bin", content_type="x/y").metadata
        assert metadata.model_dump(by_alias=True) == {"name": "a.bin", "size": 3, "type": "x/y"}


class TestChunkAssembler:
    def test_assembles_in_order(self):
        assembler = ChunkAssembler()
        assembler.start(FileMetadata(name="f", size=6))
        assert not assembler.add(b"abc")
        assert assembler.add(b"def")

        received = assembler.finish()
        assert received.data == b"abcdef"
        assert not assembler.active

    def test_chunk_before_metadata(self):
        with pytest.raises(OutOfOrderChunk):
            ChunkAssembler().add(b"abc")

    def test_overflow(self):
        assembler = ChunkAssembler()
        assembler.start(FileMetadata(name="f", size=4))
        with pytest.raises(SizeMismatch) as exc:
            assembler.add(b"abcde")
        assert exc.value.expected == 4
        assert exc.value.received == 5

    def test_finish_incomplete(self):
        assembler = ChunkAssembler()
        assembler.start(FileMetadata(name="f", size=4))
        assembler.add(b"ab")
        with pytest.raises(SizeMismatch):
            assembler.finish()

    def test_save_strips_directories(self, tmp_path):
        received = ReceivedFile(FileMetadata(name="../../etc/passwd", size=2), b"ok")
        target = received.save(tmp_path)
        assert target == tmp_path / "passwd"
        assert target.read_bytes() == b"ok"
