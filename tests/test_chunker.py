import io

import pytest

from telfs.cache import CHUNK_SIZE
from telfs.chunker import iter_chunks


class TrickleStream:
    """Returns at most one byte per read."""

    def __init__(self, data):
        self._inner = io.BytesIO(data)

    def read(self, n=-1):
        return self._inner.read(min(n, 1) if n >= 0 else 1)


class BrokenStream:
    def read(self, n=-1):
        raise OSError("read failed")


def test_round_trip_and_sizes():
    data = bytes(range(256)) * 5
    chunks = list(iter_chunks(io.BytesIO(data), 100))
    assert b"".join(chunks) == data
    assert all(len(c) == 100 for c in chunks[:-1])
    assert 0 < len(chunks[-1]) <= 100


def test_empty_stream_yields_nothing():
    assert list(iter_chunks(io.BytesIO(b""), 10)) == []


def test_exact_multiple_has_no_trailing_empty_chunk():
    data = b"abcdefghij" * 3
    chunks = list(iter_chunks(io.BytesIO(data), 10))
    assert all(len(c) == 10 for c in chunks)
    assert b"".join(chunks) == data


def test_short_reads_still_fill_chunks():
    data = bytes(range(200))
    expected = list(iter_chunks(io.BytesIO(data), 64))
    assert list(iter_chunks(TrickleStream(data), 64)) == expected


@pytest.mark.parametrize("size", [0, -5])
def test_default_chunk_size(size):
    data = b"x" * (CHUNK_SIZE + 1)
    chunks = list(iter_chunks(io.BytesIO(data), size))
    assert len(chunks[0]) == CHUNK_SIZE
    assert chunks[1:] == [b"x"]


def test_read_error_propagates():
    with pytest.raises(OSError, match="read failed"):
        list(iter_chunks(BrokenStream(), 10))