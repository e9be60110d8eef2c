"""Split a byte stream into fixed-size chunks."""

from __future__ import annotations

from collections.abc import Iterator
from typing import BinaryIO

from .cache import CHUNK_SIZE

__all__ = ["iter_chunks"]


def iter_chunks(stream: BinaryIO, chunk_size: int = 0) -> Iterator[bytes]:
    """Yield consecutive ``chunk_size``-byte pieces of ``stream``.

    Only the last piece may be shorter; an empty stream yields nothing.
    A ``chunk_size`` of zero or less means :data:`CHUNK_SIZE`.
    """
    if chunk_size <= 0:
        chunk_size = CHUNK_SIZE
    while True:
        buf = bytearray()
        while len(buf) < chunk_size:
            piece = stream.read(chunk_size - len(buf))
            if not piece:
                break
            buf += piece
        if not buf:
            return
        yield bytes(buf)
        if len(buf) < chunk_size:
            return