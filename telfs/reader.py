"""Random-offset reads of a file through the chunk map and the cache."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

from .cache import CHUNK_SIZE, ChunkCache, Key
from .store import MetaStore, NotFoundError

__all__ = ["PREFETCH_WINDOW", "PREFETCH_CONCURRENCY", "ChunkReader"]

# How many chunks past the current read are fetched speculatively.
PREFETCH_WINDOW = 4
# At most this many prefetch fetches run at once.
PREFETCH_CONCURRENCY = 4


class ChunkReader:
    """Reads file bytes chunk by chunk, prefetching ahead of the cursor.

    Each read schedules background fetches of the next
    :data:`PREFETCH_WINDOW` chunks before blocking on its own, so
    sequential readers find the following chunks already cached.
    """

    def __init__(self, meta: MetaStore, cache: ChunkCache, chunk_size: int = 0) -> None:
        self._meta = meta
        self._cache = cache
        self._chunk_size = chunk_size if chunk_size > 0 else CHUNK_SIZE
        self._pool = ThreadPoolExecutor(
            max_workers=PREFETCH_CONCURRENCY, thread_name_prefix="telfs-prefetch"
        )
        self._lock = threading.Lock()
        self._inflight: set[Key] = set()
        self._closed = False

    def read_at(self, ino: int, size: int, offset: int) -> bytes:
        """Return up to ``size`` bytes of ``ino`` starting at ``offset``.

        The result is short when the file ends first; a missing chunk
        marks the end of the file.
        """
        if size < 0 or offset < 0:
            raise ValueError(f"negative size {size} or offset {offset}")
        if size == 0:
            return b""
        cs = self._chunk_size
        end = offset + size
        cur = offset
        out = bytearray()
        for idx in range(offset // cs, (end - 1) // cs + 1):
            self._schedule_ahead(ino, idx + 1, PREFETCH_WINDOW)
            try:
                record = self._meta.get_chunk(ino, idx)
            except NotFoundError:
                break
            data = self._cache.get(Key(ino, idx), record.tg_message_id)
            rel_start = cur - idx * cs
            rel_end = min(rel_start + (end - cur), len(data))
            if rel_start >= rel_end:
                break
            out += data[rel_start:rel_end]
            cur += rel_end - rel_start
            if len(data) < cs and rel_end == len(data):
                break
        return bytes(out)

    def _schedule_ahead(self, ino: int, start_idx: int, count: int) -> None:
        for idx in range(start_idx, start_idx + count):
            key = Key(ino, idx)
            if self._cache.has(key):
                continue
            with self._lock:
                if self._closed or key in self._inflight:
                    continue
                self._inflight.add(key)
                try:
                    self._pool.submit(self._prefetch_one, key)
                except RuntimeError:
                    self._inflight.discard(key)

    def _prefetch_one(self, key: Key) -> None:
        # Best effort: the reader's own request surfaces any real error.
        try:
            record = self._meta.get_chunk(key.ino, key.idx)
            self._cache.get(key, record.tg_message_id)
        except Exception:
            pass
        finally:
            with self._lock:
                self._inflight.discard(key)

    def close(self) -> None:
        """Stop scheduling prefetches and wait for running ones to finish."""
        with self._lock:
            self._closed = True
        self._pool.shutdown(wait=True, cancel_futures=True)

    def __enter__(self) -> ChunkReader:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()