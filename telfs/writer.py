"""Write path: dirty-chunk buffering and asynchronous chunk uploads."""

from __future__ import annotations

import hashlib
import io
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import BinaryIO

from .cache import CHUNK_SIZE, ChunkCache, Key
from .ciphers import Cipher, NoopCipher, is_dedup_safe
from .store import ChunkRecord, MetaStore, NotFoundError

__all__ = [
    "DEFAULT_DIRTY_CAP_BYTES",
    "DEFAULT_UPLOAD_CONCURRENCY",
    "WriterClosedError",
    "Uploader",
    "ChunkWriter",
]

# Dirty bytes a writer may hold before it starts dispatching the oldest
# dirty chunks for upload.
DEFAULT_DIRTY_CAP_BYTES = 256 << 20
# Chunks that may be uploading at the same time per writer.
DEFAULT_UPLOAD_CONCURRENCY = 4

_log = logging.getLogger(__name__)


class WriterClosedError(Exception):
    """The writer has been closed."""

    def __init__(self, message: str = "writer: handle closed") -> None:
        super().__init__(message)


class Uploader(ABC):
    """Pushes a chunk's bytes to the backing channel."""

    @abstractmethod
    def upload_document(self, stream: BinaryIO, filename: str, caption: str) -> int:
        """Upload the contents of ``stream`` and return the new message id."""


@dataclass
class _DirtyChunk:
    data: bytearray = field(default_factory=bytearray)


@contextmanager
def _annotated(note: str) -> Iterator[None]:
    try:
        yield
    except Exception as exc:
        exc.add_note(note)
        raise


class ChunkWriter:
    """Dirty-chunk buffer of one open file handle.

    Writes land in in-memory chunks. When the dirty bytes exceed the cap,
    the oldest chunks are dispatched to background uploads; dispatch
    blocks while the upload pool is saturated, which is the backpressure
    on the writer. :meth:`flush` uploads everything left, waits for all
    uploads and records the final size. The first upload failure is
    sticky: later writes raise it until the next flush retries.
    """

    def __init__(
        self,
        meta: MetaStore,
        cache: ChunkCache,
        uploader: Uploader,
        cipher: Cipher | None,
        ino: int,
        chunk_size: int = 0,
        dirty_cap: int = 0,
    ) -> None:
        self._meta = meta
        self._cache = cache
        self._uploader = uploader
        self._cipher = cipher if cipher is not None else NoopCipher()
        self._ino = ino
        self._chunk_size = chunk_size if chunk_size > 0 else CHUNK_SIZE
        self._dirty_cap = dirty_cap if dirty_cap > 0 else DEFAULT_DIRTY_CAP_BYTES
        with _annotated(f"writer: get inode {ino}"):
            self._size = meta.get_size(ino)

        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._dirty: dict[int, _DirtyChunk] = {}
        self._dirty_order: list[int] = []
        self._dirty_bytes = 0
        self._closed = False

        self._cancelled = threading.Event()
        self._upload_sem = threading.BoundedSemaphore(DEFAULT_UPLOAD_CONCURRENCY)
        self._uploading: dict[int, threading.Event] = {}
        self._pending = 0
        self._upload_error: BaseException | None = None

    @property
    def ino(self) -> int:
        return self._ino

    @property
    def size(self) -> int:
        """Logical file size, including unflushed writes."""
        with self._lock:
            return self._size

    @property
    def dirty_chunks(self) -> tuple[int, ...]:
        """Indices of chunks that hold unflushed data, oldest first."""
        with self._lock:
            return tuple(self._dirty_order)

    def __enter__(self) -> ChunkWriter:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _check_open_locked(self) -> None:
        if self._closed:
            raise WriterClosedError()

    def _raise_sticky_locked(self) -> None:
        if self._upload_error is not None:
            raise self._upload_error

    def write_at(self, data: bytes, offset: int) -> int:
        """Write ``data`` at ``offset`` and return the number of bytes written."""
        data = bytes(data)
        if not data:
            return 0
        if offset < 0:
            raise ValueError(f"writer: negative offset {offset}")
        cs = self._chunk_size
        with self._lock:
            self._check_open_locked()
            self._raise_sticky_locked()
            if offset > self._size:
                self._materialize_zeros_locked(self._size, offset)

            written = 0
            cur = offset
            for idx in range(offset // cs, (offset + len(data) - 1) // cs + 1):
                chunk = self._load_for_write_locked(idx)
                rel = cur - idx * cs
                count = min(cs - rel, len(data) - written)
                self._grow_locked(chunk, rel + count)
                chunk.data[rel:rel + count] = data[written:written + count]
                written += count
                cur += count
                self._size = max(self._size, cur)

            while self._dirty_bytes > self._dirty_cap and self._dirty_order:
                self._dispatch_locked(self._dirty_order[0])
                self._raise_sticky_locked()
            return written

    def _load_for_write_locked(self, idx: int) -> _DirtyChunk:
        while idx not in self._dirty:
            done = self._uploading.get(idx)
            if done is None:
                break
            # Let the in-flight upload commit before reading the chunk map.
            self._lock.release()
            try:
                done.wait()
            finally:
                self._lock.acquire()
            self._raise_sticky_locked()
        else:
            return self._dirty[idx]

        try:
            record = self._meta.get_chunk(self._ino, idx)
        except NotFoundError:
            data = bytearray()
        else:
            with _annotated(f"preload chunk {idx}"):
                data = bytearray(
                    self._cache.get(Key(self._ino, idx), record.tg_message_id)
                )
        chunk = _DirtyChunk(data)
        self._dirty[idx] = chunk
        self._dirty_order.append(idx)
        self._dirty_bytes += len(data)
        return chunk

    def _grow_locked(self, chunk: _DirtyChunk, need: int) -> None:
        delta = need - len(chunk.data)
        if delta > 0:
            chunk.data.extend(bytes(delta))
            self._dirty_bytes += delta

    def _materialize_zeros_locked(self, start: int, stop: int) -> None:
        if start >= stop:
            return
        cs = self._chunk_size
        for idx in range(start // cs, (stop - 1) // cs + 1):
            chunk = self._load_for_write_locked(idx)
            chunk_start = idx * cs
            reg_start = max(start - chunk_start, 0)
            reg_end = min(stop - chunk_start, cs)
            self._grow_locked(chunk, reg_end)
            zero_end = min(reg_end, len(chunk.data))
            if zero_end > reg_start:
                chunk.data[reg_start:zero_end] = bytes(zero_end - reg_start)
        self._size = max(self._size, stop)

    def truncate(self, size: int) -> None:
        """Set the logical file size to ``size``.

        Shrinking drops dirty chunks past the end, trims the boundary
        chunk and deletes persisted chunks past the end. Growing only
        records the new size.
        """
        if size < 0:
            raise ValueError(f"writer: negative truncate size {size}")
        with self._lock:
            self._check_open_locked()
            if size > self._size:
                self._size = size
                self._meta.set_size(self._ino, size)
                return

            last_idx = (size - 1) // self._chunk_size if size > 0 else -1
            for idx, chunk in list(self._dirty.items()):
                if idx > last_idx:
                    self._dirty_bytes -= len(chunk.data)
                    del self._dirty[idx]
                    self._remove_from_order_locked(idx)
                elif idx == last_idx:
                    rel = size - idx * self._chunk_size
                    if len(chunk.data) > rel:
                        self._dirty_bytes -= len(chunk.data) - rel
                        del chunk.data[rel:]
            self._meta.delete_chunks_above(self._ino, last_idx + 1)
            self._size = size
            self._meta.set_size(self._ino, size)

    def flush(self) -> None:
        """Upload every dirty chunk, wait for all uploads, record the size.

        Clears any sticky error first, so a failed flush can be retried;
        chunks that failed are dirty again afterwards.
        """
        with self._lock:
            self._check_open_locked()
            self._upload_error = None
            # Snapshot: chunks restored after a failure wait for the next flush.
            for idx in list(self._dirty_order):
                self._dispatch_locked(idx)
            while self._pending:
                self._idle.wait()
            self._raise_sticky_locked()
            final_size = self._size
        self._meta.set_size(self._ino, final_size)

    def _remove_from_order_locked(self, idx: int) -> None:
        try:
            self._dirty_order.remove(idx)
        except ValueError:
            pass

    def _dispatch_locked(self, idx: int) -> None:
        chunk = self._dirty.pop(idx, None)
        self._remove_from_order_locked(idx)
        if chunk is None:
            return
        self._dirty_bytes -= len(chunk.data)
        done = threading.Event()
        self._uploading[idx] = done
        self._pending += 1
        # Waiting for a pool slot is the backpressure point; other writers
        # may use the lock meanwhile and will see the chunk as uploading.
        self._lock.release()
        try:
            self._upload_sem.acquire()
            threading.Thread(
                target=self._upload_one,
                args=(idx, chunk, done),
                name=f"telfs-upload-{self._ino}-{idx}",
                daemon=True,
            ).start()
        finally:
            self._lock.acquire()

    def _upload_one(self, idx: int, chunk: _DirtyChunk, done: threading.Event) -> None:
        try:
            self._upload_chunk(idx, chunk)
        except Exception as exc:
            self._restore(idx, chunk)
            self._record_error(exc)
        finally:
            with self._lock:
                self._uploading.pop(idx, None)
            done.set()
            self._upload_sem.release()
            with self._lock:
                self._pending -= 1
                self._idle.notify_all()

    def _upload_chunk(self, idx: int, chunk: _DirtyChunk) -> None:
        data = bytes(chunk.data)
        key = Key(self._ino, idx)
        dedup = is_dedup_safe(self._cipher)
        digest = hashlib.sha256(data).digest() if dedup else b""

        if dedup:
            with _annotated(f"dedup lookup {idx}"):
                reused, _, _ = self._meta.reuse_chunk_by_hash(self._ino, idx, digest)
            if reused:
                self._cache.invalidate(key)
                return

        if self._cancelled.is_set():
            raise WriterClosedError(f"upload chunk {idx}: writer closed")
        with _annotated(f"encrypt chunk {idx}"):
            wire = self._cipher.seal(self._ino, idx, data)
        with _annotated(f"upload chunk {idx}"):
            msg_id = self._uploader.upload_document(
                io.BytesIO(wire), f"ino{self._ino}-idx{idx}", ""
            )
        # Once uploaded, the chunk-map row must land even if the writer is
        # being closed; otherwise the message is orphaned.
        with _annotated(f"chunk_map {idx}"):
            self._meta.put_chunk(
                ChunkRecord(ino=self._ino, idx=idx, tg_message_id=int(msg_id), size=len(data))
            )
        if dedup:
            try:
                self._meta.record_chunk_blob(digest, int(msg_id), len(data))
            except Exception as exc:
                _log.warning(
                    "record blob index ino=%d idx=%d: %s", self._ino, idx, exc
                )
        self._cache.invalidate(key)

    def _restore(self, idx: int, chunk: _DirtyChunk) -> None:
        with self._lock:
            if idx in self._dirty:
                return
            self._dirty[idx] = chunk
            # First in line so a retry attempts the failed chunk first.
            self._dirty_order.insert(0, idx)
            self._dirty_bytes += len(chunk.data)

    def _record_error(self, exc: BaseException) -> None:
        with self._lock:
            first = self._upload_error is None
            if first:
                self._upload_error = exc
        if first:
            _log.error("upload error (ino=%d): %s", self._ino, exc)

    def close(self) -> None:
        """Stop pending uploads, wait for running ones and drop all state.

        Does not flush; call :meth:`flush` first when durability matters.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._cancelled.set()
            while self._pending:
                self._idle.wait()
            self._dirty.clear()
            self._dirty_order.clear()
            self._dirty_bytes = 0
            self._uploading.clear()