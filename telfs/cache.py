"""Disk-backed LRU cache of chunk payloads."""

from __future__ import annotations

import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path

from .ciphers import Cipher, NoopCipher

__all__ = ["CHUNK_SIZE", "DEFAULT_CACHE_CAP_BYTES", "Key", "Fetcher", "ChunkCache"]

CHUNK_SIZE = 4 << 20
DEFAULT_CACHE_CAP_BYTES = 1 << 30

_NAME_RE = re.compile(r"(-?\d+)-(-?\d+)\.bin")


@dataclass(frozen=True)
class Key:
    """Identifies one chunk slot: chunk ``idx`` of inode ``ino``."""

    ino: int
    idx: int

    @property
    def file_name(self) -> str:
        return f"{self.ino}-{self.idx}.bin"


class Fetcher(ABC):
    """Upstream from which the cache pulls chunks on a miss."""

    @abstractmethod
    def fetch(self, key: Key, tg_message_id: int) -> bytes:
        """Return the stored bytes of message ``tg_message_id``."""


class ChunkCache:
    """LRU of chunk payloads stored as ``<dir>/<ino>-<idx>.bin``.

    Only keys, sizes and recency live in memory. Files already in the
    directory are adopted on startup, as least recently used, so the
    cache survives restarts. The fetcher returns what is stored upstream
    (ciphertext when encryption is on); the cache stores plaintext.
    Safe for concurrent use; disk and network I/O happen outside the lock.
    """

    def __init__(
        self,
        directory: str | os.PathLike[str],
        cap_bytes: int = 0,
        fetcher: Fetcher | None = None,
        cipher: Cipher | None = None,
    ) -> None:
        self._dir = Path(directory)
        self._cap = cap_bytes if cap_bytes > 0 else DEFAULT_CACHE_CAP_BYTES
        self._fetcher = fetcher
        self._cipher = cipher if cipher is not None else NoopCipher()
        self._lock = threading.Lock()
        # First item is the least recently used.
        self._entries: OrderedDict[Key, int] = OrderedDict()
        self._total = 0
        self._dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        self._adopt_existing()

    @property
    def directory(self) -> Path:
        return self._dir

    @property
    def cap_bytes(self) -> int:
        return self._cap

    def _adopt_existing(self) -> None:
        found: list[tuple[Key, int]] = []
        try:
            with os.scandir(self._dir) as listing:
                for entry in listing:
                    match = _NAME_RE.fullmatch(entry.name)
                    if match is None or entry.is_dir():
                        continue
                    try:
                        size = entry.stat().st_size
                    except OSError:
                        continue
                    if size == 0:
                        continue
                    found.append((Key(int(match[1]), int(match[2])), size))
        except OSError:
            return
        with self._lock:
            for key, size in reversed(found):
                self._entries[key] = size
                self._total += size
            self._evict_locked()

    def _path(self, key: Key) -> Path:
        return self._dir / key.file_name

    def get(self, key: Key, tg_message_id: int) -> bytes:
        """Return the plaintext of chunk ``key``, fetching it on a miss."""
        with self._lock:
            hit = key in self._entries
            if hit:
                self._entries.move_to_end(key)
        if hit:
            return self._path(key).read_bytes()

        if self._fetcher is None:
            raise LookupError(f"chunk {key.ino}/{key.idx} not cached and no fetcher set")
        try:
            wire = self._fetcher.fetch(key, tg_message_id)
        except Exception as exc:
            exc.add_note(f"fetch chunk {key.ino}/{key.idx} (msg={tg_message_id})")
            raise
        try:
            data = self._cipher.open(key.ino, key.idx, wire)
        except Exception as exc:
            exc.add_note(f"decrypt chunk {key.ino}/{key.idx}")
            raise
        self._write(key, data)

        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
                return data
            self._entries[key] = len(data)
            self._total += len(data)
            self._evict_locked()
        return data

    def _write(self, key: Key, data: bytes) -> None:
        fd, tmp = tempfile.mkstemp(dir=self._dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp, self._path(key))
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def has(self, key: Key) -> bool:
        """Report whether chunk ``key`` is cached."""
        with self._lock:
            return key in self._entries

    def invalidate(self, key: Key) -> bool:
        """Drop chunk ``key`` from memory and disk; return whether it was cached."""
        with self._lock:
            size = self._entries.pop(key, None)
            if size is None:
                return False
            self._total -= size
            self._path(key).unlink(missing_ok=True)
            return True

    def _evict_locked(self) -> None:
        while self._total > self._cap and self._entries:
            key, size = self._entries.popitem(last=False)
            self._total -= size
            self._path(key).unlink(missing_ok=True)