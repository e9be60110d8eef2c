"""Chunk metadata: the file-content data path's view of the metadata.

Files are split into fixed-size chunks. Each chunk of a file is one row
in the chunk map and points at the channel message that holds its
bytes. Reads look chunks up here and fetch missing bytes on demand into
the on-disk cache. Writes stage dirty chunks, upload them through the
chunk cipher, and record the resulting message ids here. A blob index
keyed by content hash lets identical chunks share one message.
"""

from __future__ import annotations

import os
import sqlite3
import threading
from dataclasses import dataclass

__all__ = ["ROOT_INO", "NotFoundError", "ChunkRecord", "MetaStore"]

ROOT_INO = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS inodes (
    ino  INTEGER PRIMARY KEY,
    size INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS chunk_map (
    ino           INTEGER NOT NULL,
    idx           INTEGER NOT NULL,
    tg_message_id INTEGER NOT NULL,
    size          INTEGER NOT NULL,
    PRIMARY KEY (ino, idx)
);
CREATE INDEX IF NOT EXISTS chunk_map_msg ON chunk_map (tg_message_id);
CREATE TABLE IF NOT EXISTS chunk_blob (
    hash          BLOB PRIMARY KEY,
    tg_message_id INTEGER NOT NULL,
    size          INTEGER NOT NULL
);
"""


class NotFoundError(LookupError):
    """The requested inode or chunk does not exist."""


@dataclass(frozen=True)
class ChunkRecord:
    """One chunk-map row: chunk ``idx`` of inode ``ino`` lives in a message."""

    ino: int
    idx: int
    tg_message_id: int
    size: int


class MetaStore:
    """SQLite-backed inode sizes, chunk map and content-hash blob index.

    Safe for use from several threads; every statement runs under one lock.
    """

    def __init__(self, path: str | os.PathLike[str] = ":memory:") -> None:
        self._conn = sqlite3.connect(os.fspath(path), check_same_thread=False)
        self._lock = threading.RLock()
        with self._lock:
            self._conn.executescript(_SCHEMA)
            with self._conn:
                self._conn.execute(
                    "INSERT OR IGNORE INTO inodes (ino, size) VALUES (?, 0)", (ROOT_INO,)
                )

    def close(self) -> None:
        """Close the underlying database connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> MetaStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def create_file(self, size: int = 0) -> int:
        """Allocate a new inode and return its number."""
        with self._lock, self._conn:
            cursor = self._conn.execute("INSERT INTO inodes (size) VALUES (?)", (size,))
            return int(cursor.lastrowid)

    def get_size(self, ino: int) -> int:
        """Return the recorded size of inode ``ino``."""
        with self._lock:
            row = self._conn.execute(
                "SELECT size FROM inodes WHERE ino = ?", (ino,)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"inode {ino} not found")
        return int(row[0])

    def set_size(self, ino: int, size: int) -> None:
        """Record ``size`` as the size of inode ``ino``."""
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "UPDATE inodes SET size = ? WHERE ino = ?", (size, ino)
            )
        if cursor.rowcount == 0:
            raise NotFoundError(f"inode {ino} not found")

    def get_chunk(self, ino: int, idx: int) -> ChunkRecord:
        """Return the chunk-map row for ``(ino, idx)``."""
        with self._lock:
            row = self._conn.execute(
                "SELECT tg_message_id, size FROM chunk_map WHERE ino = ? AND idx = ?",
                (ino, idx),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"chunk {ino}/{idx} not found")
        return ChunkRecord(ino=ino, idx=idx, tg_message_id=int(row[0]), size=int(row[1]))

    def put_chunk(self, record: ChunkRecord) -> None:
        """Insert or replace the chunk-map row for ``record``'s slot."""
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO chunk_map (ino, idx, tg_message_id, size) "
                "VALUES (?, ?, ?, ?)",
                (record.ino, record.idx, record.tg_message_id, record.size),
            )

    def list_chunks(self, ino: int) -> list[ChunkRecord]:
        """Return every chunk of ``ino`` in index order."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT idx, tg_message_id, size FROM chunk_map WHERE ino = ? ORDER BY idx",
                (ino,),
            ).fetchall()
        return [
            ChunkRecord(ino=ino, idx=int(idx), tg_message_id=int(msg), size=int(size))
            for idx, msg, size in rows
        ]

    def delete_chunks_above(self, ino: int, first_idx: int) -> int:
        """Delete chunks of ``ino`` with index ``>= first_idx``; return how many."""
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "DELETE FROM chunk_map WHERE ino = ? AND idx >= ?", (ino, first_idx)
            )
        return cursor.rowcount

    def record_chunk_blob(self, digest: bytes, tg_message_id: int, size: int) -> None:
        """Index the message holding content with hash ``digest``."""
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO chunk_blob (hash, tg_message_id, size) "
                "VALUES (?, ?, ?)",
                (bytes(digest), tg_message_id, size),
            )

    def reuse_chunk_by_hash(
        self, ino: int, idx: int, digest: bytes
    ) -> tuple[bool, int, int]:
        """Point ``(ino, idx)`` at an existing message holding ``digest``.

        The aliveness check and the chunk-map insert happen in one
        transaction. Returns ``(reused, tg_message_id, size)``; a stale
        index entry whose message no chunk references any more is dropped.
        """
        digest = bytes(digest)
        with self._lock, self._conn:
            row = self._conn.execute(
                "SELECT tg_message_id, size FROM chunk_blob WHERE hash = ?", (digest,)
            ).fetchone()
            if row is None:
                return False, 0, 0
            msg_id, size = int(row[0]), int(row[1])
            alive = self._conn.execute(
                "SELECT 1 FROM chunk_map WHERE tg_message_id = ? LIMIT 1", (msg_id,)
            ).fetchone()
            if alive is None:
                self._conn.execute("DELETE FROM chunk_blob WHERE hash = ?", (digest,))
                return False, 0, 0
            self._conn.execute(
                "INSERT OR REPLACE INTO chunk_map (ino, idx, tg_message_id, size) "
                "VALUES (?, ?, ?, ?)",
                (ino, idx, msg_id, size),
            )
            return True, msg_id, size

    def count_chunk_blobs(self) -> int:
        """Return the number of entries in the content-hash index."""
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) FROM chunk_blob").fetchone()
        return int(row[0])