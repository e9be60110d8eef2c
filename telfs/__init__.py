"""Chunked, optionally encrypted file storage: chunk ciphers, key handling,
profile configuration, chunk metadata, a disk-backed chunk cache, and
chunk readers and writers."""

__version__ = "0.1.0"