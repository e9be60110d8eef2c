"""Key material for encrypted filesystems.

A passphrase and salt go through Argon2id to give a key-encryption key
(KEK). The KEK wraps a random per-filesystem data-encryption key (DEK),
so a passphrase change only rewraps the DEK.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.argon2 import Argon2id

from .ciphers import AuthenticationError

__all__ = [
    "KDF_NAME",
    "KEY_LEN",
    "SALT_LEN",
    "DEK_LEN",
    "ArgonParams",
    "default_argon_params",
    "marshal_argon_params",
    "unmarshal_argon_params",
    "new_salt",
    "derive_key",
    "new_dek",
    "wrap_dek",
    "unwrap_dek",
]

KDF_NAME = "argon2id"
KEY_LEN = 32
SALT_LEN = 16
DEK_LEN = 32

_NONCE_SIZE = 12
_DEK_WRAP_AAD = b"telfs-dek-wrap-v2"

_LIMITS = {"time": (1 << 32) - 1, "memory": (1 << 32) - 1, "threads": (1 << 8) - 1}


@dataclass(frozen=True)
class ArgonParams:
    """Tunable Argon2id parameters; ``memory`` is in KiB."""

    time: int
    memory: int
    threads: int


def default_argon_params() -> ArgonParams:
    """Return the default parameters: 3 passes, 64 MiB, 4 lanes."""
    return ArgonParams(time=3, memory=64 * 1024, threads=4)


def marshal_argon_params(params: ArgonParams) -> bytes:
    """Encode ``params`` as compact JSON."""
    return json.dumps(asdict(params), separators=(",", ":")).encode()


def unmarshal_argon_params(data: bytes | str) -> ArgonParams:
    """Decode parameters produced by :func:`marshal_argon_params`.

    Missing fields default to zero; unknown fields are ignored.
    """
    try:
        raw = json.loads(data)
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValueError(f"crypto: unmarshal argon params: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValueError("crypto: unmarshal argon params: expected a JSON object")
    values = {}
    for name, limit in _LIMITS.items():
        value = raw.get(name, 0)
        if value is None:
            value = 0
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= limit:
            raise ValueError(
                f"crypto: unmarshal argon params: invalid {name} value {value!r}"
            )
        values[name] = value
    return ArgonParams(**values)


def new_salt() -> bytes:
    """Return ``SALT_LEN`` random bytes."""
    return os.urandom(SALT_LEN)


def derive_key(passphrase: bytes, salt: bytes, params: ArgonParams) -> bytes:
    """Run Argon2id over ``passphrase`` and ``salt`` to get a 32-byte key."""
    kdf = Argon2id(
        salt=bytes(salt),
        length=KEY_LEN,
        iterations=params.time,
        lanes=params.threads,
        memory_cost=params.memory,
    )
    return kdf.derive(bytes(passphrase))


def new_dek() -> bytes:
    """Return a fresh random data-encryption key."""
    return os.urandom(DEK_LEN)


def wrap_dek(kek: bytes, dek: bytes) -> bytes:
    """Encrypt ``dek`` under ``kek``: ``nonce(12) || GCM(dek) || tag``."""
    kek, dek = bytes(kek), bytes(dek)
    if len(kek) != 32:
        raise ValueError(f"crypto: wrap_dek kek must be 32 bytes, got {len(kek)}")
    if len(dek) != DEK_LEN:
        raise ValueError(f"crypto: wrap_dek dek must be {DEK_LEN} bytes, got {len(dek)}")
    nonce = os.urandom(_NONCE_SIZE)
    return nonce + AESGCM(kek).encrypt(nonce, dek, _DEK_WRAP_AAD)


def unwrap_dek(kek: bytes, wrapped: bytes) -> bytes:
    """Reverse :func:`wrap_dek`.

    Raises :class:`AuthenticationError` on a wrong KEK or a tampered blob;
    the two cannot be told apart.
    """
    kek, wrapped = bytes(kek), bytes(wrapped)
    if len(kek) != 32:
        raise ValueError(f"crypto: unwrap_dek kek must be 32 bytes, got {len(kek)}")
    if len(wrapped) < _NONCE_SIZE + DEK_LEN:
        raise ValueError("crypto: wrapped DEK too short")
    nonce, body = wrapped[:_NONCE_SIZE], wrapped[_NONCE_SIZE:]
    try:
        dek = AESGCM(kek).decrypt(nonce, body, _DEK_WRAP_AAD)
    except InvalidTag as exc:
        raise AuthenticationError(
            "crypto: unwrap_dek: authentication failed "
            "(wrong passphrase or tampered wrapped-dek)"
        ) from exc
    if len(dek) != DEK_LEN:
        raise ValueError(f"crypto: unwrap_dek produced unexpected length {len(dek)}")
    return dek