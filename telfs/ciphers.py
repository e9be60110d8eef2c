"""Chunk ciphers: the transforms applied to chunk payloads on their way
to and from the backing channel.

The chunk pipeline always goes through a :class:`Cipher`. ``NoopCipher``
is the plaintext default; ``AesGcmCipher`` gives AES-256-GCM with a
random nonce and the chunk slot bound into the AAD; ``ConvergentCipher``
gives deterministic AES-256-GCM so identical plaintext can be
deduplicated on encrypted filesystems.
"""

from __future__ import annotations

import hashlib
import hmac
import os
import struct
from abc import ABC, abstractmethod

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

__all__ = [
    "AuthenticationError",
    "Cipher",
    "NoopCipher",
    "AesGcmCipher",
    "ConvergentCipher",
    "is_dedup_safe",
]

_NONCE_SIZE = 12
_TAG_SIZE = 16
_KEY_SIZE = 32
_UINT64_MASK = (1 << 64) - 1
_UINT32_MASK = (1 << 32) - 1

# Personalisation string for the nonce-deriving HMAC; keeps nonce
# derivation separate from any other use of the key as an HMAC key.
_HMAC_NONCE_LABEL = b"telfs-v3-nonce\x00"


class AuthenticationError(Exception):
    """The GCM tag did not authenticate (tampering, truncation or wrong key)."""

    def __init__(self, message: str = "crypto: authentication failed") -> None:
        super().__init__(message)


class Cipher(ABC):
    """Transforms chunk payloads for slot ``(ino, idx)``."""

    @abstractmethod
    def seal(self, ino: int, idx: int, plaintext: bytes) -> bytes:
        """Encrypt ``plaintext`` for chunk ``(ino, idx)``."""

    @abstractmethod
    def open(self, ino: int, idx: int, ciphertext: bytes) -> bytes:
        """Decrypt ``ciphertext`` sealed for chunk ``(ino, idx)``."""


class NoopCipher(Cipher):
    """Identity transform, used when encryption is not enabled."""

    def seal(self, ino: int, idx: int, plaintext: bytes) -> bytes:
        return bytes(plaintext)

    def open(self, ino: int, idx: int, ciphertext: bytes) -> bytes:
        return bytes(ciphertext)

    def deterministic(self) -> bool:
        """Plaintext chunks are safe for content-addressed dedup."""
        return True


def _check_key(key: bytes, what: str) -> bytes:
    key = bytes(key)
    if len(key) != _KEY_SIZE:
        raise ValueError(f"crypto: {what} needs a 32-byte key, got {len(key)}")
    return key


def _slot_aad(ino: int, idx: int) -> bytes:
    return struct.pack(">QI", ino & _UINT64_MASK, idx & _UINT32_MASK)


def _split(ciphertext: bytes, what: str) -> tuple[bytes, bytes]:
    ciphertext = bytes(ciphertext)
    if len(ciphertext) < _NONCE_SIZE + _TAG_SIZE:
        raise ValueError(f"crypto: {what}ciphertext too short ({len(ciphertext)} bytes)")
    return ciphertext[:_NONCE_SIZE], ciphertext[_NONCE_SIZE:]


class AesGcmCipher(Cipher):
    """AES-256-GCM with a random nonce and ``(ino, idx)`` as AAD.

    Wire format: ``nonce(12) || ciphertext || tag(16)``. A ciphertext
    only authenticates for the slot it was sealed for.
    """

    def __init__(self, key: bytes) -> None:
        self._aead = AESGCM(_check_key(key, "AES-256"))

    def seal(self, ino: int, idx: int, plaintext: bytes) -> bytes:
        nonce = os.urandom(_NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, bytes(plaintext), _slot_aad(ino, idx))

    def open(self, ino: int, idx: int, ciphertext: bytes) -> bytes:
        nonce, body = _split(ciphertext, "")
        try:
            return self._aead.decrypt(nonce, body, _slot_aad(ino, idx))
        except InvalidTag as exc:
            raise AuthenticationError() from exc


class ConvergentCipher(Cipher):
    """Deterministic AES-256-GCM for content-addressed dedup.

    The nonce is ``HMAC-SHA256(key, label || plaintext)[:12]`` and the
    AAD is empty, so the same plaintext under the same key always seals
    to the same bytes, regardless of ``(ino, idx)``. The HMAC covers the
    full plaintext, so nonces repeat only for identical plaintexts.
    """

    def __init__(self, key: bytes) -> None:
        self._key = _check_key(key, "convergent cipher")
        self._aead = AESGCM(self._key)

    def _derive_nonce(self, plaintext: bytes) -> bytes:
        mac = hmac.new(self._key, _HMAC_NONCE_LABEL, hashlib.sha256)
        mac.update(plaintext)
        return mac.digest()[:_NONCE_SIZE]

    def seal(self, ino: int, idx: int, plaintext: bytes) -> bytes:
        plaintext = bytes(plaintext)
        nonce = self._derive_nonce(plaintext)
        return nonce + self._aead.encrypt(nonce, plaintext, None)

    def open(self, ino: int, idx: int, ciphertext: bytes) -> bytes:
        # The slot must not be used as AAD: a deduplicated chunk is
        # referenced from several slots.
        nonce, body = _split(ciphertext, "convergent ")
        try:
            return self._aead.decrypt(nonce, body, None)
        except InvalidTag as exc:
            raise AuthenticationError() from exc

    def deterministic(self) -> bool:
        """Convergent ciphertexts are safe for content-addressed dedup."""
        return True


def is_dedup_safe(cipher: Cipher) -> bool:
    """Report whether ``cipher`` declares itself deterministic."""
    marker = getattr(cipher, "deterministic", None)
    return callable(marker) and bool(marker())