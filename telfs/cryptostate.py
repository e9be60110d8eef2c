"""Encryption state kept alongside the metadata: key names, cipher modes
and the canary used to detect a wrong passphrase before any user data
is read."""

from __future__ import annotations

from .ciphers import AuthenticationError, Cipher

__all__ = [
    "KV_MODE",
    "KV_SALT",
    "KV_ARGON",
    "KV_CANARY",
    "KV_WRAPPED_DEK",
    "MODE_AES_GCM_V1",
    "MODE_AES_GCM_V2",
    "MODE_AES_GCM_V3",
    "CanaryError",
    "seal_canary",
    "verify_canary",
]

KV_MODE = "crypto_mode"
KV_SALT = "crypto_salt"
KV_ARGON = "crypto_argon_params"
KV_CANARY = "crypto_canary"
KV_WRAPPED_DEK = "crypto_wrapped_dek"

# v1: passphrase-derived key encrypts chunks directly.
MODE_AES_GCM_V1 = "aes-gcm-v1"
# v2: passphrase-derived KEK wraps a random per-filesystem DEK.
MODE_AES_GCM_V2 = "aes-gcm-v2"
# v3: v2 with deterministic (convergent) chunk encryption.
MODE_AES_GCM_V3 = "aes-gcm-v3"

_CANARY_PLAINTEXT = b"telfs-canary-v1"


class CanaryError(Exception):
    """The canary did not decrypt to the expected plaintext."""


def seal_canary(cipher: Cipher) -> bytes:
    """Encrypt the canary under ``cipher`` in the reserved slot (0, 0)."""
    return cipher.seal(0, 0, _CANARY_PLAINTEXT)


def verify_canary(cipher: Cipher, encoded: bytes) -> None:
    """Raise :class:`CanaryError` unless ``encoded`` opens to the canary."""
    try:
        plaintext = cipher.open(0, 0, encoded)
    except (AuthenticationError, ValueError) as exc:
        raise CanaryError(
            f"crypto: canary did not decrypt — wrong passphrase? ({exc})"
        ) from exc
    if plaintext != _CANARY_PLAINTEXT:
        raise CanaryError("crypto: canary plaintext mismatch (corrupted state)")