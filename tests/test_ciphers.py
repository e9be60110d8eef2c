import os

import pytest

from telfs.ciphers import (
    AesGcmCipher,
    AuthenticationError,
    ConvergentCipher,
    NoopCipher,
    is_dedup_safe,
)


def _new_cipher():
    return AesGcmCipher(os.urandom(32))


def test_aesgcm_round_trip():
    c = _new_cipher()
    pt = b"hello chunk"
    ct = c.seal(42, 7, pt)
    assert ct != pt
    assert c.open(42, 7, ct) == pt


def test_aesgcm_wire_length_is_nonce_plus_body_plus_tag():
    c = _new_cipher()
    pt = b"hello chunk"
    assert len(c.seal(1, 2, pt)) == 12 + len(pt) + 16


def test_aesgcm_nonce_is_random():
    c = _new_cipher()
    pt = b"repeat me"
    sealed = [c.seal(1, 1, pt) for _ in range(8)]
    assert len({s[:12] for s in sealed}) == 8
    assert len(set(sealed)) == 8
    assert [c.open(1, 1, s) for s in sealed] == [pt] * 8


def test_aesgcm_tamper_fails():
    c = _new_cipher()
    ct = bytearray(c.seal(5, 0, b"don't tamper with me"))
    ct[-1] ^= 0xFF
    with pytest.raises(AuthenticationError):
        c.open(5, 0, bytes(ct))


def test_aesgcm_slot_mismatch_fails():
    c = _new_cipher()
    ct = c.seal(5, 0, b"slot 0 content")
    with pytest.raises(AuthenticationError):
        c.open(5, 1, ct)
    with pytest.raises(AuthenticationError):
        c.open(6, 0, ct)


def test_aesgcm_wrong_key_fails():
    c1 = _new_cipher()
    c2 = _new_cipher()
    ct = c1.seal(0, 0, b"secret")
    with pytest.raises(AuthenticationError):
        c2.open(0, 0, ct)


def test_aesgcm_rejects_short_key():
    with pytest.raises(ValueError):
        AesGcmCipher(bytes(16))


def test_aesgcm_rejects_truncated_ciphertext():
    c = _new_cipher()
    ct = c.seal(0, 0, b"hi")
    with pytest.raises(ValueError):
        c.open(0, 0, ct[:5])


def test_convergent_determinism():
    key = bytes(range(32))
    c = ConvergentCipher(key)
    pt = b"the exact same chunk bytes, twice"
    a = c.seal(0, 0, pt)
    b = c.seal(0, 0, pt)
    assert a == b
    assert c.seal(999, 7, pt) == a


def test_convergent_distinctness():
    c = ConvergentCipher(bytes(32))
    a = c.seal(0, 0, b"alpha")
    b = c.seal(0, 0, b"beta")
    assert a != b
    assert a[:12] != b[:12]


def test_convergent_round_trip_across_slots():
    key = bytes((i * 7) & 0xFF for i in range(32))
    c = ConvergentCipher(key)
    pt = b"the chunk plaintext that must round-trip"
    ct = c.seal(5, 2, pt)
    assert c.open(99, 17, ct) == pt


def test_convergent_survives_cipher_recreation():
    key = bytes(0x42 ^ i for i in range(32))
    ct = ConvergentCipher(key).seal(0, 0, b"cross-process payload")
    assert ConvergentCipher(key).open(0, 0, ct) == b"cross-process payload"


def test_convergent_tamper_detection():
    c = ConvergentCipher(bytes(32))
    ct = c.seal(0, 0, b"hi")
    for i in range(len(ct)):
        bad = bytearray(ct)
        bad[i] ^= 0x01
        with pytest.raises(AuthenticationError):
            c.open(0, 0, bytes(bad))


def test_convergent_wrong_key_fails():
    k1 = bytes(32)
    k2 = bytes([1]) + bytes(31)
    ct = ConvergentCipher(k1).seal(0, 0, b"secret")
    with pytest.raises(AuthenticationError):
        ConvergentCipher(k2).open(0, 0, ct)


def test_convergent_rejects_short_key():
    with pytest.raises(ValueError):
        ConvergentCipher(bytes(31))


def test_convergent_rejects_truncated_ciphertext():
    c = ConvergentCipher(bytes(32))
    with pytest.raises(ValueError):
        c.open(0, 0, c.seal(0, 0, b"hi")[:10])


def test_noop_cipher_is_identity():
    c = NoopCipher()
    assert c.seal(3, 4, b"plain bytes") == b"plain bytes"
    assert c.open(3, 4, b"plain bytes") == b"plain bytes"


def test_deterministic_marker():
    assert is_dedup_safe(NoopCipher()) is True
    assert is_dedup_safe(ConvergentCipher(bytes(32))) is True
    assert is_dedup_safe(AesGcmCipher(bytes(32))) is False
    assert not hasattr(AesGcmCipher(bytes(32)), "deterministic")