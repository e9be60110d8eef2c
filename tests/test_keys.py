import pytest

from telfs.ciphers import AuthenticationError
from telfs.keys import (
    DEK_LEN,
    KEY_LEN,
    SALT_LEN,
    ArgonParams,
    default_argon_params,
    derive_key,
    marshal_argon_params,
    new_dek,
    new_salt,
    unmarshal_argon_params,
    unwrap_dek,
    wrap_dek,
)

# Cheap parameters so the tests stay fast.
TEST_ARGON = ArgonParams(time=1, memory=8 * 1024, threads=1)


def test_derive_key_deterministic():
    salt = b"0123456789abcdef"
    a = derive_key(b"hunter2", salt, TEST_ARGON)
    b = derive_key(b"hunter2", salt, TEST_ARGON)
    assert a == b
    assert len(a) == KEY_LEN


def test_derive_key_depends_on_passphrase():
    salt = b"0123456789abcdef"
    a = derive_key(b"right", salt, TEST_ARGON)
    b = derive_key(b"wrong", salt, TEST_ARGON)
    assert a != b


def test_derive_key_depends_on_salt():
    a = derive_key(b"hunter2", b"0123456789abcdef", TEST_ARGON)
    b = derive_key(b"hunter2", b"ABCDEFGHIJKLMNOP", TEST_ARGON)
    assert a != b


def test_new_salt_is_random():
    a = new_salt()
    b = new_salt()
    assert a != b
    assert len(a) == SALT_LEN


def test_argon_params_round_trip():
    want = ArgonParams(time=5, memory=128 * 1024, threads=8)
    got = unmarshal_argon_params(marshal_argon_params(want))
    assert got == want


def test_default_params_json_encoding():
    assert marshal_argon_params(default_argon_params()) == (
        b'{"time":3,"memory":65536,"threads":4}'
    )


def test_unmarshal_missing_fields_default_to_zero():
    assert unmarshal_argon_params(b'{"time":2}') == ArgonParams(time=2, memory=0, threads=0)


@pytest.mark.parametrize(
    "data",
    [b"not json", b"[1,2]", b'{"threads":256}', b'{"time":-1}', b'{"memory":"big"}'],
)
def test_unmarshal_rejects_bad_input(data):
    with pytest.raises(ValueError):
        unmarshal_argon_params(data)


def test_new_dek_is_random_and_sized():
    a = new_dek()
    b = new_dek()
    assert len(a) == DEK_LEN
    assert a != b


def test_wrap_unwrap_round_trip():
    kek = bytes(range(32))
    dek = new_dek()
    wrapped = wrap_dek(kek, dek)
    assert len(wrapped) == 12 + DEK_LEN + 16
    assert unwrap_dek(kek, wrapped) == dek


def test_unwrap_with_wrong_kek_fails():
    dek = new_dek()
    wrapped = wrap_dek(bytes(32), dek)
    with pytest.raises(AuthenticationError):
        unwrap_dek(bytes([1] * 32), wrapped)


def test_unwrap_tampered_blob_fails():
    kek = bytes(32)
    wrapped = bytearray(wrap_dek(kek, new_dek()))
    wrapped[-1] ^= 0xFF
    with pytest.raises(AuthenticationError):
        unwrap_dek(kek, bytes(wrapped))


def test_wrap_rejects_bad_lengths():
    with pytest.raises(ValueError):
        wrap_dek(bytes(16), new_dek())
    with pytest.raises(ValueError):
        wrap_dek(bytes(32), bytes(16))


def test_unwrap_rejects_short_inputs():
    with pytest.raises(ValueError):
        unwrap_dek(bytes(16), bytes(60))
    with pytest.raises(ValueError):
        unwrap_dek(bytes(32), bytes(20))