import os

import pytest

from efscloud.crypto.aead import NONCE_SIZE, unwrap, wrap
from efscloud.crypto.hash import derive_kek, fingerprint, integrity_hash
from efscloud.crypto.sealed import generate_keypair, seal_for_recipient, unseal_own
from efscloud.crypto.secure import SecureBytes
from efscloud.utils.dataModels import KdfParams
from efscloud.utils.errors import DecryptionFailed, InvalidKdfParameters

from conftest import FAST_KDF


def test_wrap_roundtrip():
    key = os.urandom(32)
    ct, nonce = wrap(b"secret", key)
    assert len(nonce) == NONCE_SIZE
    assert unwrap(ct, nonce, key) == b"secret"


def test_wrap_with_aad():
    key = os.urandom(32)
    ct, nonce = wrap(b"secret", key, aad=b"file-1")
    assert unwrap(ct, nonce, key, aad=b"file-1") == b"secret"
    with pytest.raises(DecryptionFailed):
        unwrap(ct, nonce, key, aad=b"file-2")


def test_unwrap_wrong_key_fails():
    ct, nonce = wrap(b"secret", os.urandom(32))
    with pytest.raises(DecryptionFailed):
        unwrap(ct, nonce, os.urandom(32))


def test_unwrap_tampered_ciphertext_fails():
    key = os.urandom(32)
    ct, nonce = wrap(b"secret", key)
    tampered = bytes([ct[0] ^ 1]) + ct[1:]
    with pytest.raises(DecryptionFailed):
        unwrap(tampered, nonce, key)


def test_unwrap_rejects_bad_sizes():
    key = os.urandom(32)
    ct, nonce = wrap(b"secret", key)
    with pytest.raises(DecryptionFailed):
        unwrap(ct, nonce[:8], key)
    with pytest.raises(DecryptionFailed):
        unwrap(ct, nonce, key[:16])
    with pytest.raises(DecryptionFailed):
        unwrap(b"", nonce, key)


def test_wrap_rejects_short_key():
    with pytest.raises(ValueError):
        wrap(b"secret", b"short")


def test_nonces_are_unique():
    key = os.urandom(32)
    nonces = {wrap(b"x", key)[1] for _ in range(10_000)}
    assert len(nonces) == 10_000


def test_seal_roundtrip():
    pk, sk = generate_keypair()
    sealed = seal_for_recipient(b"collection key", pk)
    assert unseal_own(sealed, pk, sk) == b"collection key"


def test_seal_is_randomized():
    pk, _ = generate_keypair()
    assert seal_for_recipient(b"k", pk) != seal_for_recipient(b"k", pk)


def test_unseal_with_other_keypair_fails():
    pk, _ = generate_keypair()
    other_pk, other_sk = generate_keypair()
    sealed = seal_for_recipient(b"collection key", pk)
    with pytest.raises(DecryptionFailed):
        unseal_own(sealed, other_pk, other_sk)


def test_unseal_with_mismatched_keypair_fails():
    pk, sk = generate_keypair()
    other_pk, _ = generate_keypair()
    sealed = seal_for_recipient(b"collection key", pk)
    with pytest.raises(DecryptionFailed):
        unseal_own(sealed, other_pk, sk)


def test_unseal_truncated_fails():
    pk, sk = generate_keypair()
    with pytest.raises(DecryptionFailed):
        unseal_own(b"\x00" * 20, pk, sk)


def test_derive_kek_is_deterministic():
    salt = os.urandom(16)
    a = derive_kek("pw", salt, FAST_KDF)
    assert len(a) == 32
    assert a == derive_kek("pw", salt, FAST_KDF)
    assert a != derive_kek("pw2", salt, FAST_KDF)
    assert a != derive_kek("pw", os.urandom(16), FAST_KDF)


@pytest.mark.parametrize("salt,params", [
    (b"\x00" * 15, FAST_KDF),
    (b"\x00" * 16, KdfParams(t_cost=0, m_cost_kib=1024, parallelism=1)),
    (b"\x00" * 16, KdfParams(t_cost=65, m_cost_kib=1024, parallelism=1)),
    (b"\x00" * 16, KdfParams(t_cost=1, m_cost_kib=1024, parallelism=0)),
    (b"\x00" * 16, KdfParams(t_cost=1, m_cost_kib=15, parallelism=2)),
])
def test_derive_kek_rejects_bad_params(salt, params):
    with pytest.raises(InvalidKdfParameters):
        derive_kek("pw", salt, params)


def test_integrity_hash_and_fingerprint():
    assert integrity_hash(b"abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    fp = fingerprint(b"\x01" * 32)
    assert len(fp.split(":")) == 32
    assert fp == fp.upper()


def test_secure_bytes_wipes_on_exit():
    source = bytearray(b"\x07" * 32)
    with SecureBytes(source) as key:
        assert source == bytearray(32)
        assert key.raw() == b"\x07" * 32
    assert key.wiped
    assert not key
    with pytest.raises(ValueError):
        key.raw()


def test_secure_bytes_wipes_on_error():
    with pytest.raises(RuntimeError):
        with SecureBytes(b"\x01" * 32) as key:
            raise RuntimeError("boom")
    assert key.wiped
