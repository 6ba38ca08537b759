import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from typing import Tuple

from efscloud.utils.errors import DecryptionFailed

NONCE_SIZE = 12
KEY_SIZES = (16, 24, 32)


def aead_encrypt(key: bytes, plaintext: bytes, aad: bytes | None = None) -> Tuple[bytes, bytes]:
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    ct = aesgcm.encrypt(nonce, plaintext, aad)
    return nonce, ct


def aead_decrypt(key: bytes, nonce: bytes, ct: bytes, aad: bytes | None = None) -> bytes:
    aesgcm = AESGCM(key)
    return aesgcm.decrypt(nonce, ct, aad)


def wrap(plaintext: bytes, key: bytes, aad: bytes | None = None) -> Tuple[bytes, bytes]:
    """Encrypt under ``key`` with a fresh random nonce. Returns (ciphertext, nonce)."""
    if len(key) not in KEY_SIZES:
        raise ValueError(f"invalid key size: {len(key)}")
    nonce, ct = aead_encrypt(key, plaintext, aad)
    return ct, nonce


def unwrap(ciphertext: bytes, nonce: bytes, key: bytes, aad: bytes | None = None) -> bytes:
    """Authenticated decryption.

    Wrong key, tampered ciphertext and malformed inputs all surface as the
    same DecryptionFailed so the caller cannot be used as an oracle.
    """
    if len(key) not in KEY_SIZES or len(nonce) != NONCE_SIZE or not ciphertext:
        raise DecryptionFailed()
    try:
        return aead_decrypt(key, nonce, ciphertext, aad)
    except InvalidTag:
        raise DecryptionFailed() from None
