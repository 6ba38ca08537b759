"""Anonymous public-key encryption (libsodium sealed boxes).

A sealed payload is ``ephemeral_public_key(32) || ciphertext``; a new
ephemeral keypair is generated on every call, so the sender cannot be
identified from the output. The same construction is used for login
challenges and for sharing collection keys.
"""
from typing import Tuple

import nacl.exceptions
import nacl.public

from efscloud.utils.errors import DecryptionFailed

PUBLIC_KEY_SIZE = nacl.public.PublicKey.SIZE
PRIVATE_KEY_SIZE = nacl.public.PrivateKey.SIZE
SEAL_OVERHEAD = PUBLIC_KEY_SIZE + 16


def generate_keypair() -> Tuple[bytes, bytes]:
    """Returns (public_key, private_key)."""
    private_key = nacl.public.PrivateKey.generate()
    return bytes(private_key.public_key), bytes(private_key)


def seal_for_recipient(plaintext: bytes, recipient_public_key: bytes) -> bytes:
    if len(recipient_public_key) != PUBLIC_KEY_SIZE:
        raise ValueError(f"recipient public key must be {PUBLIC_KEY_SIZE} bytes")
    box = nacl.public.SealedBox(nacl.public.PublicKey(bytes(recipient_public_key)))
    return bytes(box.encrypt(plaintext))


def unseal_own(sealed: bytes, own_public_key: bytes, own_private_key: bytes) -> bytes:
    if (len(own_private_key) != PRIVATE_KEY_SIZE or len(own_public_key) != PUBLIC_KEY_SIZE
            or len(sealed) <= SEAL_OVERHEAD):
        raise DecryptionFailed()
    private_key = nacl.public.PrivateKey(bytes(own_private_key))
    if bytes(private_key.public_key) != bytes(own_public_key):
        raise DecryptionFailed()
    try:
        return nacl.public.SealedBox(private_key).decrypt(bytes(sealed))
    except nacl.exceptions.CryptoError:
        raise DecryptionFailed() from None
