"""Key hierarchy: password -> KEK -> Master Key -> {Private Key, Collection Keys} -> File Keys.

Every unwrapped key is handed out as a SecureBytes so callers hold it in a
``with`` block and it is zeroed on the way out, errors included. Any failure
while walking the chain from a password is reported as AuthenticationFailed
without saying which link broke.
"""
from __future__ import annotations

import json
import logging
import os

from contextlib import contextmanager
from typing import Iterator, Tuple

from efscloud.crypto.aead import unwrap, wrap
from efscloud.crypto.hash import derive_kek, fingerprint
from efscloud.crypto.sealed import generate_keypair, seal_for_recipient, unseal_own
from efscloud.crypto.secure import SecureBytes
from efscloud.utils.dataModels import (
    Collection, File, FileMetadata, KdfParams, KeyWrap, User, KEY_SIZE, SALT_SIZE,
)
from efscloud.utils.errors import AuthenticationFailed, DecryptionFailed, NotAuthorized, ValidationError
from efscloud.utils.helper import b64d, b64e, utcnow

logger = logging.getLogger(__name__)


def new_key() -> SecureBytes:
    return SecureBytes(bytearray(os.urandom(KEY_SIZE)))


def wrap_key(key: SecureBytes | bytes, wrapping_key: SecureBytes | bytes) -> KeyWrap:
    ct, nonce = wrap(_raw(key), _raw(wrapping_key))
    return KeyWrap(ciphertext=ct, nonce=nonce)


def unwrap_key(wrapped: KeyWrap, wrapping_key: SecureBytes | bytes) -> SecureBytes:
    return SecureBytes(bytearray(unwrap(wrapped.ciphertext, wrapped.nonce, _raw(wrapping_key))))


def _raw(key: SecureBytes | bytes) -> bytes:
    return key.raw() if isinstance(key, SecureBytes) else key


# ---- Password chain ----

def unlock_master_key(user: User, password: str) -> SecureBytes:
    with SecureBytes(derive_kek(password, user.password_salt, user.kdf_params)) as kek:
        try:
            return unwrap_key(user.encrypted_master_key, kek)
        except DecryptionFailed:
            raise AuthenticationFailed() from None


def unlock_private_key(user: User, master_key: SecureBytes) -> SecureBytes:
    try:
        return unwrap_key(user.encrypted_private_key, master_key)
    except DecryptionFailed:
        raise AuthenticationFailed() from None


@contextmanager
def unlocked_keys(user: User, password: str) -> Iterator[Tuple[SecureBytes, SecureBytes]]:
    """Yield (master_key, private_key); both are wiped when the block exits."""
    with unlock_master_key(user, password) as master_key:
        with unlock_private_key(user, master_key) as private_key:
            yield master_key, private_key


def open_challenge(encrypted_challenge: bytes, user: User, password: str) -> bytes:
    """Decrypt a server login challenge sealed for the user's public key."""
    with unlocked_keys(user, password) as (_, private_key):
        try:
            return unseal_own(encrypted_challenge, user.public_key, private_key.raw())
        except DecryptionFailed:
            raise AuthenticationFailed() from None


# ---- Collections and files ----

def unwrap_collection_key(user: User, collection: Collection,
                          master_key: SecureBytes, private_key: SecureBytes) -> SecureBytes:
    """Owner copies are wrapped under the Master Key; member copies are sealed."""
    if collection.owner_id == user.id:
        try:
            return unwrap_key(collection.encrypted_collection_key, master_key)
        except DecryptionFailed:
            raise AuthenticationFailed() from None
    member = collection.member(user.id)
    if member is None or not member.encrypted_collection_key:
        raise NotAuthorized(f"no access to collection {collection.id}")
    try:
        return SecureBytes(bytearray(unseal_own(member.encrypted_collection_key,
                                                user.public_key, private_key.raw())))
    except DecryptionFailed:
        raise AuthenticationFailed() from None


def seal_collection_key(collection_key: SecureBytes, recipient_public_key: bytes) -> bytes:
    return seal_for_recipient(collection_key.raw(), recipient_public_key)


def unwrap_file_key(file: File, collection_key: SecureBytes) -> SecureBytes:
    try:
        return unwrap_key(file.encrypted_file_key, collection_key)
    except DecryptionFailed:
        raise AuthenticationFailed() from None


def encrypt_name(name: str, key: SecureBytes) -> KeyWrap:
    ct, nonce = wrap(name.encode("utf-8"), key.raw())
    return KeyWrap(ciphertext=ct, nonce=nonce)


def decrypt_name(blob: KeyWrap, key: SecureBytes) -> str:
    return unwrap(blob.ciphertext, blob.nonce, key.raw()).decode("utf-8")


def encrypt_file_metadata(meta: FileMetadata, file_key: SecureBytes) -> KeyWrap:
    doc = json.dumps(meta.to_dict(), ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    ct, nonce = wrap(doc, file_key.raw())
    return KeyWrap(ciphertext=ct, nonce=nonce)


def decrypt_file_metadata(blob: KeyWrap, file_key: SecureBytes) -> FileMetadata:
    return FileMetadata.from_dict(json.loads(unwrap(blob.ciphertext, blob.nonce, file_key.raw())))


# ---- Registration, recovery, rotation ----

def generate_user_keys(email: str, password: str, params: KdfParams | None = None) -> Tuple[User, bytes]:
    """Build a fresh key bundle. Returns (user, recovery_key); show the recovery key once."""
    params = params or KdfParams()
    salt = os.urandom(SALT_SIZE)
    public_key, private_key = generate_keypair()
    with new_key() as master_key, new_key() as recovery_key, SecureBytes(bytearray(private_key)) as sk:
        with SecureBytes(derive_kek(password, salt, params)) as kek:
            encrypted_master_key = wrap_key(master_key, kek)
        user = User(
            email=email,
            password_salt=salt,
            kdf_params=params,
            encrypted_master_key=encrypted_master_key,
            encrypted_private_key=wrap_key(sk, master_key),
            public_key=public_key,
            encrypted_recovery_key=wrap_key(recovery_key, master_key),
            master_key_encrypted_with_recovery_key=wrap_key(master_key, recovery_key),
            verification_id=fingerprint(public_key),
            last_key_rotation=utcnow(),
            modified_at=utcnow(),
        )
        return user, recovery_key.raw()


def show_recovery_key(user: User, password: str) -> str:
    if not user.encrypted_recovery_key:
        raise ValidationError("no recovery key found for this account")
    with unlock_master_key(user, password) as master_key:
        try:
            with unwrap_key(user.encrypted_recovery_key, master_key) as recovery_key:
                return b64e(recovery_key.raw())
        except DecryptionFailed:
            raise AuthenticationFailed() from None


def _rewrap_master(user: User, master_key: SecureBytes, new_password: str, params: KdfParams | None) -> User:
    params = params or user.kdf_params
    salt = os.urandom(SALT_SIZE)
    with SecureBytes(derive_kek(new_password, salt, params)) as kek:
        user.encrypted_master_key = wrap_key(master_key, kek)
    user.password_salt = salt
    user.kdf_params = params
    user.key_version += 1
    user.last_key_rotation = utcnow()
    user.modified_at = utcnow()
    return user


def recover_with_recovery_key(user: User, recovery_key_b64: str, new_password: str,
                              params: KdfParams | None = None) -> User:
    """Unwrap the Master Key with the Recovery Key and protect it with a new password."""
    try:
        recovery_raw = b64d(recovery_key_b64.strip())
    except ValueError:
        raise AuthenticationFailed() from None
    with SecureBytes(bytearray(recovery_raw)) as recovery_key:
        try:
            master_key = unwrap_key(user.master_key_encrypted_with_recovery_key, recovery_key)
        except DecryptionFailed:
            raise AuthenticationFailed() from None
    with master_key:
        logger.info("recovered master key for %s", user.email)
        return _rewrap_master(user, master_key, new_password, params)


def change_password(user: User, old_password: str, new_password: str,
                    params: KdfParams | None = None) -> User:
    with unlock_master_key(user, old_password) as master_key:
        return _rewrap_master(user, master_key, new_password, params)
