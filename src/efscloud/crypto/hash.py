import hashlib

from argon2.exceptions import HashingError
from argon2.low_level import hash_secret_raw, Type as Argon2Type
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes

from efscloud.utils.dataModels import KdfParams, KEY_SIZE, SALT_SIZE
from efscloud.utils.errors import InvalidKdfParameters

MAX_T_COST = 64
MAX_M_COST_KiB = 4 * 1024 * 1024  # 4 GiB
MAX_PARALLELISM = 64


def sha3_512_bytes(data: bytes) -> bytes:
    digest = hashes.Hash(hashes.SHA3_512(), backend=default_backend())
    digest.update(data)
    return digest.finalize()


def validate_kdf(salt: bytes, params: KdfParams) -> None:
    if not isinstance(salt, (bytes, bytearray)) or len(salt) != SALT_SIZE:
        raise InvalidKdfParameters(f"salt must be {SALT_SIZE} bytes")
    if not 1 <= params.parallelism <= MAX_PARALLELISM:
        raise InvalidKdfParameters("parallelism out of range")
    if not 1 <= params.t_cost <= MAX_T_COST:
        raise InvalidKdfParameters("time cost out of range")
    if not 8 * params.parallelism <= params.m_cost_kib <= MAX_M_COST_KiB:
        raise InvalidKdfParameters("memory cost out of range")


def derive_kek(password: str, salt: bytes, params: KdfParams) -> bytes:
    """KEK = Argon2id(SHA3-512(password)) -> 32 bytes"""
    validate_kdf(salt, params)
    prehash = sha3_512_bytes(password.encode("utf-8"))
    try:
        return hash_secret_raw(
            secret=prehash,
            salt=bytes(salt),
            time_cost=params.t_cost,
            memory_cost=params.m_cost_kib,
            parallelism=params.parallelism,
            hash_len=KEY_SIZE,
            type=Argon2Type.ID,
        )
    except HashingError as e:
        raise InvalidKdfParameters(str(e)) from None


def integrity_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def fingerprint(public_key: bytes) -> str:
    """Colon separated SHA-256 of a public key, for out-of-band comparison."""
    hex_str = hashlib.sha256(public_key).hexdigest().upper()
    return ":".join(hex_str[i:i + 2] for i in range(0, len(hex_str), 2))
