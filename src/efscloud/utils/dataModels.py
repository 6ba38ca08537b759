from __future__ import annotations

import datetime as _dt

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from efscloud.utils.helper import b64d, b64e, from_iso, to_iso

DEFAULT_T_COST = 4
DEFAULT_M_COST_KiB = 262144  # 256 MiB (tune per device)
DEFAULT_PARALLELISM = 2

SALT_SIZE = 16
KEY_SIZE = 32

STATE_ACTIVE = "active"
STATE_DELETED = "deleted"
STATE_ARCHIVED = "archived"
STATES = (STATE_ACTIVE, STATE_DELETED, STATE_ARCHIVED)

PERMISSION_READ = "read"
PERMISSION_WRITE = "write"
PERMISSION_ADMIN = "admin"
PERMISSIONS = (PERMISSION_READ, PERMISSION_WRITE, PERMISSION_ADMIN)

COLLECTION_TYPE_FOLDER = "folder"
COLLECTION_TYPE_ALBUM = "album"

SYNC_PAGE_DEFAULT = 100
SYNC_PAGE_MAX = 1000


class StorageMode(str, Enum):
    ENCRYPTED_ONLY = "encrypted-only"
    DECRYPTED_ONLY = "decrypted-only"
    HYBRID = "hybrid"


class SyncStatus(str, Enum):
    LOCAL_ONLY = "local-only"
    CLOUD_ONLY = "cloud-only"
    SYNCED = "synced"
    MODIFIED_LOCALLY = "modified-locally"


@dataclass
class KdfParams:
    t_cost: int = DEFAULT_T_COST
    m_cost_kib: int = DEFAULT_M_COST_KiB
    parallelism: int = DEFAULT_PARALLELISM

    def to_dict(self) -> Dict[str, int]:
        return {"t_cost": self.t_cost, "m_cost_kib": self.m_cost_kib, "parallelism": self.parallelism}

    @staticmethod
    def from_dict(d: Dict[str, Any] | None) -> "KdfParams":
        d = d or {}
        return KdfParams(
            t_cost=int(d.get("t_cost", DEFAULT_T_COST)),
            m_cost_kib=int(d.get("m_cost_kib", DEFAULT_M_COST_KiB)),
            parallelism=int(d.get("parallelism", DEFAULT_PARALLELISM)),
        )


@dataclass
class KeyWrap:
    """Ciphertext plus nonce. Sealed payloads carry an empty nonce."""
    ciphertext: bytes = b""
    nonce: bytes = b""

    def __bool__(self) -> bool:
        return bool(self.ciphertext)

    def to_dict(self) -> Dict[str, str]:
        return {"ciphertext": b64e(self.ciphertext), "nonce": b64e(self.nonce)}

    @staticmethod
    def from_dict(d: Dict[str, Any] | None) -> "KeyWrap":
        d = d or {}
        return KeyWrap(ciphertext=b64d(d.get("ciphertext")), nonce=b64d(d.get("nonce")))


@dataclass
class User:
    email: str
    id: str = ""
    password_salt: bytes = b""
    kdf_params: KdfParams = field(default_factory=KdfParams)
    encrypted_master_key: KeyWrap = field(default_factory=KeyWrap)
    encrypted_private_key: KeyWrap = field(default_factory=KeyWrap)
    public_key: bytes = b""
    encrypted_recovery_key: KeyWrap = field(default_factory=KeyWrap)
    master_key_encrypted_with_recovery_key: KeyWrap = field(default_factory=KeyWrap)
    verification_id: str = ""
    challenge_id: str = ""
    key_version: int = 1
    last_key_rotation: Optional[_dt.datetime] = None
    modified_at: Optional[_dt.datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "id": self.id,
            "password_salt": b64e(self.password_salt),
            "kdf_params": self.kdf_params.to_dict(),
            "encrypted_master_key": self.encrypted_master_key.to_dict(),
            "encrypted_private_key": self.encrypted_private_key.to_dict(),
            "public_key": b64e(self.public_key),
            "encrypted_recovery_key": self.encrypted_recovery_key.to_dict(),
            "master_key_encrypted_with_recovery_key": self.master_key_encrypted_with_recovery_key.to_dict(),
            "verification_id": self.verification_id,
            "challenge_id": self.challenge_id,
            "key_version": self.key_version,
            "last_key_rotation": to_iso(self.last_key_rotation),
            "modified_at": to_iso(self.modified_at),
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "User":
        return User(
            email=d["email"],
            id=d.get("id", ""),
            password_salt=b64d(d.get("password_salt")),
            kdf_params=KdfParams.from_dict(d.get("kdf_params")),
            encrypted_master_key=KeyWrap.from_dict(d.get("encrypted_master_key")),
            encrypted_private_key=KeyWrap.from_dict(d.get("encrypted_private_key")),
            public_key=b64d(d.get("public_key")),
            encrypted_recovery_key=KeyWrap.from_dict(d.get("encrypted_recovery_key")),
            master_key_encrypted_with_recovery_key=KeyWrap.from_dict(d.get("master_key_encrypted_with_recovery_key")),
            verification_id=d.get("verification_id", ""),
            challenge_id=d.get("challenge_id", ""),
            key_version=int(d.get("key_version", 1)),
            last_key_rotation=from_iso(d.get("last_key_rotation")),
            modified_at=from_iso(d.get("modified_at")),
        )


@dataclass
class Member:
    recipient_id: str
    recipient_email: str
    permission_level: str
    encrypted_collection_key: bytes = b""  # sealed for the recipient's public key
    granted_by_id: str = ""
    created_at: Optional[_dt.datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "recipient_email": self.recipient_email,
            "permission_level": self.permission_level,
            "encrypted_collection_key": b64e(self.encrypted_collection_key),
            "granted_by_id": self.granted_by_id,
            "created_at": to_iso(self.created_at),
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Member":
        return Member(
            recipient_id=d["recipient_id"],
            recipient_email=d.get("recipient_email", ""),
            permission_level=d.get("permission_level", PERMISSION_READ),
            encrypted_collection_key=b64d(d.get("encrypted_collection_key")),
            granted_by_id=d.get("granted_by_id", ""),
            created_at=from_iso(d.get("created_at")),
        )


@dataclass
class Collection:
    id: str
    owner_id: str
    encrypted_name: KeyWrap = field(default_factory=KeyWrap)
    collection_type: str = COLLECTION_TYPE_FOLDER
    parent_id: str = ""
    ancestor_ids: List[str] = field(default_factory=list)
    encrypted_collection_key: KeyWrap = field(default_factory=KeyWrap)
    members: List[Member] = field(default_factory=list)
    version: int = 1
    state: str = STATE_ACTIVE
    tombstone_version: int = 0
    tombstone_expiry: Optional[_dt.datetime] = None
    created_at: Optional[_dt.datetime] = None
    created_by_user_id: str = ""
    modified_at: Optional[_dt.datetime] = None
    modified_by_user_id: str = ""

    def member(self, recipient_id: str) -> Optional[Member]:
        return next((m for m in self.members if m.recipient_id == recipient_id), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "encrypted_name": self.encrypted_name.to_dict(),
            "collection_type": self.collection_type,
            "parent_id": self.parent_id,
            "ancestor_ids": list(self.ancestor_ids),
            "encrypted_collection_key": self.encrypted_collection_key.to_dict(),
            "members": [m.to_dict() for m in self.members],
            "version": self.version,
            "state": self.state,
            "tombstone_version": self.tombstone_version,
            "tombstone_expiry": to_iso(self.tombstone_expiry),
            "created_at": to_iso(self.created_at),
            "created_by_user_id": self.created_by_user_id,
            "modified_at": to_iso(self.modified_at),
            "modified_by_user_id": self.modified_by_user_id,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Collection":
        return Collection(
            id=d["id"],
            owner_id=d.get("owner_id", ""),
            encrypted_name=KeyWrap.from_dict(d.get("encrypted_name")),
            collection_type=d.get("collection_type", COLLECTION_TYPE_FOLDER),
            parent_id=d.get("parent_id") or "",
            ancestor_ids=list(d.get("ancestor_ids") or []),
            encrypted_collection_key=KeyWrap.from_dict(d.get("encrypted_collection_key")),
            members=[Member.from_dict(m) for m in d.get("members") or []],
            version=int(d.get("version", 1)),
            state=d.get("state", STATE_ACTIVE),
            tombstone_version=int(d.get("tombstone_version", 0)),
            tombstone_expiry=from_iso(d.get("tombstone_expiry")),
            created_at=from_iso(d.get("created_at")),
            created_by_user_id=d.get("created_by_user_id", ""),
            modified_at=from_iso(d.get("modified_at")),
            modified_by_user_id=d.get("modified_by_user_id", ""),
        )


@dataclass
class File:
    id: str
    collection_id: str
    owner_id: str
    encrypted_file_key: KeyWrap = field(default_factory=KeyWrap)
    encrypted_metadata: KeyWrap = field(default_factory=KeyWrap)
    encryption_version: str = "aesgcm-v1"
    encrypted_hash: str = ""
    encrypted_file_path: str = ""
    encrypted_file_size: int = 0
    file_path: str = ""
    file_size: int = 0
    encrypted_thumbnail_path: str = ""
    encrypted_thumbnail_size: int = 0
    thumbnail_path: str = ""
    thumbnail_size: int = 0
    storage_mode: StorageMode = StorageMode.ENCRYPTED_ONLY
    sync_status: SyncStatus = SyncStatus.CLOUD_ONLY
    last_synced_at: Optional[_dt.datetime] = None
    version: int = 1
    state: str = STATE_ACTIVE
    tombstone_version: int = 0
    tombstone_expiry: Optional[_dt.datetime] = None
    created_at: Optional[_dt.datetime] = None
    created_by_user_id: str = ""
    modified_at: Optional[_dt.datetime] = None
    modified_by_user_id: str = ""

    def local_paths(self) -> List[str]:
        return [p for p in (self.encrypted_file_path, self.file_path,
                            self.encrypted_thumbnail_path, self.thumbnail_path) if p]

    def has_local_copy(self) -> bool:
        return bool(self.encrypted_file_path or self.file_path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "collection_id": self.collection_id,
            "owner_id": self.owner_id,
            "encrypted_file_key": self.encrypted_file_key.to_dict(),
            "encrypted_metadata": self.encrypted_metadata.to_dict(),
            "encryption_version": self.encryption_version,
            "encrypted_hash": self.encrypted_hash,
            "encrypted_file_path": self.encrypted_file_path,
            "encrypted_file_size": self.encrypted_file_size,
            "file_path": self.file_path,
            "file_size": self.file_size,
            "encrypted_thumbnail_path": self.encrypted_thumbnail_path,
            "encrypted_thumbnail_size": self.encrypted_thumbnail_size,
            "thumbnail_path": self.thumbnail_path,
            "thumbnail_size": self.thumbnail_size,
            "storage_mode": self.storage_mode.value,
            "sync_status": self.sync_status.value,
            "last_synced_at": to_iso(self.last_synced_at),
            "version": self.version,
            "state": self.state,
            "tombstone_version": self.tombstone_version,
            "tombstone_expiry": to_iso(self.tombstone_expiry),
            "created_at": to_iso(self.created_at),
            "created_by_user_id": self.created_by_user_id,
            "modified_at": to_iso(self.modified_at),
            "modified_by_user_id": self.modified_by_user_id,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "File":
        return File(
            id=d["id"],
            collection_id=d.get("collection_id", ""),
            owner_id=d.get("owner_id", ""),
            encrypted_file_key=KeyWrap.from_dict(d.get("encrypted_file_key")),
            encrypted_metadata=KeyWrap.from_dict(d.get("encrypted_metadata")),
            encryption_version=d.get("encryption_version", "aesgcm-v1"),
            encrypted_hash=d.get("encrypted_hash", ""),
            encrypted_file_path=d.get("encrypted_file_path", ""),
            encrypted_file_size=int(d.get("encrypted_file_size", 0)),
            file_path=d.get("file_path", ""),
            file_size=int(d.get("file_size", 0)),
            encrypted_thumbnail_path=d.get("encrypted_thumbnail_path", ""),
            encrypted_thumbnail_size=int(d.get("encrypted_thumbnail_size", 0)),
            thumbnail_path=d.get("thumbnail_path", ""),
            thumbnail_size=int(d.get("thumbnail_size", 0)),
            storage_mode=StorageMode(d.get("storage_mode", StorageMode.ENCRYPTED_ONLY.value)),
            sync_status=SyncStatus(d.get("sync_status", SyncStatus.CLOUD_ONLY.value)),
            last_synced_at=from_iso(d.get("last_synced_at")),
            version=int(d.get("version", 1)),
            state=d.get("state", STATE_ACTIVE),
            tombstone_version=int(d.get("tombstone_version", 0)),
            tombstone_expiry=from_iso(d.get("tombstone_expiry")),
            created_at=from_iso(d.get("created_at")),
            created_by_user_id=d.get("created_by_user_id", ""),
            modified_at=from_iso(d.get("modified_at")),
            modified_by_user_id=d.get("modified_by_user_id", ""),
        )


@dataclass(frozen=True, order=True)
class SyncCursor:
    """Keyset bookmark. Ordering is (timestamp, id), which is what the server pages by."""
    timestamp: _dt.datetime
    id: str

    def to_dict(self) -> Dict[str, str]:
        return {"last_modified": to_iso(self.timestamp), "last_id": self.id}

    @staticmethod
    def from_dict(d: Dict[str, Any] | None) -> Optional["SyncCursor"]:
        if not d or not d.get("last_modified"):
            return None
        return SyncCursor(timestamp=from_iso(d["last_modified"]), id=d.get("last_id", ""))


@dataclass
class SyncState:
    collection_cursor: Optional[SyncCursor] = None
    file_cursor: Optional[SyncCursor] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collections": self.collection_cursor.to_dict() if self.collection_cursor else None,
            "files": self.file_cursor.to_dict() if self.file_cursor else None,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any] | None) -> "SyncState":
        d = d or {}
        return SyncState(
            collection_cursor=SyncCursor.from_dict(d.get("collections")),
            file_cursor=SyncCursor.from_dict(d.get("files")),
        )


@dataclass
class ChangeRecord:
    """Minimal change entry returned by the cloud's sync listing."""
    id: str
    version: int
    modified_at: _dt.datetime
    state: str = STATE_ACTIVE
    parent_id: str = ""
    collection_id: str = ""
    tombstone_version: int = 0

    @property
    def cursor(self) -> SyncCursor:
        return SyncCursor(self.modified_at, self.id)

    @property
    def is_deleted(self) -> bool:
        return self.state == STATE_DELETED or self.tombstone_version > 0

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "ChangeRecord":
        return ChangeRecord(
            id=d["id"],
            version=int(d.get("version", 0)),
            modified_at=from_iso(d["modified_at"]),
            state=d.get("state", STATE_ACTIVE),
            parent_id=d.get("parent_id") or "",
            collection_id=d.get("collection_id") or "",
            tombstone_version=int(d.get("tombstone_version", 0)),
        )


@dataclass
class ChangePage:
    items: List[ChangeRecord]
    has_more: bool = False
    next_cursor: Optional[SyncCursor] = None


@dataclass
class FileMetadata:
    """Plaintext metadata; only ever stored encrypted under the File Key."""
    name: str
    mime_type: str = "application/octet-stream"
    size: int = 0
    created: str = ""
    file_extension: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "mime_type": self.mime_type,
            "size": self.size,
            "created": self.created,
            "file_extension": self.file_extension,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "FileMetadata":
        return FileMetadata(
            name=d.get("name", ""),
            mime_type=d.get("mime_type", "application/octet-stream"),
            size=int(d.get("size", 0)),
            created=d.get("created", ""),
            file_extension=d.get("file_extension", ""),
        )
