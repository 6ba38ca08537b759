"""Typed tables over the key-value store.

The generic layer (put/get/delete/iterate) deals in opaque encoded bytes keyed
by ``<type>:<id>``; the typed helpers encode/decode through ``codec``.
"""
from __future__ import annotations

import logging

from typing import Callable, Iterator, Optional

from efscloud.storage.codec import decode_record, encode_record
from efscloud.storage.kvstore import KVStore
from efscloud.utils.dataModels import Collection, File, SyncState, User
from efscloud.utils.errors import IdentifierConflict, NotFound, ValidationError
from efscloud.utils.helper import validate_id

logger = logging.getLogger(__name__)

USER = "user"
COLLECTION = "local_collection"
FILE = "file"
SYNC_STATE_KEY = "sync_state"


def record_key(rtype: str, rid: str) -> str:
    return f"{rtype}:{rid}"


class Repository:

    def __init__(self, kv: KVStore):
        self.kv = kv

    def transaction(self):
        return self.kv.transaction()

    # ---- generic ----

    def put(self, rtype: str, rid: str, record: bytes) -> None:
        self.kv.put(record_key(rtype, rid), record)

    def get(self, rtype: str, rid: str) -> bytes:
        data = self.kv.get(record_key(rtype, rid))
        if data is None:
            raise NotFound(f"{rtype} {rid} not found")
        return data

    def delete(self, rtype: str, rid: str) -> None:
        self.kv.delete(record_key(rtype, rid))

    def exists(self, rtype: str, rid: str) -> bool:
        return self.kv.exists(record_key(rtype, rid))

    def iterate(self, rtype: str, predicate: Callable[[bytes], bool] | None = None) -> Iterator[bytes]:
        for _, value in self.kv.iterate(rtype + ":"):
            if predicate is None or predicate(value):
                yield value

    # ---- users ----

    def get_user(self, email: str) -> User:
        return User.from_dict(decode_record(self.get(USER, email.lower())))

    def find_user(self, email: str) -> Optional[User]:
        try:
            return self.get_user(email)
        except NotFound:
            return None

    def save_user(self, user: User) -> None:
        self.put(USER, user.email.lower(), encode_record(user.to_dict()))

    def delete_user(self, email: str) -> None:
        self.delete(USER, email.lower())

    # ---- collections ----

    def get_collection(self, collection_id: str) -> Collection:
        return Collection.from_dict(decode_record(self.get(COLLECTION, collection_id)))

    def find_collection(self, collection_id: str) -> Optional[Collection]:
        try:
            return self.get_collection(collection_id)
        except NotFound:
            return None

    def save_collection(self, collection: Collection) -> None:
        self.put(COLLECTION, collection.id, encode_record(collection.to_dict()))

    def delete_collection(self, collection_id: str) -> None:
        self.delete(COLLECTION, collection_id)

    def list_collections(self, predicate: Callable[[Collection], bool] | None = None) -> Iterator[Collection]:
        for raw in self.iterate(COLLECTION):
            c = Collection.from_dict(decode_record(raw))
            if predicate is None or predicate(c):
                yield c

    # ---- files ----

    def get_file(self, file_id: str) -> File:
        return File.from_dict(decode_record(self.get(FILE, file_id)))

    def find_file(self, file_id: str) -> Optional[File]:
        try:
            return self.get_file(file_id)
        except NotFound:
            return None

    def save_file(self, file: File) -> None:
        self.put(FILE, file.id, encode_record(file.to_dict()))

    def delete_file(self, file_id: str) -> None:
        self.delete(FILE, file_id)

    def list_files(self, predicate: Callable[[File], bool] | None = None) -> Iterator[File]:
        for raw in self.iterate(FILE):
            f = File.from_dict(decode_record(raw))
            if predicate is None or predicate(f):
                yield f

    # ---- sync state ----

    def get_sync_state(self) -> SyncState:
        data = self.kv.get(SYNC_STATE_KEY)
        return SyncState.from_dict(decode_record(data)) if data else SyncState()

    def save_sync_state(self, state: SyncState) -> None:
        self.kv.put(SYNC_STATE_KEY, encode_record(state.to_dict()))

    def reset_sync_state(self) -> None:
        self.kv.delete(SYNC_STATE_KEY)

    # ---- identifier swap ----

    def _check_swap(self, rtype: str, old_id: str, new_id: str) -> tuple[str, str]:
        old_id = validate_id(old_id, "old id")
        new_id = validate_id(new_id, "new id")
        if old_id == new_id:
            raise ValidationError("old and new id must differ")
        if not self.exists(rtype, old_id):
            raise NotFound(f"{rtype} {old_id} not found")
        if self.exists(rtype, new_id):
            raise IdentifierConflict(f"{rtype} {new_id} already exists")
        return old_id, new_id

    def swap_collection_id(self, old_id: str, new_id: str) -> Collection:
        """Re-key a locally created collection under its server-assigned id.

        Children and member files are re-pointed in the same transaction; on
        any failure the transaction is discarded and the original is intact.
        """
        old_id, new_id = self._check_swap(COLLECTION, old_id, new_id)
        clone = Collection.from_dict({**self.get_collection(old_id).to_dict(), "id": new_id})
        children = list(self.list_collections(lambda c: c.parent_id == old_id or old_id in c.ancestor_ids))
        files = list(self.list_files(lambda f: f.collection_id == old_id))
        with self.transaction():
            self.delete_collection(old_id)
            self.save_collection(clone)
            for child in children:
                if child.parent_id == old_id:
                    child.parent_id = new_id
                child.ancestor_ids = [new_id if a == old_id else a for a in child.ancestor_ids]
                self.save_collection(child)
            for f in files:
                f.collection_id = new_id
                self.save_file(f)
        logger.debug("swapped collection id %s -> %s", old_id, new_id)
        return clone

    def swap_file_id(self, old_id: str, new_id: str) -> File:
        old_id, new_id = self._check_swap(FILE, old_id, new_id)
        clone = File.from_dict({**self.get_file(old_id).to_dict(), "id": new_id})
        with self.transaction():
            self.delete_file(old_id)
            self.save_file(clone)
        logger.debug("swapped file id %s -> %s", old_id, new_id)
        return clone


# ---- predefined filters ----

def by_parent(parent_id: str) -> Callable[[Collection], bool]:
    return lambda c: c.parent_id == parent_id


def by_collection(collection_id: str) -> Callable[[File], bool]:
    return lambda f: f.collection_id == collection_id


def by_state(state: str) -> Callable:
    return lambda r: r.state == state


def by_sync_status(status) -> Callable[[File], bool]:
    return lambda f: f.sync_status == status
