import datetime as _dt

import pytest

from efscloud.cloud.transport import CloudTransport, LoginChallenge, PublicUser
from efscloud.crypto.keychain import generate_user_keys
from efscloud.crypto.sealed import seal_for_recipient
from efscloud.storage.filestore import FileStore
from efscloud.storage.kvstore import KVStore
from efscloud.storage.repository import Repository
from efscloud.sync.engine import SyncEngine
from efscloud.utils.config import Session, TokenPair
from efscloud.utils.core import open_client
from efscloud.utils.dataModels import (
    ChangePage, ChangeRecord, Collection, File, KdfParams, STATE_DELETED,
)
from efscloud.utils.errors import NotFound, TransportError
from efscloud.utils.helper import new_id, utcnow

# keep Argon2 cheap in tests
FAST_KDF = KdfParams(t_cost=1, m_cost_kib=1024, parallelism=1)

T0 = _dt.datetime(2024, 1, 1, tzinfo=_dt.timezone.utc)


def ts(seconds: int) -> _dt.datetime:
    return T0 + _dt.timedelta(seconds=seconds)


class FakeCloud(CloudTransport):
    """In-memory cloud: change feeds ordered by (modified_at, id), tombstones, users and login."""

    OTT = "123456"

    def __init__(self):
        self.collections: dict[str, Collection] = {}
        self.files: dict[str, File] = {}
        self.blobs: dict[str, bytes] = {}
        self.users: dict[str, object] = {}
        self.calls: list[str] = []
        self.fail_listing: Exception | None = None
        self.fail_get: dict[str, Exception] = {}
        self.clock = 1000
        self._challenges: dict[str, bytes] = {}

    def tick(self) -> _dt.datetime:
        self.clock += 1
        return ts(self.clock)

    # ---- seeding ----

    def put_collection(self, c: Collection) -> Collection:
        self.collections[c.id] = Collection.from_dict(c.to_dict())
        return c

    def put_file(self, f: File) -> File:
        self.files[f.id] = File.from_dict(f.to_dict())
        return f

    def tombstone_collection(self, cid: str, modified_at=None) -> None:
        c = self.collections[cid]
        c.state = STATE_DELETED
        c.version += 1
        c.tombstone_version = c.version
        c.modified_at = modified_at or self.tick()

    # ---- sync ----

    @staticmethod
    def _page(records, cursor, limit) -> ChangePage:
        ordered = sorted(records, key=lambda r: (r.modified_at, r.id))
        if cursor is not None:
            ordered = [r for r in ordered if (r.modified_at, r.id) > (cursor.timestamp, cursor.id)]
        chunk = ordered[:limit]
        items = [ChangeRecord(id=r.id, version=r.version, modified_at=r.modified_at, state=r.state,
                              tombstone_version=r.tombstone_version) for r in chunk]
        return ChangePage(items=items, has_more=len(ordered) > limit,
                          next_cursor=items[-1].cursor if items else None)

    def list_collection_changes(self, ctx, cursor, limit):
        self.calls.append("list_collection_changes")
        if self.fail_listing:
            raise self.fail_listing
        return self._page(self.collections.values(), cursor, limit)

    def list_file_changes(self, ctx, cursor, limit):
        self.calls.append("list_file_changes")
        if self.fail_listing:
            raise self.fail_listing
        return self._page(self.files.values(), cursor, limit)

    def get_collection(self, ctx, collection_id):
        if collection_id in self.fail_get:
            raise self.fail_get[collection_id]
        if collection_id not in self.collections:
            raise NotFound(f"collection {collection_id}")
        return Collection.from_dict(self.collections[collection_id].to_dict())

    def get_file(self, ctx, file_id):
        if file_id in self.fail_get:
            raise self.fail_get[file_id]
        if file_id not in self.files:
            raise NotFound(f"file {file_id}")
        return File.from_dict(self.files[file_id].to_dict())

    def create_collection(self, ctx, collection):
        stored = Collection.from_dict({**collection.to_dict(), "id": new_id()})
        stored.version = 1
        stored.modified_at = self.tick()
        self.collections[stored.id] = stored
        return Collection.from_dict(stored.to_dict())

    def delete_collection(self, ctx, collection_id):
        if collection_id not in self.collections:
            raise NotFound(f"collection {collection_id}")
        self.tombstone_collection(collection_id)

    def delete_file(self, ctx, file_id):
        if file_id not in self.files:
            raise NotFound(f"file {file_id}")
        f = self.files[file_id]
        f.state = STATE_DELETED
        f.version += 1
        f.tombstone_version = f.version
        f.modified_at = self.tick()

    def download_file(self, ctx, file_id):
        self.calls.append("download_file")
        if file_id not in self.blobs:
            raise NotFound(f"file data {file_id}")
        return self.blobs[file_id]

    # ---- sharing ----

    def lookup_user(self, ctx, email):
        user = self.users.get(email)
        if user is None:
            raise NotFound(f"user {email}")
        return PublicUser(user_id=user.id, email=user.email, public_key=user.public_key,
                          verification_id=user.verification_id)

    def share_collection(self, ctx, collection_id, member):
        c = self.collections[collection_id]
        c.members.append(member)
        c.version += 1
        c.modified_at = self.tick()

    def remove_member(self, ctx, collection_id, recipient_id):
        c = self.collections[collection_id]
        c.members = [m for m in c.members if m.recipient_id != recipient_id]
        c.version += 1
        c.modified_at = self.tick()

    # ---- identity ----

    def register(self, ctx, user):
        user.id = user.id or new_id()
        self.users[user.email] = user
        return user.id

    def update_user(self, ctx, user):
        self.calls.append("update_user")
        self.users[user.email] = user

    def request_login_ott(self, ctx, email):
        if email not in self.users:
            raise NotFound(f"user {email}")

    def verify_login_ott(self, ctx, email, ott):
        if ott != self.OTT:
            raise TransportError("invalid one-time token", status=400)
        user = self.users[email]
        challenge = b"challenge-" + email.encode()
        challenge_id = new_id()
        self._challenges[challenge_id] = challenge
        return LoginChallenge(
            user_id=user.id,
            salt=user.password_salt,
            kdf_params=user.kdf_params,
            encrypted_master_key=user.encrypted_master_key,
            encrypted_private_key=user.encrypted_private_key,
            public_key=user.public_key,
            encrypted_challenge=seal_for_recipient(challenge, user.public_key),
            challenge_id=challenge_id,
        )

    def complete_login(self, ctx, email, challenge_id, decrypted_challenge):
        if self._challenges.pop(challenge_id, None) != decrypted_challenge:
            raise TransportError("challenge mismatch", status=401)
        now = utcnow()
        return TokenPair(
            access_token="access-" + email,
            access_token_expiry=now + _dt.timedelta(minutes=30),
            refresh_token="refresh-" + email,
            refresh_token_expiry=now + _dt.timedelta(days=14),
        )

    def refresh_token(self, ctx, refresh_token):
        now = utcnow()
        return TokenPair("access-refreshed", now + _dt.timedelta(minutes=30), refresh_token,
                         now + _dt.timedelta(days=14))


def make_user(email: str, password: str):
    user, recovery_key = generate_user_keys(email, password, FAST_KDF)
    user.id = new_id()
    return user, recovery_key


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def repo():
    kv = KVStore()
    yield Repository(kv)
    kv.close()


@pytest.fixture
def filestore(tmp_path):
    return FileStore(tmp_path / "files")


@pytest.fixture
def engine(repo, cloud, filestore):
    return SyncEngine(repo, cloud, filestore, page_size=2)


@pytest.fixture
def alice():
    return make_user("alice@example.com", "alice-pw")


@pytest.fixture
def bob():
    return make_user("bob@example.com", "bob-pw")


@pytest.fixture
def session():
    return Session()


@pytest.fixture
def client(tmp_path, cloud, alice):
    """A wired client signed in as alice, with bob known to the cloud."""
    c = open_client(tmp_path / "home", transport=cloud)
    user, _ = alice
    cloud.register(None, user)
    c.repo.save_user(user)
    c.session.email = user.email
    c.session.access_token = "access-alice"
    yield c
    c.close()
