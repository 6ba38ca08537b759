from __future__ import annotations

import argparse
import getpass
import logging
import mimetypes
import sys

from dataclasses import dataclass
from pathlib import Path
from efscloud.cloud.transport import (
    CallContext, CloudTransport, HttpCloudTransport, DEFAULT_TIMEOUT, SYNC_TIMEOUT,
)
from efscloud.crypto.aead import aead_encrypt, unwrap, NONCE_SIZE
from efscloud.crypto.hash import integrity_hash
from efscloud.crypto.keychain import (
    decrypt_file_metadata, decrypt_name, encrypt_file_metadata, encrypt_name, generate_user_keys,
    new_key, unlocked_keys, unwrap_collection_key, unwrap_file_key, wrap_key,
)
from efscloud.crypto.login import LoginFlow
from efscloud.sharing.share import SharingService
from efscloud.storage.filestore import FileStore
from efscloud.storage.kvstore import KVStore
from efscloud.storage.repository import Repository, by_collection
from efscloud.sync.engine import SyncEngine
from efscloud.utils.config import Config, ConfigStore, Session
from efscloud.utils.dataModels import (
    Collection, File, FileMetadata, KdfParams, StorageMode, SyncStatus, User,
    COLLECTION_TYPE_FOLDER, PERMISSION_READ, STATE_ACTIVE,
)
from efscloud.utils.errors import DecryptionFailed, EfsError, NotAuthorized, NotFound, ValidationError
from efscloud.utils.helper import b64e, new_id, rel_time_iso, utcnow

logger = logging.getLogger(__name__)


@dataclass
class Client:
    config_store: ConfigStore
    config: Config
    session: Session
    repo: Repository
    files: FileStore
    transport: CloudTransport
    engine: SyncEngine
    sharing: SharingService

    def close(self) -> None:
        self.repo.kv.close()


def open_client(home: Path | None = None, transport: CloudTransport | None = None) -> Client:
    """Load config and session once and wire the components around them."""
    config_store = ConfigStore(home)
    config, session = config_store.load()
    repo = Repository(KVStore(config.db_path))
    files = FileStore(config.files_root)
    transport = transport or HttpCloudTransport(config, session, on_refresh=config_store.save_session)
    engine = SyncEngine(repo, transport, files, page_size=int(config.get("sync_page_size")))
    return Client(
        config_store=config_store,
        config=config,
        session=session,
        repo=repo,
        files=files,
        transport=transport,
        engine=engine,
        sharing=SharingService(repo, transport, session),
    )


def current_user(client: Client) -> User:
    if not client.session.email:
        raise NotAuthorized("not logged in")
    try:
        return client.repo.get_user(client.session.email)
    except NotFound:
        raise NotAuthorized("current user is not known locally, log in again") from None


# ---- Identity ----

def register(client: Client, ctx: CallContext, email: str, password: str,
             params: KdfParams | None = None) -> tuple[User, bytes]:
    user, recovery_key = generate_user_keys(email.strip().lower(), password, params)
    user.id = client.transport.register(ctx, user) or user.id
    client.repo.save_user(user)
    return user, recovery_key


def login(client: Client, email: str, ott_prompt, password: str, timeout: float = DEFAULT_TIMEOUT) -> User:
    """Run the one-time-token login; ``ott_prompt`` is called between request and verify."""
    flow = LoginFlow(client.transport, client.session)
    flow.request(CallContext(timeout), email)
    flow.verify(CallContext(timeout), ott_prompt())
    user = flow.complete(CallContext(timeout), password, client.repo.find_user(flow.email))
    client.repo.save_user(user)
    client.config_store.save_session(client.session)
    return user


# ---- Collections ----

def create_collection(client: Client, ctx: CallContext, name: str, password: str,
                      parent_id: str = "", collection_type: str = COLLECTION_TYPE_FOLDER) -> Collection:
    """Create locally under a client id, submit it, then re-key under the server id."""
    user = current_user(client)
    ancestors: list[str] = []
    if parent_id:
        parent = client.repo.get_collection(parent_id)
        ancestors = parent.ancestor_ids + [parent.id]
    now = utcnow()
    with unlocked_keys(user, password) as (master_key, _):
        with new_key() as collection_key:
            collection = Collection(
                id=new_id(),
                owner_id=user.id,
                encrypted_name=encrypt_name(name, collection_key),
                collection_type=collection_type,
                parent_id=parent_id,
                ancestor_ids=ancestors,
                encrypted_collection_key=wrap_key(collection_key, master_key),
                version=1,
                state=STATE_ACTIVE,
                created_at=now,
                created_by_user_id=user.id,
                modified_at=now,
                modified_by_user_id=user.id,
            )
    client.repo.save_collection(collection)

    remote = client.transport.create_collection(ctx, collection)
    if remote.id and remote.id != collection.id:
        collection = client.repo.swap_collection_id(collection.id, remote.id)
    collection.version = remote.version or collection.version
    collection.modified_at = remote.modified_at or collection.modified_at
    client.repo.save_collection(collection)
    return collection


def delete_collection(client: Client, ctx: CallContext, collection_id: str) -> None:
    client.repo.get_collection(collection_id)
    try:
        client.transport.delete_collection(ctx, collection_id)
    except NotFound:
        logger.debug("collection %s already gone from the cloud", collection_id)
    files = list(client.repo.list_files(by_collection(collection_id)))
    with client.repo.transaction():
        for f in files:
            client.repo.delete_file(f.id)
        client.repo.delete_collection(collection_id)
    client.files.purge(p for f in files for p in f.local_paths())


def collection_names(client: Client, collections: list[Collection], password: str) -> dict[str, str]:
    """Decrypt many collection names with a single password unlock."""
    user = current_user(client)
    names: dict[str, str] = {}
    with unlocked_keys(user, password) as (master_key, private_key):
        for c in collections:
            with unwrap_collection_key(user, c, master_key, private_key) as collection_key:
                names[c.id] = decrypt_name(c.encrypted_name, collection_key)
    return names


def collection_name(client: Client, collection: Collection, password: str) -> str:
    return collection_names(client, [collection], password)[collection.id]


# ---- Files ----

def add_file(client: Client, ctx: CallContext, collection_id: str, source: Path,
             storage_mode: StorageMode, password: str) -> File:
    source = Path(source)
    if not source.is_file():
        raise ValidationError(f"not a file: {source}")
    user = current_user(client)
    collection = client.repo.get_collection(collection_id)
    member = collection.member(user.id)
    if collection.owner_id != user.id and (member is None or member.permission_level == PERMISSION_READ):
        raise NotAuthorized("you don't have write access to this collection")

    plaintext = source.read_bytes()
    meta = FileMetadata(
        name=source.name,
        mime_type=mimetypes.guess_type(source.name)[0] or "application/octet-stream",
        size=len(plaintext),
        created=rel_time_iso(source.stat().st_ctime),
        file_extension=source.suffix.lstrip("."),
    )
    now = utcnow()
    with unlocked_keys(user, password) as (master_key, private_key):
        with unwrap_collection_key(user, collection, master_key, private_key) as collection_key:
            with new_key() as file_key:
                # blob: nonce||ct
                file_nonce, file_ct = aead_encrypt(file_key.raw(), plaintext)
                blob = file_nonce + file_ct
                entry = File(
                    id=new_id(),
                    collection_id=collection.id,
                    owner_id=user.id,
                    encrypted_file_key=wrap_key(file_key, collection_key),
                    encrypted_metadata=encrypt_file_metadata(meta, file_key),
                    encrypted_hash=integrity_hash(blob),
                    storage_mode=StorageMode(storage_mode),
                    sync_status=SyncStatus.LOCAL_ONLY,
                    created_at=now,
                    created_by_user_id=user.id,
                    modified_at=now,
                    modified_by_user_id=user.id,
                )
    FileStore.apply(entry, client.files.persist(entry.id, meta.name, blob, plaintext, entry.storage_mode))
    client.repo.save_file(entry)
    return entry


def files_metadata(client: Client, entries: list[File], password: str) -> dict[str, FileMetadata]:
    user = current_user(client)
    out: dict[str, FileMetadata] = {}
    with unlocked_keys(user, password) as (master_key, private_key):
        for collection_id in {e.collection_id for e in entries}:
            collection = client.repo.get_collection(collection_id)
            with unwrap_collection_key(user, collection, master_key, private_key) as collection_key:
                for entry in entries:
                    if entry.collection_id != collection_id:
                        continue
                    with unwrap_file_key(entry, collection_key) as file_key:
                        out[entry.id] = decrypt_file_metadata(entry.encrypted_metadata, file_key)
    return out


def file_metadata(client: Client, entry: File, password: str) -> FileMetadata:
    return files_metadata(client, [entry], password)[entry.id]


def _open_blob(blob: bytes, file_key) -> bytes:
    if len(blob) <= NONCE_SIZE:
        raise ValidationError("corrupt blob")
    return unwrap(blob[NONCE_SIZE:], blob[:NONCE_SIZE], file_key.raw())


def extract_file(client: Client, file_id: str, out: Path, password: str) -> Path:
    entry = client.repo.get_file(file_id)
    out = Path(out)
    if entry.file_path and Path(entry.file_path).exists():
        out.write_bytes(Path(entry.file_path).read_bytes())
        return out
    if not entry.encrypted_file_path:
        raise ValidationError(f"file {file_id} has no local copy ({entry.sync_status.value})")

    blob = Path(entry.encrypted_file_path).read_bytes()
    user = current_user(client)
    collection = client.repo.get_collection(entry.collection_id)
    with unlocked_keys(user, password) as (master_key, private_key):
        with unwrap_collection_key(user, collection, master_key, private_key) as collection_key:
            with unwrap_file_key(entry, collection_key) as file_key:
                plaintext = _open_blob(blob, file_key)
    out.write_bytes(plaintext)
    return out


def _download_blob(client: Client, ctx: CallContext, entry: File) -> bytes:
    """Fetch the encrypted blob and check it against the record's integrity hash."""
    blob = client.transport.download_file(ctx, entry.id)
    if entry.encrypted_hash and integrity_hash(blob) != entry.encrypted_hash:
        raise DecryptionFailed(f"downloaded content of file {entry.id} does not match its hash")
    return blob


def onload_file(client: Client, ctx: CallContext, file_id: str, password: str) -> File:
    """Give a cloud-only file local variants according to its storage mode."""
    entry = client.repo.get_file(file_id)
    if entry.sync_status != SyncStatus.CLOUD_ONLY:
        raise ValidationError(f"file {file_id} is not cloud-only ({entry.sync_status.value})")
    blob = _download_blob(client, ctx, entry)

    user = current_user(client)
    collection = client.repo.get_collection(entry.collection_id)
    with unlocked_keys(user, password) as (master_key, private_key):
        with unwrap_collection_key(user, collection, master_key, private_key) as collection_key:
            with unwrap_file_key(entry, collection_key) as file_key:
                meta = decrypt_file_metadata(entry.encrypted_metadata, file_key)
                plaintext = _open_blob(blob, file_key)
    FileStore.apply(entry, client.files.persist(entry.id, meta.name, blob, plaintext, entry.storage_mode))
    entry.sync_status = SyncStatus.SYNCED
    entry.last_synced_at = utcnow()
    client.repo.save_file(entry)
    logger.info("onloaded file %s (%s)", entry.id, entry.storage_mode.value)
    return entry


def offload_file(client: Client, file_id: str) -> File:
    """Drop the local variants of a file the cloud already holds."""
    entry = client.repo.get_file(file_id)
    if entry.sync_status == SyncStatus.CLOUD_ONLY:
        return entry
    if entry.sync_status != SyncStatus.SYNCED:
        raise ValidationError(f"file {file_id} has no cloud copy to fall back on ({entry.sync_status.value})")
    stale = entry.local_paths()
    FileStore.clear(entry)
    entry.sync_status = SyncStatus.CLOUD_ONLY
    client.repo.save_file(entry)
    client.files.purge(stale)
    logger.info("offloaded file %s", entry.id)
    return entry


def set_storage_mode(client: Client, ctx: CallContext, file_id: str, mode: StorageMode,
                     password: str) -> File:
    """Switch which local variants a file keeps (lock to encrypted-only, unlock to hybrid/decrypted)."""
    entry = client.repo.get_file(file_id)
    mode = StorageMode(mode)
    if entry.sync_status == SyncStatus.CLOUD_ONLY:
        entry.storage_mode = mode
        client.repo.save_file(entry)
        return entry
    if mode == entry.storage_mode:
        return entry

    blob = None
    if entry.encrypted_file_path and Path(entry.encrypted_file_path).exists():
        blob = Path(entry.encrypted_file_path).read_bytes()
    elif entry.sync_status == SyncStatus.SYNCED and mode != StorageMode.DECRYPTED_ONLY:
        blob = _download_blob(client, ctx, entry)
    elif not (entry.file_path and Path(entry.file_path).exists()):
        raise ValidationError(f"file {file_id} has no readable local copy")

    user = current_user(client)
    collection = client.repo.get_collection(entry.collection_id)
    with unlocked_keys(user, password) as (master_key, private_key):
        with unwrap_collection_key(user, collection, master_key, private_key) as collection_key:
            with unwrap_file_key(entry, collection_key) as file_key:
                meta = decrypt_file_metadata(entry.encrypted_metadata, file_key)
                if blob is not None:
                    plaintext = _open_blob(blob, file_key)
                else:
                    plaintext = Path(entry.file_path).read_bytes()
                    file_nonce, file_ct = aead_encrypt(file_key.raw(), plaintext)
                    blob = file_nonce + file_ct
                    # a fresh encryption is only the canonical blob while nothing was uploaded
                    if entry.sync_status == SyncStatus.LOCAL_ONLY:
                        entry.encrypted_hash = integrity_hash(blob)

    before = [entry.encrypted_file_path, entry.file_path]
    FileStore.apply(entry, client.files.persist(entry.id, meta.name, blob, plaintext, mode))
    entry.storage_mode = mode
    client.repo.save_file(entry)
    kept = {entry.encrypted_file_path, entry.file_path}
    client.files.purge(p for p in before if p and p not in kept)
    logger.info("file %s now stored %s", entry.id, mode.value)
    return entry


def delete_file(client: Client, ctx: CallContext, file_id: str) -> None:
    entry = client.repo.get_file(file_id)
    if entry.sync_status != SyncStatus.LOCAL_ONLY:
        try:
            client.transport.delete_file(ctx, file_id)
        except NotFound:
            logger.debug("file %s already gone from the cloud", file_id)
    client.repo.delete_file(file_id)
    client.files.purge(entry.local_paths())


# ---- CLI handlers ----

def read_password(args: argparse.Namespace, prompt: str = "Password: ") -> str:
    return getattr(args, "password", None) or getpass.getpass(prompt)


def run(args: argparse.Namespace, fn) -> None:
    """Open the client, run ``fn(client)`` and turn EfsError into one printed line."""
    client = open_client(getattr(args, "home", None))
    try:
        fn(client)
    except EfsError as e:
        print(f"[!] {e}")
        sys.exit(1)
    finally:
        client.close()


def cmd_register(args: argparse.Namespace) -> None:
    def go(client: Client) -> None:
        password = read_password(args)
        params = KdfParams(t_cost=args.t, m_cost_kib=args.m, parallelism=args.p)
        user, recovery_key = register(client, CallContext(DEFAULT_TIMEOUT), args.email, password, params)
        print(f"[+] Registered {user.email}")
        print(f"    verification id: {user.verification_id}")
        print(f"    recovery key (store it offline, it is shown once): {b64e(recovery_key)}")
    run(args, go)


def cmd_login(args: argparse.Namespace) -> None:
    def go(client: Client) -> None:
        ott_prompt = (lambda: args.ott) if args.ott else (lambda: input("One-time token from your email: "))
        password = read_password(args)
        user = login(client, args.email, ott_prompt, password)
        print(f"[+] Logged in as {user.email}")
    run(args, go)


def cmd_logout(args: argparse.Namespace) -> None:
    def go(client: Client) -> None:
        client.config_store.clear_session(client.session)
        print("[+] Logged out")
    run(args, go)


def cmd_sync(args: argparse.Namespace) -> None:
    def go(client: Client) -> None:
        ctx = CallContext(SYNC_TIMEOUT)
        if args.reset:
            client.engine.reset_sync(ctx)
        if args.collections and not args.files:
            result = client.engine.sync_collections(ctx)
        elif args.files and not args.collections:
            result = client.engine.sync_files(ctx)
        else:
            result = client.engine.full_sync(ctx)
        print(f"[+] Collections: {result.collections_processed} processed, {result.collections_added} added, "
              f"{result.collections_updated} updated, {result.collections_deleted} deleted")
        print(f"[+] Files: {result.files_processed} processed, {result.files_added} added, "
              f"{result.files_updated} updated, {result.files_deleted} deleted")
        for err in result.errors:
            print(f"[!] {err}")
    run(args, go)


def cmd_collections_ls(args: argparse.Namespace) -> None:
    def go(client: Client) -> None:
        collections = list(client.repo.list_collections())
        if not collections:
            print("(empty)")
            return
        password = getattr(args, "password", None)
        names = collection_names(client, collections, password) if password else {}
        for c in collections:
            name = names.get(c.id, "<locked>")
            print(f"{c.id}\t{name}\tv{c.version}\t{c.state}\t{len(c.members)} members")
    run(args, go)


def cmd_collections_create(args: argparse.Namespace) -> None:
    def go(client: Client) -> None:
        c = create_collection(client, CallContext(DEFAULT_TIMEOUT), args.name, read_password(args),
                              parent_id=args.parent or "", collection_type=args.type)
        print(f"[+] Created collection {args.name} as id={c.id}")
    run(args, go)


def cmd_collections_delete(args: argparse.Namespace) -> None:
    def go(client: Client) -> None:
        delete_collection(client, CallContext(DEFAULT_TIMEOUT), args.id)
        print(f"[+] Removed collection id={args.id}")
    run(args, go)


def cmd_files_ls(args: argparse.Namespace) -> None:
    def go(client: Client) -> None:
        pred = by_collection(args.collection) if args.collection else None
        entries = list(client.repo.list_files(pred))
        if not entries:
            print("(empty)")
            return
        password = getattr(args, "password", None)
        metas = files_metadata(client, entries, password) if password else {}
        for f in entries:
            name = metas[f.id].name if f.id in metas else "<locked>"
            print(f"{f.id}\t{name}\t{f.sync_status.value}\t{f.storage_mode.value}\tv{f.version}")
    run(args, go)


def cmd_files_add(args: argparse.Namespace) -> None:
    def go(client: Client) -> None:
        entry = add_file(client, CallContext(DEFAULT_TIMEOUT), args.collection, Path(args.path),
                         StorageMode(args.mode), read_password(args))
        print(f"[+] Encrypted and added {Path(args.path).name} as id={entry.id}")
    run(args, go)


def cmd_files_extract(args: argparse.Namespace) -> None:
    def go(client: Client) -> None:
        out = extract_file(client, args.id, Path(args.out), read_password(args))
        print(f"[+] Extracted {args.id} -> {out}")
    run(args, go)


def cmd_files_delete(args: argparse.Namespace) -> None:
    def go(client: Client) -> None:
        delete_file(client, CallContext(DEFAULT_TIMEOUT), args.id)
        print(f"[+] Removed id={args.id}")
    run(args, go)


def cmd_files_onload(args: argparse.Namespace) -> None:
    def go(client: Client) -> None:
        entry = onload_file(client, CallContext(SYNC_TIMEOUT), args.id, read_password(args))
        print(f"[+] Downloaded id={entry.id} ({entry.storage_mode.value})")
    run(args, go)


def cmd_files_offload(args: argparse.Namespace) -> None:
    def go(client: Client) -> None:
        offload_file(client, args.id)
        print(f"[+] Removed local copies of id={args.id}, it stays in the cloud")
    run(args, go)


def cmd_files_mode(args: argparse.Namespace) -> None:
    def go(client: Client) -> None:
        entry = set_storage_mode(client, CallContext(SYNC_TIMEOUT), args.id, StorageMode(args.mode),
                                 read_password(args))
        print(f"[+] id={entry.id} is now stored {entry.storage_mode.value}")
    run(args, go)
