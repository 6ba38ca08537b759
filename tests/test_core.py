import json

import pytest

from efscloud.cloud.transport import CallContext
from efscloud.crypto.hash import integrity_hash
from efscloud.efs import main
from efscloud.ui.cli import build_parser
from efscloud.utils import core
from efscloud.utils.config import ConfigStore, HOME_ENV, default_home
from efscloud.utils.dataModels import (
    Collection, File, Member, StorageMode, SyncStatus, PERMISSION_READ,
)
from efscloud.utils.errors import DecryptionFailed, NotAuthorized, ValidationError
from efscloud.utils.maintain import publish_user
from efscloud.utils.helper import new_id

from conftest import FAST_KDF


def test_register_stores_user_locally_and_in_cloud(tmp_path, cloud):
    client = core.open_client(tmp_path / "home", transport=cloud)
    try:
        user, recovery_key = core.register(client, CallContext(), "Carol@Example.com", "carol-pw", FAST_KDF)
    finally:
        client.close()
    assert len(recovery_key) == 32
    assert cloud.users["carol@example.com"] is user
    reopened = core.open_client(tmp_path / "home", transport=cloud)
    assert reopened.repo.get_user("carol@example.com").id == user.id
    reopened.close()


def test_login_persists_session(tmp_path, cloud, alice):
    user, _ = alice
    cloud.register(None, user)
    client = core.open_client(tmp_path / "home", transport=cloud)
    core.login(client, user.email, lambda: cloud.OTT, "alice-pw")
    client.close()

    _, session = ConfigStore(tmp_path / "home").load()
    assert session.email == "alice@example.com"
    assert session.access_token == "access-alice@example.com"


def test_create_collection_adopts_server_id(client, cloud):
    parent = core.create_collection(client, CallContext(), "Photos", "alice-pw")
    child = core.create_collection(client, CallContext(), "2024", "alice-pw", parent_id=parent.id)

    assert parent.id in cloud.collections
    assert client.repo.get_collection(parent.id).version == 1
    assert child.parent_id == parent.id
    assert child.ancestor_ids == [parent.id]
    assert len(list(client.repo.list_collections())) == 2
    assert core.collection_name(client, client.repo.get_collection(child.id), "alice-pw") == "2024"


@pytest.mark.parametrize("mode", list(StorageMode))
def test_add_and_extract_file(client, tmp_path, mode):
    collection = core.create_collection(client, CallContext(), "Docs", "alice-pw")
    source = tmp_path / "notes.txt"
    source.write_bytes(b"meet at noon")

    entry = core.add_file(client, CallContext(), collection.id, source, mode, "alice-pw")

    stored = client.repo.get_file(entry.id)
    assert stored.sync_status == SyncStatus.LOCAL_ONLY
    assert stored.storage_mode == mode
    assert stored.has_local_copy()
    assert core.file_metadata(client, stored, "alice-pw").name == "notes.txt"
    assert core.file_metadata(client, stored, "alice-pw").mime_type == "text/plain"

    out = core.extract_file(client, entry.id, tmp_path / "out.txt", "alice-pw")
    assert out.read_bytes() == b"meet at noon"


def test_encrypted_blob_is_opaque(client, tmp_path):
    collection = core.create_collection(client, CallContext(), "Docs", "alice-pw")
    source = tmp_path / "secret.txt"
    source.write_bytes(b"plaintext marker")
    entry = core.add_file(client, CallContext(), collection.id, source, StorageMode.ENCRYPTED_ONLY, "alice-pw")

    blob = client.files.encrypted_path(entry.id).read_bytes()
    assert b"plaintext marker" not in blob
    assert b"secret.txt" not in client.repo.kv.get(f"file:{entry.id}")


def test_read_member_cannot_add_files(client, tmp_path, alice):
    user, _ = alice
    foreign = Collection(id=new_id(), owner_id=new_id(), members=[
        Member(recipient_id=user.id, recipient_email=user.email, permission_level=PERMISSION_READ),
    ])
    client.repo.save_collection(foreign)
    source = tmp_path / "a.txt"
    source.write_text("x")
    with pytest.raises(NotAuthorized):
        core.add_file(client, CallContext(), foreign.id, source, StorageMode.HYBRID, "alice-pw")


def test_extract_cloud_only_file_fails(client, tmp_path):
    f = File(id=new_id(), collection_id=new_id(), owner_id=new_id())
    client.repo.save_file(f)
    with pytest.raises(ValidationError):
        core.extract_file(client, f.id, tmp_path / "out", "alice-pw")


def test_delete_file_purges_variants(client, tmp_path):
    collection = core.create_collection(client, CallContext(), "Docs", "alice-pw")
    source = tmp_path / "a.txt"
    source.write_text("x")
    entry = core.add_file(client, CallContext(), collection.id, source, StorageMode.HYBRID, "alice-pw")

    core.delete_file(client, CallContext(), entry.id)

    assert client.repo.find_file(entry.id) is None
    assert not client.files.encrypted_path(entry.id).exists()
    assert not client.files.decrypted_path(entry.id, "a.txt").exists()


def test_delete_collection_removes_files(client, cloud, tmp_path):
    collection = core.create_collection(client, CallContext(), "Docs", "alice-pw")
    source = tmp_path / "a.txt"
    source.write_text("x")
    entry = core.add_file(client, CallContext(), collection.id, source, StorageMode.ENCRYPTED_ONLY, "alice-pw")

    core.delete_collection(client, CallContext(), collection.id)

    assert client.repo.find_collection(collection.id) is None
    assert client.repo.find_file(entry.id) is None
    assert not client.files.encrypted_path(entry.id).exists()
    assert cloud.collections[collection.id].state == "deleted"


def _in_cloud(client, cloud, tmp_path, mode=StorageMode.ENCRYPTED_ONLY):
    """Add a file and mirror it into the cloud as an uploaded, synced file."""
    collection = core.create_collection(client, CallContext(), "Docs", "alice-pw")
    source = tmp_path / "report.txt"
    source.write_bytes(b"quarterly numbers")
    entry = core.add_file(client, CallContext(), collection.id, source, mode, "alice-pw")
    cloud.blobs[entry.id] = client.files.encrypted_path(entry.id).read_bytes()
    entry.sync_status = SyncStatus.SYNCED
    entry.version = 1
    client.repo.save_file(entry)
    cloud.put_file(entry)
    return entry


def test_offload_then_onload_restores_local_copy(client, cloud, tmp_path):
    entry = _in_cloud(client, cloud, tmp_path, StorageMode.HYBRID)

    offloaded = core.offload_file(client, entry.id)

    assert offloaded.sync_status == SyncStatus.CLOUD_ONLY
    assert not client.repo.get_file(entry.id).has_local_copy()
    assert not client.files.encrypted_path(entry.id).exists()
    assert not client.files.decrypted_path(entry.id, "report.txt").exists()
    with pytest.raises(ValidationError):
        core.extract_file(client, entry.id, tmp_path / "out.txt", "alice-pw")

    onloaded = core.onload_file(client, CallContext(), entry.id, "alice-pw")

    stored = client.repo.get_file(entry.id)
    assert onloaded.sync_status == stored.sync_status == SyncStatus.SYNCED
    assert stored.storage_mode == StorageMode.HYBRID
    assert stored.last_synced_at is not None
    assert client.files.encrypted_path(entry.id).read_bytes() == cloud.blobs[entry.id]
    assert client.files.decrypted_path(entry.id, "report.txt").read_bytes() == b"quarterly numbers"


def test_onload_file_discovered_by_sync(client, cloud, tmp_path):
    entry = _in_cloud(client, cloud, tmp_path)
    client.repo.delete_file(entry.id)
    client.files.purge(entry.local_paths())

    client.engine.full_sync(CallContext())
    assert client.repo.get_file(entry.id).sync_status == SyncStatus.CLOUD_ONLY

    core.onload_file(client, CallContext(), entry.id, "alice-pw")
    out = core.extract_file(client, entry.id, tmp_path / "out.txt", "alice-pw")
    assert out.read_bytes() == b"quarterly numbers"


def test_onload_rejects_content_not_matching_hash(client, cloud, tmp_path):
    entry = _in_cloud(client, cloud, tmp_path)
    core.offload_file(client, entry.id)
    cloud.blobs[entry.id] = b"\x00" * 48

    with pytest.raises(DecryptionFailed):
        core.onload_file(client, CallContext(), entry.id, "alice-pw")

    assert client.repo.get_file(entry.id).sync_status == SyncStatus.CLOUD_ONLY
    assert not client.files.encrypted_path(entry.id).exists()


def test_onload_and_offload_check_sync_status(client, cloud, tmp_path):
    collection = core.create_collection(client, CallContext(), "Docs", "alice-pw")
    source = tmp_path / "a.txt"
    source.write_text("x")
    local = core.add_file(client, CallContext(), collection.id, source, StorageMode.ENCRYPTED_ONLY, "alice-pw")

    with pytest.raises(ValidationError):
        core.offload_file(client, local.id)
    assert client.files.encrypted_path(local.id).exists()
    with pytest.raises(ValidationError):
        core.onload_file(client, CallContext(), local.id, "alice-pw")
    assert "download_file" not in cloud.calls


def test_storage_mode_changes_for_local_file(client, tmp_path):
    collection = core.create_collection(client, CallContext(), "Docs", "alice-pw")
    source = tmp_path / "a.txt"
    source.write_bytes(b"draft")
    entry = core.add_file(client, CallContext(), collection.id, source, StorageMode.ENCRYPTED_ONLY, "alice-pw")
    enc_path = client.files.encrypted_path(entry.id)
    dec_path = client.files.decrypted_path(entry.id, "a.txt")

    core.set_storage_mode(client, CallContext(), entry.id, StorageMode.HYBRID, "alice-pw")
    assert enc_path.exists() and dec_path.read_bytes() == b"draft"

    unlocked = core.set_storage_mode(client, CallContext(), entry.id, StorageMode.DECRYPTED_ONLY, "alice-pw")
    assert not enc_path.exists() and dec_path.exists()
    assert unlocked.encrypted_file_path == ""

    locked = core.set_storage_mode(client, CallContext(), entry.id, StorageMode.ENCRYPTED_ONLY, "alice-pw")
    assert enc_path.exists() and not dec_path.exists()
    stored = client.repo.get_file(entry.id)
    assert stored.storage_mode == StorageMode.ENCRYPTED_ONLY
    assert stored.file_path == ""
    assert locked.encrypted_hash == integrity_hash(enc_path.read_bytes())
    out = core.extract_file(client, entry.id, tmp_path / "out.txt", "alice-pw")
    assert out.read_bytes() == b"draft"


def test_locking_synced_file_fetches_cloud_blob(client, cloud, tmp_path):
    entry = _in_cloud(client, cloud, tmp_path)
    core.set_storage_mode(client, CallContext(), entry.id, StorageMode.DECRYPTED_ONLY, "alice-pw")
    assert not client.files.encrypted_path(entry.id).exists()

    locked = core.set_storage_mode(client, CallContext(), entry.id, StorageMode.ENCRYPTED_ONLY, "alice-pw")

    assert "download_file" in cloud.calls
    assert client.files.encrypted_path(entry.id).read_bytes() == cloud.blobs[entry.id]
    assert locked.encrypted_hash == entry.encrypted_hash
    assert not client.files.decrypted_path(entry.id, "report.txt").exists()


def test_ls_commands_unlock_once(client, tmp_path, monkeypatch, capsys):
    docs = core.create_collection(client, CallContext(), "Docs", "alice-pw")
    core.create_collection(client, CallContext(), "Photos", "alice-pw")
    for name in ("a.txt", "b.txt"):
        source = tmp_path / name
        source.write_text(name)
        core.add_file(client, CallContext(), docs.id, source, StorageMode.ENCRYPTED_ONLY, "alice-pw")

    unlocks = []
    real_unlock = core.unlocked_keys

    def counting(user, password):
        unlocks.append(password)
        return real_unlock(user, password)

    monkeypatch.setattr(core, "unlocked_keys", counting)
    monkeypatch.setattr(core, "open_client", lambda home=None: client)
    monkeypatch.setattr(client, "close", lambda: None)
    p = build_parser()

    core.cmd_collections_ls(p.parse_args(["collections", "ls", "--password", "alice-pw"]))
    core.cmd_files_ls(p.parse_args(["files", "ls", "--password", "alice-pw"]))

    assert len(unlocks) == 2
    out = capsys.readouterr().out
    for name in ("Docs", "Photos", "a.txt", "b.txt"):
        assert name in out


def test_current_user_requires_session(client):
    client.session.clear()
    with pytest.raises(NotAuthorized):
        core.current_user(client)


def test_publish_user_only_when_signed_in(client, cloud, alice):
    user, _ = alice
    assert publish_user(client, user)
    assert "update_user" in cloud.calls

    cloud.calls.clear()
    client.session.clear()
    assert not publish_user(client, user)
    assert "update_user" not in cloud.calls


# ---- configuration ----

def test_config_defaults_and_session_roundtrip(tmp_path):
    store = ConfigStore(tmp_path)
    config, session = store.load()
    assert config.cloud_provider_address == "http://localhost:8000"
    assert config.db_path == tmp_path / "efs.db"

    session.email = "alice@example.com"
    session.access_token = "tok"
    store.save_session(session)
    assert ConfigStore(tmp_path).load()[1].access_token == "tok"

    store.clear_session(session)
    assert not ConfigStore(tmp_path).load()[1].is_authenticated


def test_unreadable_config_is_ignored(tmp_path):
    (tmp_path / "config.json").write_text("{broken")
    config, session = ConfigStore(tmp_path).load()
    assert config.get("sync_page_size") == 100
    assert session.email == ""


def test_home_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv(HOME_ENV, str(tmp_path / "elsewhere"))
    assert default_home() == tmp_path / "elsewhere"


# ---- command line ----

def test_parser_commands():
    p = build_parser()
    args = p.parse_args(["files", "add", new_id(), "a.txt", "--mode", "hybrid", "--password", "pw"])
    assert args.func is core.cmd_files_add and args.mode == "hybrid"
    args = p.parse_args(["share", new_id(), "bob@example.com", "--permission", "write"])
    assert args.permission == "write"
    with pytest.raises(SystemExit):
        p.parse_args(["share", new_id(), "bob@example.com", "--permission", "owner"])
    file_id = new_id()
    assert p.parse_args(["files", "onload", file_id]).func is core.cmd_files_onload
    assert p.parse_args(["files", "offload", file_id]).func is core.cmd_files_offload
    args = p.parse_args(["files", "mode", file_id, "decrypted-only"])
    assert args.func is core.cmd_files_mode and args.mode == "decrypted-only"
    with pytest.raises(SystemExit):
        p.parse_args(["files", "mode", file_id, "plain"])


def test_cli_logout_and_failure(tmp_path, monkeypatch, capsys):
    home = tmp_path / "home"
    home.mkdir()
    (home / "config.json").write_text(json.dumps({"session": {"email": "a@example.com", "access_token": "t"}}))

    monkeypatch.setattr("sys.argv", ["efs-cloud", "--home", str(home), "logout"])
    main()
    assert "[+] Logged out" in capsys.readouterr().out
    assert not ConfigStore(home).load()[1].is_authenticated

    argv = ["efs-cloud", "--home", str(home), "files", "extract", new_id(), "out", "--password", "pw"]
    monkeypatch.setattr("sys.argv", argv)
    with pytest.raises(SystemExit) as exc:
        main()
    assert exc.value.code == 1
    assert capsys.readouterr().out.startswith("[!]")
