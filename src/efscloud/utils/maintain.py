from __future__ import annotations

import argparse
import getpass

from efscloud.cloud.transport import CallContext, DEFAULT_TIMEOUT, SYNC_TIMEOUT
from efscloud.crypto.keychain import change_password, recover_with_recovery_key, show_recovery_key
from efscloud.utils.core import Client, current_user, read_password, run
from efscloud.utils.dataModels import KdfParams, User
from efscloud.utils.errors import ValidationError


def _new_password(args: argparse.Namespace) -> str:
    if getattr(args, "new_password", None):
        return args.new_password
    first = getpass.getpass("New password: ")
    if first != getpass.getpass("Repeat new password: "):
        raise ValidationError("passwords do not match")
    return first


def _new_params(args: argparse.Namespace, user: User) -> KdfParams:
    old = user.kdf_params
    return KdfParams(
        t_cost=args.t if args.t is not None else old.t_cost,
        m_cost_kib=args.m if args.m is not None else old.m_cost_kib,
        parallelism=args.p if args.p is not None else old.parallelism,
    )


def publish_user(client: Client, user: User) -> bool:
    """Push a re-wrapped key bundle to the cloud (when signed in), then keep it locally."""
    published = client.session.is_authenticated and client.session.email == user.email
    if published:
        client.transport.update_user(CallContext(DEFAULT_TIMEOUT), user)
    client.repo.save_user(user)
    return published


def cmd_share(args: argparse.Namespace) -> None:
    def go(client: Client) -> None:
        result = client.sharing.share_collection(
            CallContext(DEFAULT_TIMEOUT), args.collection, args.email, args.permission, read_password(args))
        print(f"[+] Shared {result.collection_id} with {result.recipient_email} ({result.permission_level})")
    run(args, go)


def cmd_unshare(args: argparse.Namespace) -> None:
    def go(client: Client) -> None:
        result = client.sharing.remove_member(CallContext(DEFAULT_TIMEOUT), args.collection, args.email)
        print(f"[+] Removed {result.recipient_email} from {result.collection_id}")
    run(args, go)


def cmd_reset_sync(args: argparse.Namespace) -> None:
    def go(client: Client) -> None:
        client.engine.reset_sync(CallContext(SYNC_TIMEOUT))
        print("[+] Sync cursors cleared; the next sync starts from the beginning")
    run(args, go)


def cmd_change_password(args: argparse.Namespace) -> None:
    """Re-wrap the Master Key under a new password (new salt, optionally new Argon2 params).

    Collection and file keys hang off the Master Key, so nothing else is touched.
    """
    def go(client: Client) -> None:
        user = current_user(client)
        old = read_password(args, "Current password: ")
        user = change_password(user, old, _new_password(args), _new_params(args, user))
        publish_user(client, user)
        print(f"[+] Password changed (key version {user.key_version})")
    run(args, go)


def cmd_recovery_show(args: argparse.Namespace) -> None:
    def go(client: Client) -> None:
        user = current_user(client)
        print(f"[+] Recovery key: {show_recovery_key(user, read_password(args))}")
    run(args, go)


def cmd_recovery_recover(args: argparse.Namespace) -> None:
    def go(client: Client) -> None:
        user = client.repo.get_user(args.email.strip().lower())
        recovery_key = args.recovery_key or getpass.getpass("Recovery key: ")
        user = recover_with_recovery_key(user, recovery_key, _new_password(args), _new_params(args, user))
        if not publish_user(client, user):
            print("[!] Not signed in as this account; the new key bundle is only stored locally")
        print("[+] Account recovered; log in again with the new password")
    run(args, go)
