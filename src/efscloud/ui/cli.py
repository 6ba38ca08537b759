import argparse

from efscloud.utils.core import (
    cmd_collections_create, cmd_collections_delete, cmd_collections_ls, cmd_files_add, cmd_files_delete,
    cmd_files_extract, cmd_files_ls, cmd_files_mode, cmd_files_offload, cmd_files_onload, cmd_login, cmd_logout,
    cmd_register, cmd_sync,
)
from efscloud.utils.dataModels import (
    DEFAULT_T_COST, DEFAULT_M_COST_KiB, DEFAULT_PARALLELISM, COLLECTION_TYPE_ALBUM, COLLECTION_TYPE_FOLDER,
    PERMISSIONS, PERMISSION_READ, StorageMode,
)
from efscloud.utils.maintain import (
    cmd_change_password, cmd_recovery_recover, cmd_recovery_show, cmd_reset_sync, cmd_share, cmd_unshare,
)


def _kdf_args(p: argparse.ArgumentParser, defaults: bool = True) -> None:
    p.add_argument("-t", type=int, default=DEFAULT_T_COST if defaults else None, help="Argon2 time cost (iterations)")
    p.add_argument("-m", type=int, default=DEFAULT_M_COST_KiB if defaults else None, help="Argon2 memory (KiB)")
    p.add_argument("-p", type=int, default=DEFAULT_PARALLELISM if defaults else None, help="Argon2 parallelism")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="End-to-end encrypted cloud file client")
    p.add_argument("--home", help="Client home directory (default: $EFS_CLOUD_HOME or ~/.efs-cloud)")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_reg = sub.add_parser("register", help="Create an account and its key bundle")
    p_reg.add_argument("email")
    p_reg.add_argument("--password", help="Account password (prompted if omitted)")
    _kdf_args(p_reg)
    p_reg.set_defaults(func=cmd_register)

    p_login = sub.add_parser("login", help="Log in with an emailed one-time token")
    p_login.add_argument("email")
    p_login.add_argument("--ott", help="One-time token (prompted if omitted)")
    p_login.add_argument("--password")
    p_login.set_defaults(func=cmd_login)

    p_logout = sub.add_parser("logout", help="Forget the stored session")
    p_logout.set_defaults(func=cmd_logout)

    p_sync = sub.add_parser("sync", help="Pull collection and file changes from the cloud")
    p_sync.add_argument("--collections", action="store_true", help="Only sync collections")
    p_sync.add_argument("--files", action="store_true", help="Only sync files")
    p_sync.add_argument("--reset", action="store_true", help="Clear sync cursors first")
    p_sync.set_defaults(func=cmd_sync)

    p_reset = sub.add_parser("reset-sync", help="Clear sync cursors (local records are kept)")
    p_reset.set_defaults(func=cmd_reset_sync)

    p_col = sub.add_parser("collections", help="Manage collections")
    col = p_col.add_subparsers(dest="collections_cmd", required=True)

    p_col_ls = col.add_parser("ls", help="List local collections")
    p_col_ls.add_argument("--password", help="Decrypt names with this password")
    p_col_ls.set_defaults(func=cmd_collections_ls)

    p_col_new = col.add_parser("create", help="Create a collection")
    p_col_new.add_argument("name")
    p_col_new.add_argument("--parent", help="Parent collection id")
    p_col_new.add_argument("--type", default=COLLECTION_TYPE_FOLDER, choices=[COLLECTION_TYPE_FOLDER, COLLECTION_TYPE_ALBUM])
    p_col_new.add_argument("--password")
    p_col_new.set_defaults(func=cmd_collections_create)

    p_col_rm = col.add_parser("delete", aliases=["rm"], help="Delete a collection and its local files")
    p_col_rm.add_argument("id", help="Collection id (UUID)")
    p_col_rm.set_defaults(func=cmd_collections_delete)

    p_files = sub.add_parser("files", help="Manage files")
    files = p_files.add_subparsers(dest="files_cmd", required=True)

    p_ls = files.add_parser("ls", help="List local files")
    p_ls.add_argument("--collection", help="Only files in this collection")
    p_ls.add_argument("--password", help="Decrypt names with this password")
    p_ls.set_defaults(func=cmd_files_ls)

    p_add = files.add_parser("add", help="Encrypt and add a file to a collection")
    p_add.add_argument("collection", help="Collection id (UUID)")
    p_add.add_argument("path", help="Plaintext file to add")
    p_add.add_argument("--mode", default=StorageMode.ENCRYPTED_ONLY.value, choices=[m.value for m in StorageMode])
    p_add.add_argument("--password")
    p_add.set_defaults(func=cmd_files_add)

    p_ext = files.add_parser("extract", help="Decrypt a file by id")
    p_ext.add_argument("id", help="File id (UUID)")
    p_ext.add_argument("out", help="Output plaintext path")
    p_ext.add_argument("--password")
    p_ext.set_defaults(func=cmd_files_extract)

    p_rm = files.add_parser("delete", aliases=["rm"], help="Remove a file by id")
    p_rm.add_argument("id", help="File id (UUID)")
    p_rm.set_defaults(func=cmd_files_delete)

    p_on = files.add_parser("onload", help="Download a cloud-only file and keep it locally")
    p_on.add_argument("id", help="File id (UUID)")
    p_on.add_argument("--password")
    p_on.set_defaults(func=cmd_files_onload)

    p_off = files.add_parser("offload", help="Remove local copies of a synced file, keeping it in the cloud")
    p_off.add_argument("id", help="File id (UUID)")
    p_off.set_defaults(func=cmd_files_offload)

    p_mode = files.add_parser("mode", help="Change which local copies a file keeps (lock/unlock)")
    p_mode.add_argument("id", help="File id (UUID)")
    p_mode.add_argument("mode", choices=[m.value for m in StorageMode])
    p_mode.add_argument("--password")
    p_mode.set_defaults(func=cmd_files_mode)

    p_share = sub.add_parser("share", help="Share a collection with another user")
    p_share.add_argument("collection", help="Collection id (UUID)")
    p_share.add_argument("email", help="Recipient email")
    p_share.add_argument("--permission", default=PERMISSION_READ, choices=list(PERMISSIONS))
    p_share.add_argument("--password")
    p_share.set_defaults(func=cmd_share)

    p_unshare = sub.add_parser("unshare", help="Remove a member from a collection")
    p_unshare.add_argument("collection", help="Collection id (UUID)")
    p_unshare.add_argument("email", help="Member email")
    p_unshare.set_defaults(func=cmd_unshare)

    p_pw = sub.add_parser("change-password", help="Change password and/or Argon2 params")
    p_pw.add_argument("--password", help="Current password")
    p_pw.add_argument("--new-password", help="New password (prompted if omitted)")
    _kdf_args(p_pw, defaults=False)
    p_pw.set_defaults(func=cmd_change_password)

    p_rec = sub.add_parser("recovery", help="Recovery key operations")
    rec = p_rec.add_subparsers(dest="recovery_cmd", required=True)

    p_rec_show = rec.add_parser("show", help="Print the recovery key")
    p_rec_show.add_argument("--password")
    p_rec_show.set_defaults(func=cmd_recovery_show)

    p_rec_use = rec.add_parser("recover", help="Set a new password using the recovery key")
    p_rec_use.add_argument("email")
    p_rec_use.add_argument("--recovery-key", help="Base64 recovery key (prompted if omitted)")
    p_rec_use.add_argument("--new-password")
    _kdf_args(p_rec_use, defaults=False)
    p_rec_use.set_defaults(func=cmd_recovery_recover)

    return p
