#!/usr/bin/env python3
"""
EFS Cloud: end-to-end encrypted desktop client core

Everything leaves this machine already encrypted. The server stores wrapped keys,
sealed member keys and AES-GCM ciphertext; it never sees a password, a key or a name.

Key hierarchy:
    password --Argon2id(SHA3-512(pw))--> KEK (never stored)
    KEK         wraps  Master Key          (AES-256-GCM)
    Master Key  wraps  Private Key, Recovery Key, owned Collection Keys
    Recovery Key wraps Master Key          (account recovery)
    Collection Key wraps File Keys and collection names
    File Key    encrypts content and metadata
    Shared Collection Keys are sealed (X25519 sealed box) to the member's public key

Local layout ($EFS_CLOUD_HOME, default ~/.efs-cloud):
    config.json           # cloud address, settings, session tokens (0600)
    efs.db                # SQLite key-value store: user:, local_collection:, file:, sync_state
    files/
      encrypted/<id>.bin  # 12-byte nonce || AES-256-GCM(ciphertext)
      decrypted/<id>/<name>

Commands:
  register <email>               Create account keys, print the recovery key once
  login <email>                  Email one-time token, then password-based challenge
  logout                         Forget the session
  sync [--collections|--files]   Pull changes page by page (cursor is saved per page)
  reset-sync                     Clear sync cursors
  collections ls|create|delete   Local collection operations
  files ls|add|extract|delete    Local file operations (encrypted, decrypted or hybrid)
  files onload|offload <id>      Download a cloud-only file, or drop local copies of a synced one
  files mode <id> <mode>         Lock or unlock: switch which local copies a file keeps
  share <cid> <email>            Seal the collection key for another user
  unshare <cid> <email>          Remove a member
  change-password                Re-wrap the Master Key under a new password
  recovery show|recover          Recovery key operations
"""
from __future__ import annotations

import logging

from efscloud.ui.cli import build_parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args.func(args)


if __name__ == "__main__":
    main()
