"""Pull-only reconciliation of the local store with the cloud.

For each entity type the engine walks the cloud's change feed page by page,
ordered by (modified_at, id) and starting strictly after the stored cursor.
A page's local mutations and the advanced cursor are committed in a single
transaction, so an interrupted run simply replays that page next time. Every
transition is idempotent on replay.
"""
from __future__ import annotations

import logging
import threading

from dataclasses import dataclass, field
from typing import Callable, List, Optional

from efscloud.cloud.transport import CallContext, CloudTransport, clamp_limit
from efscloud.storage.filestore import FileStore
from efscloud.storage.repository import Repository
from efscloud.utils.dataModels import (
    ChangePage, ChangeRecord, File, SyncCursor, SyncState, SyncStatus, STATE_DELETED,
)
from efscloud.utils.errors import DeadlineExceeded, EfsError, NotFound, OperationCancelled
from efscloud.utils.helper import utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 1000


@dataclass
class SyncResult:
    collections_processed: int = 0
    collections_added: int = 0
    collections_updated: int = 0
    collections_deleted: int = 0
    files_processed: int = 0
    files_added: int = 0
    files_updated: int = 0
    files_deleted: int = 0
    errors: List[str] = field(default_factory=list)

    def merge(self, other: "SyncResult") -> "SyncResult":
        for name in self.__dataclass_fields__:
            if name != "errors":
                setattr(self, name, getattr(self, name) + getattr(other, name))
        self.errors.extend(other.errors)
        return self

    def bump(self, kind: str, what: str) -> None:
        name = f"{kind}_{what}"
        setattr(self, name, getattr(self, name) + 1)


@dataclass
class _Feed:
    kind: str  # "collections" or "files"
    fetch: Callable[[CallContext, Optional[SyncCursor], int], ChangePage]
    apply: Callable[[CallContext, ChangeRecord, SyncResult, List[str]], None]
    get_cursor: Callable[[SyncState], Optional[SyncCursor]]
    set_cursor: Callable[[SyncState, SyncCursor], None]


class SyncEngine:

    def __init__(self, repo: Repository, transport: CloudTransport, files: FileStore | None = None,
                 page_size: int = 100, max_pages: int = DEFAULT_MAX_PAGES):
        self.repo = repo
        self.transport = transport
        self.files = files
        self.page_size = clamp_limit(page_size)
        self.max_pages = max_pages
        self._lock = threading.Lock()

    # ---- public operations ----

    def sync_collections(self, ctx: CallContext) -> SyncResult:
        with self._lock:
            return self._run(ctx, self._collection_feed())

    def sync_files(self, ctx: CallContext) -> SyncResult:
        with self._lock:
            return self._run(ctx, self._file_feed())

    def full_sync(self, ctx: CallContext) -> SyncResult:
        result = self.sync_collections(ctx)
        return result.merge(self.sync_files(ctx))

    def reset_sync(self, ctx: CallContext) -> None:
        with self._lock:
            self.repo.reset_sync_state()
            logger.info("sync cursors cleared")

    # ---- page loop ----

    def _run(self, ctx: CallContext, feed: _Feed) -> SyncResult:
        result = SyncResult()
        cursor = feed.get_cursor(self.repo.get_sync_state())
        logger.info("syncing %s from cursor %s", feed.kind, cursor)

        for _ in range(self.max_pages):
            ctx.check()
            page = feed.fetch(ctx, cursor, self.page_size)
            if not page.items:
                break

            newest = cursor
            purge: List[str] = []
            self.repo.kv.begin()
            try:
                for item in page.items:
                    result.bump(feed.kind, "processed")
                    try:
                        feed.apply(ctx, item, result, purge)
                    except (OperationCancelled, DeadlineExceeded):
                        raise
                    except (EfsError, KeyError, ValueError) as e:
                        logger.warning("failed to sync %s %s: %s", feed.kind, item.id, e)
                        result.errors.append(f"{feed.kind} {item.id}: {e}")
                    if newest is None or item.cursor > newest:
                        newest = item.cursor
                state = self.repo.get_sync_state()
                feed.set_cursor(state, newest)
                self.repo.save_sync_state(state)
                self.repo.kv.commit()
            finally:
                self.repo.kv.discard()

            if purge and self.files is not None:
                self.files.purge(purge)
            if newest == cursor or not page.has_more:
                break
            cursor = newest

        logger.info("%s sync done: %s", feed.kind, result)
        return result

    # ---- collections ----

    def _collection_feed(self) -> _Feed:
        return _Feed(
            kind="collections",
            fetch=self.transport.list_collection_changes,
            apply=self._apply_collection,
            get_cursor=lambda s: s.collection_cursor,
            set_cursor=lambda s, c: setattr(s, "collection_cursor", c),
        )

    def _apply_collection(self, ctx: CallContext, item: ChangeRecord, result: SyncResult, purge: List[str]) -> None:
        local = self.repo.find_collection(item.id)
        if local is None:
            if item.is_deleted:
                return
            try:
                remote = self.transport.get_collection(ctx, item.id)
            except NotFound:
                return
            if remote.state == STATE_DELETED:
                return
            self.repo.save_collection(remote)
            result.bump("collections", "added")
            return

        if item.version <= local.version:
            return
        if item.is_deleted:
            self.repo.delete_collection(local.id)
            result.bump("collections", "deleted")
            return
        try:
            remote = self.transport.get_collection(ctx, item.id)
        except NotFound:
            self.repo.delete_collection(local.id)
            result.bump("collections", "deleted")
            return
        self.repo.save_collection(remote)
        result.bump("collections", "updated")

    # ---- files ----

    def _file_feed(self) -> _Feed:
        return _Feed(
            kind="files",
            fetch=self.transport.list_file_changes,
            apply=self._apply_file,
            get_cursor=lambda s: s.file_cursor,
            set_cursor=lambda s, c: setattr(s, "file_cursor", c),
        )

    def _apply_file(self, ctx: CallContext, item: ChangeRecord, result: SyncResult, purge: List[str]) -> None:
        local = self.repo.find_file(item.id)
        if local is None:
            if item.is_deleted:
                return
            try:
                remote = self.transport.get_file(ctx, item.id)
            except NotFound:
                return
            if remote.state == STATE_DELETED:
                return
            FileStore.clear(remote)
            remote.sync_status = SyncStatus.CLOUD_ONLY
            remote.last_synced_at = utcnow()
            self.repo.save_file(remote)
            result.bump("files", "added")
            return

        if item.version <= local.version:
            return
        # paths join the page purge list only once the record change is staged
        stale = local.local_paths()
        if item.is_deleted:
            self.repo.delete_file(local.id)
            purge.extend(stale)
            result.bump("files", "deleted")
            return
        try:
            remote = self.transport.get_file(ctx, item.id)
        except NotFound:
            self.repo.delete_file(local.id)
            purge.extend(stale)
            result.bump("files", "deleted")
            return
        merged = self._merge_file(local, remote)
        self.repo.save_file(merged)
        if not merged.has_local_copy():
            purge.extend(stale)
        result.bump("files", "updated")

    @staticmethod
    def _merge_file(local: File, remote: File) -> File:
        """Cloud wins by version; local copies survive only if the content is unchanged."""
        remote.storage_mode = local.storage_mode
        remote.last_synced_at = utcnow()
        if local.has_local_copy() and remote.encrypted_hash and remote.encrypted_hash == local.encrypted_hash:
            for name in ("encrypted_file_path", "encrypted_file_size", "file_path", "file_size",
                         "encrypted_thumbnail_path", "encrypted_thumbnail_size",
                         "thumbnail_path", "thumbnail_size"):
                setattr(remote, name, getattr(local, name))
            remote.sync_status = SyncStatus.SYNCED
        else:
            FileStore.clear(remote)
            remote.sync_status = SyncStatus.CLOUD_ONLY
        return remote
