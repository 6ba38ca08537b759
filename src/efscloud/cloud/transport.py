"""Cloud transport: the contract the core consumes plus an HTTP implementation.

Only minimal calls are made here. Bodies are already serialized records and
wrapped/sealed keys; nothing in this module ever sees plaintext key material.
"""
from __future__ import annotations

import abc
import datetime as _dt
import logging
import threading
import time

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests

from efscloud.utils.config import Config, Session, TokenPair
from efscloud.utils.dataModels import (
    ChangePage, ChangeRecord, Collection, File, KdfParams, KeyWrap, Member, SyncCursor, User,
    SYNC_PAGE_DEFAULT, SYNC_PAGE_MAX,
)
from efscloud.utils.errors import (
    DeadlineExceeded, NotFound, OperationCancelled, SessionExpired, TransportError,
)
from efscloud.utils.helper import b64d, b64e, from_iso, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0
SYNC_TIMEOUT = 60.0
MOVE_TIMEOUT = 120.0
REFRESH_BUFFER = _dt.timedelta(seconds=30)

IAM_PREFIX = "/iam/api/v1"
FILES_PREFIX = "/maplefile/api/v1"


class CallContext:
    """Deadline plus optional cancellation flag, checked before every network call."""

    def __init__(self, timeout: float | None = DEFAULT_TIMEOUT, cancel_event: threading.Event | None = None):
        self.deadline = time.monotonic() + timeout if timeout else None
        self.cancel_event = cancel_event or threading.Event()

    def cancel(self) -> None:
        self.cancel_event.set()

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self) -> None:
        if self.cancel_event.is_set():
            raise OperationCancelled("operation cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise DeadlineExceeded("deadline exceeded")


def clamp_limit(limit: int | None) -> int:
    if not limit or limit <= 0:
        return SYNC_PAGE_DEFAULT
    return min(int(limit), SYNC_PAGE_MAX)


@dataclass
class PublicUser:
    user_id: str
    email: str
    public_key: bytes
    verification_id: str = ""


@dataclass
class LoginChallenge:
    """What the server returns once the one-time token is verified."""
    user_id: str
    salt: bytes
    kdf_params: KdfParams
    encrypted_master_key: KeyWrap
    encrypted_private_key: KeyWrap
    public_key: bytes
    encrypted_challenge: bytes
    challenge_id: str

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "LoginChallenge":
        return LoginChallenge(
            user_id=d.get("user_id", ""),
            salt=b64d(d.get("salt")),
            kdf_params=KdfParams.from_dict(d.get("kdf_params")),
            encrypted_master_key=KeyWrap.from_dict(d.get("encrypted_master_key")),
            encrypted_private_key=KeyWrap.from_dict(d.get("encrypted_private_key")),
            public_key=b64d(d.get("public_key")),
            encrypted_challenge=b64d(d.get("encrypted_challenge")),
            challenge_id=d.get("challenge_id", ""),
        )


def token_pair_from_dict(d: Dict[str, Any]) -> TokenPair:
    return TokenPair(
        access_token=d.get("access_token", ""),
        access_token_expiry=from_iso(d.get("access_token_expiry_time")),
        refresh_token=d.get("refresh_token", ""),
        refresh_token_expiry=from_iso(d.get("refresh_token_expiry_time")),
    )


class CloudTransport(abc.ABC):
    """Everything the engine needs from the cloud. Every call takes a CallContext first."""

    @abc.abstractmethod
    def list_collection_changes(self, ctx: CallContext, cursor: Optional[SyncCursor], limit: int) -> ChangePage: ...

    @abc.abstractmethod
    def list_file_changes(self, ctx: CallContext, cursor: Optional[SyncCursor], limit: int) -> ChangePage: ...

    @abc.abstractmethod
    def get_collection(self, ctx: CallContext, collection_id: str) -> Collection: ...

    @abc.abstractmethod
    def get_file(self, ctx: CallContext, file_id: str) -> File: ...

    @abc.abstractmethod
    def create_collection(self, ctx: CallContext, collection: Collection) -> Collection: ...

    @abc.abstractmethod
    def delete_collection(self, ctx: CallContext, collection_id: str) -> None: ...

    @abc.abstractmethod
    def delete_file(self, ctx: CallContext, file_id: str) -> None: ...

    @abc.abstractmethod
    def download_file(self, ctx: CallContext, file_id: str) -> bytes:
        """Return the encrypted blob (nonce||ciphertext) stored for a file."""

    @abc.abstractmethod
    def lookup_user(self, ctx: CallContext, email: str) -> PublicUser: ...

    @abc.abstractmethod
    def share_collection(self, ctx: CallContext, collection_id: str, member: Member) -> None: ...

    @abc.abstractmethod
    def remove_member(self, ctx: CallContext, collection_id: str, recipient_id: str) -> None: ...

    @abc.abstractmethod
    def register(self, ctx: CallContext, user: User) -> str: ...

    @abc.abstractmethod
    def update_user(self, ctx: CallContext, user: User) -> None: ...

    @abc.abstractmethod
    def request_login_ott(self, ctx: CallContext, email: str) -> None: ...

    @abc.abstractmethod
    def verify_login_ott(self, ctx: CallContext, email: str, ott: str) -> LoginChallenge: ...

    @abc.abstractmethod
    def complete_login(self, ctx: CallContext, email: str, challenge_id: str,
                       decrypted_challenge: bytes) -> TokenPair: ...

    @abc.abstractmethod
    def refresh_token(self, ctx: CallContext, refresh_token: str) -> TokenPair: ...


class TokenManager:
    """Hands out a bearer token, refreshing it when it expires within REFRESH_BUFFER."""

    def __init__(self, session: Session, refresher: Callable[[CallContext, str], TokenPair],
                 on_refresh: Callable[[Session], None] | None = None):
        self.session = session
        self.refresher = refresher
        self.on_refresh = on_refresh
        self._lock = threading.Lock()

    def access_token(self, ctx: CallContext) -> str:
        with self._lock:
            s = self.session
            if not s.access_token:
                raise SessionExpired("not logged in")
            now = utcnow()
            if s.access_token_expiry is None or s.access_token_expiry - now > REFRESH_BUFFER:
                return s.access_token
            if not s.refresh_token or (s.refresh_token_expiry and s.refresh_token_expiry <= now):
                raise SessionExpired("session expired, please log in again")
            logger.debug("refreshing access token for %s", s.email)
            s.apply_tokens(self.refresher(ctx, s.refresh_token))
            if self.on_refresh:
                self.on_refresh(s)
            return s.access_token


class HttpCloudTransport(CloudTransport):

    def __init__(self, config: Config, session: Session,
                 on_refresh: Callable[[Session], None] | None = None,
                 http: requests.Session | None = None):
        self.base_url = config.cloud_provider_address
        self.default_timeout = float(config.get("request_timeout") or DEFAULT_TIMEOUT)
        self.http = http or requests.Session()
        self.tokens = TokenManager(session, self.refresh_token, on_refresh)

    # ---- plumbing ----

    def _request(self, ctx: CallContext, method: str, path: str, *, auth: bool = True,
                 params: Dict[str, Any] | None = None, body: Dict[str, Any] | None = None,
                 raw: bool = False) -> Any:
        ctx.check()
        headers = {"Accept": "application/octet-stream" if raw else "application/json"}
        if auth:
            headers["Authorization"] = f"Bearer {self.tokens.access_token(ctx)}"
        # the token refresh above may have used up the rest of the deadline
        remaining = ctx.remaining()
        if remaining is not None and remaining <= 0:
            raise DeadlineExceeded(f"{method} {path}: deadline exceeded")
        timeout = self.default_timeout if remaining is None else min(self.default_timeout, remaining)
        url = f"{self.base_url}{path}"
        try:
            resp = self.http.request(method, url, params=params, json=body, headers=headers, timeout=timeout)
        except requests.exceptions.Timeout:
            raise DeadlineExceeded(f"{method} {path} timed out") from None
        except requests.exceptions.RequestException as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        if resp.status_code == 404:
            raise NotFound(f"{method} {path}: not found")
        if not resp.ok:
            raise TransportError(f"{method} {path}: {_error_message(resp)}", status=resp.status_code)
        if raw:
            return resp.content
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            raise TransportError(f"{method} {path}: invalid JSON response", status=resp.status_code) from None

    def _changes(self, ctx: CallContext, path: str, cursor: Optional[SyncCursor], limit: int) -> ChangePage:
        params: Dict[str, Any] = {"limit": clamp_limit(limit)}
        if cursor is not None:
            params.update(cursor.to_dict())
        doc = self._request(ctx, "GET", path, params=params) or {}
        try:
            return ChangePage(
                items=[ChangeRecord.from_dict(i) for i in doc.get("items") or []],
                has_more=bool(doc.get("has_more")),
                next_cursor=SyncCursor.from_dict(doc.get("next_cursor")),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise TransportError(f"GET {path}: malformed change page: {e!r}") from e

    # ---- sync ----

    def list_collection_changes(self, ctx, cursor, limit):
        return self._changes(ctx, f"{FILES_PREFIX}/sync/collections", cursor, limit)

    def list_file_changes(self, ctx, cursor, limit):
        return self._changes(ctx, f"{FILES_PREFIX}/sync/files", cursor, limit)

    # ---- collections and files ----

    def get_collection(self, ctx, collection_id):
        return Collection.from_dict(self._request(ctx, "GET", f"{FILES_PREFIX}/collections/{collection_id}"))

    def get_file(self, ctx, file_id):
        return File.from_dict(self._request(ctx, "GET", f"{FILES_PREFIX}/files/{file_id}"))

    def create_collection(self, ctx, collection):
        doc = collection.to_dict()
        doc.pop("id", None)
        return Collection.from_dict(self._request(ctx, "POST", f"{FILES_PREFIX}/collections", body=doc))

    def delete_collection(self, ctx, collection_id):
        self._request(ctx, "DELETE", f"{FILES_PREFIX}/collections/{collection_id}")

    def delete_file(self, ctx, file_id):
        self._request(ctx, "DELETE", f"{FILES_PREFIX}/files/{file_id}")

    def download_file(self, ctx, file_id):
        return self._request(ctx, "GET", f"{FILES_PREFIX}/files/{file_id}/data", raw=True)

    # ---- sharing ----

    def lookup_user(self, ctx, email):
        doc = self._request(ctx, "GET", f"{IAM_PREFIX}/users/lookup", params={"email": email})
        return PublicUser(
            user_id=doc["user_id"],
            email=doc.get("email", email),
            public_key=b64d(doc.get("public_key_in_base64")),
            verification_id=doc.get("verification_id", ""),
        )

    def share_collection(self, ctx, collection_id, member):
        body = {
            "recipient_id": member.recipient_id,
            "recipient_email": member.recipient_email,
            "permission_level": member.permission_level,
            "encrypted_collection_key": b64e(member.encrypted_collection_key),
        }
        self._request(ctx, "POST", f"{FILES_PREFIX}/collections/{collection_id}/share", body=body)

    def remove_member(self, ctx, collection_id, recipient_id):
        self._request(ctx, "POST", f"{FILES_PREFIX}/collections/{collection_id}/members/remove",
                      body={"recipient_id": recipient_id})

    # ---- identity ----

    def register(self, ctx, user):
        body = user.to_dict()
        body.pop("id", None)
        doc = self._request(ctx, "POST", f"{IAM_PREFIX}/register", auth=False, body=body) or {}
        return doc.get("user_id", "")

    def update_user(self, ctx, user):
        body = user.to_dict()
        body.pop("challenge_id", None)
        self._request(ctx, "PUT", f"{IAM_PREFIX}/me", body=body)

    def request_login_ott(self, ctx, email):
        self._request(ctx, "POST", f"{IAM_PREFIX}/request-login-ott", auth=False, body={"email": email})

    def verify_login_ott(self, ctx, email, ott):
        doc = self._request(ctx, "POST", f"{IAM_PREFIX}/verify-login-ott", auth=False,
                            body={"email": email, "ott": ott})
        return LoginChallenge.from_dict(doc)

    def complete_login(self, ctx, email, challenge_id, decrypted_challenge):
        body = {"email": email, "challenge_id": challenge_id, "decrypted_data": b64e(decrypted_challenge)}
        return token_pair_from_dict(self._request(ctx, "POST", f"{IAM_PREFIX}/complete-login", auth=False, body=body))

    def refresh_token(self, ctx, refresh_token):
        doc = self._request(ctx, "POST", f"{IAM_PREFIX}/token/refresh", auth=False,
                            body={"value": refresh_token})
        return token_pair_from_dict(doc)


def _error_message(resp: requests.Response) -> str:
    try:
        doc = resp.json()
    except ValueError:
        return resp.text[:200] or resp.reason
    if isinstance(doc, dict):
        return str(doc.get("message") or doc.get("error") or doc)
    return str(doc)
