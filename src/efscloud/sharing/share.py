"""Collection sharing: re-encrypt a Collection Key for another user's public key.

The server only ever receives the sealed copy; the plaintext key lives in a
SecureBytes for the duration of one ``with`` block.
"""
from __future__ import annotations

import logging

from dataclasses import dataclass

from efscloud.cloud.transport import CallContext, CloudTransport
from efscloud.crypto.keychain import seal_collection_key, unlocked_keys, unwrap_collection_key
from efscloud.storage.repository import Repository
from efscloud.utils.config import Session
from efscloud.utils.dataModels import Collection, Member, User, PERMISSIONS, PERMISSION_ADMIN
from efscloud.utils.errors import (
    AlreadyShared, CannotRemoveOwner, InvalidPermission, InvalidRecipient, NotAuthorized,
    NotFound, ValidationError,
)
from efscloud.utils.helper import utcnow, validate_id

logger = logging.getLogger(__name__)


@dataclass
class ShareResult:
    collection_id: str
    recipient_id: str
    recipient_email: str
    permission_level: str
    success: bool = True
    message: str = ""


class SharingService:

    def __init__(self, repo: Repository, transport: CloudTransport, session: Session):
        self.repo = repo
        self.transport = transport
        self.session = session

    def _current_user(self) -> User:
        if not self.session.email:
            raise NotAuthorized("not logged in")
        try:
            return self.repo.get_user(self.session.email)
        except NotFound:
            raise NotAuthorized("current user is not known locally, log in again") from None

    @staticmethod
    def _can_administer(user: User, collection: Collection) -> bool:
        if collection.owner_id == user.id:
            return True
        member = collection.member(user.id)
        return member is not None and member.permission_level == PERMISSION_ADMIN

    def share_collection(self, ctx: CallContext, collection_id: str, recipient_email: str,
                         permission_level: str, user_password: str) -> ShareResult:
        collection_id = validate_id(collection_id, "collection id")
        recipient_email = (recipient_email or "").strip().lower()
        if not recipient_email:
            raise InvalidRecipient("recipient email is required")
        if permission_level not in PERMISSIONS:
            raise InvalidPermission(f"permission must be one of {', '.join(PERMISSIONS)}")
        if not user_password:
            raise ValidationError("password is required to share")

        user = self._current_user()
        collection = self.repo.get_collection(collection_id)
        if not self._can_administer(user, collection):
            raise NotAuthorized("you don't have permission to share this collection")
        if recipient_email == user.email.lower():
            raise InvalidRecipient("cannot share a collection with yourself")

        try:
            recipient = self.transport.lookup_user(ctx, recipient_email)
        except NotFound:
            raise InvalidRecipient(f"no account for {recipient_email}") from None
        if recipient.user_id == user.id:
            raise InvalidRecipient("cannot share a collection with yourself")
        if not recipient.public_key:
            raise InvalidRecipient(f"{recipient_email} has no public key")
        if collection.member(recipient.user_id) is not None or recipient.user_id == collection.owner_id:
            raise AlreadyShared(f"{recipient_email} already has access to this collection")

        with unlocked_keys(user, user_password) as (master_key, private_key):
            with unwrap_collection_key(user, collection, master_key, private_key) as collection_key:
                sealed = seal_collection_key(collection_key, recipient.public_key)

        member = Member(
            recipient_id=recipient.user_id,
            recipient_email=recipient.email or recipient_email,
            permission_level=permission_level,
            encrypted_collection_key=sealed,
            granted_by_id=user.id,
            created_at=utcnow(),
        )
        self.transport.share_collection(ctx, collection.id, member)

        collection.members.append(member)
        collection.modified_at = utcnow()
        collection.modified_by_user_id = user.id
        self.repo.save_collection(collection)
        logger.info("shared collection %s with %s (%s)", collection.id, recipient_email, permission_level)
        return ShareResult(
            collection_id=collection.id,
            recipient_id=recipient.user_id,
            recipient_email=member.recipient_email,
            permission_level=permission_level,
            message=f"shared with {member.recipient_email}",
        )

    def remove_member(self, ctx: CallContext, collection_id: str, recipient_email: str) -> ShareResult:
        collection_id = validate_id(collection_id, "collection id")
        recipient_email = (recipient_email or "").strip().lower()
        if not recipient_email:
            raise InvalidRecipient("recipient email is required")

        user = self._current_user()
        collection = self.repo.get_collection(collection_id)
        if not self._can_administer(user, collection):
            raise NotAuthorized("you don't have permission to manage this collection")

        if collection.owner_id == user.id and recipient_email == user.email.lower():
            raise CannotRemoveOwner("the owner cannot be removed from a collection")
        member = next((m for m in collection.members if m.recipient_email.lower() == recipient_email), None)
        if member is None:
            try:
                recipient = self.transport.lookup_user(ctx, recipient_email)
            except NotFound:
                raise InvalidRecipient(f"no account for {recipient_email}") from None
            if recipient.user_id == collection.owner_id:
                raise CannotRemoveOwner("the owner cannot be removed from a collection")
            raise InvalidRecipient(f"{recipient_email} is not a member of this collection")
        if member.recipient_id == collection.owner_id:
            raise CannotRemoveOwner("the owner cannot be removed from a collection")

        self.transport.remove_member(ctx, collection.id, member.recipient_id)
        collection.members = [m for m in collection.members if m.recipient_id != member.recipient_id]
        collection.modified_at = utcnow()
        collection.modified_by_user_id = user.id
        self.repo.save_collection(collection)
        logger.info("removed %s from collection %s", recipient_email, collection.id)
        return ShareResult(
            collection_id=collection.id,
            recipient_id=member.recipient_id,
            recipient_email=member.recipient_email,
            permission_level=member.permission_level,
            message=f"removed {member.recipient_email}",
        )
