"""Error taxonomy for the encrypted sync client.

Cryptographic errors are deliberately vague: callers only ever learn that
authentication failed, never which step of the unwrap chain broke.
"""
from __future__ import annotations


class EfsError(Exception):
    """Base class for every error raised by efscloud."""

    retryable = False

    def __init__(self, message: str = "", *, context: dict | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.context = context or {}


# Cryptographic

class CryptoError(EfsError):
    pass


class InvalidKdfParameters(CryptoError):
    pass


class DecryptionFailed(CryptoError):
    def __init__(self, message: str = "decryption failed", **kw):
        super().__init__(message, **kw)


class AuthenticationFailed(CryptoError):
    def __init__(self, message: str = "authentication failed", **kw):
        super().__init__(message, **kw)


# Validation

class ValidationError(EfsError):
    pass


class InvalidIdentifier(ValidationError):
    pass


class InvalidPermission(ValidationError):
    pass


class InvalidRecipient(ValidationError):
    pass


class LoginStateError(ValidationError):
    pass


# Conflict

class ConflictError(EfsError):
    pass


class IdentifierConflict(ConflictError):
    pass


class AlreadyShared(ConflictError):
    pass


class CannotRemoveOwner(ConflictError):
    pass


class NotAuthorized(EfsError):
    pass


class NotFound(EfsError):
    pass


# Local store

class StoreError(EfsError):
    pass


class TransactionError(StoreError):
    pass


# Transport

class TransportError(EfsError):
    retryable = True

    def __init__(self, message: str = "", *, status: int | None = None, **kw):
        super().__init__(message, **kw)
        self.status = status

    def __str__(self) -> str:
        if self.status is not None:
            return f"{self.message} (HTTP {self.status})"
        return self.message


class DeadlineExceeded(TransportError):
    pass


class OperationCancelled(TransportError):
    retryable = False


class SessionExpired(TransportError):
    retryable = False
