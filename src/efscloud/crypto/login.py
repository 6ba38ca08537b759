"""Email one-time-token login: Requested -> Verified -> Completed."""
from __future__ import annotations

import logging

from enum import Enum
from typing import Optional

from efscloud.cloud.transport import CallContext, CloudTransport, LoginChallenge
from efscloud.crypto.keychain import open_challenge
from efscloud.utils.config import Session
from efscloud.utils.dataModels import User
from efscloud.utils.errors import AuthenticationFailed, CryptoError, LoginStateError, ValidationError
from efscloud.utils.helper import utcnow

logger = logging.getLogger(__name__)


class LoginState(str, Enum):
    NEW = "new"
    REQUESTED = "requested"
    VERIFIED = "verified"
    COMPLETED = "completed"


class LoginFlow:

    def __init__(self, transport: CloudTransport, session: Session):
        self.transport = transport
        self.session = session
        self.state = LoginState.NEW
        self.email = ""
        self.challenge: Optional[LoginChallenge] = None

    def _expect(self, state: LoginState) -> None:
        if self.state != state:
            raise LoginStateError(f"login is {self.state.value}, expected {state.value}")

    def request(self, ctx: CallContext, email: str) -> None:
        email = (email or "").strip().lower()
        if not email:
            raise ValidationError("email is required")
        self.transport.request_login_ott(ctx, email)
        self.email = email
        self.challenge = None
        self.state = LoginState.REQUESTED
        logger.info("login token requested for %s", email)

    def verify(self, ctx: CallContext, ott: str) -> LoginChallenge:
        self._expect(LoginState.REQUESTED)
        if not (ott or "").strip():
            raise ValidationError("one-time token is required")
        self.challenge = self.transport.verify_login_ott(ctx, self.email, ott.strip())
        self.state = LoginState.VERIFIED
        return self.challenge

    def user_record(self, existing: User | None = None) -> User:
        """Local User built from the verified challenge, keeping local bookkeeping fields."""
        self._expect_challenge()
        c = self.challenge
        user = existing or User(email=self.email)
        user.id = c.user_id or user.id
        user.password_salt = c.salt
        user.kdf_params = c.kdf_params
        user.encrypted_master_key = c.encrypted_master_key
        user.encrypted_private_key = c.encrypted_private_key
        user.public_key = c.public_key
        user.challenge_id = c.challenge_id
        user.modified_at = utcnow()
        return user

    def complete(self, ctx: CallContext, password: str, existing: User | None = None) -> User:
        """Unwrap the key chain, answer the challenge and store the issued tokens on the session."""
        self._expect(LoginState.VERIFIED)
        user = self.user_record(existing)
        try:
            decrypted = open_challenge(self.challenge.encrypted_challenge, user, password)
        except CryptoError:
            raise AuthenticationFailed() from None
        tokens = self.transport.complete_login(ctx, self.email, self.challenge.challenge_id, decrypted)
        self.session.email = self.email
        self.session.apply_tokens(tokens)
        self.state = LoginState.COMPLETED
        logger.info("login completed for %s", self.email)
        return user

    def _expect_challenge(self) -> None:
        if self.challenge is None:
            raise LoginStateError("no verified login challenge")
