from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from clinauth.logging import get_logger
from clinauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    MissingFieldsError,
)
from clinauth.service.events import EventEmitter
from clinauth.storage.common import AuthStore
from clinauth.storage.models import User, utcnow

STAGE_AUTHENTICATED = "authenticated"
STAGE_PENDING_2FA = "pending_2fa"


@dataclass
class CredentialCheck:
    stage: str
    user: User

    @property
    def user_id(self) -> str:
        return self.user.id


class CredentialVerifier:
    """Checks username/password pairs against the identity store."""

    def __init__(
        self,
        store: AuthStore,
        events: EventEmitter,
        *,
        mfa_enabled: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.events = events
        self.mfa_enabled = mfa_enabled
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against for unknown usernames so both paths cost one hash
        self._dummy_hash = self._pwd_hasher.hash("clinauth-timing-equalizer")
        self.logger = get_logger(__name__)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def set_password(self, user_id: str, password: str) -> None:
        """Hash and save a password; used by provisioning tools."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def requires_second_factor(self, user: User) -> bool:
        return self.mfa_enabled and user.two_factor_enabled

    def _check_password(self, user_id: str, password: str) -> bool:
        credential = self.store.get_credential(user_id)
        if not credential or not credential.password_hash:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        if credential.password_algo != "argon2id":
            self.logger.warning(
                "password_algo_mismatch", user_id=user_id, algo=credential.password_algo
            )
            return False
        try:
            return self._pwd_hasher.verify(credential.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def verify(self, username: Optional[str], password: Optional[str]) -> CredentialCheck:
        """Check credentials and report which stage the login reaches.

        Raises:
            MissingFieldsError: username or password empty (nothing is looked up).
            AccountLockedError: the account is locked or inside a lockout window.
            AuthenticationError: unknown user, inactive user or wrong password.
        """
        errors: dict[str, list[str]] = {}
        if not username or not username.strip():
            errors["username"] = ["Username is required"]
        if not password:
            errors["password"] = ["Password is required"]
        if errors:
            raise MissingFieldsError(errors)

        user = self.store.get_user_by_username(username)
        if user is None:
            try:
                self._pwd_hasher.verify(self._dummy_hash, password)
            except VerificationError:
                pass
            self.events.emit("login_failed", {"reason": "unknown_user"})
            raise AuthenticationError("Invalid username or password")

        credential = self.store.get_credential(user.id)
        now = self._clock()
        if credential is not None and credential.is_locked(now):
            self.events.emit("login_failed", {"user_id": user.id, "reason": "locked"})
            raise AccountLockedError(credential.lockout_until)

        if not self._check_password(user.id, password) or not user.is_active:
            self.events.emit(
                "login_failed",
                {"user_id": user.id, "reason": "bad_password" if user.is_active else "inactive"},
            )
            raise AuthenticationError("Invalid username or password")

        stage = STAGE_PENDING_2FA if self.requires_second_factor(user) else STAGE_AUTHENTICATED
        return CredentialCheck(stage=stage, user=user)
