from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from clinauth.config import OTP_PURPOSES
from clinauth.logging import get_logger
from clinauth.service.errors import (
    ChallengeExpiredError,
    ChallengeNotFoundError,
    InvalidCodeError,
    OtpFormatError,
    ServerError,
    ValidationError,
)
from clinauth.service.events import EventEmitter
from clinauth.service.notifier import OtpNotifier, mask_email
from clinauth.storage.common import AuthStore, generate_uuid
from clinauth.storage.models import OtpCode, PendingChallenge, utcnow

CODE_PATTERN = re.compile(r"[0-9]{6}")


@dataclass
class IssuedChallenge:
    expires_in: int
    expires_at: Optional[datetime] = None


@dataclass
class VerifyResult:
    success: bool
    remaining_attempts: int
    user_id: str


class OtpManager:
    """Issues and verifies six-digit step-up codes.

    One live challenge exists per (user, purpose); the durable store is the
    anchor. Codes are kept only as an HMAC bound to the code row id and are
    handed to the notifier exactly once.
    """

    def __init__(
        self,
        store: AuthStore,
        notifier: OtpNotifier,
        events: EventEmitter,
        *,
        secret_key: str,
        expiry_seconds: int = 600,
        max_attempts: int = 5,
        code_retention_seconds: int = 86400,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.events = events
        self.expiry_seconds = expiry_seconds
        self.max_attempts = max_attempts
        self.code_retention_seconds = code_retention_seconds
        self._secret = secret_key.encode()
        self._clock = clock
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        return self._clock()

    def _hash_code(self, code_id: str, code: str) -> str:
        return hmac.new(self._secret, f"{code_id}:{code}".encode(), hashlib.sha256).hexdigest()

    @staticmethod
    def _generate_code() -> str:
        return f"{secrets.randbelow(1_000_000):06d}"

    @staticmethod
    def _check_purpose(purpose: str) -> None:
        if purpose not in OTP_PURPOSES:
            raise ValidationError("unsupported verification purpose", detail={"purpose": purpose})

    def issue(self, user_id: str, email: str, username: str, purpose: str) -> IssuedChallenge:
        """Replace any live challenge for (user, purpose) and send a fresh code."""
        self._check_purpose(purpose)
        now = self._now()
        expires_at = now + timedelta(seconds=self.expiry_seconds)
        code = self._generate_code()
        code_id = generate_uuid()
        otp = OtpCode(
            id=code_id,
            user_id=user_id,
            purpose=purpose,
            code_hash=self._hash_code(code_id, code),
            created_at=now,
            expires_at=expires_at,
        )
        challenge = PendingChallenge(
            id=generate_uuid(),
            user_id=user_id,
            username=username,
            email=email,
            purpose=purpose,
            otp_code_id=code_id,
            issued_at=now,
            expires_at=expires_at,
            attempts_remaining=self.max_attempts,
        )
        self.store.replace_challenge(challenge, otp)

        delivered = self.notifier.send_otp(
            email,
            code,
            username=username,
            purpose=purpose,
            expires_in=self.expiry_seconds,
        )
        if not delivered:
            self.events.emit(
                "otp_delivery_failed",
                {"user_id": user_id, "purpose": purpose, "recipient": mask_email(email)},
            )
            raise ServerError("Failed to send verification code. Please try again.")

        self.events.emit(
            "otp_challenge_issued",
            {
                "user_id": user_id,
                "purpose": purpose,
                "challenge_id": challenge.id,
                "recipient": mask_email(email),
                "expires_at": expires_at,
            },
        )
        return IssuedChallenge(expires_in=self.expiry_seconds, expires_at=expires_at)

    def issue_for_email(self, email: str, purpose: str) -> IssuedChallenge:
        """Issue by email address without revealing whether the address is known."""
        self._check_purpose(purpose)
        user = self.store.get_user_by_email(email)
        if user is None or not user.is_active:
            self.logger.info("otp_issue_unknown_recipient", purpose=purpose)
            return IssuedChallenge(expires_in=self.expiry_seconds)
        return self.issue(user.id, user.email, user.username, purpose)

    def pending(self, user_id: str, purpose: str) -> Optional[PendingChallenge]:
        """Return the live challenge for (user, purpose), if any."""
        challenge = self.store.get_challenge(user_id, purpose)
        if challenge is None or not challenge.is_valid(self._now()):
            return None
        return challenge

    def verify(self, user_id: str, submitted_code: str, purpose: str) -> VerifyResult:
        """Check a submitted code.

        Raises:
            OtpFormatError: code is not six ASCII digits; no attempt is used.
            ChallengeNotFoundError: nothing pending for (user, purpose).
            ChallengeExpiredError: the challenge passed its expiry.
            InvalidCodeError: wrong code; carries the attempts left.
        """
        if not isinstance(submitted_code, str) or not CODE_PATTERN.fullmatch(submitted_code):
            raise OtpFormatError()
        self._check_purpose(purpose)

        challenge = self.store.get_challenge(user_id, purpose)
        if challenge is None or challenge.attempts_remaining <= 0:
            if challenge is not None:
                self.store.delete_challenge(challenge.id)
            raise ChallengeNotFoundError()

        now = self._now()
        if now >= challenge.expires_at:
            self.store.delete_challenge(challenge.id)
            self.events.emit(
                "otp_verify_failed",
                {"user_id": user_id, "purpose": purpose, "reason": "expired"},
            )
            raise ChallengeExpiredError()

        otp = self.store.get_otp_code(challenge.otp_code_id)
        matched = otp is not None and hmac.compare_digest(
            otp.code_hash, self._hash_code(otp.id, submitted_code)
        )
        if not matched:
            remaining = self.store.decrement_challenge_attempts(challenge.id)
            if remaining is None:
                # Consumed concurrently by another request
                raise ChallengeNotFoundError()
            if remaining <= 0:
                self.store.delete_challenge(challenge.id)
            self.events.emit(
                "otp_verify_failed",
                {
                    "user_id": user_id,
                    "purpose": purpose,
                    "reason": "invalid_code",
                    "remaining_attempts": remaining,
                },
            )
            raise InvalidCodeError(remaining)

        if not self.store.mark_otp_used(otp.id, now, challenge_id=challenge.id):
            raise ChallengeNotFoundError()
        self.store.delete_challenge(challenge.id)
        self.events.emit(
            "otp_verified",
            {"user_id": user_id, "purpose": purpose, "challenge_id": challenge.id},
        )
        return VerifyResult(
            success=True,
            remaining_attempts=challenge.attempts_remaining,
            user_id=user_id,
        )

    def cleanup_expired(self) -> int:
        removed = self.store.purge_expired_challenges(self._now(), self.code_retention_seconds)
        if removed:
            self.logger.info("otp_challenges_purged", count=removed)
        return removed
