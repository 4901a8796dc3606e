"""
iam/otp.py -- One-time code issuance and verification.

Codes are numeric, bcrypt-hashed at rest, bound to (contact, purpose), and
valid for otp_expire_seconds. Each code allows otp_max_attempts guesses.

Issuance rate limit:
  If the latest code for (contact, purpose) is still usable (unexpired,
  unverified, attempts left) AND was issued less than otp_rate_limit_seconds
  ago, a new code is refused with too_many_requests and retry_after seconds.

Verification order (latest code for contact+purpose only):
  1. none                      -> otp_invalid
  2. expired                   -> otp_expired       (no attempt consumed)
  3. already verified          -> otp_already_used
  4. attempts exhausted        -> otp_too_many_attempts
  5. consume one attempt       (conditional UPDATE; losing the race -> 4)
  6. compare                   -> otp_invalid with attempts_remaining
  7. mark verified             (conditional UPDATE; losing the race -> 3)

Known race: two concurrent issuances can both pass the rate-limit check and
both persist a code. Only the latest is ever verifiable, so the earlier one
is inert.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from core.config import Settings
from iam.credentials import generate_otp_code, hash_secret, verify_secret
from iam.errors import BusinessRuleError, InternalError, ValidationError
from iam.models import OTP, OTPPurpose
from iam.store import IAMStore

logger = logging.getLogger("tenantgate.iam.otp")


# ---------------------------------------------------------------------------
# Notification contract
# ---------------------------------------------------------------------------


class NotificationSender(ABC):
    """Delivers a code to a contact. Raise on failure."""

    @abstractmethod
    def send_otp(self, contact: str, code: str, purpose: OTPPurpose) -> None: ...


class LoggingNotificationSender(NotificationSender):
    """Default sender: records that a code went out.

    The code itself is only written in debug mode so local development can
    complete a login without a mail server.
    """

    def __init__(self, debug: bool = False) -> None:
        self.debug = debug

    def send_otp(self, contact: str, code: str, purpose: OTPPurpose) -> None:
        if self.debug:
            logger.info("One-time code for %s (%s): %s", contact, purpose.value, code)
        else:
            logger.info("One-time code issued for %s (%s)", contact, purpose.value)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def is_expired(otp: OTP, now: datetime | None = None) -> bool:
    return (now or datetime.now(timezone.utc)) >= otp.expires_at


def is_usable(otp: OTP, now: datetime | None = None) -> bool:
    return otp.verified_at is None and otp.attempts < otp.max_attempts and not is_expired(otp, now)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class OTPService:
    def __init__(self, store: IAMStore, notifier: NotificationSender, settings: Settings) -> None:
        self.store = store
        self.notifier = notifier
        self.settings = settings

    def generate_otp(self, contact: str, purpose: OTPPurpose = OTPPurpose.VERIFICATION) -> tuple[OTP, str]:
        """Issue, persist and send a code. Returns (record, plaintext)."""
        now = datetime.now(timezone.utc)
        latest = self.store.get_latest_otp(contact, purpose)
        if latest is not None and is_usable(latest, now):
            elapsed = (now - latest.created_at).total_seconds()
            if elapsed < self.settings.otp_rate_limit_seconds:
                retry_after = max(1, math.ceil(self.settings.otp_rate_limit_seconds - elapsed))
                raise BusinessRuleError(
                    "Please wait before requesting another code.",
                    "too_many_requests",
                    status_code=429,
                    details={"retry_after": retry_after},
                )

        code = generate_otp_code(self.settings.otp_code_length)
        otp = OTP(
            id=str(uuid.uuid4()),
            contact=contact,
            code_hash=hash_secret(code, self.settings.otp_hash_rounds),
            purpose=purpose,
            expires_at=now + timedelta(seconds=self.settings.otp_expire_seconds),
            attempts=0,
            max_attempts=self.settings.otp_max_attempts,
            created_at=now,
        )
        self.store.create_otp(otp)

        try:
            self.notifier.send_otp(contact, code, purpose)
        except Exception as exc:
            logger.error("Failed to send one-time code: %s", exc, extra={"event": "otp_send_failed"})
            raise InternalError("Failed to send verification code.", "otp_send_failed", cause=exc) from exc

        logger.info("One-time code issued", extra={"event": "otp_issued", "purpose": purpose.value})
        return otp, code

    def verify_otp(self, contact: str, code: str, purpose: OTPPurpose = OTPPurpose.VERIFICATION) -> OTP:
        """Check a code against the latest one issued. Returns the verified record."""
        otp = self.store.get_latest_otp(contact, purpose)
        if otp is None:
            raise ValidationError("Invalid verification code.", "otp_invalid")

        now = datetime.now(timezone.utc)
        if is_expired(otp, now):
            raise BusinessRuleError("Verification code has expired.", "otp_expired")
        if otp.verified_at is not None:
            raise BusinessRuleError("Verification code has already been used.", "otp_already_used")
        if otp.attempts >= otp.max_attempts or not self.store.increment_otp_attempts(otp.id):
            logger.warning("One-time code locked out", extra={"event": "otp_locked"})
            raise BusinessRuleError(
                "Too many failed attempts. Request a new code.",
                "otp_too_many_attempts",
                status_code=429,
            )

        attempts = otp.attempts + 1
        if not verify_secret(code, otp.code_hash):
            remaining = max(0, otp.max_attempts - attempts)
            raise ValidationError(
                "Invalid verification code.",
                "otp_invalid",
                details={"attempts_remaining": remaining},
            )

        if not self.store.mark_otp_verified(otp.id, now):
            raise BusinessRuleError("Verification code has already been used.", "otp_already_used")
        logger.info("One-time code verified", extra={"event": "otp_verified", "purpose": purpose.value})
        return replace(otp, attempts=attempts, verified_at=now)
