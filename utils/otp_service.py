"""
One-time verification codes bound to an email address.

An OtpManager owns one purpose ("verify", "login", "reset"). For each
(purpose, email) there is at most one outstanding record:

    Active(n) --match--> Consumed
    Active(n) --mismatch, n < MAX--> Active(n + 1)
    Active(MAX) --validate--> Rejected until resend
    Active/Rejected --expires_at passed--> Expired until resend
    generate/resend --> Active(0)

Attempt counting and consumption go through the store's atomic operations so
several workers behind a load balancer agree on the count. Expiry is checked
here against expires_at on every validation; the store TTL only reclaims
space.
"""

from __future__ import annotations

import enum
import hmac
import math
import os
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Callable, Optional

from logger import get_logger
from utils.otp_notifier import build_notifier
from utils.otp_store import OtpRecord, get_store
from utils.scheduler import scheduler

logger = get_logger(__name__)

OTP_LENGTH = 6
OTP_EXP_MIN = int(os.getenv("OTP_EXP_MINUTES", "5"))
OTP_MAX_ATTEMPTS = int(os.getenv("OTP_MAX_ATTEMPTS", "5"))
OTP_RESEND_COOLDOWN_SEC = int(os.getenv("OTP_RESEND_COOLDOWN_SECONDS", "60"))

_EMAIL_RE = re.compile(r"^\S+@\S+\.\S+$")


class OtpError(str, enum.Enum):
    INVALID_IDENTITY = "invalid_identity"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ATTEMPTS_EXCEEDED = "attempts_exceeded"
    INVALID_CODE = "invalid_code"
    COOLDOWN = "cooldown"


@dataclass(frozen=True)
class IssueResult:
    ok: bool
    email: str
    expires_at: Optional[datetime] = None
    error: Optional[OtpError] = None
    retry_after: Optional[int] = None


@dataclass(frozen=True)
class VerifyResult:
    ok: bool
    email: str
    error: Optional[OtpError] = None
    attempts: int = 0
    attempts_remaining: Optional[int] = None
    limit_reached: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(email) and bool(_EMAIL_RE.match(email))


def generate_code(length: int = OTP_LENGTH) -> str:
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def secrets_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


class OtpManager:
    def __init__(
        self,
        store,
        notifier,
        *,
        purpose: str = "verify",
        window: timedelta = timedelta(minutes=OTP_EXP_MIN),
        max_attempts: int = OTP_MAX_ATTEMPTS,
        cooldown: timedelta = timedelta(seconds=OTP_RESEND_COOLDOWN_SEC),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.purpose = purpose
        self.window = window
        self.max_attempts = max_attempts
        self.cooldown = cooldown
        self._clock = clock

    def _key(self, email: str) -> str:
        return f"otp:{self.purpose}:{email}"

    @property
    def window_minutes(self) -> int:
        return max(1, int(math.ceil(self.window.total_seconds() / 60)))

    def generate(self, email: str) -> IssueResult:
        """
        Issues a fresh code for `email`, superseding any outstanding one, and
        hands it to the notifier. The code never leaves the manager otherwise.
        """
        return self._issue(email, reason="generate")

    def resend(self, email: str) -> IssueResult:
        """Drops the outstanding record first; the only way out of ATTEMPTS_EXCEEDED."""
        return self._issue(email, reason="resend")

    def _issue(self, email: str, *, reason: str) -> IssueResult:
        email = normalize_email(email)
        if not is_valid_email(email):
            return IssueResult(ok=False, email=email, error=OtpError.INVALID_IDENTITY)

        key = self._key(email)
        now = self._clock()

        previous = self.store.find_active(key)
        if previous is not None:
            retry_after = self._cooldown_remaining(previous, now)
            if retry_after:
                logger.info(
                    "OTP %s for %s refused, cooldown %ss", reason, email, retry_after, extra=self.purpose
                )
                return IssueResult(ok=False, email=email, error=OtpError.COOLDOWN, retry_after=retry_after)
            if reason == "resend":
                self.store.delete_active(key)

        record = OtpRecord(
            email=email,
            code=generate_code(),
            created_at=now,
            expires_at=now + self.window,
            attempts=0,
        )
        self.store.put(key, record)
        logger.info("OTP issued (%s) for %s, expires %s", reason, email, record.expires_at.isoformat(), extra=self.purpose)

        try:
            self.notifier.send_code(email, record.code, expires_minutes=self.window_minutes)
        except Exception:
            logger.exception("Could not hand OTP for %s to notifier", email, extra=self.purpose)

        return IssueResult(ok=True, email=email, expires_at=record.expires_at)

    def _cooldown_remaining(self, record: OtpRecord, now: datetime) -> int:
        if self.cooldown.total_seconds() <= 0:
            return 0
        if record.is_expired(now) or record.attempts >= self.max_attempts:
            return 0
        remaining = (record.created_at + self.cooldown - now).total_seconds()
        return int(math.ceil(remaining)) if remaining > 0 else 0

    def validate(self, email: str, code: str) -> VerifyResult:
        email = normalize_email(email)
        if not is_valid_email(email):
            return VerifyResult(ok=False, email=email, error=OtpError.INVALID_IDENTITY)

        key = self._key(email)
        submitted = (code or "").strip()

        record = self.store.find_active(key)
        if record is None:
            return VerifyResult(ok=False, email=email, error=OtpError.NOT_FOUND)

        if record.is_expired(self._clock()):
            # A resend may have replaced the record since it was read.
            self.store.discard(key, record)
            logger.info("OTP for %s expired", email, extra=self.purpose)
            return VerifyResult(ok=False, email=email, error=OtpError.EXPIRED, attempts=record.attempts)

        if record.attempts >= self.max_attempts:
            return self._exceeded(email, record.attempts)

        if secrets_equal(record.code, submitted):
            if self.store.consume(key, record, self.max_attempts):
                logger.info("OTP for %s verified", email, extra=self.purpose)
                return VerifyResult(ok=True, email=email, attempts=record.attempts)
            # Lost a race: consumed, superseded, or exhausted in between.
            current = self.store.find_active(key)
            if current is not None and current.same_issue(record) and current.attempts >= self.max_attempts:
                return self._exceeded(email, current.attempts)
            return VerifyResult(ok=False, email=email, error=OtpError.NOT_FOUND)

        outcome = self.store.increment_attempts(key, record, self.max_attempts)
        if outcome is None:
            return VerifyResult(ok=False, email=email, error=OtpError.NOT_FOUND)
        attempts, applied = outcome
        if not applied:
            return self._exceeded(email, attempts)

        limit_reached = attempts >= self.max_attempts
        if limit_reached:
            logger.warning("OTP attempts exhausted for %s", email, extra=self.purpose)
        else:
            logger.info("Invalid OTP for %s (attempt %d/%d)", email, attempts, self.max_attempts, extra=self.purpose)
        return VerifyResult(
            ok=False,
            email=email,
            error=OtpError.INVALID_CODE,
            attempts=attempts,
            attempts_remaining=max(0, self.max_attempts - attempts),
            limit_reached=limit_reached,
        )

    def _exceeded(self, email: str, attempts: int) -> VerifyResult:
        return VerifyResult(
            ok=False,
            email=email,
            error=OtpError.ATTEMPTS_EXCEEDED,
            attempts=attempts,
            attempts_remaining=0,
            limit_reached=True,
        )


@lru_cache(maxsize=None)
def get_otp_manager(purpose: str) -> OtpManager:
    return OtpManager(get_store(), build_notifier(scheduler), purpose=purpose)
