"""
Delivery of OTP codes to their owner.

The manager only ever hands a code to a notifier. ScheduledNotifier moves
the actual send off the request path; failures there are logged, since the
user can always ask for a resend.
"""

from __future__ import annotations

import os

from logger import get_logger
from utils.brevo_email import render_otp_email, send_email

logger = get_logger(__name__)

OTP_SUBJECT = os.getenv("OTP_SUBJECT", "LifeFlow - Your Verification Code")


class EmailOtpNotifier:
    def send_code(self, email: str, code: str, *, expires_minutes: int) -> None:
        html, text = render_otp_email(code, expires_minutes)
        send_email(to_email=email, subject=OTP_SUBJECT, html=html, text=text)
        logger.info("OTP email sent to %s", email, extra="notifier")


class ConsoleOtpNotifier:
    """Development notifier: prints the code instead of emailing it."""

    def send_code(self, email: str, code: str, *, expires_minutes: int) -> None:
        logger.warning("[DEV] OTP for %s: %s (expires in %d min)", email, code, expires_minutes, extra="notifier")


class ScheduledNotifier:
    def __init__(self, delegate, scheduler) -> None:
        self._delegate = delegate
        self._scheduler = scheduler

    def send_code(self, email: str, code: str, *, expires_minutes: int) -> None:
        # No trigger: runs once, as soon as a worker thread is free.
        self._scheduler.add_job(
            self._deliver,
            args=[email, code],
            kwargs={"expires_minutes": expires_minutes},
            misfire_grace_time=None,
        )

    def _deliver(self, email: str, code: str, *, expires_minutes: int) -> None:
        try:
            self._delegate.send_code(email, code, expires_minutes=expires_minutes)
        except Exception:
            logger.exception("OTP delivery to %s failed", email, extra="notifier")


def build_notifier(scheduler=None):
    if os.getenv("BREVO_API_KEY"):
        notifier = EmailOtpNotifier()
    else:
        logger.warning("BREVO_API_KEY not set; OTP codes will be logged", extra="notifier")
        notifier = ConsoleOtpNotifier()
    if scheduler is None:
        return notifier
    return ScheduledNotifier(notifier, scheduler)
