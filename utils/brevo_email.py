from __future__ import annotations

import os
from datetime import datetime
from typing import Optional, Tuple

import requests

BREVO_URL = "https://api.brevo.com/v3/smtp/email"
BREVO_TIMEOUT_SECONDS = float(os.getenv("BREVO_TIMEOUT_SECONDS", "15"))
SENDER_NAME = os.getenv("BREVO_SENDER_NAME", "LifeFlow")


class EmailDeliveryError(RuntimeError):
    pass


def send_email(*, to_email: str, subject: str, html: str, text: Optional[str] = None) -> None:
    """
    Sends email using Brevo Transactional Email API.
    Requires:
      - BREVO_API_KEY
      - BREVO_FROM (email) OR EMAIL_FROM/SMTP_FROM
    """
    api_key = os.getenv("BREVO_API_KEY")
    if not api_key:
        raise EmailDeliveryError("BREVO_API_KEY is not set")

    from_email = (
        os.getenv("BREVO_FROM")
        or os.getenv("EMAIL_FROM")
        or os.getenv("SMTP_FROM")
    )
    if not from_email:
        raise EmailDeliveryError("BREVO_FROM (or EMAIL_FROM/SMTP_FROM) is not set")

    payload = {
        "sender": {"email": from_email, "name": SENDER_NAME},
        "to": [{"email": to_email}],
        "subject": subject,
        "htmlContent": html,
    }
    if text:
        payload["textContent"] = text

    try:
        resp = requests.post(
            BREVO_URL,
            headers={
                "accept": "application/json",
                "api-key": api_key,
                "content-type": "application/json",
            },
            json=payload,
            timeout=BREVO_TIMEOUT_SECONDS,
        )
    except requests.RequestException as exc:
        raise EmailDeliveryError(f"Brevo request failed: {exc}") from exc
    if resp.status_code >= 300:
        raise EmailDeliveryError(f"Brevo send failed ({resp.status_code}): {resp.text}")


def render_otp_email(code: str, expires_minutes: int) -> Tuple[str, str]:
    """Returns (html, text) bodies for a verification code email."""
    year = datetime.now().year
    validity = f"{expires_minutes} minute" if expires_minutes == 1 else f"{expires_minutes} minutes"
    html = f"""
    <div style="max-width:600px;margin:0 auto;font-family:Arial,sans-serif;border-top:5px solid #d9534f">
      <div style="background:#d9534f;color:#fff;padding:20px;text-align:center">
        <h1 style="margin:0">LifeFlow</h1>
        <p style="margin:4px 0 0">Your One-Time Password (OTP)</p>
      </div>
      <div style="padding:25px">
        <p>Hello,</p>
        <p>Thank you for using LifeFlow - where every drop saves lives.
           Please use the following code to complete your verification:</p>
        <div style="background:#f9f9f9;border-left:4px solid #d9534f;padding:15px;text-align:center">
          <div style="font-size:28px;font-weight:700;letter-spacing:6px">{code}</div>
          <p>This code will expire in {validity}.</p>
        </div>
        <p>If you didn't request this code, please ignore this email.</p>
      </div>
      <div style="background:#f4f4f4;color:#666;font-size:12px;text-align:center;padding:15px">
        <p>This is an automated message from LifeFlow. Please do not reply to this email.</p>
        <p>&copy; {year} LifeFlow. All rights reserved.</p>
      </div>
    </div>
    """
    text = f"Your LifeFlow verification code is {code}. It is valid for {validity}."
    return html, text
