from __future__ import annotations

import os
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt
from pydantic import BaseModel, EmailStr
from sqlalchemy.orm import Session

from database import get_db
from logger import get_logger
from models import User
from utils.otp_service import (
    IssueResult,
    OtpError,
    OtpManager,
    VerifyResult,
    get_otp_manager,
    normalize_email,
)


router = APIRouter(prefix="/auth", tags=["auth"])
bearer = HTTPBearer(auto_error=False)
logger = get_logger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "change_me")
JWT_ALG = os.getenv("JWT_ALG", "HS256")
JWT_EXP_MIN = int(os.getenv("JWT_EXP_MIN", "1440"))  # 1 day default

# Roles that must pass an emailed code on every login.
SECOND_FACTOR_ROLES = {"organizer", "admin"}
SELF_SERVICE_ROLES = {"donor", "organizer"}


def verify_otp_manager() -> OtpManager:
    return get_otp_manager("verify")


def login_otp_manager() -> OtpManager:
    return get_otp_manager("login")


def reset_otp_manager() -> OtpManager:
    return get_otp_manager("reset")


def _now() -> datetime:
    return datetime.utcnow()


def _create_token(*, user: User) -> str:
    issued = datetime.now(timezone.utc)
    payload = {
        "sub": str(user.id),
        "role": user.role,
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(minutes=JWT_EXP_MIN)).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def _hash_password(password: str) -> str:
    # Multi-byte safe password truncation for bcrypt (max 72 bytes)
    safe_password = password.strip().encode("utf-8")[:72].decode("utf-8", errors="ignore")
    return bcrypt.hashpw(safe_password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def _check_password(password: str, password_hash: str) -> bool:
    candidate = password.strip().encode("utf-8")[:72].decode("utf-8", errors="ignore")
    return bcrypt.checkpw(candidate.encode("utf-8"), password_hash.encode("utf-8"))


def _digits(otp: str) -> str:
    return re.sub(r"\D", "", otp or "")


def _user_out(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "role": user.role,
        "blood_type": user.blood_type,
        "phone_number": user.phone_number,
        "is_verified": bool(user.is_verified),
        "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
    }


_OTP_MESSAGES = {
    OtpError.INVALID_IDENTITY: "A valid email address is required.",
    OtpError.NOT_FOUND: "OTP not found or already used. Please request a new OTP.",
    OtpError.EXPIRED: "OTP has expired. Please request a new OTP.",
    OtpError.ATTEMPTS_EXCEEDED: "Too many attempts. Please request a new OTP.",
    OtpError.INVALID_CODE: "Invalid OTP.",
    OtpError.COOLDOWN: "Please wait before requesting a new OTP.",
}

_OTP_STATUS = {
    OtpError.INVALID_IDENTITY: 400,
    OtpError.NOT_FOUND: 404,
    OtpError.EXPIRED: 400,
    OtpError.ATTEMPTS_EXCEEDED: 429,
    OtpError.INVALID_CODE: 400,
    OtpError.COOLDOWN: 429,
}


def _raise_issue_error(result: IssueResult) -> None:
    detail = {"error": result.error.value, "message": _OTP_MESSAGES[result.error]}
    headers = None
    if result.error is OtpError.COOLDOWN:
        detail["retry_after"] = result.retry_after
        headers = {"Retry-After": str(result.retry_after)}
    raise HTTPException(_OTP_STATUS[result.error], detail=detail, headers=headers)


def _raise_verify_error(result: VerifyResult) -> None:
    error = result.error
    message = _OTP_MESSAGES[error]
    if error is OtpError.INVALID_CODE and result.limit_reached:
        message = "Invalid OTP. No attempts left; please request a new OTP."
    can_resend = error in {OtpError.EXPIRED, OtpError.ATTEMPTS_EXCEEDED, OtpError.NOT_FOUND} or (
        error is OtpError.INVALID_CODE and result.limit_reached
    )
    detail = {"error": error.value, "message": message, "can_resend": can_resend}
    if result.attempts_remaining is not None:
        detail["attempts_remaining"] = result.attempts_remaining
    raise HTTPException(_OTP_STATUS[error], detail=detail)


def _issue_or_raise(manager: OtpManager, email: str, *, resend: bool = False) -> IssueResult:
    result = manager.resend(email) if resend else manager.generate(email)
    if not result.ok:
        _raise_issue_error(result)
    return result


def _find_user(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == normalize_email(email)).first()


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: Session = Depends(get_db),
) -> User:
    if not creds or not creds.credentials:
        raise HTTPException(401, "Missing Authorization token")
    token = creds.credentials
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except Exception:
        raise HTTPException(401, "Invalid token")
    sub = payload.get("sub")
    if not sub:
        raise HTTPException(401, "Invalid token")
    user = db.get(User, int(sub))
    if not user:
        raise HTTPException(401, "User not found")
    return user


def _login_response(user: User, db: Session) -> dict:
    token = _create_token(user=user)
    try:
        user.last_login_at = _now()
        db.add(user)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Could not record login time for user %s", user.id, extra="auth")
    return {
        "ok": True,
        "access_token": token,
        "token_type": "bearer",
        "user": _user_out(user),
    }


class RegisterIn(BaseModel):
    email: EmailStr
    password: str
    first_name: str
    last_name: str = ""
    role: str = "donor"
    blood_type: Optional[str] = None
    phone_number: Optional[str] = None


@router.post("/register", status_code=201)
def register(
    payload: RegisterIn,
    db: Session = Depends(get_db),
    otp: OtpManager = Depends(verify_otp_manager),
):
    email = normalize_email(str(payload.email))
    role = (payload.role or "donor").strip().lower()

    if role not in SELF_SERVICE_ROLES:
        raise HTTPException(400, "Role must be donor or organizer.")
    if len(payload.password.strip()) < 6:
        raise HTTPException(400, "Password must be at least 6 characters.")
    if not payload.first_name.strip():
        raise HTTPException(400, "First name is required.")
    if _find_user(db, email):
        raise HTTPException(400, "Email already registered")

    user = User(
        email=email,
        password_hash=_hash_password(payload.password),
        first_name=payload.first_name.strip(),
        last_name=payload.last_name.strip(),
        role=role,
        blood_type=(payload.blood_type or "").strip() or None,
        phone_number=(payload.phone_number or "").strip() or None,
        is_verified=False,
    )
    db.add(user)
    db.flush()

    # The account is only kept once its verification code is stored.
    try:
        result = _issue_or_raise(otp, email)
    except Exception:
        db.rollback()
        raise
    db.commit()
    db.refresh(user)
    return {
        "ok": True,
        "user_id": user.id,
        "message": "User registered. Please verify your email with OTP.",
        "otp_expires_at": result.expires_at.isoformat(),
    }


class EmailIn(BaseModel):
    email: str


class VerifyOtpIn(BaseModel):
    email: str
    otp: str


@router.post("/verify-otp")
def verify_email_otp(
    payload: VerifyOtpIn,
    db: Session = Depends(get_db),
    otp: OtpManager = Depends(verify_otp_manager),
):
    result = otp.validate(payload.email, _digits(payload.otp))
    if not result.ok:
        _raise_verify_error(result)

    user = _find_user(db, result.email)
    if not user:
        raise HTTPException(404, "User not found")
    user.is_verified = True
    db.add(user)
    db.commit()
    db.refresh(user)
    return {
        "ok": True,
        "message": "OTP verified successfully. You can now log in.",
        "user": _user_out(user),
    }


@router.post("/resend-otp")
def resend_email_otp(
    payload: EmailIn,
    db: Session = Depends(get_db),
    otp: OtpManager = Depends(verify_otp_manager),
):
    user = _find_user(db, payload.email)
    if not user:
        raise HTTPException(404, "User not found")
    if user.is_verified:
        raise HTTPException(400, "Email already verified.")

    result = _issue_or_raise(otp, user.email, resend=True)
    return {
        "ok": True,
        "message": "OTP sent again. Check your email.",
        "otp_expires_at": result.expires_at.isoformat(),
    }


class LoginIn(BaseModel):
    email: str
    password: str


@router.post("/login")
def login(
    payload: LoginIn,
    db: Session = Depends(get_db),
    verify_otp: OtpManager = Depends(verify_otp_manager),
    login_otp: OtpManager = Depends(login_otp_manager),
):
    user = _find_user(db, payload.email)
    if not user:
        raise HTTPException(404, "Account not found.")
    if not _check_password(payload.password, user.password_hash):
        raise HTTPException(401, "Incorrect password.")

    if not user.is_verified:
        result = verify_otp.generate(user.email)
        message = "Email not verified. A new OTP has been sent."
        if not result.ok and result.error is OtpError.COOLDOWN:
            message = "Email not verified. Use the OTP already sent to your email."
        raise HTTPException(403, detail={"error": "email_not_verified", "message": message})

    if user.role in SECOND_FACTOR_ROLES:
        result = _issue_or_raise(login_otp, user.email)
        return {
            "ok": True,
            "require_otp": True,
            "message": "Verification code sent to your email.",
            "otp_expires_at": result.expires_at.isoformat(),
        }

    return _login_response(user, db)


@router.post("/login/verify-otp")
def login_verify_otp(
    payload: VerifyOtpIn,
    db: Session = Depends(get_db),
    otp: OtpManager = Depends(login_otp_manager),
):
    result = otp.validate(payload.email, _digits(payload.otp))
    if not result.ok:
        _raise_verify_error(result)

    user = _find_user(db, result.email)
    if not user:
        raise HTTPException(404, "Account not found.")
    return _login_response(user, db)


@router.post("/login/resend-otp")
def login_resend_otp(
    payload: EmailIn,
    db: Session = Depends(get_db),
    otp: OtpManager = Depends(login_otp_manager),
):
    user = _find_user(db, payload.email)
    if not user or user.role not in SECOND_FACTOR_ROLES:
        raise HTTPException(404, "Account not found.")

    result = _issue_or_raise(otp, user.email, resend=True)
    return {
        "ok": True,
        "message": "New verification code sent",
        "otp_expires_at": result.expires_at.isoformat(),
    }


@router.post("/forgot-password/request-otp")
def forgot_password_request_otp(
    payload: EmailIn,
    db: Session = Depends(get_db),
    otp: OtpManager = Depends(reset_otp_manager),
):
    user = _find_user(db, payload.email)
    if not user:
        raise HTTPException(404, "Account not found.")

    _issue_or_raise(otp, user.email)
    return {"ok": True, "message": "OTP sent to your email."}


class ForgotPasswordResetIn(BaseModel):
    email: str
    otp: str
    new_password: str


@router.post("/forgot-password/reset")
def forgot_password_reset(
    payload: ForgotPasswordResetIn,
    db: Session = Depends(get_db),
    otp: OtpManager = Depends(reset_otp_manager),
):
    if len(payload.new_password.strip()) < 6:
        raise HTTPException(400, "Password must be at least 6 characters.")

    user = _find_user(db, payload.email)
    if not user:
        raise HTTPException(404, "Account not found.")

    result = otp.validate(user.email, _digits(payload.otp))
    if not result.ok:
        _raise_verify_error(result)

    user.password_hash = _hash_password(payload.new_password)
    # Receiving the code proves control of the mailbox.
    user.is_verified = True
    db.commit()
    return {"ok": True, "message": "Password updated successfully."}


@router.get("/me")
def me(current_user: User = Depends(get_current_user)):
    return {"ok": True, "user": _user_out(current_user)}
