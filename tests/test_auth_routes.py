from __future__ import annotations

import pytest

from models import User
from routers.auth import _hash_password
from utils.otp_store import StoreUnavailable

DONOR = {
    "email": "Donor@Example.com",
    "password": "secret123",
    "first_name": "Asha",
    "last_name": "Rao",
    "blood_type": "O+",
}


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


def _register(client, **overrides):
    body = {**DONOR, **overrides}
    return client.post("/api/auth/register", json=body)


def _seed(db_session, email, role, password="secret123", verified=True):
    user = User(
        email=email,
        password_hash=_hash_password(password),
        first_name="Seed",
        role=role,
        is_verified=verified,
    )
    db_session.add(user)
    db_session.commit()
    return user


def test_register_sends_verification_code(client, notifier, db_session):
    resp = _register(client)
    assert resp.status_code == 201
    body = resp.json()
    assert body["ok"] is True
    assert "otp_expires_at" in body
    assert "code" not in body and "otp" not in body

    user = db_session.query(User).one()
    assert user.email == "donor@example.com"
    assert user.is_verified is False
    assert notifier.sent[0][0] == "donor@example.com"


def test_register_rejects_duplicates_and_bad_roles(client):
    assert _register(client).status_code == 201
    assert _register(client).status_code == 400
    assert _register(client, email="x@example.com", role="admin").status_code == 400
    assert _register(client, email="y@example.com", password="123").status_code == 400


def test_verify_then_login(client, notifier, db_session):
    _register(client)
    code = notifier.last_code("donor@example.com")

    resp = client.post("/api/auth/verify-otp", json={"email": "donor@example.com", "otp": code})
    assert resp.status_code == 200
    assert resp.json()["user"]["is_verified"] is True

    again = client.post("/api/auth/verify-otp", json={"email": "donor@example.com", "otp": code})
    assert again.status_code == 404
    assert again.json()["detail"]["error"] == "not_found"

    login = client.post("/api/auth/login", json={"email": "donor@example.com", "password": "secret123"})
    assert login.status_code == 200
    token = login.json()["access_token"]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["user"]["email"] == "donor@example.com"
    assert me.json()["user"]["role"] == "donor"


def test_verify_strips_non_digits(client, notifier):
    _register(client)
    code = notifier.last_code("donor@example.com")
    spaced = f"{code[:3]} {code[3:]}"
    resp = client.post("/api/auth/verify-otp", json={"email": " DONOR@example.com ", "otp": spaced})
    assert resp.status_code == 200


def test_wrong_code_then_attempts_exceeded(client, notifier):
    _register(client)
    code = notifier.last_code("donor@example.com")
    payload = {"email": "donor@example.com", "otp": _wrong(code)}

    first = client.post("/api/auth/verify-otp", json=payload)
    assert first.status_code == 400
    assert first.json()["detail"] == {
        "error": "invalid_code",
        "message": "Invalid OTP.",
        "can_resend": False,
        "attempts_remaining": 4,
    }

    for _ in range(3):
        client.post("/api/auth/verify-otp", json=payload)
    fifth = client.post("/api/auth/verify-otp", json=payload)
    assert fifth.status_code == 400
    assert fifth.json()["detail"]["can_resend"] is True
    assert fifth.json()["detail"]["attempts_remaining"] == 0

    sixth = client.post("/api/auth/verify-otp", json={"email": "donor@example.com", "otp": code})
    assert sixth.status_code == 429
    detail = sixth.json()["detail"]
    assert detail["error"] == "attempts_exceeded"
    assert detail["message"] == "Too many attempts. Please request a new OTP."
    assert detail["message"] != first.json()["detail"]["message"]

    resent = client.post("/api/auth/resend-otp", json={"email": "donor@example.com"})
    assert resent.status_code == 200
    new_code = notifier.last_code("donor@example.com")
    ok = client.post("/api/auth/verify-otp", json={"email": "donor@example.com", "otp": new_code})
    assert ok.status_code == 200


def test_expired_code(client, notifier, clock):
    _register(client)
    code = notifier.last_code("donor@example.com")
    clock.advance(minutes=6)

    resp = client.post("/api/auth/verify-otp", json={"email": "donor@example.com", "otp": code})
    assert resp.status_code == 400
    assert resp.json()["detail"]["error"] == "expired"
    assert resp.json()["detail"]["can_resend"] is True


def test_resend_cooldown(client):
    _register(client)
    resp = client.post("/api/auth/resend-otp", json={"email": "donor@example.com"})
    assert resp.status_code == 429
    assert resp.headers["Retry-After"] == "60"
    assert resp.json()["detail"]["error"] == "cooldown"


def test_resend_unknown_or_verified(client, db_session):
    assert client.post("/api/auth/resend-otp", json={"email": "ghost@example.com"}).status_code == 404
    _seed(db_session, "done@example.com", "donor")
    assert client.post("/api/auth/resend-otp", json={"email": "done@example.com"}).status_code == 400


def test_login_unverified_sends_new_code(client, notifier, clock):
    _register(client)
    clock.advance(minutes=2)
    resp = client.post("/api/auth/login", json={"email": "donor@example.com", "password": "secret123"})
    assert resp.status_code == 403
    assert resp.json()["detail"]["message"] == "Email not verified. A new OTP has been sent."
    assert len(notifier.sent) == 2


def test_login_wrong_password(client, db_session):
    _seed(db_session, "donor@example.com", "donor")
    resp = client.post("/api/auth/login", json={"email": "donor@example.com", "password": "nope-nope"})
    assert resp.status_code == 401
    assert client.post("/api/auth/login", json={"email": "who@example.com", "password": "x"}).status_code == 404


@pytest.mark.parametrize("role", ["organizer", "admin"])
def test_second_factor_login(client, notifier, db_session, role):
    _seed(db_session, "staff@lifeflow.org", role)

    resp = client.post("/api/auth/login", json={"email": "staff@lifeflow.org", "password": "secret123"})
    assert resp.status_code == 200
    assert resp.json()["require_otp"] is True
    assert "access_token" not in resp.json()

    code = notifier.last_code("staff@lifeflow.org")
    verified = client.post("/api/auth/login/verify-otp", json={"email": "staff@lifeflow.org", "otp": code})
    assert verified.status_code == 200
    assert verified.json()["user"]["role"] == role
    assert verified.json()["user"]["last_login_at"] is not None


def test_login_code_is_not_an_email_verification_code(client, notifier, db_session):
    _seed(db_session, "staff@lifeflow.org", "admin")
    client.post("/api/auth/login", json={"email": "staff@lifeflow.org", "password": "secret123"})
    code = notifier.last_code("staff@lifeflow.org")

    resp = client.post("/api/auth/verify-otp", json={"email": "staff@lifeflow.org", "otp": code})
    assert resp.status_code == 404


def test_login_resend(client, notifier, db_session, clock):
    _seed(db_session, "staff@lifeflow.org", "organizer")
    _seed(db_session, "donor@example.com", "donor")
    client.post("/api/auth/login", json={"email": "staff@lifeflow.org", "password": "secret123"})
    clock.advance(seconds=90)

    resp = client.post("/api/auth/login/resend-otp", json={"email": "staff@lifeflow.org"})
    assert resp.status_code == 200
    assert len(notifier.sent) == 2
    assert client.post("/api/auth/login/resend-otp", json={"email": "donor@example.com"}).status_code == 404


def test_forgot_password_flow(client, notifier, db_session):
    _seed(db_session, "donor@example.com", "donor", password="old-password")

    assert client.post("/api/auth/forgot-password/request-otp", json={"email": "donor@example.com"}).status_code == 200
    code = notifier.last_code("donor@example.com")

    bad = client.post(
        "/api/auth/forgot-password/reset",
        json={"email": "donor@example.com", "otp": _wrong(code), "new_password": "new-password"},
    )
    assert bad.status_code == 400

    ok = client.post(
        "/api/auth/forgot-password/reset",
        json={"email": "donor@example.com", "otp": code, "new_password": "new-password"},
    )
    assert ok.status_code == 200

    login = client.post("/api/auth/login", json={"email": "donor@example.com", "password": "new-password"})
    assert login.status_code == 200


def test_me_requires_token(client):
    assert client.get("/api/auth/me").status_code == 401
    assert client.get("/api/auth/me", headers={"Authorization": "Bearer junk"}).status_code == 401


def test_store_outage_maps_to_503(client, otp_managers, monkeypatch):
    def down(*args, **kwargs):
        raise StoreUnavailable("redis timeout")

    monkeypatch.setattr(otp_managers["verify"].store, "find_active", down)
    resp = client.post("/api/auth/verify-otp", json={"email": "donor@example.com", "otp": "123456"})
    assert resp.status_code == 503
    assert resp.json()["detail"]["error"] == "store_unavailable"


def test_health(client):
    assert client.get("/").json() == {"status": "Backend running"}
    assert client.get("/health").json()["status"] == "ok"


def test_register_keeps_no_account_when_code_cannot_be_stored(client, otp_managers, db_session, monkeypatch):
    def down(*args, **kwargs):
        raise StoreUnavailable("redis timeout")

    monkeypatch.setattr(otp_managers["verify"].store, "find_active", down)
    resp = _register(client)
    assert resp.status_code == 503
    assert db_session.query(User).count() == 0

    monkeypatch.undo()
    assert _register(client).status_code == 201
    assert db_session.query(User).one().email == "donor@example.com"
