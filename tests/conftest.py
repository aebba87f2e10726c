from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db
from main import app
from routers import auth
from utils.otp_service import OtpManager
from utils.otp_store import MemoryOtpStore


class FakeClock:
    def __init__(self, start: datetime = datetime(2024, 6, 14, 9, 0, tzinfo=timezone.utc)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent = []

    def send_code(self, email: str, code: str, *, expires_minutes: int) -> None:
        self.sent.append((email, code, expires_minutes))

    def last_code(self, email: str) -> str:
        for sent_to, code, _ in reversed(self.sent):
            if sent_to == email:
                return code
        raise AssertionError(f"no code sent to {email}")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def store():
    return MemoryOtpStore()


@pytest.fixture
def manager(store, notifier, clock):
    return OtpManager(store, notifier, purpose="verify", clock=clock)


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSession = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def otp_managers(store, notifier, clock):
    return {
        purpose: OtpManager(store, notifier, purpose=purpose, clock=clock)
        for purpose in ("verify", "login", "reset")
    }


@pytest.fixture
def client(db_session, otp_managers):
    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[auth.verify_otp_manager] = lambda: otp_managers["verify"]
    app.dependency_overrides[auth.login_otp_manager] = lambda: otp_managers["login"]
    app.dependency_overrides[auth.reset_otp_manager] = lambda: otp_managers["reset"]
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
