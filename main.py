from __future__ import annotations

import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from database import Base, engine
from logger import get_logger
from routers.auth import router as auth_router
from utils.otp_store import MemoryOtpStore, StoreUnavailable, get_store
from utils.scheduler import scheduler

logger = get_logger(__name__)

OTP_PURGE_INTERVAL_SEC = int(os.getenv("OTP_PURGE_INTERVAL_SECONDS", "60"))


app = FastAPI(title="LifeFlow Backend")

app.include_router(auth_router, prefix="/api")


@app.exception_handler(StoreUnavailable)
def _store_unavailable(request: Request, exc: StoreUnavailable):
    logger.error("%s %s: %s", request.method, request.url.path, exc, extra="store")
    return JSONResponse(
        status_code=503,
        content={"detail": {"error": "store_unavailable", "message": "Service temporarily unavailable. Please try again."}},
    )


def _purge_expired_otps() -> int:
    """Reclaims expired OTP records held in process memory (Redis expires its own)."""
    store = get_store()
    if isinstance(store, MemoryOtpStore):
        return store.purge_expired()
    return 0


@app.on_event("startup")
def _startup():
    # Create tables (simple projects; for production use migrations).
    Base.metadata.create_all(bind=engine)

    scheduler.add_job(
        _purge_expired_otps,
        "interval",
        seconds=OTP_PURGE_INTERVAL_SEC,
        id="purge_expired_otps",
        replace_existing=True,
    )
    if not scheduler.running:
        scheduler.start()
    logger.info("Startup complete (OTP store: %s)", get_store().backend, extra="app")


@app.on_event("shutdown")
def _shutdown():
    if scheduler.running:
        scheduler.shutdown(wait=False)


@app.get("/")
def root():
    return {"status": "Backend running"}


@app.get("/health")
def health():
    return {"status": "ok", "otp_store": get_store().backend}
