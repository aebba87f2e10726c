"""
OTP record storage.

Two backends share one contract:
  - RedisOtpStore: one hash per key with a native EXPIREAT TTL. Used when
    REDIS_URL is set.
  - MemoryOtpStore: process-local fallback. Expired records linger until
    purge_expired() runs, the same way a TTL index reclaims lazily.

Keys are built by the caller (see OtpManager); a key holds at most one
outstanding record. Writes that follow a read (increment_attempts, consume,
discard) take the record that was read and do nothing if the key has since
been reissued.
"""

from __future__ import annotations

import math
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

import redis

from logger import get_logger

logger = get_logger(__name__)

REDIS_TIMEOUT_SECONDS = float(os.getenv("REDIS_TIMEOUT_SECONDS", "2"))


class StoreUnavailable(Exception):
    """The backing store could not be reached or timed out."""


@dataclass(frozen=True)
class OtpRecord:
    email: str
    code: str
    created_at: datetime
    expires_at: datetime
    attempts: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def same_issue(self, other: "OtpRecord") -> bool:
        # Attempts change in place; code and created_at identify one issue.
        return self.code == other.code and self.created_at == other.created_at

    def to_mapping(self) -> Dict[str, str]:
        return {
            "email": self.email,
            "code": self.code,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "attempts": str(self.attempts),
        }

    @classmethod
    def from_mapping(cls, data: Dict[str, str]) -> "OtpRecord":
        return cls(
            email=data["email"],
            code=data["code"],
            created_at=_parse_ts(data["created_at"]),
            expires_at=_parse_ts(data["expires_at"]),
            attempts=int(data.get("attempts") or 0),
        )


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class MemoryOtpStore:
    backend = "memory"

    def __init__(self) -> None:
        self._records: Dict[str, OtpRecord] = {}
        self._lock = threading.Lock()

    def put(self, key: str, record: OtpRecord) -> None:
        with self._lock:
            self._records[key] = record

    def find_active(self, key: str) -> Optional[OtpRecord]:
        with self._lock:
            return self._records.get(key)

    def increment_attempts(self, key: str, expected: OtpRecord, limit: int) -> Optional[Tuple[int, bool]]:
        with self._lock:
            record = self._records.get(key)
            if record is None or not record.same_issue(expected):
                return None
            if record.attempts >= limit:
                return record.attempts, False
            updated = replace(record, attempts=record.attempts + 1)
            self._records[key] = updated
            return updated.attempts, True

    def consume(self, key: str, expected: OtpRecord, limit: int) -> bool:
        with self._lock:
            record = self._records.get(key)
            if record is None or not record.same_issue(expected) or record.attempts >= limit:
                return False
            del self._records[key]
            return True

    def discard(self, key: str, expected: OtpRecord) -> bool:
        with self._lock:
            record = self._records.get(key)
            if record is None or not record.same_issue(expected):
                return False
            del self._records[key]
            return True

    def delete_active(self, key: str) -> bool:
        with self._lock:
            return self._records.pop(key, None) is not None

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        with self._lock:
            dead = [k for k, r in self._records.items() if r.is_expired(now)]
            for k in dead:
                del self._records[k]
        if dead:
            logger.debug("Purged %d expired OTP records", len(dead), extra="otp-store")
        return len(dead)

    def __len__(self) -> int:
        return len(self._records)


class RedisOtpStore:
    backend = "redis"

    def __init__(self, client) -> None:
        # Client must be created with decode_responses=True.
        self._client = client

    @classmethod
    def from_url(cls, url: str, *, timeout: float = REDIS_TIMEOUT_SECONDS) -> "RedisOtpStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return cls(client)

    @contextmanager
    def _guard(self, op: str):
        try:
            yield
        except redis.exceptions.RedisError as exc:
            logger.error("Redis %s failed: %s", op, exc, extra="otp-store")
            raise StoreUnavailable(f"OTP store unavailable during {op}") from exc

    def put(self, key: str, record: OtpRecord) -> None:
        with self._guard("put"):
            pipe = self._client.pipeline(transaction=True)
            pipe.delete(key)
            pipe.hset(key, mapping=record.to_mapping())
            pipe.expireat(key, int(math.ceil(record.expires_at.timestamp())))
            pipe.execute()

    def find_active(self, key: str) -> Optional[OtpRecord]:
        with self._guard("find"):
            data = self._client.hgetall(key)
        if not data:
            return None
        return OtpRecord.from_mapping(data)

    def _matches(self, pipe, key: str, expected: OtpRecord) -> Optional[str]:
        """Returns the stored attempts field if `key` still holds `expected`'s issue."""
        code, created_at, attempts = pipe.hmget(key, "code", "created_at", "attempts")
        if code is None or created_at is None:
            return None
        if code != expected.code or _parse_ts(created_at) != expected.created_at:
            return None
        return attempts or "0"

    def increment_attempts(self, key: str, expected: OtpRecord, limit: int) -> Optional[Tuple[int, bool]]:
        def _txn(pipe):
            current = self._matches(pipe, key, expected)
            if current is None:
                return None
            current = int(current)
            if current >= limit:
                return current, False
            pipe.multi()
            pipe.hincrby(key, "attempts", 1)
            return current + 1, True

        with self._guard("increment"):
            return self._client.transaction(_txn, key, value_from_callable=True)

    def consume(self, key: str, expected: OtpRecord, limit: int) -> bool:
        def _txn(pipe):
            attempts = self._matches(pipe, key, expected)
            if attempts is None or int(attempts) >= limit:
                return False
            pipe.multi()
            pipe.delete(key)
            return True

        with self._guard("consume"):
            return self._client.transaction(_txn, key, value_from_callable=True)

    def discard(self, key: str, expected: OtpRecord) -> bool:
        def _txn(pipe):
            if self._matches(pipe, key, expected) is None:
                return False
            pipe.multi()
            pipe.delete(key)
            return True

        with self._guard("discard"):
            return self._client.transaction(_txn, key, value_from_callable=True)

    def delete_active(self, key: str) -> bool:
        with self._guard("delete"):
            return bool(self._client.delete(key))

    def ping(self) -> bool:
        with self._guard("ping"):
            return bool(self._client.ping())


_STORE = None
_STORE_LOCK = threading.Lock()


def get_store():
    """
    Returns the process-wide store: Redis if REDIS_URL present; otherwise in-memory.
    """
    global _STORE
    with _STORE_LOCK:
        if _STORE is None:
            url = os.getenv("REDIS_URL")
            if url:
                _STORE = RedisOtpStore.from_url(url)
                logger.info("OTP store: redis", extra="otp-store")
            else:
                _STORE = MemoryOtpStore()
                logger.warning("REDIS_URL not set; OTP records kept in memory", extra="otp-store")
        return _STORE
