"""
Token Service - ESL cloud credential/session lifecycle

WHY: Every cloud call needs a valid token. Tokens live 24h on the vendor
side; we treat them as expired after ESL_TOKEN_TTL_HOURS (23h) and refresh
ESL_TOKEN_SAFETY_MARGIN_SECONDS early so a token never expires mid-call.

SINGLE-FLIGHT REFRESH:
- A lock guards the refresh critical section
- The cache is re-read inside the lock; waiters reuse the winner's token
- refresh(stale_token) is compare-and-swap: if the cached token is no longer
  the one the caller saw fail, somebody already refreshed
- Logins are never attempted closer together than ESL_LOGIN_MIN_INTERVAL_SECONDS

CACHE BACKENDS:
- DatabaseTokenCache: token_cache table, shared by every worker on one DB
- MemoryTokenCache: per-process, used by tests and one-off scripts

SECURITY: Tokens and passwords are never logged.
"""

from __future__ import annotations

import hashlib
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from flask import current_app

from ..extensions import db
from ..errors import AuthenticationError
from ..models import TokenCache, CloudConfig
from .concurrency import run_with_retry
from shelfsync.time_utils import utcnow

DEFAULT_STORE_CONFIG_KEY = "default_store_id"


def hash_cloud_password(password: str) -> str:
    """The vendor expects the password as a 32-char lowercase MD5 hex digest."""
    return hashlib.md5(password.encode("utf-8")).hexdigest().lower()


@dataclass
class CachedToken:
    token: str
    expires_at: datetime
    last_refreshed_at: datetime


class MemoryTokenCache:
    """Process-local token cache."""

    def __init__(self):
        self._entries: dict[str, CachedToken] = {}
        self._guard = threading.Lock()

    def load(self, username: str) -> Optional[CachedToken]:
        with self._guard:
            return self._entries.get(username)

    def save(self, username: str, entry: CachedToken) -> None:
        with self._guard:
            self._entries[username] = entry

    def clear(self, username: str) -> None:
        with self._guard:
            self._entries.pop(username, None)


class DatabaseTokenCache:
    """Token cache persisted in the token_cache table (one row per account)."""

    def load(self, username: str) -> Optional[CachedToken]:
        row = db.session.query(TokenCache).filter_by(username=username).first()
        if not row:
            return None
        return CachedToken(
            token=row.token,
            expires_at=row.expires_at,
            last_refreshed_at=row.last_refreshed_at,
        )

    def save(self, username: str, entry: CachedToken) -> None:
        def _op():
            row = db.session.query(TokenCache).filter_by(username=username).first()
            if not row:
                row = TokenCache(username=username)
                db.session.add(row)
            row.token = entry.token
            row.expires_at = entry.expires_at
            row.last_refreshed_at = entry.last_refreshed_at
            db.session.commit()

        run_with_retry(_op)

    def clear(self, username: str) -> None:
        def _op():
            db.session.query(TokenCache).filter_by(username=username).delete()
            db.session.commit()

        run_with_retry(_op)


class TokenManager:
    """
    Hands out a valid cloud token, logging in only when needed.

    `login` is a zero-argument callable returning a fresh token string or
    raising AuthenticationError. `clock` returns UTC-naive now; `monotonic`
    returns seconds for login rate limiting. Both are injectable for tests.
    """

    def __init__(
        self,
        *,
        username: str,
        login: Callable[[], str],
        cache,
        token_ttl: timedelta = timedelta(hours=23),
        safety_margin: timedelta = timedelta(seconds=300),
        min_login_interval: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.username = username
        self.cache = cache
        self.token_ttl = token_ttl
        self.safety_margin = safety_margin
        self.min_login_interval = min_login_interval
        self._login = login
        self._clock = clock
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._last_login_attempt: float | None = None

    def is_valid(self, entry: Optional[CachedToken]) -> bool:
        if entry is None or not entry.token:
            return False
        return entry.expires_at > self._clock() + self.safety_margin

    def get_token(self) -> str:
        entry = self.cache.load(self.username)
        if self.is_valid(entry):
            return entry.token
        return self.refresh(stale_token=entry.token if entry else None)

    def refresh(self, stale_token: str | None = None) -> str:
        """
        Obtain a new token unless another caller already replaced `stale_token`.

        Pass the token that was rejected (or None when there was none).
        """
        with self._lock:
            entry = self.cache.load(self.username)
            if self.is_valid(entry) and entry.token != stale_token:
                return entry.token
            return self._login_locked()

    def invalidate(self) -> None:
        with self._lock:
            self.cache.clear(self.username)

    def _login_locked(self) -> str:
        now_m = self._monotonic()
        if (
            self._last_login_attempt is not None
            and now_m - self._last_login_attempt < self.min_login_interval
        ):
            raise AuthenticationError(
                "Cloud login attempted too soon after the previous attempt"
            )
        self._last_login_attempt = now_m

        token = self._login()
        if not token:
            raise AuthenticationError("Cloud login returned no token")

        now = self._clock()
        self.cache.save(
            self.username,
            CachedToken(token=token, expires_at=now + self.token_ttl, last_refreshed_at=now),
        )
        return token

    def status(self) -> dict:
        entry = self.cache.load(self.username)
        if entry is None:
            return {"has_token": False, "expires_at": None, "last_refreshed_at": None, "is_valid": False}
        return {
            "has_token": True,
            "expires_at": entry.expires_at,
            "last_refreshed_at": entry.last_refreshed_at,
            "is_valid": self.is_valid(entry),
        }


def get_config_value(key: str, owner_id: int | None = None) -> str | None:
    """Tenant row wins over the global (org_id NULL) row."""
    if owner_id is not None:
        row = db.session.query(CloudConfig).filter_by(org_id=owner_id, config_key=key).first()
        if row and row.config_value:
            return row.config_value
    row = db.session.query(CloudConfig).filter(
        CloudConfig.org_id.is_(None),
        CloudConfig.config_key == key,
    ).first()
    return row.config_value if row and row.config_value else None


def set_config_value(key: str, value: str | None, owner_id: int | None = None, description: str | None = None) -> CloudConfig:
    q = db.session.query(CloudConfig).filter(CloudConfig.config_key == key)
    q = q.filter(CloudConfig.org_id == owner_id) if owner_id is not None else q.filter(CloudConfig.org_id.is_(None))
    row = q.first()
    if not row:
        row = CloudConfig(org_id=owner_id, config_key=key)
        db.session.add(row)
    row.config_value = value
    if description:
        row.description = description
    db.session.commit()
    return row


def get_default_store_id(client, owner_id: int | None = None) -> str | None:
    """
    Resolve the cloud store a tenant's devices live in.

    Order: tenant config row, global config row, ESL_DEFAULT_STORE_ID,
    then the first active store on the account (persisted as the global
    default). Returns None when the account has no active store.
    """
    store_id = get_config_value(DEFAULT_STORE_CONFIG_KEY, owner_id)
    if store_id:
        return store_id

    store_id = current_app.config.get("ESL_DEFAULT_STORE_ID")
    if store_id:
        return store_id

    stores = client.list_stores(active=True)
    if not stores:
        current_app.logger.warning("No active ESL cloud store found for account")
        return None

    store_id = stores[0].store_id
    set_config_value(
        DEFAULT_STORE_CONFIG_KEY,
        store_id,
        description="Resolved automatically from the first active cloud store",
    )
    current_app.logger.info("Cached default ESL store %s", store_id)
    return store_id
