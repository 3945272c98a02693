"""Credential storage for the access/refresh token pair.

The access token lives in two places: an in-process field (fast path, and
authoritative when set) and a durable :class:`TokenStorage` that survives
process restarts.  The refresh token lives only in durable storage.

Durable storage mirrors browser cookies: every entry has a path scope and a
bounded lifetime, and clearing an entry rewrites it with ``max_age=0``
instead of deleting it by name.

Usage::

    store = CredentialStore(FileTokenStorage(Path("~/.config/lms-client/tokens.json")))
    store.persist_tokens("access", "refresh", ttl_seconds=900)
    store.get_access_token()   # "access"
    store.clear()

Storage is best-effort.  A missing or unreadable medium degrades to
"no token" and never raises.
"""

from __future__ import annotations

import abc
import json
import logging
import math
import os
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"
DEFAULT_ACCESS_TOKEN_TTL_SECONDS = 3600
DEFAULT_REFRESH_TOKEN_TTL_SECONDS = 7 * 24 * 60 * 60
DEFAULT_PATH_SCOPE = "/"
# Browsers cap cookie lifetimes at 400 days; longer max-ages are clamped.
MAX_TOKEN_AGE_SECONDS = 400 * 24 * 60 * 60

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def clamp_max_age(max_age: float) -> int:
    """Bound *max_age* to ``0..MAX_TOKEN_AGE_SECONDS`` whole seconds."""
    if math.isnan(max_age) or max_age <= 0:
        return 0
    return int(min(max_age, MAX_TOKEN_AGE_SECONDS))


@dataclass(frozen=True)
class StoredToken:
    """A single durable entry, cookie style."""

    value: str
    expires_at: datetime
    path: str = DEFAULT_PATH_SCOPE

    def is_live(self, now: datetime) -> bool:
        return bool(self.value) and now < self.expires_at

    def __repr__(self) -> str:
        return f"StoredToken(path={self.path!r}, expires_at={self.expires_at.isoformat()!r})"


# ---------------------------------------------------------------------------
# Durable storage media
# ---------------------------------------------------------------------------


class TokenStorage(abc.ABC):
    """Durable, cross-request storage for named token entries."""

    @abc.abstractmethod
    def read(self, name: str) -> str | None:
        """Return the live value stored under *name*, or ``None``."""
        ...

    @abc.abstractmethod
    def write(self, name: str, value: str, *, max_age: int, path: str = DEFAULT_PATH_SCOPE) -> None:
        """Store *value* under *name* for at most *max_age* seconds."""
        ...

    def expire(self, name: str, *, path: str = DEFAULT_PATH_SCOPE) -> None:
        """Expire *name* immediately (``max_age=0``)."""
        self.write(name, "", max_age=0, path=path)


class MemoryTokenStorage(TokenStorage):
    """In-memory storage with cookie-style lifetimes."""

    def __init__(self, *, clock: Clock = _utcnow) -> None:
        self._clock = clock
        self._entries: dict[str, StoredToken] = {}

    def read(self, name: str) -> str | None:
        entry = self._entries.get(name)
        if entry is None:
            return None
        if not entry.is_live(self._clock()):
            self._entries.pop(name, None)
            return None
        return entry.value

    def write(self, name: str, value: str, *, max_age: int, path: str = DEFAULT_PATH_SCOPE) -> None:
        max_age = clamp_max_age(max_age)
        if max_age == 0 or not value:
            self._entries.pop(name, None)
            return
        self._entries[name] = StoredToken(
            value=value,
            expires_at=self._clock() + timedelta(seconds=max_age),
            path=path,
        )

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.read(name) is not None


class FileTokenStorage(TokenStorage):
    """JSON-file storage that survives process restarts.

    The file holds one object per entry::

        {"access_token": {"value": "...", "path": "/", "max_age": 3600,
                          "expires_at": "2026-01-01T12:00:00+00:00"}}

    Writes go through a temp file and ``os.replace`` so concurrent readers
    never observe a half-written file.  I/O and decode failures are logged
    and treated as an empty store.
    """

    def __init__(self, path: Path, *, clock: Clock = _utcnow) -> None:
        self.path = Path(path).expanduser()
        self._clock = clock

    def read(self, name: str) -> str | None:
        entry = self._load().get(name)
        if entry is None:
            return None
        return entry.value if entry.is_live(self._clock()) else None

    def write(self, name: str, value: str, *, max_age: int, path: str = DEFAULT_PATH_SCOPE) -> None:
        entries = self._load()
        now = self._clock()
        # Expired entries are kept with max_age=0 so every reader sees the removal.
        max_age = clamp_max_age(max_age)
        entries[name] = StoredToken(
            value=value if max_age > 0 else "",
            expires_at=now + timedelta(seconds=max_age),
            path=path,
        )
        self._dump(entries, now)

    def expire(self, name: str, *, path: str = DEFAULT_PATH_SCOPE) -> None:
        entry = self._load().get(name)
        if entry is None or not entry.value:
            return
        super().expire(name, path=path)

    def _load(self) -> dict[str, StoredToken]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            logger.warning("Token file %s is unreadable, treating as empty: %s", self.path, exc)
            return {}

        try:
            payload = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as exc:
            logger.warning("Token file %s is not valid JSON, treating as empty: %s", self.path, exc)
            return {}
        if not isinstance(payload, dict):
            logger.warning(
                "Token file %s does not hold a JSON object, treating as empty", self.path
            )
            return {}

        entries: dict[str, StoredToken] = {}
        for name, item in payload.items():
            entry = _parse_entry(item)
            if entry is not None:
                entries[name] = entry
        return entries

    def _dump(self, entries: dict[str, StoredToken], now: datetime) -> None:
        payload: dict[str, Any] = {
            name: {
                "value": entry.value,
                "path": entry.path,
                "max_age": max(int((entry.expires_at - now).total_seconds()), 0),
                "expires_at": entry.expires_at.isoformat(),
            }
            for name, entry in entries.items()
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".tokens-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(payload, handle, indent=2, sort_keys=True)
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            logger.warning("Could not write token file %s: %s", self.path, exc)


def _parse_entry(item: Any) -> StoredToken | None:
    if not isinstance(item, dict):
        return None
    value = item.get("value")
    expires_raw = item.get("expires_at")
    if not isinstance(value, str) or not isinstance(expires_raw, str):
        return None
    try:
        expires_at = datetime.fromisoformat(expires_raw)
    except ValueError:
        return None
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    path = item.get("path")
    return StoredToken(
        value=value,
        expires_at=expires_at,
        path=path if isinstance(path, str) and path else DEFAULT_PATH_SCOPE,
    )


# ---------------------------------------------------------------------------
# CredentialStore
# ---------------------------------------------------------------------------


class CredentialStore:
    """Access/refresh token pair with an in-process access-token cache.

    Parameters
    ----------
    storage:
        Durable medium.  ``None`` means no medium is available (headless
        use); reads then return ``None`` and writes are no-ops.
    access_token_ttl_seconds:
        Lifetime written for access tokens when the API does not send one.
    refresh_token_ttl_seconds:
        Lifetime written for refresh tokens.
    """

    def __init__(
        self,
        storage: TokenStorage | None = None,
        *,
        access_token_ttl_seconds: int = DEFAULT_ACCESS_TOKEN_TTL_SECONDS,
        refresh_token_ttl_seconds: int = DEFAULT_REFRESH_TOKEN_TTL_SECONDS,
    ) -> None:
        self._storage = storage
        self._access_token_ttl_seconds = access_token_ttl_seconds
        self._refresh_token_ttl_seconds = refresh_token_ttl_seconds
        self._access_token: str | None = None

    @property
    def storage(self) -> TokenStorage | None:
        return self._storage

    def get_access_token(self) -> str | None:
        if self._access_token:
            return self._access_token
        return self._read(ACCESS_TOKEN_KEY)

    def set_access_token(self, token: str | None) -> None:
        """Set the in-process token only; durable storage is left untouched."""
        self._access_token = token or None

    def get_refresh_token(self) -> str | None:
        return self._read(REFRESH_TOKEN_KEY)

    def has_tokens(self) -> bool:
        return bool(self.get_access_token()) and bool(self.get_refresh_token())

    def persist_tokens(
        self,
        access_token: str,
        refresh_token: str | None,
        ttl_seconds: int | None = None,
    ) -> None:
        """Write the pair to durable storage and refresh the in-process cache.

        The access token expires after *ttl_seconds* (the configured access
        lifetime when absent).  A missing *refresh_token* keeps the one
        already stored.
        """
        ttl = ttl_seconds if ttl_seconds and ttl_seconds > 0 else self._access_token_ttl_seconds
        self._access_token = access_token
        if self._storage is None:
            return
        self._storage.write(ACCESS_TOKEN_KEY, access_token, max_age=ttl)
        if refresh_token:
            self._storage.write(
                REFRESH_TOKEN_KEY,
                refresh_token,
                max_age=self._refresh_token_ttl_seconds,
            )

    def clear(self) -> None:
        self._access_token = None
        if self._storage is None:
            return
        self._storage.expire(ACCESS_TOKEN_KEY)
        self._storage.expire(REFRESH_TOKEN_KEY)

    def _read(self, name: str) -> str | None:
        if self._storage is None:
            return None
        return self._storage.read(name) or None

    def __repr__(self) -> str:
        return (
            f"CredentialStore(storage={type(self._storage).__name__}, "
            f"has_access_token={bool(self.get_access_token())!r})"
        )
