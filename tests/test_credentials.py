"""Unit tests for lms_client.credentials."""

from __future__ import annotations

import json
import stat
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from lms_client.credentials import (
    ACCESS_TOKEN_KEY,
    DEFAULT_ACCESS_TOKEN_TTL_SECONDS,
    DEFAULT_REFRESH_TOKEN_TTL_SECONDS,
    MAX_TOKEN_AGE_SECONDS,
    REFRESH_TOKEN_KEY,
    CredentialStore,
    FileTokenStorage,
    MemoryTokenStorage,
)

pytestmark = pytest.mark.unit

_EPOCH = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


class _FakeClock:
    def __init__(self, now: datetime = _EPOCH) -> None:
        self.now = now

    def advance(self, seconds: int) -> None:
        self.now += timedelta(seconds=seconds)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> _FakeClock:
    return _FakeClock()


@pytest.fixture
def token_file(tmp_path: Path) -> Path:
    return tmp_path / "state" / "tokens.json"


# ---------------------------------------------------------------------------
# MemoryTokenStorage
# ---------------------------------------------------------------------------


class TestMemoryTokenStorage:
    def test_write_then_read(self, clock):
        storage = MemoryTokenStorage(clock=clock)
        storage.write("access_token", "abc", max_age=60)
        assert storage.read("access_token") == "abc"
        assert "access_token" in storage

    def test_entry_expires_after_max_age(self, clock):
        storage = MemoryTokenStorage(clock=clock)
        storage.write("access_token", "abc", max_age=60)

        clock.advance(59)
        assert storage.read("access_token") == "abc"
        clock.advance(1)
        assert storage.read("access_token") is None
        assert "access_token" not in storage

    def test_expire_removes_entry(self, clock):
        storage = MemoryTokenStorage(clock=clock)
        storage.write("refresh_token", "r", max_age=60)
        storage.expire("refresh_token")
        assert storage.read("refresh_token") is None

    def test_expire_unknown_entry_is_noop(self):
        MemoryTokenStorage().expire("missing")


# ---------------------------------------------------------------------------
# FileTokenStorage
# ---------------------------------------------------------------------------


class TestFileTokenStorage:
    def test_missing_file_reads_none(self, token_file):
        assert FileTokenStorage(token_file).read(ACCESS_TOKEN_KEY) is None

    def test_write_creates_private_file(self, token_file, clock):
        storage = FileTokenStorage(token_file, clock=clock)
        storage.write(ACCESS_TOKEN_KEY, "abc", max_age=900)

        payload = json.loads(token_file.read_text())
        assert payload[ACCESS_TOKEN_KEY]["value"] == "abc"
        assert payload[ACCESS_TOKEN_KEY]["path"] == "/"
        assert payload[ACCESS_TOKEN_KEY]["max_age"] == 900
        assert stat.S_IMODE(token_file.stat().st_mode) == 0o600

    def test_survives_new_instance(self, token_file, clock):
        FileTokenStorage(token_file, clock=clock).write(REFRESH_TOKEN_KEY, "r", max_age=60)
        assert FileTokenStorage(token_file, clock=clock).read(REFRESH_TOKEN_KEY) == "r"

    def test_entry_expires(self, token_file, clock):
        storage = FileTokenStorage(token_file, clock=clock)
        storage.write(ACCESS_TOKEN_KEY, "abc", max_age=30)
        clock.advance(30)
        assert storage.read(ACCESS_TOKEN_KEY) is None

    def test_expire_rewrites_entry_with_zero_max_age(self, token_file, clock):
        storage = FileTokenStorage(token_file, clock=clock)
        storage.write(ACCESS_TOKEN_KEY, "abc", max_age=30)
        storage.expire(ACCESS_TOKEN_KEY)

        payload = json.loads(token_file.read_text())
        assert payload[ACCESS_TOKEN_KEY]["value"] == ""
        assert payload[ACCESS_TOKEN_KEY]["max_age"] == 0
        assert storage.read(ACCESS_TOKEN_KEY) is None

    def test_expire_without_file_does_not_create_it(self, token_file):
        FileTokenStorage(token_file).expire(ACCESS_TOKEN_KEY)
        assert not token_file.exists()

    @pytest.mark.parametrize(
        "content",
        ["{not json", "[1, 2, 3]", '{"access_token": "bare-string"}', '{"access_token": {"value": 1}}'],
        ids=["invalid-json", "not-object", "bare-entry", "bad-value"],
    )
    def test_corrupt_file_reads_as_empty(self, token_file, content):
        token_file.parent.mkdir(parents=True)
        token_file.write_text(content)
        assert FileTokenStorage(token_file).read(ACCESS_TOKEN_KEY) is None

    def test_corrupt_file_is_overwritten_on_write(self, token_file, clock):
        token_file.parent.mkdir(parents=True)
        token_file.write_text("{not json")

        storage = FileTokenStorage(token_file, clock=clock)
        storage.write(ACCESS_TOKEN_KEY, "abc", max_age=60)
        assert storage.read(ACCESS_TOKEN_KEY) == "abc"

    def test_naive_expiry_is_read_as_utc(self, token_file, clock):
        token_file.parent.mkdir(parents=True)
        token_file.write_text(
            json.dumps({ACCESS_TOKEN_KEY: {"value": "abc", "expires_at": "2026-01-01T13:00:00"}})
        )
        assert FileTokenStorage(token_file, clock=clock).read(ACCESS_TOKEN_KEY) == "abc"


# ---------------------------------------------------------------------------
# CredentialStore
# ---------------------------------------------------------------------------


class TestCredentialStore:
    def test_empty_store(self):
        store = CredentialStore(MemoryTokenStorage())
        assert store.get_access_token() is None
        assert store.get_refresh_token() is None
        assert not store.has_tokens()

    def test_persist_tokens_writes_both(self):
        storage = MemoryTokenStorage()
        store = CredentialStore(storage)

        store.persist_tokens("access", "refresh", ttl_seconds=900)

        assert store.get_access_token() == "access"
        assert storage.read(ACCESS_TOKEN_KEY) == "access"
        assert storage.read(REFRESH_TOKEN_KEY) == "refresh"
        assert store.has_tokens()

    def test_access_ttl_and_refresh_ttl_are_separate(self, clock):
        store = CredentialStore(MemoryTokenStorage(clock=clock))
        store.persist_tokens("access", "refresh", ttl_seconds=60)
        store.set_access_token(None)

        clock.advance(61)
        assert store.get_access_token() is None
        assert store.get_refresh_token() == "refresh"

        clock.advance(DEFAULT_REFRESH_TOKEN_TTL_SECONDS)
        assert store.get_refresh_token() is None

    @pytest.mark.parametrize("ttl", [None, 0, -5])
    def test_missing_ttl_uses_default_access_lifetime(self, clock, ttl):
        store = CredentialStore(MemoryTokenStorage(clock=clock))
        store.persist_tokens("access", "refresh", ttl_seconds=ttl)
        store.set_access_token(None)

        clock.advance(DEFAULT_ACCESS_TOKEN_TTL_SECONDS - 1)
        assert store.get_access_token() == "access"
        clock.advance(1)
        assert store.get_access_token() is None

    def test_configured_access_lifetime(self, clock):
        store = CredentialStore(MemoryTokenStorage(clock=clock), access_token_ttl_seconds=120)
        store.persist_tokens("access", None)
        store.set_access_token(None)

        clock.advance(120)
        assert store.get_access_token() is None

    @pytest.mark.parametrize("medium", ["memory", "file"])
    def test_huge_ttl_is_capped(self, clock, token_file, medium):
        storage = (
            MemoryTokenStorage(clock=clock)
            if medium == "memory"
            else FileTokenStorage(token_file, clock=clock)
        )
        store = CredentialStore(storage)

        store.persist_tokens("access", "refresh", ttl_seconds=10**12)

        assert storage.read(ACCESS_TOKEN_KEY) == "access"
        clock.advance(MAX_TOKEN_AGE_SECONDS)
        assert storage.read(ACCESS_TOKEN_KEY) is None

    def test_missing_refresh_token_keeps_existing(self):
        store = CredentialStore(MemoryTokenStorage())
        store.persist_tokens("a1", "r1", ttl_seconds=60)
        store.persist_tokens("a2", None, ttl_seconds=60)
        assert store.get_access_token() == "a2"
        assert store.get_refresh_token() == "r1"

    def test_in_process_token_wins_over_durable(self):
        storage = MemoryTokenStorage()
        store = CredentialStore(storage)
        storage.write(ACCESS_TOKEN_KEY, "durable", max_age=60)

        assert store.get_access_token() == "durable"
        store.set_access_token("in-process")
        assert store.get_access_token() == "in-process"
        assert storage.read(ACCESS_TOKEN_KEY) == "durable"

    def test_durable_token_survives_restart(self, token_file):
        CredentialStore(FileTokenStorage(token_file)).persist_tokens("access", "refresh", 60)

        restarted = CredentialStore(FileTokenStorage(token_file))
        assert restarted.get_access_token() == "access"
        assert restarted.get_refresh_token() == "refresh"

    def test_clear_is_idempotent(self, token_file):
        store = CredentialStore(FileTokenStorage(token_file))
        store.persist_tokens("access", "refresh", 60)

        store.clear()
        store.clear()

        assert store.get_access_token() is None
        assert store.get_refresh_token() is None
        assert not store.has_tokens()

    def test_clear_on_empty_store(self, token_file):
        CredentialStore(FileTokenStorage(token_file)).clear()
        assert not token_file.exists()

    def test_without_storage_medium(self):
        store = CredentialStore(None)
        assert store.get_access_token() is None
        assert store.get_refresh_token() is None

        store.persist_tokens("access", "refresh", 60)
        assert store.get_refresh_token() is None
        assert not store.has_tokens()
        store.clear()
        assert store.get_access_token() is None

    def test_repr_never_exposes_tokens(self):
        store = CredentialStore(MemoryTokenStorage())
        store.persist_tokens("secret-access", "secret-refresh", 60)

        text = repr(store)
        assert "secret" not in text
        assert "has_access_token=True" in text
