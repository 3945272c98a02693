"""Shared fixtures for the lms_client test suite.

The API is faked with ``httpx.MockTransport``; handlers may be sync or async.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import pytest

from lms_client.client import ApiClient
from lms_client.config import ClientConfig
from lms_client.credentials import CredentialStore, MemoryTokenStorage

TEST_BASE_URL = "http://lms.test"

Handler = Callable[[httpx.Request], Any]


@pytest.fixture
def store() -> CredentialStore:
    return CredentialStore(MemoryTokenStorage())


@pytest.fixture
def reauth_routes() -> list[str]:
    """Routes passed to the client's re-authentication hook, in call order."""
    return []


@pytest.fixture
def client_config() -> ClientConfig:
    return ClientConfig(base_url=TEST_BASE_URL)


@pytest.fixture
async def make_client(
    store: CredentialStore,
    reauth_routes: list[str],
    client_config: ClientConfig,
) -> AsyncIterator[Callable[[Handler], ApiClient]]:
    http_clients: list[httpx.AsyncClient] = []

    def _make(handler: Handler) -> ApiClient:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        http_clients.append(http_client)
        return ApiClient(
            client_config,
            credentials=store,
            http_client=http_client,
            on_reauth=reauth_routes.append,
        )

    yield _make

    for http_client in http_clients:
        await http_client.aclose()
