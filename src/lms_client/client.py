"""Authenticated API client with coordinated token refresh.

``ApiClient`` is the single execution path for every call made against the
LMS API.  Each request carries the latest committed access token.  A first
401 triggers one shared refresh (see :mod:`lms_client.refresh`) and a single
retry; a second 401, or a failed refresh, ends the session.

Usage::

    async with ApiClient(load_config(path), credentials=store) as client:
        books = await client.get("/api/v1/books", params={"page": 1})
        await client.upload("/api/v1/books/import", files={"file": fh})
        report = await client.download("/api/v1/reports/fines.csv")
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from typing import Any

import httpx
from opentelemetry import trace

from lms_client.classifier import (
    ClassifiedResponse,
    Failure,
    ResponseClassifier,
    RetryRequired,
    Success,
)
from lms_client.config import ClientConfig
from lms_client.credentials import CredentialStore, MemoryTokenStorage
from lms_client.errors import SessionExpiredError, TransportError
from lms_client.refresh import RefreshCoordinator

logger = logging.getLogger(__name__)
_tracer = trace.get_tracer(__name__)

# Receives the re-authentication route on terminal auth failure.
ReauthHandler = Callable[[str], None]


def _log_reauth(route: str) -> None:
    logger.warning("Session expired; re-authentication required at %s", route)


def clean_params(params: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Drop query parameters whose value is ``None`` or an empty string."""
    if not params:
        return None
    cleaned = {key: value for key, value in params.items() if value is not None and value != ""}
    return cleaned or None


@dataclass(frozen=True)
class RequestAttempt:
    """One logical request; ``is_retry`` flips once, right before the retry."""

    method: str
    url: str
    params: dict[str, Any] | None = None
    json_body: Any = None
    files: Any = None
    form_data: Mapping[str, Any] | None = None
    upload: bool = False
    raw: bool = False
    skip_auth_redirect: bool = False
    is_retry: bool = False


class ApiClient:
    """Request executor owning the credential store and refresh coordinator.

    Parameters
    ----------
    config:
        Client configuration; defaults to :class:`ClientConfig` defaults.
    credentials:
        Token store.  Defaults to an in-memory store.
    http_client:
        Optional shared ``httpx.AsyncClient``.  When omitted the client
        creates one and closes it in :meth:`aclose`.
    on_reauth:
        Called with the re-authentication route when the session ends.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        credentials: CredentialStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        on_reauth: ReauthHandler | None = None,
    ) -> None:
        self.config = config or ClientConfig()
        self.credentials = credentials or CredentialStore(
            MemoryTokenStorage(),
            access_token_ttl_seconds=self.config.access_token_ttl_seconds,
            refresh_token_ttl_seconds=self.config.refresh_token_ttl_seconds,
        )
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=self.config.timeout_seconds)
        self._on_reauth = on_reauth or _log_reauth
        self._classifier = ResponseClassifier(on_session_expired=self.end_session)
        self.refresher = RefreshCoordinator(
            http_client=self._http_client,
            credentials=self.credentials,
            refresh_url=self.config.refresh_url,
        )

    async def __aenter__(self) -> ApiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def end_session(self) -> None:
        """Clear credentials and signal re-authentication."""
        self.credentials.clear()
        self._on_reauth(self.config.reauth_route)

    # ------------------------------------------------------------------
    # Public verbs
    # ------------------------------------------------------------------

    async def get(
        self,
        endpoint: str,
        *,
        params: Mapping[str, Any] | None = None,
        skip_auth_redirect: bool = False,
    ) -> Any:
        return await self.request(
            "GET", endpoint, params=params, skip_auth_redirect=skip_auth_redirect
        )

    async def post(
        self,
        endpoint: str,
        data: Any = None,
        *,
        params: Mapping[str, Any] | None = None,
        skip_auth_redirect: bool = False,
    ) -> Any:
        return await self.request(
            "POST", endpoint, json_body=data, params=params, skip_auth_redirect=skip_auth_redirect
        )

    async def put(
        self,
        endpoint: str,
        data: Any = None,
        *,
        params: Mapping[str, Any] | None = None,
        skip_auth_redirect: bool = False,
    ) -> Any:
        return await self.request(
            "PUT", endpoint, json_body=data, params=params, skip_auth_redirect=skip_auth_redirect
        )

    async def patch(
        self,
        endpoint: str,
        data: Any = None,
        *,
        params: Mapping[str, Any] | None = None,
        skip_auth_redirect: bool = False,
    ) -> Any:
        return await self.request(
            "PATCH", endpoint, json_body=data, params=params, skip_auth_redirect=skip_auth_redirect
        )

    async def delete(
        self,
        endpoint: str,
        *,
        params: Mapping[str, Any] | None = None,
        skip_auth_redirect: bool = False,
    ) -> Any:
        return await self.request(
            "DELETE", endpoint, params=params, skip_auth_redirect=skip_auth_redirect
        )

    async def upload(
        self,
        endpoint: str,
        *,
        files: Any,
        data: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        skip_auth_redirect: bool = False,
    ) -> Any:
        """POST a multipart body; httpx sets the content type and boundary."""
        return await self.request(
            "POST",
            endpoint,
            files=files,
            form_data=data,
            params=params,
            upload=True,
            skip_auth_redirect=skip_auth_redirect,
        )

    async def download(
        self,
        endpoint: str,
        *,
        params: Mapping[str, Any] | None = None,
        skip_auth_redirect: bool = False,
    ) -> bytes:
        """GET a raw payload (exports, reports) as bytes."""
        return await self.request(
            "GET", endpoint, params=params, raw=True, skip_auth_redirect=skip_auth_redirect
        )

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Mapping[str, Any] | None = None,
        json_body: Any = None,
        files: Any = None,
        form_data: Mapping[str, Any] | None = None,
        upload: bool = False,
        raw: bool = False,
        skip_auth_redirect: bool = False,
    ) -> Any:
        attempt = RequestAttempt(
            method=method.upper(),
            url=self.config.url_for(endpoint),
            params=clean_params(params),
            json_body=json_body,
            files=files,
            form_data=form_data,
            upload=upload,
            raw=raw,
            skip_auth_redirect=skip_auth_redirect,
        )
        return await self._execute(attempt)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(self, attempt: RequestAttempt) -> Any:
        outcome, sent_token = await self._send(attempt)

        if isinstance(outcome, RetryRequired):
            refreshed = await self.refresher.refresh(stale_token=sent_token)
            if not refreshed:
                logger.warning(
                    "Token refresh failed after 401 from %s %s; ending session",
                    attempt.method,
                    httpx.URL(attempt.url).path,
                )
                self.end_session()
                raise SessionExpiredError()
            outcome, _ = await self._send(replace(attempt, is_retry=True))

        if isinstance(outcome, Failure):
            raise outcome.error
        assert isinstance(outcome, Success)
        return outcome.payload

    async def _send(self, attempt: RequestAttempt) -> tuple[ClassifiedResponse, str | None]:
        token = self.credentials.get_access_token()
        headers = self._build_headers(attempt, token)
        path = httpx.URL(attempt.url).path

        with _tracer.start_as_current_span("lms_client.request") as span:
            span.set_attribute("http.request.method", attempt.method)
            span.set_attribute("url.path", path)
            span.set_attribute("lms.is_retry", attempt.is_retry)
            try:
                response = await self._http_client.request(
                    attempt.method,
                    attempt.url,
                    params=attempt.params,
                    json=attempt.json_body,
                    files=attempt.files,
                    data=attempt.form_data,
                    headers=headers,
                )
            except httpx.HTTPError as exc:
                logger.warning("%s %s failed before a response: %s", attempt.method, path, exc)
                raise TransportError(f"Request to {path} failed: {exc}") from exc
            span.set_attribute("http.response.status_code", response.status_code)

        outcome = self._classifier.classify(
            response,
            skip_auth_redirect=attempt.skip_auth_redirect,
            is_retry=attempt.is_retry,
            raw=attempt.raw,
        )
        return outcome, token

    @staticmethod
    def _build_headers(attempt: RequestAttempt, token: str | None) -> dict[str, str]:
        headers: dict[str, str] = {}
        if not attempt.upload:
            headers["Content-Type"] = "application/json"
        if not attempt.raw:
            headers["Accept"] = "application/json"
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers
