"""Single-flight access-token refresh.

When many requests fail with 401 at once, each of them asks the coordinator
for a refresh.  Only the first caller starts the network exchange; everyone
arriving while it is pending awaits the same task.  The in-flight handle is
created under an ``asyncio.Lock`` before the first suspension point and is
released as soon as the task finishes, whatever its outcome, so the next
expiry starts a fresh exchange.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Any

import httpx
from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from lms_client.classifier import extract_error_message
from lms_client.credentials import MAX_TOKEN_AGE_SECONDS, CredentialStore

logger = logging.getLogger(__name__)
_tracer = trace.get_tracer(__name__)

DEFAULT_REFRESH_PATH = "/api/v1/auth/refresh"


class TokenPair(BaseModel):
    """``data`` object of a refresh (or login) response."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_in: int | None = None

    @field_validator("access_token")
    @classmethod
    def _normalize_access_token(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("access_token must be a non-empty string")
        return normalized

    @field_validator("refresh_token", mode="before")
    @classmethod
    def _drop_blank_refresh_token(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("expires_in", mode="before")
    @classmethod
    def _coerce_expires_in(cls, value: Any) -> int | None:
        if isinstance(value, bool):
            return None
        if isinstance(value, int | float):
            if isinstance(value, float) and not math.isfinite(value):
                return None
            if value <= 0:
                return None
            return int(min(value, MAX_TOKEN_AGE_SECONDS))
        return None


class _RefreshEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: TokenPair


class RefreshCoordinator:
    """Exchanges the refresh token for a new pair, one exchange at a time.

    Parameters
    ----------
    http_client:
        Shared ``httpx.AsyncClient``.
    credentials:
        Store read for the refresh token and written on success.
    refresh_url:
        Absolute URL of the refresh endpoint.
    """

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        credentials: CredentialStore,
        refresh_url: str,
    ) -> None:
        self._http_client = http_client
        self._credentials = credentials
        self._refresh_url = refresh_url
        self._lock = asyncio.Lock()
        self._in_flight: asyncio.Task[bool] | None = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None

    async def refresh(self, *, stale_token: str | None = None) -> bool:
        """Obtain a new access token; ``True`` when one is available.

        *stale_token* is the token the failing request was sent with.  If
        the store already holds a different token, a refresh committed after
        that request left, and no new exchange is started.
        """
        async with self._lock:
            task = self._in_flight
            if task is None:
                current = self._credentials.get_access_token()
                if stale_token is not None and current and current != stale_token:
                    logger.debug("Access token rotated since the request was sent; reusing it")
                    return True
                task = asyncio.create_task(self._refresh_once(), name="lms-client-token-refresh")
                task.add_done_callback(self._release)
                self._in_flight = task
                logger.info("Refreshing access token")
            else:
                logger.debug("Joining in-flight access token refresh")

        # A cancelled waiter must not cancel the exchange other callers share.
        return await asyncio.shield(task)

    def _release(self, task: asyncio.Task[bool]) -> None:
        if self._in_flight is task:
            self._in_flight = None

    async def _refresh_once(self) -> bool:
        with _tracer.start_as_current_span("lms_client.refresh") as span:
            try:
                outcome = await self._exchange()
            except Exception:
                logger.exception("Access token refresh failed unexpectedly")
                outcome = "error"
            span.set_attribute("lms.refresh.outcome", outcome)
            return outcome == "refreshed"

    async def _exchange(self) -> str:
        refresh_token = self._credentials.get_refresh_token()
        if not refresh_token:
            logger.info("No refresh token stored; session cannot be refreshed")
            return "no_refresh_token"

        try:
            response = await self._http_client.post(
                self._refresh_url,
                json={"refresh_token": refresh_token},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Access token refresh request failed: %s", exc)
            return "transport_error"

        if not response.is_success:
            logger.warning(
                "Access token refresh rejected (%d): %s",
                response.status_code,
                extract_error_message(response, response.reason_phrase or "no error payload"),
            )
            return "rejected"

        try:
            envelope = _RefreshEnvelope.model_validate_json(response.content)
        except ValidationError as exc:
            logger.warning(
                "Access token refresh response is malformed (%d validation error(s))",
                exc.error_count(),
            )
            return "malformed"

        pair = envelope.data
        self._credentials.persist_tokens(pair.access_token, pair.refresh_token, pair.expires_in)
        logger.info("Access token refreshed")
        return "refreshed"
