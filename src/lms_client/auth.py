"""Authentication endpoints: the calls that create and destroy credentials.

Login and the public setup/invite calls are sent with
``skip_auth_redirect=True`` so a 401 surfaces the API's own message
(``CredentialsInvalidError``) instead of a refresh or a redirect.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from lms_client.client import ApiClient
from lms_client.credentials import clamp_max_age
from lms_client.errors import ApiError, SessionExpiredError
from lms_client.refresh import TokenPair

logger = logging.getLogger(__name__)

AUTH_PREFIX = "/api/v1/auth"
PROFILE_PATH = "/api/v1/profile"
SETUP_PATH = "/api/v1/setup"


class _LoginData(TokenPair):
    user: dict[str, Any] = Field(default_factory=dict)


class _LoginEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: _LoginData


class LoginResult(BaseModel):
    """Outcome of a successful login."""

    model_config = ConfigDict(frozen=True)

    user: dict[str, Any]
    access_token: str
    refresh_token: str | None
    expires_at: datetime

    def __repr__(self) -> str:
        return f"LoginResult(user_id={self.user.get('id')!r}, expires_at={self.expires_at!r})"


def _unwrap(payload: Any) -> Any:
    """Return the ``data`` member of a ``{success, data, message}`` envelope."""
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload


class AuthApi:
    """Auth calls bound to one :class:`ApiClient`."""

    def __init__(self, client: ApiClient) -> None:
        self._client = client

    async def login(self, email: str, password: str) -> LoginResult:
        """Exchange credentials for a token pair and persist it.

        Raises
        ------
        CredentialsInvalidError
            The API rejected the credentials (message from the API).
        ApiError
            The response carried no access token.
        """
        payload = await self._client.post(
            f"{AUTH_PREFIX}/login",
            {"username": email, "password": password},
            skip_auth_redirect=True,
        )
        try:
            data = _LoginEnvelope.model_validate(payload).data
        except ValidationError as exc:
            raise ApiError("Login response did not include an access token") from exc

        self._client.credentials.persist_tokens(
            data.access_token, data.refresh_token, data.expires_in
        )
        ttl = clamp_max_age(data.expires_in or self._client.config.access_token_ttl_seconds)
        logger.info("Logged in; access token valid for %ds", ttl)
        return LoginResult(
            user=data.user,
            access_token=data.access_token,
            refresh_token=data.refresh_token,
            expires_at=datetime.now(UTC) + timedelta(seconds=ttl),
        )

    async def logout(self) -> None:
        """Revoke the session server-side; local credentials are always cleared."""
        try:
            await self._client.post(f"{AUTH_PREFIX}/logout")
        finally:
            self._client.credentials.clear()
            logger.info("Logged out; local credentials cleared")

    async def refresh(self) -> str:
        """Force a coordinated refresh and return the new access token."""
        if not await self._client.refresher.refresh():
            raise SessionExpiredError("Token refresh failed")
        token = self._client.credentials.get_access_token()
        assert token is not None
        return token

    async def me(self) -> dict[str, Any]:
        return _unwrap(await self._client.get(PROFILE_PATH))

    async def forgot_password(self, payload: dict[str, Any]) -> None:
        await self._client.post(f"{AUTH_PREFIX}/forgot-password", payload)

    async def reset_password(self, payload: dict[str, Any]) -> None:
        await self._client.post(f"{AUTH_PREFIX}/reset-password", payload)

    # Public endpoints: no session required.

    async def check_setup(self) -> dict[str, Any]:
        return _unwrap(await self._client.get(f"{SETUP_PATH}/check", skip_auth_redirect=True))

    async def create_first_admin(self, payload: dict[str, Any]) -> dict[str, Any]:
        return _unwrap(await self._client.post(SETUP_PATH, payload, skip_auth_redirect=True))

    async def validate_invite(self, token: str) -> dict[str, Any]:
        encoded = quote(token.strip(), safe="")
        if not encoded:
            raise ValueError("invite token must be a non-empty string")
        return _unwrap(
            await self._client.get(f"{AUTH_PREFIX}/invite/{encoded}", skip_auth_redirect=True)
        )

    async def accept_invite(self, payload: dict[str, Any]) -> dict[str, Any]:
        return _unwrap(
            await self._client.post(
                f"{AUTH_PREFIX}/invite/accept", payload, skip_auth_redirect=True
            )
        )
