"""Classification of completed API responses.

Every response is mapped to one of three outcomes:

- ``Success``: 2xx, carrying the parsed payload (``{}`` / ``b""`` when empty)
- ``RetryRequired``: first 401 on a normal call; the executor refreshes and retries
- ``Failure``: anything else, carrying the public error to raise

A 401 on a call made with ``skip_auth_redirect`` means bad credentials, not
an expired session, so it is reported as ``CredentialsInvalidError`` and
never triggers a refresh or a re-authentication redirect.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from lms_client.errors import (
    ApiError,
    CredentialsInvalidError,
    RequestFailedError,
    SessionExpiredError,
)

logger = logging.getLogger(__name__)

UNAUTHENTICATED_STATUS = 401
DEFAULT_LOGIN_FAILURE_MESSAGE = "Invalid username or password"
DEFAULT_REQUEST_FAILURE_MESSAGE = "Request failed"


@dataclass(frozen=True)
class Success:
    payload: Any


@dataclass(frozen=True)
class RetryRequired:
    """First recoverable 401; internal only."""


@dataclass(frozen=True)
class Failure:
    error: ApiError


ClassifiedResponse = Success | RetryRequired | Failure


def extract_error_message(response: httpx.Response, fallback: str) -> str:
    """Pull a human-readable message out of an error body.

    Checks ``message``, then a string ``error``, then ``error.message``.
    Returns *fallback* when the body is not JSON or carries none of them.
    """
    try:
        payload = response.json()
    except ValueError:
        return fallback

    if not isinstance(payload, dict):
        return fallback

    message = payload.get("message")
    if isinstance(message, str) and message.strip():
        return message

    error_payload = payload.get("error")
    if isinstance(error_payload, str) and error_payload.strip():
        return error_payload
    if isinstance(error_payload, dict):
        nested = error_payload.get("message")
        if isinstance(nested, str) and nested.strip():
            return nested

    return fallback


class ResponseClassifier:
    """Maps responses to outcomes.

    Parameters
    ----------
    on_session_expired:
        Called when a retried request is rejected again.  It must clear
        credentials and signal re-authentication.
    """

    def __init__(self, *, on_session_expired: Callable[[], None]) -> None:
        self._on_session_expired = on_session_expired

    def classify(
        self,
        response: httpx.Response,
        *,
        skip_auth_redirect: bool = False,
        is_retry: bool = False,
        raw: bool = False,
    ) -> ClassifiedResponse:
        if response.status_code == UNAUTHENTICATED_STATUS:
            return self._classify_unauthenticated(
                response,
                skip_auth_redirect=skip_auth_redirect,
                is_retry=is_retry,
            )

        if not response.is_success:
            fallback = response.reason_phrase or DEFAULT_REQUEST_FAILURE_MESSAGE
            return Failure(
                RequestFailedError(
                    status_code=response.status_code,
                    message=extract_error_message(response, fallback),
                )
            )

        if raw:
            return Success(response.content)

        if not response.content:
            return Success({})

        try:
            return Success(response.json())
        except ValueError:
            return Failure(
                RequestFailedError(
                    status_code=response.status_code,
                    message="API returned invalid JSON for a successful response",
                )
            )

    def _classify_unauthenticated(
        self,
        response: httpx.Response,
        *,
        skip_auth_redirect: bool,
        is_retry: bool,
    ) -> ClassifiedResponse:
        if skip_auth_redirect:
            message = extract_error_message(response, DEFAULT_LOGIN_FAILURE_MESSAGE)
            return Failure(CredentialsInvalidError(message))

        if is_retry:
            logger.warning(
                "Request to %s rejected again after token refresh; ending session",
                response.request.url.path,
            )
            self._on_session_expired()
            return Failure(SessionExpiredError())

        return RetryRequired()
