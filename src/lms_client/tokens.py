"""Unverified JWT helpers for access-token expiry checks.

The client never validates signatures; the API does.  These helpers only
read the ``exp`` claim so callers can tell whether a stored token is stale.
"""

from __future__ import annotations

import base64
import binascii
import json
from datetime import UTC, datetime, timedelta
from typing import Any


def decode_claims(token: str) -> dict[str, Any] | None:
    """Return the payload claims of *token*, or ``None`` if it is not a JWT."""
    parts = token.split(".")
    if len(parts) != 3 or not parts[1]:
        return None

    segment = parts[1]
    padded = segment + "=" * (-len(segment) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        claims = json.loads(raw)
    except (binascii.Error, UnicodeError, ValueError):
        return None
    return claims if isinstance(claims, dict) else None


def token_expires_at(token: str) -> datetime | None:
    claims = decode_claims(token)
    if claims is None:
        return None
    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, int | float):
        return None
    try:
        return datetime.fromtimestamp(exp, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


def is_token_expired(
    token: str,
    *,
    leeway_seconds: float = 0,
    now: datetime | None = None,
) -> bool:
    """True when *token* is past its ``exp`` claim (minus *leeway_seconds*).

    Tokens without a readable ``exp`` claim are treated as expired.
    """
    expires_at = token_expires_at(token)
    if expires_at is None:
        return True
    current = now or datetime.now(UTC)
    return current >= expires_at - timedelta(seconds=leeway_seconds)
