"""Client configuration loading and validation.

Reads ``lms_client.toml`` (optional), resolves ``${VAR}`` references against
the environment, and returns a validated :class:`ClientConfig`.

The API base URL is resolved once, at construction time, from (in order)
the config file, the ``LMS_API_URL`` environment variable, and the local
development default.
"""

from __future__ import annotations

import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from lms_client.credentials import (
    DEFAULT_ACCESS_TOKEN_TTL_SECONDS,
    DEFAULT_REFRESH_TOKEN_TTL_SECONDS,
)
from lms_client.refresh import DEFAULT_REFRESH_PATH

DEFAULT_BASE_URL = "http://localhost:8080"
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_REAUTH_ROUTE = "/login"
DEFAULT_TOKEN_FILE = Path("~/.config/lms-client/tokens.json")
DEFAULT_CONFIG_FILENAME = "lms_client.toml"
BASE_URL_ENV_VAR = "LMS_API_URL"

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_VALID_LOG_FORMATS = ("text", "json")


class ConfigError(Exception):
    """Raised when client configuration is malformed or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [client.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"


@dataclass
class ClientConfig:
    """Validated client configuration."""

    base_url: str = DEFAULT_BASE_URL
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    refresh_path: str = DEFAULT_REFRESH_PATH
    reauth_route: str = DEFAULT_REAUTH_ROUTE
    access_token_ttl_seconds: int = DEFAULT_ACCESS_TOKEN_TTL_SECONDS
    refresh_token_ttl_seconds: int = DEFAULT_REFRESH_TOKEN_TTL_SECONDS
    token_file: Path = DEFAULT_TOKEN_FILE
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def url_for(self, endpoint: str) -> str:
        """Join *endpoint* onto the base URL."""
        normalized = endpoint if endpoint.startswith("/") else f"/{endpoint}"
        return f"{self.base_url.rstrip('/')}{normalized}"

    @property
    def refresh_url(self) -> str:
        return self.url_for(self.refresh_path)


def resolve_base_url(env: Mapping[str, str] | None = None) -> str:
    """Return the API base URL from the environment, or the local default."""
    env = os.environ if env is None else env
    value = env.get(BASE_URL_ENV_VAR, "").strip()
    return value or DEFAULT_BASE_URL


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def load_config(config_path: Path | None = None) -> ClientConfig:
    """Load and validate client configuration.

    Parameters
    ----------
    config_path:
        Path to a TOML file.  When ``None`` or when the file does not exist,
        defaults are used (with the base URL taken from the environment).

    Raises
    ------
    ConfigError
        If the file contains invalid TOML or invalid values.
    """
    if config_path is None or not config_path.exists():
        return ClientConfig(base_url=resolve_base_url())

    try:
        data = tomllib.loads(config_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc

    data = resolve_env_vars(data)

    section = data.get("client", {})
    if not isinstance(section, dict):
        raise ConfigError("[client] must be a table")

    base_url = _optional_str(section, "base_url") or resolve_base_url()
    if not base_url.startswith(("http://", "https://")):
        raise ConfigError(f"client.base_url must be an http(s) URL, got {base_url!r}")

    timeout_seconds = _positive_number(section, "timeout_seconds", DEFAULT_TIMEOUT_SECONDS)
    access_ttl = int(
        _positive_number(section, "access_token_ttl_seconds", DEFAULT_ACCESS_TOKEN_TTL_SECONDS)
    )
    refresh_ttl = int(
        _positive_number(section, "refresh_token_ttl_seconds", DEFAULT_REFRESH_TOKEN_TTL_SECONDS)
    )

    refresh_path = _optional_str(section, "refresh_path") or DEFAULT_REFRESH_PATH
    reauth_route = _optional_str(section, "reauth_route") or DEFAULT_REAUTH_ROUTE
    for key, value in (("refresh_path", refresh_path), ("reauth_route", reauth_route)):
        if not value.startswith("/"):
            raise ConfigError(f"client.{key} must start with '/', got {value!r}")

    token_file_raw = _optional_str(section, "token_file")
    token_file = Path(token_file_raw) if token_file_raw else DEFAULT_TOKEN_FILE

    return ClientConfig(
        base_url=base_url,
        timeout_seconds=float(timeout_seconds),
        refresh_path=refresh_path,
        reauth_route=reauth_route,
        access_token_ttl_seconds=access_ttl,
        refresh_token_ttl_seconds=refresh_ttl,
        token_file=token_file.expanduser(),
        logging=_parse_logging(section),
    )


def _parse_logging(section: dict) -> LoggingConfig:
    logging_section = section.get("logging", {})
    if not isinstance(logging_section, dict):
        raise ConfigError("[client.logging] must be a table")

    level = str(logging_section.get("level", "INFO")).strip().upper() or "INFO"
    fmt = str(logging_section.get("format", "text")).strip().lower()
    if fmt not in _VALID_LOG_FORMATS:
        raise ConfigError(
            f"client.logging.format must be one of {', '.join(_VALID_LOG_FORMATS)}, got {fmt!r}"
        )
    return LoggingConfig(level=level, format=fmt)


def _optional_str(section: dict, key: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"client.{key} must be a string")
    return value.strip() or None


def _positive_number(section: dict, key: str, default: float) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"client.{key} must be a number")
    if value <= 0:
        raise ConfigError(f"client.{key} must be positive, got {value}")
    return value
