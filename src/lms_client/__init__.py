"""Authenticated async client for the library management system API."""

from lms_client.auth import AuthApi, LoginResult
from lms_client.client import ApiClient
from lms_client.config import ClientConfig, ConfigError, load_config
from lms_client.credentials import (
    CredentialStore,
    FileTokenStorage,
    MemoryTokenStorage,
    TokenStorage,
)
from lms_client.errors import (
    ApiError,
    CredentialsInvalidError,
    RequestFailedError,
    SessionExpiredError,
    TransportError,
)

__version__ = "0.1.0"

__all__ = [
    "ApiClient",
    "ApiError",
    "AuthApi",
    "ClientConfig",
    "ConfigError",
    "CredentialStore",
    "CredentialsInvalidError",
    "FileTokenStorage",
    "LoginResult",
    "MemoryTokenStorage",
    "RequestFailedError",
    "SessionExpiredError",
    "TokenStorage",
    "TransportError",
    "load_config",
]
