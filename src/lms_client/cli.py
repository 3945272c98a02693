"""Command-line entry point for the LMS API client."""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click

from lms_client import __version__
from lms_client.auth import AuthApi
from lms_client.client import ApiClient
from lms_client.config import DEFAULT_CONFIG_FILENAME, ClientConfig, ConfigError, load_config
from lms_client.credentials import CredentialStore, FileTokenStorage
from lms_client.errors import ApiError
from lms_client.logging import configure_logging
from lms_client.tokens import token_expires_at


def _notify_reauth(route: str) -> None:
    click.echo(f"Session expired. Run `lms-client login` to sign in again ({route}).", err=True)


def _build_store(config: ClientConfig) -> CredentialStore:
    return CredentialStore(
        FileTokenStorage(config.token_file),
        access_token_ttl_seconds=config.access_token_ttl_seconds,
        refresh_token_ttl_seconds=config.refresh_token_ttl_seconds,
    )


def _build_client(config: ClientConfig) -> ApiClient:
    return ApiClient(config, credentials=_build_store(config), on_reauth=_notify_reauth)


def _run(config: ClientConfig, action: Callable[[ApiClient], Awaitable[Any]]) -> Any:
    async def _main() -> Any:
        async with _build_client(config) as client:
            return await action(client)

    try:
        return asyncio.run(_main())
    except ApiError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


def _parse_params(pairs: tuple[str, ...]) -> dict[str, str]:
    params: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint="--param")
        params[key.strip()] = value
    return params


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path(DEFAULT_CONFIG_FILENAME),
    show_default=True,
    help="Path to the client TOML config",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path) -> None:
    """Authenticated access to the library management API."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        client_name=config_path.stem,
    )
    ctx.obj = config


@cli.command()
@click.option("--email", prompt=True, help="Account email")
@click.option("--password", prompt=True, hide_input=True, help="Account password")
@click.pass_obj
def login(config: ClientConfig, email: str, password: str) -> None:
    """Sign in and store the token pair."""
    result = _run(config, lambda client: AuthApi(client).login(email, password))
    name = result.user.get("name") or result.user.get("email") or email
    click.echo(f"Logged in as {name} (access token expires {result.expires_at:%Y-%m-%d %H:%M} UTC)")


@cli.command()
@click.pass_obj
def logout(config: ClientConfig) -> None:
    """Revoke the session and clear stored tokens."""
    _run(config, lambda client: AuthApi(client).logout())
    click.echo("Logged out")


@cli.command()
@click.pass_obj
def status(config: ClientConfig) -> None:
    """Show whether tokens are stored and when the access token expires."""
    store = _build_store(config)
    access_token = store.get_access_token()
    refresh_token = store.get_refresh_token()

    if access_token is None:
        click.echo("Access token: none")
    else:
        expires_at = token_expires_at(access_token)
        suffix = f" (expires {expires_at:%Y-%m-%d %H:%M} UTC)" if expires_at else ""
        click.echo(f"Access token: stored{suffix}")
    click.echo(f"Refresh token: {'stored' if refresh_token else 'none'}")


@cli.command()
@click.argument("endpoint")
@click.option("--param", "params", multiple=True, help="Query parameter as key=value")
@click.pass_obj
def get(config: ClientConfig, endpoint: str, params: tuple[str, ...]) -> None:
    """GET ENDPOINT and print the JSON response."""
    query = _parse_params(params)
    payload = _run(config, lambda client: client.get(endpoint, params=query))
    click.echo(json.dumps(payload, indent=2, sort_keys=True))
