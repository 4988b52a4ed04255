"""Pytest configuration and fixtures for Google MCP server tests."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from google_mcp.auth.accounts import Account, AccountManager
from google_mcp.auth.credential import OAuthCredential
from google_mcp.auth.models import StoredCredential
from google_mcp.auth.storage import TokenStorage
from google_mcp.config import DEFAULT_SCOPES, OAuthClientConfig, OAuthSettings


@pytest.fixture
def client_config() -> OAuthClientConfig:
    """Fixture providing mock Google OAuth client credentials."""
    return OAuthClientConfig(
        client_id="test-client-id.apps.googleusercontent.com",
        client_secret="test-client-secret",
    )


@pytest.fixture
def make_record() -> Callable[..., StoredCredential]:
    """Factory for token records; expires in an hour unless told otherwise."""

    def _make(
        email: str = "user@example.com",
        access_token: str | None = "ya29.access",
        refresh_token: str | None = "1//refresh",
        expires_in: timedelta = timedelta(hours=1),
    ) -> StoredCredential:
        return StoredCredential(
            account_email=email,
            access_token=access_token,
            refresh_token=refresh_token,
            expiry=datetime.now(UTC) + expires_in,
            scopes=list(DEFAULT_SCOPES),
        )

    return _make


@pytest.fixture
def make_account(
    make_record: Callable[..., StoredCredential], client_config: OAuthClientConfig
) -> Callable[..., Account]:
    """Factory for accounts holding a fresh credential."""

    def _make(email: str = "user@example.com", **kwargs: object) -> Account:
        credential = OAuthCredential(make_record(email=email, **kwargs), client_config)
        return Account.from_credential(credential)

    return _make


@pytest.fixture
def token_dir(tmp_path: Path) -> Path:
    return tmp_path / "tokens"


@pytest.fixture
def storage(token_dir: Path) -> TokenStorage:
    return TokenStorage(token_dir)


@pytest.fixture
def account_manager(
    storage: TokenStorage, client_config: OAuthClientConfig
) -> Iterator[AccountManager]:
    """Account manager over a temporary token directory."""
    manager = AccountManager(storage, client_config)
    yield manager
    manager.close()


@pytest.fixture
def oauth_settings(client_config: OAuthClientConfig, token_dir: Path) -> OAuthSettings:
    """Settings for loopback flow tests: ephemeral port, no browser."""
    return OAuthSettings(
        client=client_config,
        port=0,
        timeout_seconds=5,
        open_browser=False,
        token_dir=token_dir,
        refresh_interval_seconds=0,
    )
