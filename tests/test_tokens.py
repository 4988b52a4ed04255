"""Tests for token endpoint exchanges."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
import requests
from google.auth.exceptions import RefreshError, TransportError

from google_mcp.auth.tokens import (
    exchange_authorization_code,
    fetch_user_info,
    refresh_access_token,
    revoke_token,
)
from google_mcp.config import GOOGLE_REVOKE_URI, GOOGLE_TOKEN_URI
from google_mcp.utils.errors import (
    AuthenticationError,
    ExchangeError,
    ReauthRequiredError,
    RevocationError,
)


def _response(status_code: int = 200, payload: dict | None = None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload or {}
    return response


class TestExchangeAuthorizationCode:
    """Tests for exchange_authorization_code."""

    def test_posts_code_to_token_endpoint(self, client_config):
        """Test the code is exchanged by direct POST with the PKCE verifier."""
        payload = {
            "access_token": "ya29.new",
            "refresh_token": "1//new",
            "expires_in": 3599,
            "scope": "openid https://www.googleapis.com/auth/drive",
        }
        with patch("google_mcp.auth.tokens.requests.post") as mock_post:
            mock_post.return_value = _response(200, payload)

            tokens = exchange_authorization_code(
                client_config, "4/code", "http://127.0.0.1:5000/oauth/callback", "verifier"
            )

        args, kwargs = mock_post.call_args
        assert args[0] == GOOGLE_TOKEN_URI
        assert kwargs["data"]["grant_type"] == "authorization_code"
        assert kwargs["data"]["code"] == "4/code"
        assert kwargs["data"]["code_verifier"] == "verifier"
        assert kwargs["data"]["redirect_uri"] == "http://127.0.0.1:5000/oauth/callback"

        assert tokens["access_token"] == "ya29.new"
        assert tokens["refresh_token"] == "1//new"
        assert tokens["scopes"] == ["openid", "https://www.googleapis.com/auth/drive"]
        assert tokens["expiry"].tzinfo is not None
        assert tokens["expiry"] > datetime.now(UTC) + timedelta(minutes=55)

    def test_missing_refresh_token_is_reported_as_none(self, client_config):
        """Test re-consent responses without a refresh token."""
        with patch("google_mcp.auth.tokens.requests.post") as mock_post:
            mock_post.return_value = _response(200, {"access_token": "ya29.new"})
            tokens = exchange_authorization_code(client_config, "4/code", "http://x")

        assert tokens["refresh_token"] is None
        assert tokens["scopes"] is None

    def test_rejected_code_raises_exchange_error(self, client_config):
        """Test non-200 responses raise ExchangeError."""
        with patch("google_mcp.auth.tokens.requests.post") as mock_post:
            mock_post.return_value = _response(400, {"error": "invalid_grant"})

            with pytest.raises(ExchangeError) as exc_info:
                exchange_authorization_code(client_config, "4/code", "http://x")

        assert exc_info.value.details["error"] == "invalid_grant"

    def test_network_error_raises_exchange_error(self, client_config):
        """Test transport failures raise ExchangeError without retrying."""
        with patch("google_mcp.auth.tokens.requests.post") as mock_post:
            mock_post.side_effect = requests.ConnectionError("refused")

            with pytest.raises(ExchangeError):
                exchange_authorization_code(client_config, "4/code", "http://x")

        assert mock_post.call_count == 1


class TestFetchUserInfo:
    """Tests for fetch_user_info."""

    def test_returns_identity(self):
        """Test bearer token is sent in the header."""
        with patch("google_mcp.auth.tokens.requests.get") as mock_get:
            mock_get.return_value = _response(200, {"email": "user@example.com", "name": "User"})
            info = fetch_user_info("ya29.token")

        assert info["email"] == "user@example.com"
        assert mock_get.call_args.kwargs["headers"]["Authorization"] == "Bearer ya29.token"

    def test_missing_email_raises(self):
        """Test a response without email is an authentication failure."""
        with patch("google_mcp.auth.tokens.requests.get") as mock_get:
            mock_get.return_value = _response(200, {"name": "User"})
            with pytest.raises(AuthenticationError):
                fetch_user_info("ya29.token")

    def test_http_error_raises(self):
        """Test non-200 responses raise AuthenticationError."""
        with patch("google_mcp.auth.tokens.requests.get") as mock_get:
            mock_get.return_value = _response(401)
            with pytest.raises(AuthenticationError):
                fetch_user_info("ya29.token")


class TestRefreshAccessToken:
    """Tests for refresh_access_token."""

    @pytest.fixture
    def mock_google_credentials(self):
        with patch("google_mcp.auth.tokens.Credentials") as mock_cls:
            instance = mock_cls.return_value
            instance.token = "ya29.refreshed"
            instance.refresh_token = None
            instance.expiry = datetime.now(UTC).replace(tzinfo=None) + timedelta(hours=1)
            yield mock_cls

    def test_keeps_existing_refresh_token_when_omitted(
        self, client_config, make_record, mock_google_credentials
    ):
        """Test a response without a refresh token keeps the old one."""
        record = make_record(expires_in=timedelta(minutes=1))

        new_record = refresh_access_token(client_config, record)

        assert new_record.access_token == "ya29.refreshed"
        assert new_record.refresh_token == "1//refresh"
        assert new_record.expiry.tzinfo is not None
        assert new_record.expiry > record.expiry
        assert new_record.account_email == record.account_email

    def test_rotated_refresh_token_replaces_old(
        self, client_config, make_record, mock_google_credentials
    ):
        """Test a rotated refresh token is adopted."""
        mock_google_credentials.return_value.refresh_token = "1//rotated"

        new_record = refresh_access_token(client_config, make_record())

        assert new_record.refresh_token == "1//rotated"

    def test_uses_client_identity(self, client_config, make_record, mock_google_credentials):
        """Test the client secret comes from config, not the record."""
        refresh_access_token(client_config, make_record())

        kwargs = mock_google_credentials.call_args.kwargs
        assert kwargs["client_id"] == client_config.client_id
        assert kwargs["client_secret"] == "test-client-secret"
        assert kwargs["refresh_token"] == "1//refresh"

    def test_without_refresh_token_requires_reauth(self, client_config, make_record):
        """Test a record lacking a refresh token cannot be refreshed."""
        with pytest.raises(ReauthRequiredError):
            refresh_access_token(client_config, make_record(refresh_token=None))

    def test_invalid_grant_requires_reauth(
        self, client_config, make_record, mock_google_credentials
    ):
        """Test a rejected refresh token raises ReauthRequiredError."""
        mock_google_credentials.return_value.refresh.side_effect = RefreshError(
            "invalid_grant: Token has been expired or revoked.",
            {"error": "invalid_grant", "error_description": "Token has been expired or revoked."},
        )

        with pytest.raises(ReauthRequiredError):
            refresh_access_token(client_config, make_record())

    def test_other_refresh_error_is_exchange_error(
        self, client_config, make_record, mock_google_credentials
    ):
        """Test non-grant failures are transient exchange errors."""
        mock_google_credentials.return_value.refresh.side_effect = RefreshError(
            "internal_failure", {"error": "internal_failure"}
        )

        with pytest.raises(ExchangeError):
            refresh_access_token(client_config, make_record())

    def test_transport_error_is_exchange_error(
        self, client_config, make_record, mock_google_credentials
    ):
        """Test network failures are transient exchange errors."""
        mock_google_credentials.return_value.refresh.side_effect = TransportError("timeout")

        with pytest.raises(ExchangeError):
            refresh_access_token(client_config, make_record())


class TestRevokeToken:
    """Tests for revoke_token."""

    def test_token_sent_in_request_body(self):
        """Test the token travels in the form body, never in the URL."""
        with patch("google_mcp.auth.tokens.requests.post") as mock_post:
            mock_post.return_value = _response(200)
            revoke_token("ya29.secret")

        args, kwargs = mock_post.call_args
        assert args[0] == GOOGLE_REVOKE_URI
        assert "ya29.secret" not in args[0]
        assert "params" not in kwargs
        assert kwargs["data"] == {"token": "ya29.secret"}
        assert kwargs["headers"]["Content-Type"] == "application/x-www-form-urlencoded"

    def test_rejection_raises_revocation_error(self):
        """Test non-200 responses raise RevocationError."""
        with patch("google_mcp.auth.tokens.requests.post") as mock_post:
            mock_post.return_value = _response(400)
            with pytest.raises(RevocationError):
                revoke_token("ya29.secret")

    def test_network_error_raises_revocation_error(self):
        """Test transport failures raise RevocationError."""
        with patch("google_mcp.auth.tokens.requests.post") as mock_post:
            mock_post.side_effect = requests.Timeout("slow")
            with pytest.raises(RevocationError):
                revoke_token("ya29.secret")
