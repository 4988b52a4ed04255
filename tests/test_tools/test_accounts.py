"""Tests for the account management tools."""

from __future__ import annotations

import asyncio
import socket
import threading
import time
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import pytest
from googleapiclient.errors import HttpError

from google_mcp.auth.credential import OAuthCredential
from google_mcp.auth.oauth import OAuthManager
from google_mcp.tools.accounts import (
    accounts_add,
    accounts_list,
    accounts_refresh,
    accounts_remove,
    accounts_set_default,
    accounts_status,
)
from google_mcp.tools.base import ResponseKeys
from google_mcp.utils.errors import CSRFMismatchError, ReauthRequiredError


@pytest.fixture
def mock_refresh():
    with patch("google_mcp.auth.credential.refresh_access_token") as mock:
        mock.side_effect = lambda client, record: record.model_copy(
            update={
                "access_token": "ya29.renewed",
                "expiry": datetime.now(UTC) + timedelta(hours=1),
            }
        )
        yield mock


class TestAccountsList:
    """Tests for accounts_list."""

    @pytest.mark.asyncio
    async def test_empty_registry(self, account_manager, mock_audit_logger):
        result = await accounts_list(account_manager)

        assert result[ResponseKeys.STATUS] == "success"
        assert result[ResponseKeys.COUNT] == 0
        assert "accounts_add" in result[ResponseKeys.MESSAGE]

    @pytest.mark.asyncio
    async def test_lists_accounts_without_tokens(
        self, account_manager, make_account, mock_audit_logger
    ):
        account_manager.register(make_account("a@example.com"))
        account_manager.register(make_account("b@example.com"), make_default=True)

        result = await accounts_list(account_manager)

        data = result[ResponseKeys.DATA]
        assert [d["email"] for d in data] == ["a@example.com", "b@example.com"]
        assert [d["is_default"] for d in data] == [False, True]
        assert data[0]["state"] == "authorized"
        assert "ya29.access" not in str(result)


class TestAccountsAdd:
    """Tests for accounts_add."""

    @pytest.mark.asyncio
    async def test_registers_new_account(
        self,
        account_manager,
        mock_oauth,
        mock_services,
        mock_audit_logger,
        make_record,
        client_config,
        storage,
    ):
        """Test a completed sign-in registers, persists and invalidates."""
        mock_oauth.authenticate.return_value = OAuthCredential(
            make_record("new@example.com"), client_config, display_name="New User"
        )

        result = await accounts_add(account_manager, mock_oauth, mock_services)
        account_manager.flush()

        assert result[ResponseKeys.STATUS] == "success"
        assert result[ResponseKeys.DATA] == {
            "email": "new@example.com",
            "display_name": "New User",
            "is_default": True,
        }
        assert storage.exists("new@example.com")
        mock_services.invalidate.assert_called_once_with("new@example.com")
        mock_audit_logger.log_auth_event.assert_called_once_with(
            "authorize", account="new@example.com"
        )

    @pytest.mark.asyncio
    async def test_make_default(
        self,
        account_manager,
        make_account,
        mock_oauth,
        mock_audit_logger,
        make_record,
        client_config,
    ):
        account_manager.register(make_account("first@example.com"))
        mock_oauth.authenticate.return_value = OAuthCredential(
            make_record("second@example.com"), client_config
        )

        result = await accounts_add(account_manager, mock_oauth, make_default=True)

        assert result[ResponseKeys.DATA]["is_default"] is True
        assert account_manager.get_account().email == "second@example.com"

    @pytest.mark.asyncio
    async def test_failed_sign_in_is_opaque(
        self, account_manager, mock_oauth, mock_audit_logger
    ):
        """Test a CSRF failure surfaces only its public message."""
        mock_oauth.authenticate.side_effect = CSRFMismatchError(
            "State mismatch", details={"hint": "tampered"}
        )

        result = await accounts_add(account_manager, mock_oauth)

        assert result[ResponseKeys.STATUS] == "error"
        assert result[ResponseKeys.ERROR_CODE] == "CSRFMismatchError"
        assert "tampered" not in str(result)
        assert len(account_manager) == 0
        assert mock_audit_logger.log_auth_event.call_args.kwargs["success"] is False

    @pytest.mark.asyncio
    async def test_cancelled_call_abandons_sign_in(
        self, account_manager, oauth_settings, mock_audit_logger
    ):
        """Test cancelling the tool call stops the wait and frees the loopback port."""
        oauth = OAuthManager(oauth_settings)
        presented = threading.Event()
        redirect_uris: list[str] = []

        def present(self, auth_url):
            redirect_uris.append(parse_qs(urlparse(auth_url).query)["redirect_uri"][0])
            presented.set()

        with patch.object(OAuthManager, "_present", present):
            task = asyncio.create_task(accounts_add(account_manager, oauth))
            assert await asyncio.to_thread(presented.wait, 5)

            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            # Well inside the 5s authorization timeout
            deadline = time.monotonic() + 2
            while oauth.authorizing and time.monotonic() < deadline:
                await asyncio.sleep(0.05)

        assert oauth.authorizing is False
        parsed = urlparse(redirect_uris[0])
        with pytest.raises(ConnectionRefusedError):
            socket.create_connection((parsed.hostname, parsed.port), timeout=2)
        assert len(account_manager) == 0


class TestAccountsRemove:
    """Tests for accounts_remove."""

    @pytest.mark.asyncio
    async def test_removes_account(
        self, account_manager, make_account, mock_services, mock_audit_logger, storage
    ):
        account_manager.register(make_account("a@example.com"))
        account_manager.flush()

        result = await accounts_remove(account_manager, "a@example.com", services=mock_services)

        assert result[ResponseKeys.STATUS] == "success"
        assert result[ResponseKeys.DATA]["revoked"] is False
        assert not storage.exists("a@example.com")
        mock_services.invalidate.assert_called_once_with("a@example.com")

    @pytest.mark.asyncio
    async def test_unknown_account(self, account_manager, mock_services, mock_audit_logger):
        result = await accounts_remove(
            account_manager, "nobody@example.com", services=mock_services
        )

        assert result[ResponseKeys.ERROR_CODE] == "AccountNotFoundError"
        mock_services.invalidate.assert_called_once()

    @pytest.mark.asyncio
    async def test_remove_with_revoke(
        self, account_manager, make_account, mock_audit_logger
    ):
        account_manager.register(make_account("a@example.com"))

        with patch("google_mcp.auth.credential.revoke_token") as mock_revoke:
            result = await accounts_remove(account_manager, "a@example.com", revoke=True)

        assert result[ResponseKeys.DATA]["revoked"] is True
        assert mock_revoke.call_count == 2


class TestAccountsSetDefault:
    """Tests for accounts_set_default."""

    @pytest.mark.asyncio
    async def test_sets_default(self, account_manager, make_account, mock_audit_logger):
        account_manager.register(make_account("a@example.com"))
        account_manager.register(make_account("b@example.com"))

        result = await accounts_set_default(account_manager, "B@Example.com")

        assert result[ResponseKeys.DATA] == {"email": "b@example.com"}
        assert account_manager.get_account().email == "b@example.com"

    @pytest.mark.asyncio
    async def test_unknown_account(self, account_manager, mock_audit_logger):
        result = await accounts_set_default(account_manager, "nobody@example.com")
        assert result[ResponseKeys.ERROR_CODE] == "AccountNotFoundError"


class TestAccountsRefresh:
    """Tests for accounts_refresh."""

    @pytest.mark.asyncio
    async def test_refresh_one(
        self, account_manager, make_account, mock_refresh, mock_audit_logger
    ):
        account_manager.register(make_account("a@example.com"))

        result = await accounts_refresh(account_manager, "a@example.com")

        assert result[ResponseKeys.STATUS] == "success"
        assert result[ResponseKeys.DATA]["email"] == "a@example.com"
        mock_refresh.assert_called_once()
        mock_audit_logger.log_auth_event.assert_called_once_with(
            "refresh", account="a@example.com"
        )

    @pytest.mark.asyncio
    async def test_refresh_all(
        self, account_manager, make_account, mock_refresh, mock_audit_logger
    ):
        account_manager.register(make_account("a@example.com"))
        account_manager.register(make_account("b@example.com"))

        result = await accounts_refresh(account_manager)

        assert result[ResponseKeys.DATA] == {
            "a@example.com": "refreshed",
            "b@example.com": "refreshed",
        }
        assert result[ResponseKeys.COUNT] == 2

    @pytest.mark.asyncio
    async def test_rejected_refresh_token(
        self, account_manager, make_account, mock_refresh, mock_audit_logger
    ):
        mock_refresh.side_effect = ReauthRequiredError("invalid_grant")
        account_manager.register(make_account("a@example.com"))

        result = await accounts_refresh(account_manager, "a@example.com")

        assert result[ResponseKeys.ERROR_CODE] == "ReauthRequiredError"
        assert mock_audit_logger.log_auth_event.call_args.kwargs["success"] is False


class TestAccountsStatus:
    """Tests for accounts_status."""

    @pytest.mark.asyncio
    async def test_authenticated(
        self, account_manager, make_account, mock_services, mock_audit_logger
    ):
        account_manager.register(make_account("a@example.com"))

        result = await accounts_status(account_manager, mock_services)

        data = result[ResponseKeys.DATA]
        assert data["email"] == "a@example.com"
        assert data["authenticated"] is True
        assert data["state"] == "authorized"
        mock_services.get_service.assert_called_once_with("oauth2", "v2", "a@example.com")

    @pytest.mark.asyncio
    async def test_rejected_token(
        self,
        account_manager,
        make_account,
        mock_services,
        mock_oauth_service,
        mock_audit_logger,
    ):
        """Test a 401 from Google reports the account as unauthenticated."""
        account_manager.register(make_account("a@example.com"))
        mock_oauth_service.userinfo.return_value.get.return_value.execute.side_effect = (
            HttpError(resp=MagicMock(status=401, reason="Unauthorized"), content=b"{}")
        )

        result = await accounts_status(account_manager, mock_services)

        assert result[ResponseKeys.STATUS] == "success"
        assert result[ResponseKeys.DATA]["authenticated"] is False
        assert "accounts_add" in result[ResponseKeys.MESSAGE]

    @pytest.mark.asyncio
    async def test_uses_bound_account(
        self, account_manager, make_account, mock_services, mock_audit_logger
    ):
        """Test the account bound to the request is checked."""
        account_manager.register(make_account("a@example.com"))
        account_manager.register(make_account("b@example.com"))

        with account_manager.request_account("b@example.com"):
            result = await accounts_status(account_manager, mock_services)

        assert result[ResponseKeys.DATA]["email"] == "b@example.com"
        mock_services.get_service.assert_called_once_with("oauth2", "v2", "b@example.com")

    @pytest.mark.asyncio
    async def test_no_accounts(self, account_manager, mock_services, mock_audit_logger):
        result = await accounts_status(account_manager, mock_services)
        assert result[ResponseKeys.ERROR_CODE] == "NoAccountError"
