"""Account management tools.

These tools sit directly on the credential core: sign in another Google
account, list and select accounts, refresh tokens, and sign out with
optional revocation. Every tool runs through ``execute_tool``, so the
remote client only ever sees opaque errors.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any

from googleapiclient.errors import HttpError

from google_mcp.auth.accounts import Account, AccountManager
from google_mcp.auth.oauth import OAuthManager
from google_mcp.middleware.audit_logger import audit_logger
from google_mcp.tools.base import build_success_response, execute_tool
from google_mcp.utils.errors import GoogleMCPError, ReauthRequiredError
from google_mcp.workspace.client import ServiceFactory

logger = logging.getLogger(__name__)


async def accounts_list(accounts: AccountManager) -> dict[str, Any]:
    """List registered accounts with their credential state."""

    def operation() -> dict[str, Any]:
        views = [view.model_dump(mode="json") for view in accounts.list_accounts()]
        message = None if views else "No accounts registered. Use accounts_add to sign in."
        return build_success_response(data=views, message=message, count=len(views))

    return await execute_tool("accounts_list", {}, operation)


async def accounts_add(
    accounts: AccountManager,
    oauth: OAuthManager,
    services: ServiceFactory | None = None,
    make_default: bool = False,
) -> dict[str, Any]:
    """Sign in a Google account through the browser.

    Blocks until the user completes consent, the flow times out or the
    redirect is rejected. Cancelling the calling task abandons the flow and
    closes the loopback listener.

    Args:
        accounts: Registry receiving the new account.
        oauth: Authorization engine.
        services: Service cache to invalidate for the account.
        make_default: Mark the account as the default.

    Returns:
        Success response with the account email.
    """
    cancel = threading.Event()

    def operation() -> dict[str, Any]:
        try:
            credential = oauth.authenticate(cancel_event=cancel)
        except GoogleMCPError as e:
            audit_logger.log_auth_event(
                "authorize", success=False, details={"error_code": type(e).__name__}
            )
            raise

        email = credential.account_email
        accounts.register(Account.from_credential(credential), make_default=make_default)
        if services is not None:
            services.invalidate(email)
        audit_logger.log_auth_event("authorize", account=email)

        return build_success_response(
            data={
                "email": email,
                "display_name": credential.display_name,
                "is_default": accounts.get_account().email == email,
            },
            message=f"Successfully authenticated as {email}",
        )

    try:
        return await execute_tool("accounts_add", {"make_default": make_default}, operation)
    except asyncio.CancelledError:
        cancel.set()
        raise


async def accounts_remove(
    accounts: AccountManager,
    email: str,
    revoke: bool = False,
    services: ServiceFactory | None = None,
) -> dict[str, Any]:
    """Sign out an account, deleting its stored credential.

    Args:
        email: Account to remove.
        revoke: Also revoke its tokens with Google.

    Returns:
        Success response, or an error if revocation failed (the account is
        removed either way).
    """

    def operation() -> dict[str, Any]:
        try:
            accounts.remove(email, revoke=revoke)
        finally:
            if services is not None:
                services.invalidate(email)
            accounts.flush()

        audit_logger.log_auth_event("remove", account=email, details={"revoked": revoke})
        return build_success_response(
            data={"email": email, "removed": True, "revoked": revoke},
            message=f"Removed {email}",
        )

    return await execute_tool(
        "accounts_remove", {"email": email, "revoke": revoke}, operation, account=email
    )


async def accounts_set_default(accounts: AccountManager, email: str) -> dict[str, Any]:
    """Select the account used when a tool call names none."""

    def operation() -> dict[str, Any]:
        accounts.set_default(email)
        return build_success_response(
            data={"email": email.strip().lower()},
            message=f"Default account is now {email}",
        )

    return await execute_tool("accounts_set_default", {"email": email}, operation, account=email)


async def accounts_refresh(accounts: AccountManager, email: str = "") -> dict[str, Any]:
    """Force a token refresh for one account, or for all when no email is given."""

    def operation() -> dict[str, Any]:
        if not email:
            results = accounts.refresh_all(force=True)
            return build_success_response(data=results, count=len(results))

        account = accounts.get_account(email)
        try:
            record = account.credential.refresh(force=True)
        except GoogleMCPError as e:
            audit_logger.log_auth_event(
                "refresh",
                account=account.email,
                success=False,
                details={"error_code": type(e).__name__},
            )
            raise
        audit_logger.log_auth_event("refresh", account=account.email)
        return build_success_response(
            data={"email": account.email, "expiry": record.expiry.isoformat()},
            message=f"Refreshed token for {account.email}",
        )

    return await execute_tool(
        "accounts_refresh", {"email": email}, operation, account=email or "default"
    )


async def accounts_status(
    accounts: AccountManager,
    services: ServiceFactory,
    email: str = "",
) -> dict[str, Any]:
    """Check that an account's credential works against the userinfo API.

    Returns:
        Success response with:
        - email, display_name, state, expiry, scopes
        - authenticated: True if Google accepted the token
    """

    def operation() -> dict[str, Any]:
        account = accounts.get_account(email) if email else accounts.get_account_for_context()

        authenticated = False
        try:
            service = services.get_service("oauth2", "v2", account.email)
            service.userinfo().get().execute()
            authenticated = True
        except ReauthRequiredError:
            logger.warning("Account %s requires re-authorization", account.email)
        except HttpError as e:
            logger.warning("Userinfo check failed for %s: HTTP %s", account.email, e.resp.status)

        record = account.credential.snapshot
        state = account.credential.state
        message = (
            f"Authenticated as {account.email}"
            if authenticated
            else "Credentials are invalid or revoked. Use accounts_add to re-authenticate."
        )
        return build_success_response(
            data={
                "email": account.email,
                "display_name": account.display_name,
                "authenticated": authenticated,
                "state": state.value,
                "expiry": record.expiry.isoformat(),
                "scopes": list(record.scopes),
            },
            message=message,
        )

    return await execute_tool(
        "accounts_status", {"email": email}, operation, account=email or "default"
    )


__all__ = [
    "accounts_add",
    "accounts_list",
    "accounts_refresh",
    "accounts_remove",
    "accounts_set_default",
    "accounts_status",
]
