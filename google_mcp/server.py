"""FastMCP server for the Google MCP credential core.

This module builds the FastMCP server and registers the account
management tools (6 tools):

- accounts_list, accounts_status: read-only views
- accounts_add: interactive browser sign-in
- accounts_set_default, accounts_refresh: registry and token maintenance
- accounts_remove: sign-out, optionally revoking with Google

There is no module-level registry. ``create_server`` receives the
account manager and authorization engine, and every tool closes over
those handles. The lifespan restores stored accounts, starts the
background refresh loop, and on shutdown cancels any pending sign-in and
drains pending writes.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations

from google_mcp.auth.accounts import AccountManager
from google_mcp.auth.oauth import OAuthManager
from google_mcp.tools.accounts import (
    accounts_add,
    accounts_list,
    accounts_refresh,
    accounts_remove,
    accounts_set_default,
    accounts_status,
)
from google_mcp.workspace.client import ServiceFactory

logger = logging.getLogger(__name__)

SERVER_NAME = "google-mcp-server"


# =============================================================================
# Lifespan Context Manager
# =============================================================================


def make_lifespan(
    accounts: AccountManager, oauth: OAuthManager
) -> Callable[[FastMCP], AbstractAsyncContextManager[dict[str, Any]]]:
    """Build the lifespan context manager for startup/shutdown.

    Startup aborts if a stored credential has insecure permissions.
    Shutdown abandons any browser sign-in still waiting for its redirect.
    """

    @asynccontextmanager
    async def server_lifespan(server: FastMCP) -> AsyncIterator[dict[str, Any]]:
        logger.info("Google MCP server starting up...")

        restored = accounts.load_accounts()
        accounts.start_background_refresh(oauth.settings.refresh_interval_seconds)

        logger.info("Google MCP server ready with %d account(s)", len(restored))
        try:
            yield {}
        finally:
            logger.info("Google MCP server shutting down...")
            oauth.shutdown()
            accounts.close()

    return server_lifespan


# =============================================================================
# Account Tool Wrappers
# =============================================================================


def _register_account_tools(
    mcp: FastMCP,
    accounts: AccountManager,
    oauth: OAuthManager,
    services: ServiceFactory,
) -> None:
    """Register all account tools with the FastMCP server."""

    @mcp.tool(
        name="accounts_list",
        annotations=ToolAnnotations(
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
        ),
    )
    async def accounts_list_tool() -> dict[str, Any]:
        """List signed-in Google accounts.

        Returns:
            One entry per account: email, display_name, state, expiry,
            scopes, has_refresh_token, is_default.
        """
        return await accounts_list(accounts)

    @mcp.tool(
        name="accounts_add",
        annotations=ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=False,
        ),
    )
    async def accounts_add_tool(make_default: bool = False) -> dict[str, Any]:
        """Sign in a Google account using the browser.

        Opens the Google consent page. After the user approves, the
        redirect is received on 127.0.0.1 and the tokens are stored.

        Args:
            make_default: Use this account when a tool names none.

        Returns:
            Success: {status, data: {email, display_name, is_default}, message}
            Error: {status, error, error_code}
        """
        return await accounts_add(accounts, oauth, services, make_default=make_default)

    @mcp.tool(
        name="accounts_remove",
        annotations=ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=True,
            idempotentHint=False,
        ),
    )
    async def accounts_remove_tool(email: str, revoke: bool = False) -> dict[str, Any]:
        """Sign out a Google account and delete its stored credential.

        Args:
            email: Account to remove.
            revoke: Also revoke the access and refresh tokens with Google.
        """
        return await accounts_remove(accounts, email, revoke=revoke, services=services)

    @mcp.tool(
        name="accounts_set_default",
        annotations=ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=True,
        ),
    )
    async def accounts_set_default_tool(email: str) -> dict[str, Any]:
        """Choose the account used when a tool call does not name one."""
        return await accounts_set_default(accounts, email)

    @mcp.tool(
        name="accounts_refresh",
        annotations=ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=True,
        ),
    )
    async def accounts_refresh_tool(email: str = "") -> dict[str, Any]:
        """Refresh access tokens now.

        Args:
            email: Account to refresh; all accounts when empty.
        """
        return await accounts_refresh(accounts, email)

    @mcp.tool(
        name="accounts_status",
        annotations=ToolAnnotations(
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
        ),
    )
    async def accounts_status_tool(account: str = "") -> dict[str, Any]:
        """Check that an account's credentials are accepted by Google.

        Args:
            account: Account email; the default account when empty.

        Returns:
            email, display_name, authenticated, state, expiry and scopes.
        """
        with accounts.request_account(account):
            return await accounts_status(accounts, services)


# =============================================================================
# Server Factory
# =============================================================================


def create_server(
    accounts: AccountManager,
    oauth: OAuthManager,
    services: ServiceFactory | None = None,
) -> FastMCP:
    """Create and configure the FastMCP server instance.

    Args:
        accounts: Account registry shared by every tool.
        oauth: Authorization engine for interactive sign-in.
        services: API service cache; built from ``accounts`` if omitted.

    Returns:
        Configured FastMCP server instance.
    """
    services = services or ServiceFactory(accounts)

    server = FastMCP(
        name=SERVER_NAME,
        lifespan=make_lifespan(accounts, oauth),
    )
    _register_account_tools(server, accounts, oauth, services)

    logger.info("Google MCP server created with 6 tools registered")
    return server


__all__ = ["SERVER_NAME", "create_server", "make_lifespan"]
