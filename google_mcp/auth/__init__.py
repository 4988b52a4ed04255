"""Credential lifecycle for the Google MCP server.

This module provides:

- Anti-CSRF state and PKCE generation
- File-based token persistence with owner-only permissions
- The interactive OAuth authorization-code flow on a loopback listener
- Per-account credentials with single-flight refresh and revocation
- The multi-account registry

Usage:
    >>> from google_mcp.auth import Account, AccountManager, OAuthManager, TokenStorage
    >>>
    >>> manager = AccountManager(TokenStorage(settings.token_dir), settings.client)
    >>> manager.load_accounts()
    >>>
    >>> # Authorize another account (opens browser)
    >>> credential = OAuthManager(settings).authenticate()
    >>> manager.register(Account.from_credential(credential))
    >>>
    >>> # Authenticated transport for the default account
    >>> session = manager.get_http_client()
"""

from google_mcp.auth.accounts import Account, AccountManager
from google_mcp.auth.credential import ManagedCredentials, OAuthCredential
from google_mcp.auth.models import AccountInfo, CredentialState, StoredCredential
from google_mcp.auth.oauth import OAuthManager
from google_mcp.auth.state import generate_oauth_state
from google_mcp.auth.storage import TokenStorage

__all__ = [
    # Registry
    "Account",
    "AccountManager",
    "AccountInfo",
    # Credentials
    "CredentialState",
    "ManagedCredentials",
    "OAuthCredential",
    "StoredCredential",
    # Authorization
    "OAuthManager",
    "generate_oauth_state",
    # Token Storage
    "TokenStorage",
]
