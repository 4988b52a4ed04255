"""Utility functions and helpers for the Google MCP server.

This module provides the exception hierarchy and the concurrency
primitives shared by the credential core.
"""

from google_mcp.utils.errors import (
    AccountNotFoundError,
    AuthenticationError,
    AuthorizationCancelledError,
    AuthorizationTimeoutError,
    CorruptTokenError,
    CSRFMismatchError,
    EntropyError,
    ExchangeError,
    GoogleMCPError,
    InsecurePermissionsError,
    ListenerBindError,
    NoAccountError,
    ReauthRequiredError,
    RevocationError,
    TokenError,
    TokenNotFoundError,
    ValidationError,
)
from google_mcp.utils.locks import ReadWriteLock

__all__ = [
    "ReadWriteLock",
    # Exception hierarchy
    "GoogleMCPError",
    "AuthenticationError",
    "CSRFMismatchError",
    "AuthorizationTimeoutError",
    "AuthorizationCancelledError",
    "ExchangeError",
    "ListenerBindError",
    "ReauthRequiredError",
    "EntropyError",
    "RevocationError",
    "TokenError",
    "InsecurePermissionsError",
    "TokenNotFoundError",
    "CorruptTokenError",
    "NoAccountError",
    "AccountNotFoundError",
    "ValidationError",
]
