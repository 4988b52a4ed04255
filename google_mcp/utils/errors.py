"""Custom exception hierarchy for the Google MCP server.

This module defines a structured exception hierarchy for the credential
lifecycle: interactive authorization, token persistence, refresh,
revocation and multi-account resolution.

Every exception carries a ``public_message``. That string is the only
thing the tool boundary ever returns to the remote client; the full
``message`` and ``details`` stay in the local log.
"""

from __future__ import annotations


class GoogleMCPError(Exception):
    """Base exception for all Google MCP server errors.

    Attributes:
        message: Human-readable error description (local logs only).
        details: Optional dictionary containing additional error context.
        public_message: Opaque description safe to return to the client.
    """

    public_message = "Operation failed"

    def __init__(self, message: str, details: dict[str, object] | None = None) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error description.
            details: Optional dictionary containing additional error context.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class AuthenticationError(GoogleMCPError):
    """Exception raised for OAuth and credential-related errors.

    Examples:
        - User denied OAuth consent
        - Invalid client credentials
        - Account identity could not be fetched
    """

    public_message = "Authentication failed"


class CSRFMismatchError(AuthenticationError):
    """The redirect carried a state that does not match the session.

    Never downgraded: the authorization code is discarded unexchanged.
    """

    public_message = "Authorization rejected: state mismatch"


class AuthorizationTimeoutError(AuthenticationError):
    """No redirect arrived before the authorization deadline."""

    public_message = "Authorization timed out"


class AuthorizationCancelledError(AuthenticationError):
    """The caller cancelled the authorization wait."""

    public_message = "Authorization cancelled"


class ExchangeError(AuthenticationError):
    """The token endpoint rejected a code or refresh exchange."""

    public_message = "Token exchange failed"


class ListenerBindError(AuthenticationError):
    """The loopback redirect listener could not bind its port."""

    public_message = "Could not start the authorization listener"


class ReauthRequiredError(AuthenticationError):
    """The refresh token was rejected upstream.

    Terminal for the credential until a new interactive authorization
    succeeds.
    """

    public_message = "Re-authorization required"


class EntropyError(AuthenticationError):
    """The platform's secure random source is unavailable."""

    public_message = "Secure random source unavailable"


class RevocationError(AuthenticationError):
    """At least one token could not be revoked.

    Attributes:
        failed: Names of the tokens whose revocation failed.
    """

    public_message = "Token revocation failed"

    def __init__(
        self,
        message: str,
        failed: list[str] | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.failed = failed or []


class TokenError(AuthenticationError):
    """Exception raised for token storage and retrieval errors."""

    public_message = "Stored credentials unavailable"


class InsecurePermissionsError(TokenError):
    """A credential file is readable or writable by group or others.

    The file is refused before any of its content is read.
    """

    public_message = "Stored credentials have insecure permissions"


class TokenNotFoundError(TokenError):
    """No credential file exists at the requested location."""

    public_message = "No stored credentials"


class CorruptTokenError(TokenError):
    """A credential file exists but cannot be decoded."""

    public_message = "Stored credentials are corrupt"


class NoAccountError(GoogleMCPError):
    """No authenticated account is available to serve the request."""

    public_message = "No authenticated account available"


class AccountNotFoundError(NoAccountError):
    """The requested account is not registered."""

    public_message = "Account not found"


class ValidationError(GoogleMCPError):
    """Exception raised for input validation errors.

    Attributes:
        field: The name of the field that failed validation, if applicable.
    """

    public_message = "Invalid request"

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Initialize the validation error exception.

        Args:
            message: Human-readable error description.
            field: The name of the field that failed validation.
            details: Optional dictionary containing additional error context.
        """
        super().__init__(message, details)
        self.field = field


__all__ = [
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
