"""Token endpoint exchanges with Google.

Thin wrappers around the four network calls of the credential lifecycle:

- authorization code exchange (direct POST, never through the browser)
- access token refresh (google-auth)
- token revocation (token in the form body, never in the URL)
- account identity lookup (userinfo endpoint)

None of these retry internally. A transient failure surfaces as
``ExchangeError`` and the caller decides whether to try again.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import requests
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from google_mcp.auth.models import StoredCredential
from google_mcp.config import (
    GOOGLE_REVOKE_URI,
    GOOGLE_USERINFO_URI,
    OAuthClientConfig,
)
from google_mcp.utils.errors import (
    AuthenticationError,
    ExchangeError,
    ReauthRequiredError,
    RevocationError,
)

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30
# Used when the provider omits expires_in
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)


def _expiry_from(expires_in: Any) -> datetime:
    try:
        return datetime.now(UTC) + timedelta(seconds=int(expires_in))
    except (TypeError, ValueError):
        return datetime.now(UTC) + DEFAULT_TOKEN_LIFETIME


def exchange_authorization_code(
    client: OAuthClientConfig,
    code: str,
    redirect_uri: str,
    code_verifier: str | None = None,
) -> dict[str, Any]:
    """Exchange an authorization code for tokens.

    Args:
        client: OAuth client identity.
        code: Authorization code from the redirect.
        redirect_uri: The exact redirect URI used in the consent request.
        code_verifier: PKCE verifier matching the consent request's challenge.

    Returns:
        Token data dictionary containing:
            - access_token: Short-lived access token
            - refresh_token: Long-lived refresh token (may be None)
            - expiry: Timezone-aware expiry timestamp
            - scopes: List of granted scopes

    Raises:
        ExchangeError: If the token endpoint rejects the code or is unreachable.
    """
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": client.client_id,
        "client_secret": client.client_secret,
    }
    if code_verifier:
        data["code_verifier"] = code_verifier

    try:
        response = requests.post(client.token_uri, data=data, timeout=REQUEST_TIMEOUT)
    except requests.RequestException as e:
        logger.error("Network error exchanging authorization code: %s", e)
        raise ExchangeError(
            "Network error exchanging authorization code",
            details={"error_type": type(e).__name__},
        ) from e

    if response.status_code != 200:
        try:
            error = response.json().get("error", "unknown_error")
        except ValueError:
            error = "unknown_error"
        logger.error("Token endpoint rejected authorization code: %s", error)
        raise ExchangeError(
            "Token endpoint rejected the authorization code",
            details={"status_code": response.status_code, "error": error},
        )

    payload = response.json()
    if not payload.get("access_token"):
        raise ExchangeError("Token response did not contain an access token")

    scope = payload.get("scope")
    logger.info("Successfully exchanged authorization code for tokens")
    return {
        "access_token": payload["access_token"],
        "refresh_token": payload.get("refresh_token"),
        "expiry": _expiry_from(payload.get("expires_in")),
        "scopes": scope.split() if isinstance(scope, str) else None,
    }


def fetch_user_info(access_token: str) -> dict[str, Any]:
    """Fetch the account identity for an access token.

    Returns:
        The userinfo payload; ``email`` is always present.

    Raises:
        AuthenticationError: If the identity cannot be fetched.
    """
    try:
        response = requests.get(
            GOOGLE_USERINFO_URI,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as e:
        logger.error("Network error fetching account identity: %s", e)
        raise AuthenticationError(
            "Network error fetching account identity",
            details={"error_type": type(e).__name__},
        ) from e

    if response.status_code != 200:
        raise AuthenticationError(
            "Failed to fetch account identity",
            details={"status_code": response.status_code},
        )

    info: dict[str, Any] = response.json()
    if not info.get("email"):
        raise AuthenticationError("Userinfo response did not include an email address")
    return info


def _is_rejected_grant(error: RefreshError) -> bool:
    if len(error.args) > 1 and isinstance(error.args[1], dict):
        return error.args[1].get("error") == "invalid_grant"
    return "invalid_grant" in str(error)


def refresh_access_token(
    client: OAuthClientConfig, record: StoredCredential
) -> StoredCredential:
    """Exchange a refresh token for a new access token.

    A response without a refresh token keeps the existing one; providers
    omit it on refreshes that do not rotate.

    Args:
        client: OAuth client identity.
        record: Current credential.

    Returns:
        A new record with the fresh access token and expiry.

    Raises:
        ReauthRequiredError: If there is no refresh token or it was rejected.
        ExchangeError: For any other token endpoint or network failure.
    """
    if not record.refresh_token:
        raise ReauthRequiredError(
            "No refresh token available",
            details={"hint": "User must re-authenticate to obtain a refresh token"},
        )

    credentials = Credentials(  # type: ignore[no-untyped-call]
        token=record.access_token,
        refresh_token=record.refresh_token,
        token_uri=client.token_uri,
        client_id=client.client_id,
        client_secret=client.client_secret,
        scopes=record.scopes or None,
    )

    try:
        credentials.refresh(Request())
    except RefreshError as e:
        if _is_rejected_grant(e):
            logger.warning("Refresh token rejected for %s", record.account_email)
            raise ReauthRequiredError(
                "Refresh token was rejected by the provider",
                details={"account": record.account_email},
            ) from e
        logger.error("Failed to refresh token for %s: %s", record.account_email, e)
        raise ExchangeError(
            "Token refresh failed",
            details={"account": record.account_email, "error_type": type(e).__name__},
        ) from e
    except TransportError as e:
        logger.error("Network error refreshing token for %s: %s", record.account_email, e)
        raise ExchangeError(
            "Network error refreshing token",
            details={"account": record.account_email, "error_type": type(e).__name__},
        ) from e

    expiry = credentials.expiry
    if expiry is None:
        new_expiry = datetime.now(UTC) + DEFAULT_TOKEN_LIFETIME
    else:
        # google-auth reports naive UTC
        new_expiry = expiry.replace(tzinfo=UTC) if expiry.tzinfo is None else expiry

    logger.info("Successfully refreshed access token for %s", record.account_email)
    return record.model_copy(
        update={
            "access_token": credentials.token,
            "refresh_token": credentials.refresh_token or record.refresh_token,
            "expiry": new_expiry,
        }
    )


def revoke_token(token: str) -> None:
    """Revoke a single token with Google.

    The token is sent in the form body so it never appears in a URL,
    proxy log or access log.

    Raises:
        RevocationError: If the revoke endpoint does not confirm revocation.
    """
    try:
        response = requests.post(
            GOOGLE_REVOKE_URI,
            data={"token": token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as e:
        logger.warning("Network error revoking token: %s", e)
        raise RevocationError(
            "Network error revoking token",
            details={"error_type": type(e).__name__},
        ) from e

    if response.status_code != 200:
        logger.warning("Revoke endpoint returned %d", response.status_code)
        raise RevocationError(
            "Revoke endpoint rejected the token",
            details={"status_code": response.status_code},
        )


__all__ = [
    "exchange_authorization_code",
    "fetch_user_info",
    "refresh_access_token",
    "revoke_token",
]
