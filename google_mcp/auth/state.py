"""Random values for the authorization-code flow.

The anti-CSRF state and the PKCE verifier both come from the OS CSPRNG.
A missing secure source is fatal to the authorization attempt and is
never retried.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets

from google_mcp.utils.errors import EntropyError

logger = logging.getLogger(__name__)

STATE_BYTES = 32
VERIFIER_BYTES = 64


def _random_bytes(n: int) -> bytes:
    try:
        return secrets.token_bytes(n)
    except (NotImplementedError, OSError) as e:
        logger.error("Secure random source unavailable: %s", e)
        raise EntropyError(
            "Secure random source unavailable",
            details={"error_type": type(e).__name__},
        ) from e


def generate_oauth_state() -> str:
    """Generate an unpredictable OAuth state value.

    Returns:
        64 hex characters encoding 32 bytes from the OS CSPRNG.

    Raises:
        EntropyError: If the secure random source is unavailable.
    """
    return _random_bytes(STATE_BYTES).hex()


def generate_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE ``(code_verifier, code_challenge)`` pair (S256).

    Raises:
        EntropyError: If the secure random source is unavailable.
    """
    verifier = base64.urlsafe_b64encode(_random_bytes(VERIFIER_BYTES)).rstrip(b"=").decode()
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode()
    return verifier, challenge


__all__ = ["STATE_BYTES", "generate_oauth_state", "generate_pkce_pair"]
