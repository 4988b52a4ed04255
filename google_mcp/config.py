"""Environment-driven configuration for the Google MCP server.

All settings come from environment variables (a ``.env`` file is loaded
by the entry point when present):

    GOOGLE_CLIENT_ID: Google OAuth client ID (required)
    GOOGLE_CLIENT_SECRET: Google OAuth client secret (required)
    OAUTH_PORT: Redirect listener port (default: 0, ephemeral)
    OAUTH_CALLBACK_PATH: Redirect path (default: /oauth/callback)
    OAUTH_TIMEOUT: Seconds to wait for the browser redirect (default: 300)
    OAUTH_OPEN_BROWSER: Open the consent page automatically (default: true)
    GOOGLE_MCP_TOKEN_DIR: Credential directory
        (default: ~/.google-mcp-server/tokens)
    REFRESH_INTERVAL: Background refresh period in seconds, 0 disables
        (default: 300)
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URI = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URI = "https://www.googleapis.com/oauth2/v2/userinfo"

# Fixed scope set requested on every interactive authorization
DEFAULT_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/documents",
    "https://www.googleapis.com/auth/presentations",
    "https://www.googleapis.com/auth/tasks",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]

DEFAULT_TOKEN_DIR = Path.home() / ".google-mcp-server" / "tokens"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("true", "1", "yes")


class OAuthClientConfig(BaseModel):
    """OAuth client identity used for code and refresh exchanges.

    The client secret is read from the environment and is never written
    to the credential files.
    """

    model_config = {"frozen": True}

    client_id: str = Field(..., description="Google OAuth client ID")
    client_secret: str = Field(default="", repr=False, description="Client secret")
    token_uri: str = Field(default=GOOGLE_TOKEN_URI, description="Token endpoint")

    @property
    def is_configured(self) -> bool:
        """True if both client ID and secret are set."""
        return bool(self.client_id and self.client_secret)


class OAuthSettings(BaseModel):
    """Complete configuration of the credential core."""

    client: OAuthClientConfig
    port: int = Field(default=0, ge=0, le=65535, description="Listener port, 0 = ephemeral")
    callback_path: str = Field(default="/oauth/callback")
    timeout_seconds: float = Field(default=300.0, gt=0)
    open_browser: bool = Field(default=True)
    scopes: list[str] = Field(default_factory=lambda: list(DEFAULT_SCOPES))
    token_dir: Path = Field(default=DEFAULT_TOKEN_DIR)
    refresh_interval_seconds: float = Field(default=300.0, ge=0)

    @classmethod
    def from_env(cls) -> OAuthSettings:
        """Build settings from environment variables."""
        token_dir = os.getenv("GOOGLE_MCP_TOKEN_DIR")
        return cls(
            client=OAuthClientConfig(
                client_id=os.getenv("GOOGLE_CLIENT_ID", ""),
                client_secret=os.getenv("GOOGLE_CLIENT_SECRET", ""),
            ),
            port=int(os.getenv("OAUTH_PORT", "0")),
            callback_path=os.getenv("OAUTH_CALLBACK_PATH", "/oauth/callback"),
            timeout_seconds=float(os.getenv("OAUTH_TIMEOUT", "300")),
            open_browser=_env_bool("OAUTH_OPEN_BROWSER", True),
            token_dir=Path(token_dir).expanduser() if token_dir else DEFAULT_TOKEN_DIR,
            refresh_interval_seconds=float(os.getenv("REFRESH_INTERVAL", "300")),
        )


__all__ = [
    "DEFAULT_SCOPES",
    "DEFAULT_TOKEN_DIR",
    "GOOGLE_AUTH_URI",
    "GOOGLE_REVOKE_URI",
    "GOOGLE_TOKEN_URI",
    "GOOGLE_USERINFO_URI",
    "OAuthClientConfig",
    "OAuthSettings",
]
