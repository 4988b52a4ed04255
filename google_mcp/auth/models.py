"""Data models for stored credentials and account views."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


class CredentialState(str, Enum):
    """Lifecycle states of a single account credential."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHORIZING = "authorizing"
    AUTHORIZED = "authorized"
    REFRESHING = "refreshing"
    REVOKED = "revoked"


TERMINAL_STATES = frozenset({CredentialState.UNAUTHENTICATED, CredentialState.REVOKED})


class StoredCredential(BaseModel):
    """Immutable token record.

    This is both the on-disk JSON format and the snapshot handed out to
    readers. A refresh produces a new record rather than editing one.
    """

    model_config = {"frozen": True, "extra": "ignore"}

    account_email: str = Field(..., description="Normalized account address")
    access_token: str | None = Field(default=None, description="Short-lived token")
    refresh_token: str | None = Field(default=None, description="Long-lived token")
    expiry: datetime = Field(..., description="Access token expiry (UTC)")
    scopes: list[str] = Field(default_factory=list, description="Granted scopes")

    @field_validator("account_email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if not value:
            raise ValueError("account_email cannot be empty")
        return value

    @field_validator("expiry")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        # Naive timestamps are treated as UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @model_validator(mode="after")
    def _require_a_token(self) -> StoredCredential:
        if not self.access_token and not self.refresh_token:
            raise ValueError("credential has neither an access token nor a refresh token")
        return self


class AccountIndex(BaseModel):
    """Registration order and default account, stored beside the credentials."""

    model_config = {"frozen": True, "extra": "ignore"}

    accounts: list[str] = Field(default_factory=list)
    default: str | None = None

    @field_validator("accounts")
    @classmethod
    def _normalize_accounts(cls, value: list[str]) -> list[str]:
        seen: list[str] = []
        for email in value:
            email = email.strip().lower()
            if email and email not in seen:
                seen.append(email)
        return seen

    @field_validator("default")
    @classmethod
    def _normalize_default(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip().lower() or None


class AccountInfo(BaseModel):
    """Read-only view of a registered account, safe to hand to callers."""

    model_config = {"frozen": True}

    email: str
    display_name: str | None = None
    state: CredentialState
    expiry: datetime | None = None
    scopes: list[str] = Field(default_factory=list)
    has_refresh_token: bool = False
    is_default: bool = False


__all__ = [
    "AccountIndex",
    "AccountInfo",
    "CredentialState",
    "StoredCredential",
    "TERMINAL_STATES",
]
