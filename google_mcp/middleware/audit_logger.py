"""Audit trail for tool calls and credential lifecycle events.

Each entry is one JSON object per line, ``{"audit": {...}}``, written to
stderr. Two kinds of entry are produced:

- tool calls (``action="invoke"``), one per ``execute_tool`` run, with
  the account the call resolved to, its outcome and duration
- credential events (``tool_name="auth"``): ``authorize``, ``refresh``,
  ``revoke`` and ``remove`` for a named account

OAuth material never reaches the trail. Authorization codes, PKCE
verifiers, CSRF state and every kind of token are replaced whole by
``[REDACTED]``, at any nesting depth.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any, TextIO

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

CREDENTIAL_EVENTS = frozenset({"authorize", "refresh", "revoke", "remove"})


class AuditEntry(BaseModel):
    """One line of the audit trail."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(UTC).isoformat(),
        description="UTC time the entry was recorded",
    )
    account: str = Field(
        default="default", description="Account email, or 'default' when unresolved"
    )
    tool_name: str = Field(..., description="MCP tool name, or 'auth' for credential events")
    action: str = Field(default="invoke", description="'invoke' or a credential event")
    parameters: dict[str, Any] = Field(
        default_factory=dict,
        description="Tool arguments or event details, OAuth material redacted",
    )
    result_status: str | None = Field(default=None, description="success or error")
    error_code: str | None = Field(default=None, description="Exception class on failure")
    duration_ms: float | None = Field(default=None, description="Tool run time")


class AuditLogger:
    """Writes the audit trail as JSON lines to stderr.

    stdout carries the MCP STDIO protocol, so the trail never uses it.

    Example:
        >>> audit_logger.log_auth_event("refresh", account="work@example.com")
        {"audit": {"account": "work@example.com", "tool_name": "auth", ...}}
    """

    SENSITIVE_KEYS = frozenset(
        {
            "token",
            "access_token",
            "refresh_token",
            "id_token",
            "client_secret",
            "secret",
            "credential",
            "authorization",
            "code",
            "code_verifier",
            "code_challenge",
            "state",
        }
    )
    SENSITIVE_SUFFIXES = ("_token", "_secret", "_verifier")

    def __init__(self, enabled: bool = True, stream: TextIO | None = None):
        self._enabled = enabled
        # None means whatever sys.stderr is at write time
        self._stream = stream
        logger.info("AuditLogger initialized (enabled=%s)", enabled)

    def _is_sensitive(self, key: str) -> bool:
        key = key.lower()
        return key in self.SENSITIVE_KEYS or key.endswith(self.SENSITIVE_SUFFIXES)

    def _redact(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {
                k: REDACTED if self._is_sensitive(str(k)) else self._redact(v)
                for k, v in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [self._redact(v) for v in value]
        return value

    def log(self, entry: AuditEntry) -> None:
        if not self._enabled:
            return

        stream = self._stream or sys.stderr
        try:
            stream.write(json.dumps({"audit": entry.model_dump()}, default=str) + "\n")
            stream.flush()
        except (TypeError, ValueError, OSError) as e:
            logger.error("Failed to write audit log: %s", e)

    def log_tool_call(
        self,
        tool_name: str,
        parameters: dict[str, Any],
        account: str = "default",
        result_status: str | None = None,
        error_code: str | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """Record one finished tool call.

        Args:
            tool_name: MCP tool name.
            parameters: Arguments the client sent; redacted before writing.
            account: Account the call resolved to.
            result_status: "success" or "error".
            error_code: Exception class name on failure.
            duration_ms: Run time of the tool body.
        """
        self.log(
            AuditEntry(
                account=account,
                tool_name=tool_name,
                parameters=self._redact(parameters),
                result_status=result_status,
                error_code=error_code,
                duration_ms=duration_ms,
            )
        )

    def log_auth_event(
        self,
        event: str,
        account: str = "default",
        success: bool = True,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record a credential lifecycle event for ``account``."""
        if event not in CREDENTIAL_EVENTS:
            logger.warning("Unknown credential event %r in audit trail", event)
        self.log(
            AuditEntry(
                account=account,
                tool_name="auth",
                action=event,
                parameters=self._redact(details or {}),
                result_status="success" if success else "error",
            )
        )


audit_logger = AuditLogger()
