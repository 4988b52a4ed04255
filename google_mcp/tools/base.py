"""Base utilities for Google MCP tools.

This module provides shared utilities used by all tools including:
- Standardized response builders
- Opaque error mapping for the remote client
- The audit-logged execution wrapper
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from google_mcp.middleware.audit_logger import audit_logger
from google_mcp.utils.errors import GoogleMCPError

logger = logging.getLogger(__name__)

# Returned for anything that is not a GoogleMCPError
INTERNAL_ERROR = "Internal error"


# =============================================================================
# Standard Response Keys
# =============================================================================


class ResponseKeys:
    """Standard keys for tool responses."""

    STATUS = "status"
    DATA = "data"
    MESSAGE = "message"
    COUNT = "count"
    ERROR = "error"
    ERROR_CODE = "error_code"


# =============================================================================
# Response Builders
# =============================================================================


def build_success_response(
    data: Any,
    message: str | None = None,
    count: int | None = None,
) -> dict[str, Any]:
    """Build standardized success response.

    Args:
        data: Tool-specific payload.
        message: Optional human-readable message.
        count: Optional item count.

    Returns:
        Standardized success response dict.
    """
    response: dict[str, Any] = {
        ResponseKeys.STATUS: "success",
        ResponseKeys.DATA: data,
    }
    if message:
        response[ResponseKeys.MESSAGE] = message
    if count is not None:
        response[ResponseKeys.COUNT] = count
    return response


def build_error_response(error: str, error_code: str | None = None) -> dict[str, Any]:
    """Build standardized error response.

    Callers pass only opaque strings here; internal detail belongs in
    the local log.
    """
    response: dict[str, Any] = {
        ResponseKeys.STATUS: "error",
        ResponseKeys.ERROR: error,
    }
    if error_code:
        response[ResponseKeys.ERROR_CODE] = error_code
    return response


def error_response_from(exc: BaseException) -> dict[str, Any]:
    """Map an exception to the response the remote client sees.

    Only the class's ``public_message`` and name leave the process. The
    message, details, paths and tokens stay in the log.
    """
    if isinstance(exc, GoogleMCPError):
        logger.warning("%s: %s", type(exc).__name__, exc)
        return build_error_response(exc.public_message, type(exc).__name__)

    logger.exception("Unexpected %s in tool call", type(exc).__name__)
    return build_error_response(INTERNAL_ERROR, "InternalError")


# =============================================================================
# Tool Execution Wrapper
# =============================================================================


async def execute_tool(
    tool_name: str,
    params: dict[str, Any],
    operation: Callable[[], dict[str, Any]],
    account: str = "default",
) -> dict[str, Any]:
    """Execute a tool operation with audit logging and error mapping.

    The operation is blocking (network calls, the authorization wait) and
    runs in a worker thread. The current context, including any account
    bound with ``AccountManager.request_account``, is carried over.

    Args:
        tool_name: Name of the tool being executed.
        params: Tool parameters (for audit logging).
        operation: Sync callable returning a response dict.
        account: Account the call applies to, for the audit trail.

    Returns:
        The operation's response, or an opaque error response.
    """
    start_time = time.perf_counter()
    result_status = "success"
    error_code: str | None = None

    try:
        return await asyncio.to_thread(operation)

    except Exception as e:
        result_status = "error"
        response = error_response_from(e)
        error_code = response[ResponseKeys.ERROR_CODE]
        return response

    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        audit_logger.log_tool_call(
            tool_name=tool_name,
            parameters=params,
            account=account,
            result_status=result_status,
            error_code=error_code,
            duration_ms=duration_ms,
        )


__all__ = [
    "INTERNAL_ERROR",
    "ResponseKeys",
    "build_error_response",
    "build_success_response",
    "error_response_from",
    "execute_tool",
]
