"""Google MCP tools package.

Account tools manage the credential core: sign-in, listing, default
selection, refresh, status and sign-out.
"""

from google_mcp.tools.accounts import (
    accounts_add,
    accounts_list,
    accounts_refresh,
    accounts_remove,
    accounts_set_default,
    accounts_status,
)
from google_mcp.tools.base import (
    build_error_response,
    build_success_response,
    error_response_from,
    execute_tool,
)

__all__ = [
    # Base utilities
    "build_error_response",
    "build_success_response",
    "error_response_from",
    "execute_tool",
    # Account tools
    "accounts_add",
    "accounts_list",
    "accounts_refresh",
    "accounts_remove",
    "accounts_set_default",
    "accounts_status",
]
