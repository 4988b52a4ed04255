"""Google API client construction on top of the account registry."""

from google_mcp.workspace.client import ServiceFactory

__all__ = ["ServiceFactory"]
