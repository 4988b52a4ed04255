"""Middleware for the Google MCP server."""

from google_mcp.middleware.audit_logger import AuditEntry, AuditLogger, audit_logger

__all__ = ["AuditEntry", "AuditLogger", "audit_logger"]
