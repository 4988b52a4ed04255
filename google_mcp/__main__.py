"""Entry point for Google MCP Server."""

from __future__ import annotations

import logging
import os
import sys

from dotenv import load_dotenv


def configure_logging() -> None:
    """Configure logging to stderr (STDIO-safe).

    Sends all logs to stderr so they don't interfere with MCP's
    STDIO transport which uses stdout for JSON-RPC messages.

    Respects LOG_LEVEL env var (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = logging.getLevelNamesMapping().get(log_level_str, logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    # Reduce noise from Google libraries
    logging.getLogger("googleapiclient").setLevel(logging.WARNING)
    logging.getLogger("google.auth").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def validate_environment() -> bool:
    """Validate required environment variables.

    Returns:
        True if all required variables are present and valid, False otherwise.
    """
    logger = logging.getLogger(__name__)

    required = ["GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET"]
    missing = [var for var in required if not os.getenv(var)]

    if missing:
        logger.error("Missing required environment variables: %s", ", ".join(missing))
        return False

    for var in ("OAUTH_PORT", "OAUTH_TIMEOUT", "REFRESH_INTERVAL"):
        value = os.getenv(var)
        if value is None:
            continue
        try:
            float(value)
        except ValueError:
            logger.error("%s must be a number", var)
            return False

    return True


def main() -> None:
    """Main entry point.

    Loads environment, validates configuration, wires the credential core
    and starts the MCP server with the selected transport.
    """
    # Load .env file if present
    load_dotenv()

    # Configure logging first
    configure_logging()
    logger = logging.getLogger(__name__)

    if not validate_environment():
        logger.error("Environment validation failed. Exiting.")
        sys.exit(1)

    # Import after environment is validated
    from google_mcp.auth import AccountManager, OAuthManager, TokenStorage
    from google_mcp.config import OAuthSettings
    from google_mcp.server import create_server

    settings = OAuthSettings.from_env()
    accounts = AccountManager(TokenStorage(settings.token_dir), settings.client)
    mcp = create_server(accounts, OAuthManager(settings))

    transport = os.getenv("TRANSPORT", "stdio").lower()

    match transport:
        case "sse" | "http":
            import uvicorn

            host = os.getenv("HOST", "127.0.0.1")
            port = int(os.getenv("PORT", "3000"))
            logger.info("Starting Google MCP Server with SSE transport on %s:%d", host, port)
            uvicorn.run(mcp.sse_app(), host=host, port=port, log_level="info")
        case "streamable-http":
            logger.info("Starting Google MCP Server with streamable-http transport")
            mcp.run(transport="streamable-http")
        case _:
            logger.info("Starting Google MCP Server with STDIO transport")
            mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
