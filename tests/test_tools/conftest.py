"""Fixtures for tool tests."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from google_mcp.workspace.client import ServiceFactory


@pytest.fixture
def mock_audit_logger():
    """Mock audit_logger in the execution wrapper and the account tools."""
    with (
        patch("google_mcp.tools.base.audit_logger") as mock,
        patch("google_mcp.tools.accounts.audit_logger", new=mock),
    ):
        yield mock


@pytest.fixture
def mock_oauth_service(mocker) -> MagicMock:
    """Mock oauth2 v2 API service."""
    service = mocker.MagicMock()
    service.userinfo.return_value.get.return_value.execute.return_value = {
        "email": "user@example.com"
    }
    return service


@pytest.fixture
def mock_services(mock_oauth_service: MagicMock) -> MagicMock:
    """Mock ServiceFactory returning the oauth2 service."""
    services = MagicMock(spec=ServiceFactory)
    services.get_service.return_value = mock_oauth_service
    return services


@pytest.fixture
def mock_oauth(mocker) -> MagicMock:
    """Mock OAuthManager."""
    return mocker.MagicMock()
