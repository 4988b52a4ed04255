"""Authenticated Google API client factory."""

from __future__ import annotations

import logging
import threading
from typing import Any

import httplib2
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import Resource, build
from googleapiclient.http import HttpRequest

from google_mcp.auth.accounts import AccountManager
from google_mcp.auth.credential import OAuthCredential

logger = logging.getLogger(__name__)


def _authorized_http(credential: OAuthCredential) -> AuthorizedHttp:
    """A private httplib2 connection carrying the account's credentials."""
    return AuthorizedHttp(credential.get_client_option(), http=httplib2.Http())


def _request_builder(credential: OAuthCredential):
    """``requestBuilder`` giving every API request its own connection.

    httplib2.Http is not thread-safe, and a cached service is shared by
    every tool call for its account.
    """

    def build_request(http: Any, *args: Any, **kwargs: Any) -> HttpRequest:
        return HttpRequest(_authorized_http(credential), *args, **kwargs)

    return build_request


class ServiceFactory:
    """Factory for authenticated Google API services.

    Services are cached per (account, api, version). A cached service is
    reused only while the account still holds the credential it was built
    with, so re-authorizing an account transparently rebuilds its
    services. Token refresh happens inside the credential, never here.
    Each request made through a service opens its own HTTP connection,
    so one cached service may be used from several threads at once.
    """

    def __init__(self, accounts: AccountManager) -> None:
        self._accounts = accounts
        self._services: dict[tuple[str, str, str], tuple[OAuthCredential, Resource]] = {}
        self._lock = threading.Lock()

    def get_service(self, api: str, version: str, account: str = "") -> Resource:
        """Get an authenticated API service.

        Args:
            api: Discovery API name, e.g. "drive" or "oauth2".
            version: API version, e.g. "v3".
            account: Account email; "" uses the request's bound account or
                the default.

        Returns:
            googleapiclient Resource object.

        Raises:
            NoAccountError: If no account can be resolved.
        """
        if account:
            resolved = self._accounts.get_account(account)
        else:
            resolved = self._accounts.get_account_for_context()
        key = (resolved.email, api, version)

        with self._lock:
            cached = self._services.get(key)
            if cached is not None and cached[0] is resolved.credential:
                return cached[1]

        service = build(
            api,
            version,
            http=_authorized_http(resolved.credential),
            requestBuilder=_request_builder(resolved.credential),
            cache_discovery=False,
        )
        with self._lock:
            self._services[key] = (resolved.credential, service)

        logger.debug("Created %s %s service for %s", api, version, resolved.email)
        return service

    def invalidate(self, account: str | None = None) -> None:
        """Drop cached services for one account, or for all if ``None``."""
        with self._lock:
            if account is None:
                self._services.clear()
                return
            account = account.strip().lower()
            for key in [k for k in self._services if k[0] == account]:
                del self._services[key]
        logger.debug("Invalidated service cache for %s", account)
