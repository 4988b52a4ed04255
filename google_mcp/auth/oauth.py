"""Google OAuth 2.0 interactive authorization.

This module runs the authorization-code flow for a desktop/loopback
client: it binds a transient HTTP listener on 127.0.0.1, sends the user
to Google's consent page, waits for the redirect carrying the code,
validates the CSRF state, exchanges the code and fetches the account
identity.

Security considerations:
- The listener binds to the loopback address only and accepts exactly
  one redirect; later hits get 410 Gone
- The state parameter is compared in constant time; a mismatch aborts
  the attempt before any code exchange
- PKCE (S256) binds the code to this process
- The listener is shut down and its thread joined on every exit path
"""

from __future__ import annotations

import errno
import hmac
import logging
import queue
import threading
import time
import webbrowser
from concurrent.futures import Future
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import NamedTuple
from urllib.parse import parse_qs, urlencode, urlparse

from google_mcp.auth.credential import OAuthCredential
from google_mcp.auth.models import StoredCredential
from google_mcp.auth.state import generate_oauth_state, generate_pkce_pair
from google_mcp.auth.tokens import exchange_authorization_code, fetch_user_info
from google_mcp.config import GOOGLE_AUTH_URI, OAuthSettings
from google_mcp.utils.errors import (
    AuthenticationError,
    AuthorizationCancelledError,
    AuthorizationTimeoutError,
    CSRFMismatchError,
    ExchangeError,
    GoogleMCPError,
    ListenerBindError,
)

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"
# How often the redirect wait checks for cancellation
POLL_INTERVAL = 0.1

_SUCCESS_PAGE = (
    b"<html><body><h1>Authentication Successful!</h1>"
    b"<p>You can close this window and return to the application.</p></body></html>"
)
_FAILED_PAGE = (
    b"<html><body><h1>Authentication Failed</h1>"
    b"<p>You can close this window.</p></body></html>"
)
_MISMATCH_PAGE = (
    b"<html><body><h1>Security Error</h1>"
    b"<p>State mismatch. You can close this window.</p></body></html>"
)
_GONE_PAGE = (
    b"<html><body><h1>Link Expired</h1>"
    b"<p>This authorization request was already completed.</p></body></html>"
)


class _Redirect(NamedTuple):
    """Outcome of the single accepted redirect."""

    code: str | None
    error: GoogleMCPError | None


class _RedirectSession:
    """Per-attempt state shared between the listener thread and the waiter."""

    def __init__(self, state: str, callback_path: str) -> None:
        self.state = state
        self.callback_path = callback_path
        self.results: queue.Queue[_Redirect] = queue.Queue(maxsize=1)
        self._lock = threading.Lock()
        self._consumed = False

    def claim(self) -> bool:
        """Take the single redirect slot. False once it has been used."""
        with self._lock:
            if self._consumed:
                return False
            self._consumed = True
            return True

    def evaluate(self, query: str) -> _Redirect:
        params = parse_qs(query)

        returned_state = params.get("state", [""])[0]
        if not hmac.compare_digest(returned_state.encode(), self.state.encode()):
            # Don't leak state values in error details
            return _Redirect(
                None,
                CSRFMismatchError(
                    "State mismatch - possible CSRF attack",
                    details={"hint": "Request may have been tampered with"},
                ),
            )

        if "error" in params:
            oauth_error = params["error"][0]
            return _Redirect(
                None,
                AuthenticationError(
                    f"OAuth error: {oauth_error}", details={"oauth_error": oauth_error}
                ),
            )

        code = params.get("code", [""])[0]
        if not code:
            return _Redirect(
                None,
                AuthenticationError(
                    "No authorization code received",
                    details={"params": sorted(params.keys())},
                ),
            )
        return _Redirect(code, None)


def _make_handler(session: _RedirectSession) -> type[BaseHTTPRequestHandler]:
    class CallbackHandler(BaseHTTPRequestHandler):
        """HTTP request handler for the OAuth redirect."""

        def _respond(self, status: int, body: bytes = b"") -> None:
            self.send_response(status)
            self.send_header("Content-type", "text/html")
            self.send_header("Cache-Control", "no-store")
            self.end_headers()
            if body:
                self.wfile.write(body)

        def do_GET(self) -> None:  # noqa: N802
            parsed = urlparse(self.path)
            if parsed.path != session.callback_path:
                self._respond(404)
                return

            if not session.claim():
                self._respond(410, _GONE_PAGE)
                return

            outcome = session.evaluate(parsed.query)
            if isinstance(outcome.error, CSRFMismatchError):
                self._respond(400, _MISMATCH_PAGE)
            elif outcome.error is not None:
                self._respond(400, _FAILED_PAGE)
            else:
                self._respond(200, _SUCCESS_PAGE)
            session.results.put_nowait(outcome)

        def log_message(self, format: str, *args: object) -> None:
            logger.debug("OAuth callback server: %s", format % args)

    return CallbackHandler


class OAuthManager:
    """Runs the interactive authorization-code flow.

    Concurrent ``authenticate()`` calls on one manager share a single
    session: the second caller waits for the first and receives the same
    credential (or error).

    Example:
        >>> manager = OAuthManager(OAuthSettings.from_env())
        >>> credential = manager.authenticate()
        >>> account_manager.register(Account.from_credential(credential))
    """

    def __init__(self, settings: OAuthSettings) -> None:
        self._settings = settings
        self._session_lock = threading.Lock()
        self._inflight: Future[OAuthCredential] | None = None
        self._closed = threading.Event()

        if not settings.client.is_configured:
            logger.warning(
                "OAuth credentials not configured. Set GOOGLE_CLIENT_ID and "
                "GOOGLE_CLIENT_SECRET environment variables."
            )

    @property
    def settings(self) -> OAuthSettings:
        return self._settings

    @property
    def is_configured(self) -> bool:
        """Check if OAuth client credentials are set."""
        return self._settings.client.is_configured

    @property
    def authorizing(self) -> bool:
        """True while an authorization session is in flight."""
        with self._session_lock:
            return self._inflight is not None

    def shutdown(self) -> None:
        """Abandon any in-flight session and refuse new ones.

        The waiting session raises ``AuthorizationCancelledError`` within one
        poll interval and its listener is closed.
        """
        self._closed.set()
        logger.debug("OAuth manager shut down")

    def create_auth_url(
        self, state: str, redirect_uri: str, code_challenge: str | None = None
    ) -> str:
        """Create the Google consent URL.

        Args:
            state: CSRF state echoed back on the redirect.
            redirect_uri: Loopback URI of the listener.
            code_challenge: PKCE S256 challenge.

        Returns:
            The full authorization URL.
        """
        params = {
            "client_id": self._settings.client.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self._settings.scopes),
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"

        logger.debug("Created auth URL with state: %s", state[:8] + "...")
        return f"{GOOGLE_AUTH_URI}?{urlencode(params)}"

    def _create_server(
        self,
        handler_class: type[BaseHTTPRequestHandler],
        port: int,
        max_attempts: int = 3,
    ) -> tuple[HTTPServer, int]:
        """Bind the loopback listener, with fallback ports.

        Port 0 asks the OS for an ephemeral port and is tried once. A fixed
        port falls back to the next ``max_attempts - 1`` ports if in use.

        Returns:
            Tuple of (HTTPServer instance, actual port bound).

        Raises:
            ListenerBindError: If no port could be bound.
        """
        attempts = 1 if port == 0 else max_attempts
        for attempt in range(attempts):
            try_port = port + attempt if port else 0
            try:
                server = HTTPServer((LOOPBACK_HOST, try_port), handler_class)
            except OSError as e:
                if e.errno == errno.EADDRINUSE and attempt + 1 < attempts:
                    logger.warning("Port %d in use, trying %d...", try_port, try_port + 1)
                    continue
                if e.errno == errno.EADDRINUSE:
                    break
                raise ListenerBindError(
                    f"Could not bind OAuth listener: {e}",
                    details={"port": try_port, "error_type": type(e).__name__},
                ) from e

            actual_port = server.server_address[1]
            if attempt > 0:
                logger.info("Using fallback port %d (port %d was in use)", actual_port, port)
            else:
                logger.debug("OAuth callback server bound to port %d", actual_port)
            return server, actual_port

        raise ListenerBindError(
            f"Could not bind to ports {port}-{port + attempts - 1}. All ports are in use.",
            details={"attempted_ports": list(range(port, port + attempts))},
        )

    def authenticate(self, cancel_event: threading.Event | None = None) -> OAuthCredential:
        """Run the interactive flow and return the new credential.

        Args:
            cancel_event: Set by the caller to abandon the wait. Only the
                call that starts the session observes it.

        Returns:
            A credential with a non-empty refresh token.

        Raises:
            CSRFMismatchError: The redirect state did not match.
            AuthorizationTimeoutError: No redirect before the deadline.
            AuthorizationCancelledError: ``cancel_event`` was set or the
                manager was shut down.
            ListenerBindError: The listener could not bind.
            ExchangeError: The code exchange failed or issued no refresh token.
            AuthenticationError: Consent denied or identity lookup failed.
        """
        if not self.is_configured:
            raise AuthenticationError(
                "OAuth not configured",
                details={
                    "hint": "Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET "
                    "environment variables"
                },
            )

        if self._closed.is_set():
            raise AuthorizationCancelledError("OAuth manager is shut down")

        with self._session_lock:
            future = self._inflight
            leader = future is None
            if leader:
                future = Future()
                self._inflight = future

        assert future is not None
        if not leader:
            logger.info("Joining in-flight authorization session")
            return future.result()

        try:
            credential = self._run_session(cancel_event)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(credential)
            return credential
        finally:
            with self._session_lock:
                self._inflight = None

    def _run_session(self, cancel_event: threading.Event | None) -> OAuthCredential:
        state = generate_oauth_state()
        code_verifier, code_challenge = generate_pkce_pair()
        session = _RedirectSession(state, self._settings.callback_path)

        server, port = self._create_server(_make_handler(session), self._settings.port)
        thread = threading.Thread(
            target=server.serve_forever,
            kwargs={"poll_interval": 0.05},
            name="oauth-redirect-listener",
            daemon=True,
        )
        thread.start()

        redirect_uri = f"http://{LOOPBACK_HOST}:{port}{self._settings.callback_path}"
        try:
            auth_url = self.create_auth_url(state, redirect_uri, code_challenge)
            self._present(auth_url)
            outcome = self._wait_for_redirect(session, cancel_event)
        finally:
            server.shutdown()
            server.server_close()
            thread.join()
            logger.debug("OAuth callback server on port %d closed", port)

        if outcome.error is not None:
            logger.warning("Authorization failed: %s", outcome.error.message)
            raise outcome.error

        assert outcome.code is not None
        return self._complete(outcome.code, redirect_uri, code_verifier)

    def _present(self, auth_url: str) -> None:
        logger.info("Authorize this application by visiting: %s", auth_url)
        if self._settings.open_browser:
            if not webbrowser.open(auth_url):
                logger.warning("Could not open a browser; open the URL above manually")

    def _wait_for_redirect(
        self, session: _RedirectSession, cancel_event: threading.Event | None
    ) -> _Redirect:
        timeout = self._settings.timeout_seconds
        deadline = time.monotonic() + timeout

        while True:
            if self._closed.is_set() or (cancel_event is not None and cancel_event.is_set()):
                raise AuthorizationCancelledError("Authorization was cancelled")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise AuthorizationTimeoutError(
                    "Authentication timed out",
                    details={"timeout_seconds": timeout},
                )
            try:
                return session.results.get(timeout=min(POLL_INTERVAL, remaining))
            except queue.Empty:
                continue

    def _complete(self, code: str, redirect_uri: str, code_verifier: str) -> OAuthCredential:
        client = self._settings.client
        tokens = exchange_authorization_code(client, code, redirect_uri, code_verifier)

        if not tokens.get("refresh_token"):
            raise ExchangeError(
                "No refresh token issued",
                details={"hint": "Revoke prior access and re-consent with access_type=offline"},
            )

        info = fetch_user_info(tokens["access_token"])
        record = StoredCredential(
            account_email=info["email"],
            access_token=tokens["access_token"],
            refresh_token=tokens["refresh_token"],
            expiry=tokens["expiry"],
            scopes=tokens.get("scopes") or list(self._settings.scopes),
        )
        logger.info("Authorized account %s", record.account_email)
        return OAuthCredential(record, client, display_name=info.get("name"))


__all__ = [
    "LOOPBACK_HOST",
    "OAuthManager",
]
