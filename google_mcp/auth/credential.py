"""Per-account OAuth credential with single-flight refresh.

An ``OAuthCredential`` owns one account's token record and lifecycle
state. Its fields only change through ``_commit``, which takes the write
side of the credential's guard lock. A credential registered with an
``AccountManager`` is attached to the manager's lock, so every field
mutation happens under the registry's write lock and persistence is
scheduled by the manager after the lock is released.

Refresh is single-flight: the first caller that observes an expiring
token performs the exchange; everyone arriving while it runs waits on the
same ``Future`` and receives the same record.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from datetime import UTC, datetime, timedelta
from typing import Any

from google.auth import credentials as google_credentials
from google.auth.transport.requests import AuthorizedSession

from google_mcp.auth.models import TERMINAL_STATES, CredentialState, StoredCredential
from google_mcp.auth.tokens import refresh_access_token, revoke_token
from google_mcp.config import OAuthClientConfig
from google_mcp.utils.errors import ReauthRequiredError, RevocationError
from google_mcp.utils.locks import ReadWriteLock

logger = logging.getLogger(__name__)

# Refresh this long before expiry so a token never expires mid-request
REFRESH_BUFFER = timedelta(minutes=5)

CommitHook = Callable[["OAuthCredential", StoredCredential, CredentialState], None]


class OAuthCredential:
    """OAuth client for a single Google account.

    Attributes:
        account_email: Normalized account address (immutable).
        display_name: Informational account name, if known.

    Example:
        >>> credential = OAuthCredential(record, client_config)
        >>> session = credential.get_http_client()
        >>> session.get("https://tasks.googleapis.com/tasks/v1/users/@me/lists")
    """

    def __init__(
        self,
        record: StoredCredential,
        client: OAuthClientConfig,
        display_name: str | None = None,
        state: CredentialState = CredentialState.AUTHORIZED,
    ) -> None:
        self.account_email = record.account_email
        self.display_name = display_name
        self._client = client
        self._record = record
        self._state = state
        self._guard = ReadWriteLock()
        self._on_commit: CommitHook | None = None
        self._flight_lock = threading.Lock()
        self._inflight: Future[StoredCredential] | None = None

    def attach(self, guard: ReadWriteLock, on_commit: CommitHook) -> None:
        """Move this credential under an owner's lock and commit hook.

        Called by the account manager at registration, before the
        credential is shared with other threads.
        """
        self._guard = guard
        self._on_commit = on_commit

    # =========================================================================
    # Reads
    # =========================================================================

    def _peek(self) -> tuple[StoredCredential, CredentialState]:
        """Read fields without locking; the caller must hold the guard."""
        return self._record, self._state

    def _read(self) -> tuple[StoredCredential, CredentialState]:
        with self._guard.read():
            return self._record, self._state

    @property
    def snapshot(self) -> StoredCredential:
        """Current immutable token record."""
        return self._read()[0]

    @property
    def state(self) -> CredentialState:
        return self._read()[1]

    @staticmethod
    def _expiring(record: StoredCredential, now: datetime | None = None) -> bool:
        now = now or datetime.now(UTC)
        return not record.access_token or now + REFRESH_BUFFER >= record.expiry

    def needs_refresh(self, now: datetime | None = None) -> bool:
        """True if the access token is missing or inside the refresh window."""
        record, state = self._read()
        return state not in TERMINAL_STATES and self._expiring(record, now)

    # =========================================================================
    # Mutation
    # =========================================================================

    def _commit(self, record: StoredCredential, state: CredentialState) -> bool:
        """Replace fields under the write lock, then notify the owner.

        Terminal states are never left: a refresh finishing after a
        revocation is discarded.

        Returns:
            True if the change was applied.
        """
        with self._guard.write():
            if self._state in TERMINAL_STATES and state is not self._state:
                return False
            changed = record is not self._record or state is not self._state
            self._record = record
            self._state = state
        if changed and self._on_commit is not None:
            self._on_commit(self, record, state)
        return True

    def ensure_fresh(self) -> StoredCredential:
        """Return a record whose access token is outside the refresh window.

        Raises:
            ReauthRequiredError: If the credential is in a terminal state.
            ExchangeError: If a needed refresh failed transiently.
        """
        record, state = self._read()
        if state in TERMINAL_STATES:
            raise ReauthRequiredError(
                "Credential requires re-authorization",
                details={"account": self.account_email, "state": state.value},
            )
        if not self._expiring(record):
            return record
        return self.refresh()

    def get_access_token(self) -> str:
        """Return a valid access token, refreshing first if needed."""
        token = self.ensure_fresh().access_token
        assert token is not None  # a refreshed record always carries one
        return token

    def refresh(self, force: bool = False) -> StoredCredential:
        """Refresh the access token, coalescing concurrent attempts.

        Args:
            force: Refresh even if the token is outside the refresh window
                (used after the API answered 401).

        Returns:
            The record after refresh (or the current one if no refresh was
            needed).

        Raises:
            ReauthRequiredError: If the refresh token was rejected or the
                credential is already terminal.
            ExchangeError: For transient token endpoint failures.
        """
        with self._flight_lock:
            future = self._inflight
            leader = future is None
            if leader:
                record, state = self._read()
                if state in TERMINAL_STATES:
                    raise ReauthRequiredError(
                        "Credential requires re-authorization",
                        details={"account": self.account_email, "state": state.value},
                    )
                if not force and not self._expiring(record):
                    return record
                future = Future()
                self._inflight = future

        if not leader:
            assert future is not None
            logger.debug("Joining in-flight refresh for %s", self.account_email)
            return future.result()

        assert future is not None
        try:
            result = self._run_refresh(record)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._flight_lock:
                self._inflight = None

    def _run_refresh(self, record: StoredCredential) -> StoredCredential:
        if not self._commit(record, CredentialState.REFRESHING):
            raise ReauthRequiredError(
                "Credential requires re-authorization",
                details={"account": self.account_email},
            )
        try:
            new_record = refresh_access_token(self._client, record)
        except ReauthRequiredError:
            self._commit(record, CredentialState.UNAUTHENTICATED)
            raise
        except Exception:
            self._commit(record, CredentialState.AUTHORIZED)
            raise

        if not self._commit(new_record, CredentialState.AUTHORIZED):
            raise ReauthRequiredError(
                "Credential was revoked during refresh",
                details={"account": self.account_email},
            )
        return new_record

    def revoke(self) -> None:
        """Revoke the access token and the refresh token with Google.

        Both tokens are revoked with separate calls; a failure on one does
        not prevent the other attempt. The credential is REVOKED locally
        either way.

        Raises:
            RevocationError: If either revocation failed.
        """
        record, _ = self._read()
        failed: list[str] = []

        for name, token in (
            ("access_token", record.access_token),
            ("refresh_token", record.refresh_token),
        ):
            if not token:
                continue
            try:
                revoke_token(token)
            except RevocationError as e:
                logger.warning("Failed to revoke %s for %s: %s", name, self.account_email, e)
                failed.append(name)

        self._commit(record, CredentialState.REVOKED)

        if failed:
            raise RevocationError(
                "Token revocation failed",
                failed=failed,
                details={"account": self.account_email, "failed": failed},
            )
        logger.info("Revoked credentials for %s", self.account_email)

    # =========================================================================
    # Transports
    # =========================================================================

    def get_client_option(self) -> ManagedCredentials:
        """google-auth credentials for ``googleapiclient.discovery.build``."""
        return ManagedCredentials(self)

    def get_http_client(self) -> AuthorizedSession:
        """requests session that attaches a valid token to every call."""
        return AuthorizedSession(self.get_client_option())

    def __repr__(self) -> str:
        return f"OAuthCredential(account_email={self.account_email!r}, state={self.state.value!r})"


class ManagedCredentials(google_credentials.Credentials):
    """google-auth adapter that defers every refresh to an OAuthCredential.

    Transports built on google-auth call ``before_request`` on every
    request and ``refresh`` after a 401. Both go through the owning
    credential, so refreshes stay single-flight and are committed under
    the owner's lock.
    """

    def __init__(self, credential: OAuthCredential) -> None:
        super().__init__()
        self._credential = credential
        self._sync(credential.snapshot)

    def _sync(self, record: StoredCredential) -> None:
        self.token = record.access_token
        # google-auth compares expiry against naive UTC
        self.expiry = record.expiry.astimezone(UTC).replace(tzinfo=None)

    def refresh(self, request: Any) -> None:
        self._sync(self._credential.refresh(force=True))

    def before_request(self, request: Any, method: str, url: str, headers: dict) -> None:
        self._sync(self._credential.ensure_fresh())
        self.apply(headers)


__all__ = [
    "REFRESH_BUFFER",
    "ManagedCredentials",
    "OAuthCredential",
]
