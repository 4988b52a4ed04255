"""Multi-account credential registry.

The ``AccountManager`` owns every registered account. A single
reader/writer lock guards the registry map and, through
``OAuthCredential.attach``, the mutable fields of every registered
credential. Token files are written by a single-worker executor after
the lock has been released; each queued write reads the registry when it
runs, so the file always ends up matching the final in-memory state. The
registration order and default account are kept in a separate index file.

Lock discipline: the lock is not reentrant. Code holding it reads
credential fields with ``_peek()`` and never calls a credential method
that takes the guard (``snapshot``, ``state``, ``refresh``, ``revoke``).
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import Executor, ThreadPoolExecutor
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any

from google.auth.transport.requests import AuthorizedSession

from google_mcp.auth.credential import ManagedCredentials, OAuthCredential
from google_mcp.auth.models import (
    TERMINAL_STATES,
    AccountIndex,
    AccountInfo,
    CredentialState,
    StoredCredential,
)
from google_mcp.auth.storage import TokenStorage
from google_mcp.config import OAuthClientConfig
from google_mcp.utils.errors import (
    AccountNotFoundError,
    ExchangeError,
    InsecurePermissionsError,
    NoAccountError,
    ReauthRequiredError,
    TokenError,
    ValidationError,
)
from google_mcp.utils.locks import ReadWriteLock

logger = logging.getLogger(__name__)

# Account bound to the current request context, "" means default
_request_account: ContextVar[str] = ContextVar("google_mcp_request_account", default="")


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass(frozen=True)
class Account:
    """A registered identity and the credential it exclusively owns."""

    email: str
    credential: OAuthCredential
    display_name: str | None = None

    @classmethod
    def from_credential(cls, credential: OAuthCredential) -> Account:
        return cls(
            email=credential.account_email,
            credential=credential,
            display_name=credential.display_name,
        )


class AccountManager:
    """Concurrency-safe registry mapping email -> Account.

    Attributes:
        _accounts: Registered accounts in registration order.
        _default: Explicitly marked default account, if any.

    Example:
        >>> manager = AccountManager(TokenStorage(), settings.client)
        >>> manager.load_accounts()
        >>> session = manager.get_http_client("work@example.com")
    """

    def __init__(
        self,
        storage: TokenStorage,
        client: OAuthClientConfig,
        executor: Executor | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            storage: Token store for persistence.
            client: OAuth client used for credentials restored from disk.
            executor: Persistence executor. Must run tasks one at a time in
                submission order; defaults to a private single worker.
        """
        self._storage = storage
        self._client = client
        self._lock = ReadWriteLock()
        self._accounts: dict[str, Account] = {}
        self._default: str | None = None
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="token-persist"
        )
        self._refresh_stop = threading.Event()
        self._refresh_thread: threading.Thread | None = None

    # =========================================================================
    # Persistence
    # =========================================================================

    def _schedule(self, fn: Callable[..., Any], *args: Any) -> None:
        """Queue a token store write. Never call while holding the lock."""

        def task() -> None:
            try:
                fn(*args)
            except TokenError as e:
                logger.error("Credential persistence failed: %s", e)

        try:
            self._executor.submit(task)
        except RuntimeError:
            # Executor already shut down
            task()

    def _persist(self, email: str) -> None:
        """Make the token file for ``email`` match the registry right now.

        Every registry or credential change for an account queues one of
        these after the change, so the last one to run writes the final
        state whatever order the changes raced in.
        """
        with self._lock.read():
            account = self._accounts.get(email)
            if account is None:
                record, state = None, None
            else:
                record, state = account.credential._peek()

        if record is None or state is CredentialState.REVOKED:
            self._storage.delete(email)
        else:
            self._storage.save_account(record)

    def _persist_index(self) -> None:
        with self._lock.read():
            index = AccountIndex(accounts=list(self._accounts), default=self._default)
        self._storage.save_index(index)

    def _on_commit(
        self,
        credential: OAuthCredential,
        record: StoredCredential,
        state: CredentialState,
    ) -> None:
        with self._lock.read():
            account = self._accounts.get(credential.account_email)
            registered = account is not None and account.credential is credential
        if not registered:
            return

        if state is CredentialState.UNAUTHENTICATED:
            logger.warning("Account %s requires re-authorization", credential.account_email)
        elif state is not CredentialState.REFRESHING:
            self._schedule(self._persist, credential.account_email)

    def flush(self, timeout: float | None = None) -> None:
        """Block until every write scheduled so far has completed."""
        try:
            self._executor.submit(lambda: None).result(timeout=timeout)
        except RuntimeError:
            pass

    # =========================================================================
    # Registry
    # =========================================================================

    def register(self, account: Account, make_default: bool = False) -> None:
        """Register (or replace) an account and persist its credential.

        An existing entry with the same email is replaced in place,
        keeping its registration position.

        Raises:
            ValidationError: If the account's email and credential disagree,
                or the credential is unusable.
        """
        self._register(account, make_default, persist=True)

    def _register(self, account: Account, make_default: bool, persist: bool) -> None:
        credential = account.credential
        email = normalize_email(account.email)
        if not email or email != credential.account_email:
            raise ValidationError(
                "Account email does not match its credential",
                field="email",
            )

        # Not yet shared, so the credential's own guard is uncontended
        record, state = credential._read()
        if not record.access_token and not record.refresh_token:
            raise ValidationError("Credential has no tokens", field="credential")
        if state in TERMINAL_STATES:
            raise ValidationError(
                "Credential is not authorized",
                field="credential",
                details={"state": state.value},
            )

        credential.attach(self._lock, self._on_commit)
        if account.email != email:
            account = Account(email=email, credential=credential, display_name=account.display_name)

        with self._lock.write():
            replaced = email in self._accounts
            self._accounts[email] = account
            if make_default:
                self._default = email

        if persist:
            self._schedule(self._persist, email)
            self._schedule(self._persist_index)
        logger.info("%s account %s", "Replaced" if replaced else "Registered", email)

    def _resolve(self, email: str) -> Account:
        """Resolve an account; the caller must hold the lock."""
        if not self._accounts:
            raise NoAccountError("No accounts are registered")

        if email:
            account = self._accounts.get(normalize_email(email))
            if account is None:
                raise AccountNotFoundError(
                    "Account not registered", details={"account": normalize_email(email)}
                )
            return account

        if self._default is not None:
            return self._accounts[self._default]
        return next(iter(self._accounts.values()))

    def get_account(self, email: str = "") -> Account:
        """Look up an account; ``""`` resolves to the default.

        The default is the explicitly marked account if any, otherwise the
        first registered one.

        Raises:
            NoAccountError: If no accounts are registered.
            AccountNotFoundError: If ``email`` is not registered.
        """
        with self._lock.read():
            return self._resolve(email)

    @contextmanager
    def request_account(self, email: str) -> Iterator[None]:
        """Bind an account to the current context for one request."""
        token = _request_account.set(normalize_email(email))
        try:
            yield
        finally:
            _request_account.reset(token)

    def get_account_for_context(self) -> Account:
        """Resolve the account bound by ``request_account``, else the default."""
        return self.get_account(_request_account.get())

    def has_account(self, email: str) -> bool:
        with self._lock.read():
            return normalize_email(email) in self._accounts

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._accounts)

    def list_accounts(self) -> list[AccountInfo]:
        """Read-only views of all accounts, in registration order."""
        with self._lock.read():
            if not self._accounts:
                return []
            default_email = self._default or next(iter(self._accounts))
            views = []
            for email, account in self._accounts.items():
                record, state = account.credential._peek()
                views.append(
                    AccountInfo(
                        email=email,
                        display_name=account.display_name,
                        state=state,
                        expiry=record.expiry,
                        scopes=list(record.scopes),
                        has_refresh_token=bool(record.refresh_token),
                        is_default=email == default_email,
                    )
                )
            return views

    def set_default(self, email: str) -> None:
        """Mark an account as the default.

        Raises:
            AccountNotFoundError: If ``email`` is not registered.
        """
        email = normalize_email(email)
        with self._lock.write():
            if email not in self._accounts:
                raise AccountNotFoundError("Account not registered", details={"account": email})
            self._default = email
        self._schedule(self._persist_index)
        logger.info("Default account set to %s", email)

    def remove(self, email: str, revoke: bool = False) -> Account:
        """Unregister an account and delete its stored credential.

        Args:
            email: Account to remove.
            revoke: Also revoke both tokens with Google.

        Returns:
            The removed account.

        Raises:
            AccountNotFoundError: If ``email`` is not registered.
            RevocationError: If revocation was requested and failed. The
                account is removed regardless.
        """
        email = normalize_email(email)
        with self._lock.write():
            account = self._accounts.pop(email, None)
            if account is None:
                raise AccountNotFoundError("Account not registered", details={"account": email})
            if self._default == email:
                self._default = None

        self._schedule(self._persist, email)
        self._schedule(self._persist_index)
        logger.info("Removed account %s", email)

        if revoke:
            account.credential.revoke()
        return account

    def load_accounts(self) -> list[str]:
        """Register every account found in the token directory.

        Accounts are restored in their saved registration order, followed
        by any files the index does not list, and the saved default is
        restored. Corrupt or unreadable files are skipped with a warning.
        Accounts already registered are left alone.

        Returns:
            Emails of the accounts restored.

        Raises:
            InsecurePermissionsError: If any credential file or the account
                index is group or world accessible.
        """
        try:
            index = self._storage.load_index()
        except InsecurePermissionsError:
            raise
        except TokenError as e:
            logger.warning("Ignoring account index: %s", e.message)
            index = AccountIndex()

        records = []
        for path in self._storage.list_paths():
            try:
                records.append(self._storage.load(path))
            except InsecurePermissionsError:
                raise
            except TokenError as e:
                logger.warning("Skipping credential file %s: %s", path.name, e.message)

        rank = {email: i for i, email in enumerate(index.accounts)}
        records.sort(key=lambda r: rank.get(r.account_email, len(rank)))

        restored = []
        for record in records:
            if self.has_account(record.account_email):
                continue
            credential = OAuthCredential(record, self._client)
            self._register(Account.from_credential(credential), False, persist=False)
            restored.append(record.account_email)

        if index.default in restored:
            with self._lock.write():
                if self._default is None:
                    self._default = index.default

        logger.info("Restored %d account(s) from %s", len(restored), self._storage.base_dir)
        return restored

    # =========================================================================
    # Transports
    # =========================================================================

    def get_http_client(self, email: str = "") -> AuthorizedSession:
        """Auto-refreshing requests session for an account."""
        return self.get_account(email).credential.get_http_client()

    def get_client_option(self, email: str = "") -> ManagedCredentials:
        """google-auth credentials for an account, for ``discovery.build``."""
        return self.get_account(email).credential.get_client_option()

    # =========================================================================
    # Refresh
    # =========================================================================

    def refresh_all(self, force: bool = False) -> dict[str, str]:
        """Refresh every credential inside its refresh window.

        Returns:
            Mapping of email to outcome: ``refreshed``, ``fresh``,
            ``reauth_required`` or ``failed``.
        """
        with self._lock.read():
            credentials = [a.credential for a in self._accounts.values()]

        results: dict[str, str] = {}
        for credential in credentials:
            email = credential.account_email
            if credential.state in TERMINAL_STATES:
                results[email] = "reauth_required"
                continue
            if not force and not credential.needs_refresh():
                results[email] = "fresh"
                continue
            try:
                credential.refresh(force=force)
                results[email] = "refreshed"
            except ReauthRequiredError:
                results[email] = "reauth_required"
            except ExchangeError as e:
                logger.warning("Refresh failed for %s: %s", email, e.message)
                results[email] = "failed"
        return results

    def start_background_refresh(self, interval: float) -> None:
        """Refresh expiring credentials every ``interval`` seconds (0 disables)."""
        if interval <= 0:
            return
        if self._refresh_thread is not None and self._refresh_thread.is_alive():
            return

        self._refresh_stop.clear()

        def loop() -> None:
            while not self._refresh_stop.wait(interval):
                results = self.refresh_all()
                refreshed = [e for e, r in results.items() if r == "refreshed"]
                if refreshed:
                    logger.debug("Background refresh renewed %s", ", ".join(refreshed))

        self._refresh_thread = threading.Thread(target=loop, name="token-refresh", daemon=True)
        self._refresh_thread.start()
        logger.info("Background token refresh every %.0fs", interval)

    def stop_background_refresh(self) -> None:
        self._refresh_stop.set()
        if self._refresh_thread is not None:
            self._refresh_thread.join()
            self._refresh_thread = None

    def close(self) -> None:
        """Stop background refresh and drain pending writes."""
        self.stop_background_refresh()
        self.flush()
        if self._owns_executor:
            self._executor.shutdown(wait=True)


__all__ = [
    "Account",
    "AccountManager",
    "normalize_email",
]
