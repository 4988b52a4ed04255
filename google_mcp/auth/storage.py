"""Secure token storage with file-based persistence.

This module provides file-based storage for OAuth credentials, one JSON
file per account.

Storage location: ~/.google-mcp-server/tokens/{sanitized email}.json
Account index: ~/.google-mcp-server/tokens/.accounts.json (order and default)

Security considerations:
- Files are written with 0600 permissions via a temp file and an atomic
  rename, so a partially written credential is never visible
- Files with any group/other permission bit are refused on load, before
  their content is read
- The token directory is created with 0700 permissions
- Account IDs are sanitized to prevent path traversal attacks
"""

from __future__ import annotations

import json
import logging
import os
import stat
import tempfile
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from google_mcp.auth.models import AccountIndex, StoredCredential
from google_mcp.config import DEFAULT_TOKEN_DIR
from google_mcp.utils.errors import (
    CorruptTokenError,
    InsecurePermissionsError,
    TokenError,
    TokenNotFoundError,
)

logger = logging.getLogger(__name__)

TOKEN_SUFFIX = ".json"
INDEX_NAME = ".accounts.json"
FILE_MODE = 0o600
DIR_MODE = 0o700
# Any group/other permission bit
INSECURE_BITS = stat.S_IRWXG | stat.S_IRWXO


class TokenStorage:
    """File-based credential storage.

    Stores one credential per account, each with owner-only permissions.
    Single-process ownership is assumed; writes are not coordinated
    across processes.

    Attributes:
        _base_dir: Directory where credential files are stored.

    Example:
        >>> storage = TokenStorage()
        >>> storage.save_account(record)
        >>> storage.load_account("user@example.com").access_token
        'ya29...'
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        """Initialize token storage with optional custom directory.

        Args:
            base_dir: Directory for storing token files. If not provided,
                defaults to ~/.google-mcp-server/tokens/
        """
        self._base_dir = base_dir or DEFAULT_TOKEN_DIR
        self._base_dir.mkdir(parents=True, exist_ok=True, mode=DIR_MODE)
        logger.info("TokenStorage initialized at %s", self._base_dir)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def path_for(self, account_email: str) -> Path:
        """Get the file path for an account's credential.

        Sanitizes the address to prevent path traversal by only allowing
        alphanumeric characters, hyphens, underscores, periods and @.

        Args:
            account_email: Account address.

        Returns:
            Path to the account's credential file.

        Raises:
            TokenError: If nothing usable remains after sanitizing.
        """
        safe_id = "".join(
            c for c in account_email.strip().lower() if c.isalnum() or c in "-_.@"
        )
        safe_id = safe_id.replace("@", "_at_").lstrip(".")

        if not safe_id:
            raise TokenError(
                "Invalid account id - contains no valid characters",
                details={"original_account_id": account_email[:50]},
            )

        return self._base_dir / f"{safe_id}{TOKEN_SUFFIX}"

    # =========================================================================
    # Path-based operations
    # =========================================================================

    def _write_atomic(self, path: Path, payload: bytes) -> None:
        """Write bytes to ``path`` via a 0600 temp file and a rename.

        Raises:
            TokenError: If the file cannot be written.
        """
        parent = path.parent
        tmp_path: str | None = None

        try:
            parent.mkdir(parents=True, exist_ok=True, mode=DIR_MODE)
            # mkstemp creates the file with 0600 already
            fd, tmp_path = tempfile.mkstemp(dir=parent, prefix=".tmp_", suffix=TOKEN_SUFFIX)
            with os.fdopen(fd, "wb") as f:
                os.fchmod(f.fileno(), FILE_MODE)
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
            tmp_path = None

        except PermissionError as e:
            logger.error("Permission denied writing token file: %s", e)
            raise TokenError(
                "Permission denied writing token file",
                details={"path": str(path), "error": str(e)},
            ) from e
        except OSError as e:
            logger.error("Failed to write %s: %s", path, e)
            raise TokenError(
                f"Failed to save token: {e}",
                details={"path": str(path), "error_type": type(e).__name__},
            ) from e
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except FileNotFoundError:
                    pass

    def _read_secure(self, path: Path) -> bytes:
        """Read a file after checking its permission bits.

        The file is opened without following symlinks and its mode is
        read from the open descriptor, so the checked file is the file
        that gets read.

        Raises:
            TokenNotFoundError: If the file does not exist.
            InsecurePermissionsError: If any group/other bit is set.
            CorruptTokenError: If the path is not a regular file.
            TokenError: For other I/O failures.
        """
        try:
            fd = os.open(path, os.O_RDONLY | getattr(os, "O_NOFOLLOW", 0))
        except FileNotFoundError as e:
            raise TokenNotFoundError(
                "No stored credential", details={"path": str(path)}
            ) from e
        except OSError as e:
            logger.error("Failed to open token file %s: %s", path, e)
            raise TokenError(
                f"Failed to open token file: {e}",
                details={"path": str(path), "error_type": type(e).__name__},
            ) from e

        try:
            mode = os.fstat(fd).st_mode
            if not stat.S_ISREG(mode):
                raise CorruptTokenError(
                    "Token path is not a regular file", details={"path": str(path)}
                )
            if mode & INSECURE_BITS:
                logger.error(
                    "Refusing to load %s: permissions %o allow group/other access",
                    path,
                    stat.S_IMODE(mode),
                )
                raise InsecurePermissionsError(
                    "Token file permissions are too open",
                    details={"path": str(path), "mode": oct(stat.S_IMODE(mode))},
                )
            with os.fdopen(fd, "rb", closefd=False) as f:
                return f.read()
        finally:
            os.close(fd)

    def save(self, path: Path, record: StoredCredential) -> None:
        """Atomically write a credential with owner-only permissions.

        The record is written to a temp file in the destination directory,
        flushed to disk, then renamed over ``path``.

        Args:
            path: Destination file.
            record: Credential to persist.

        Raises:
            TokenError: If the file cannot be written.
        """
        self._write_atomic(path, record.model_dump_json(indent=2).encode("utf-8"))
        logger.debug("Saved credential for %s", record.account_email)

    def load(self, path: Path) -> StoredCredential:
        """Load a credential after checking its permission bits.

        Args:
            path: Credential file.

        Returns:
            The decoded credential.

        Raises:
            TokenNotFoundError: If the file does not exist.
            InsecurePermissionsError: If any group/other bit is set.
            CorruptTokenError: If the content cannot be decoded.
            TokenError: For other I/O failures.
        """
        raw = self._read_secure(path)

        try:
            return StoredCredential.model_validate(json.loads(raw))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error("Invalid JSON in token file %s: %s", path, e)
            raise CorruptTokenError(
                "Token file contains invalid JSON",
                details={"path": str(path), "error": str(e)},
            ) from e
        except PydanticValidationError as e:
            logger.error("Token file %s does not match the credential schema", path)
            raise CorruptTokenError(
                "Token file does not match the credential schema",
                details={"path": str(path), "error_count": e.error_count()},
            ) from e

    # =========================================================================
    # Account index
    # =========================================================================

    @property
    def index_path(self) -> Path:
        return self._base_dir / INDEX_NAME

    def save_index(self, index: AccountIndex) -> None:
        """Persist registration order and the default account."""
        self._write_atomic(self.index_path, index.model_dump_json(indent=2).encode("utf-8"))
        logger.debug("Saved account index (%d accounts)", len(index.accounts))

    def load_index(self) -> AccountIndex:
        """Load the account index; a missing file yields an empty index.

        Raises:
            InsecurePermissionsError: If any group/other bit is set.
            CorruptTokenError: If the content cannot be decoded.
        """
        try:
            raw = self._read_secure(self.index_path)
        except TokenNotFoundError:
            return AccountIndex()

        try:
            return AccountIndex.model_validate(json.loads(raw))
        except (json.JSONDecodeError, UnicodeDecodeError, PydanticValidationError) as e:
            logger.error("Account index %s is unreadable: %s", self.index_path, e)
            raise CorruptTokenError(
                "Account index is unreadable", details={"path": str(self.index_path)}
            ) from e

    # =========================================================================
    # Account-keyed operations
    # =========================================================================

    def save_account(self, record: StoredCredential) -> Path:
        """Persist a credential under its account's file."""
        path = self.path_for(record.account_email)
        self.save(path, record)
        return path

    def load_account(self, account_email: str) -> StoredCredential:
        """Load the credential stored for an account."""
        return self.load(self.path_for(account_email))

    def delete(self, account_email: str) -> bool:
        """Delete the credential for an account.

        Args:
            account_email: Account address.

        Returns:
            True if a credential was deleted, False if none existed.

        Raises:
            TokenError: If file deletion fails due to permissions.
        """
        path = self.path_for(account_email)

        try:
            path.unlink()
            logger.info("Deleted credential for %s", account_email)
            return True
        except FileNotFoundError:
            logger.debug("No credential to delete for %s", account_email)
            return False
        except PermissionError as e:
            logger.error("Permission denied deleting token file: %s", e)
            raise TokenError(
                "Permission denied deleting token file",
                details={"path": str(path), "error": str(e)},
            ) from e

    def exists(self, account_email: str) -> bool:
        """Check if a credential file exists for an account."""
        return self.path_for(account_email).exists()

    def list_paths(self) -> list[Path]:
        """List credential files in the token directory, sorted by name."""
        return sorted(
            p for p in self._base_dir.glob(f"*{TOKEN_SUFFIX}") if not p.name.startswith(".")
        )

    def list_accounts(self) -> list[str]:
        """List accounts with stored credentials (approximate, from file names)."""
        return [p.stem.replace("_at_", "@") for p in self.list_paths()]


__all__ = [
    "FILE_MODE",
    "DIR_MODE",
    "INDEX_NAME",
    "TokenStorage",
]
