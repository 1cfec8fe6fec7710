"""Storage backends for the cached credential record.

Two adapters expose the same ``save`` / ``load`` / ``delete`` / ``quarantine``
surface:

- ``SecretStoreBackend``: the OS credential manager through ``keyring``
  (macOS Keychain, Secret Service, Windows Credential Manager).
- ``FileCacheBackend``: an encrypted file at
  ``~/.config/google-workspace-mcp/oauth2-tokens.enc`` with mode 0600.

``load`` never raises. It returns one of three outcomes so that "nothing
stored" and "store could not be read" stay distinct all the way up to the
token storage service:

- ``Found(data)``: raw bytes, not yet decrypted or parsed.
- ``Absent()``: the backend answered and holds no record.
- ``Unavailable(cause)``: the backend could not be read (locked keychain,
  missing D-Bus session, permission denied, ...).
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from gworkspace_auth.auth.models import StorageSource
from gworkspace_auth.errors import StoreUnavailableError, safe_error_summary

logger = logging.getLogger(__name__)

SERVICE_NAME = "google-workspace-mcp"
ACCOUNT_NAME = "oauth2-tokens"

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "google-workspace-mcp"
TOKEN_FILE_NAME = "oauth2-tokens.enc"

# keyring backends report D-Bus and Keychain failures through any of these
_KEYRING_FAILURES = (KeyringError, OSError, RuntimeError)


@dataclass(frozen=True)
class Found:
    """A record is present. ``data`` is the raw stored bytes."""

    data: bytes


@dataclass(frozen=True)
class Absent:
    """The backend holds no record."""


@dataclass(frozen=True)
class Unavailable:
    """The backend could not be read. Not a sign of corruption."""

    cause: BaseException

    @property
    def summary(self) -> str:
        return safe_error_summary(self.cause)


Outcome = Union[Found, Absent, Unavailable]


async def _run_blocking(func: Any, *args: Any) -> Any:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, func, *args)


class SecretStoreBackend:
    """Credential record in the OS secret store.

    The record is stored as plain JSON text; the secret store provides the
    encryption. One fixed service/account pair holds the single record.

    Attributes:
        service_name: keyring service name.
        account_name: keyring account (username) name.
    """

    source = StorageSource.SECRET_STORE

    def __init__(
        self,
        service_name: str = SERVICE_NAME,
        account_name: str = ACCOUNT_NAME,
        backend: Any = None,
    ) -> None:
        """Initialize the backend.

        Args:
            service_name: keyring service name.
            account_name: keyring account name.
            backend: A ``keyring.backend.KeyringBackend`` instance. Uses the
                process-wide keyring when not provided.
        """
        self.service_name = service_name
        self.account_name = account_name
        self._keyring = backend if backend is not None else keyring

    async def save(self, blob: bytes) -> None:
        """Store the record, replacing any previous one.

        Raises:
            StoreUnavailableError: If the secret store rejected the write.
        """
        try:
            await _run_blocking(
                self._keyring.set_password,
                self.service_name,
                self.account_name,
                blob.decode("utf-8"),
            )
        except _KEYRING_FAILURES as e:
            raise StoreUnavailableError(self.source.value, "save", e) from e

    async def load(self) -> Outcome:
        """Read the record without interpreting it."""
        try:
            secret = await _run_blocking(
                self._keyring.get_password, self.service_name, self.account_name
            )
        except _KEYRING_FAILURES as e:
            logger.warning(f"Secret store unavailable on load ({safe_error_summary(e)})")
            return Unavailable(e)

        if not secret:
            return Absent()
        return Found(secret.encode("utf-8"))

    async def delete(self) -> None:
        """Remove the record. Idempotent; never raises."""
        try:
            await _run_blocking(
                self._keyring.delete_password, self.service_name, self.account_name
            )
        except PasswordDeleteError:
            pass  # nothing stored
        except _KEYRING_FAILURES as e:
            logger.warning(f"Secret store delete failed ({safe_error_summary(e)})")

    async def quarantine(self, timestamp: int) -> str | None:
        """Remove a corrupted record. The secret store keeps no backup copy."""
        await self.delete()
        return None


class FileCacheBackend:
    """Credential record in an encrypted file.

    Stores whatever bytes it is given (the token storage service encrypts
    before saving). The directory is created on demand with mode 0700 and
    the file is written with mode 0600.

    Attributes:
        token_path: Path to the encrypted token file.
    """

    source = StorageSource.FILE

    def __init__(self, token_path: Path | None = None) -> None:
        """Initialize the backend.

        Args:
            token_path: Custom file location. Defaults to
                ``~/.config/google-workspace-mcp/oauth2-tokens.enc``.
        """
        self.token_path = token_path or (DEFAULT_CONFIG_DIR / TOKEN_FILE_NAME)

    def _ensure_credentials_dir(self) -> None:
        """Create credentials directory with secure permissions if needed."""
        creds_dir = self.token_path.parent
        if not creds_dir.exists():
            creds_dir.mkdir(parents=True, mode=0o700)
        else:
            creds_dir.chmod(0o700)

    def _write(self, blob: bytes) -> None:
        self._ensure_credentials_dir()
        tmp_path = self.token_path.with_name(self.token_path.name + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(blob)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.token_path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise

    async def save(self, blob: bytes) -> None:
        """Write the record atomically with owner-only permissions.

        Raises:
            StoreUnavailableError: If the directory or file could not be written.
        """
        try:
            await _run_blocking(self._write, blob)
        except OSError as e:
            raise StoreUnavailableError(self.source.value, "save", e) from e

    async def load(self) -> Outcome:
        """Read the raw file bytes."""
        try:
            data = await _run_blocking(self.token_path.read_bytes)
        except FileNotFoundError:
            return Absent()
        except OSError as e:
            # Permission denied, locked or unreadable file: not corruption
            logger.warning(f"Token file unavailable on load ({safe_error_summary(e)})")
            return Unavailable(e)
        return Found(data)

    async def delete(self) -> None:
        """Remove the file. Idempotent; never raises."""
        try:
            await _run_blocking(self.token_path.unlink, True)
        except OSError as e:
            logger.warning(f"Token file delete failed ({safe_error_summary(e)})")

    async def quarantine(self, timestamp: int) -> str | None:
        """Rename a corrupted file to ``<name>.corrupted-<timestamp>``.

        Returns:
            The backup path, or None if the rename failed (the file is then
            removed so it is never read again).
        """
        backup_path = self.token_path.with_name(f"{self.token_path.name}.corrupted-{timestamp}")
        try:
            await _run_blocking(os.replace, self.token_path, backup_path)
        except OSError as e:
            logger.error(f"Failed to move corrupted token file aside ({safe_error_summary(e)})")
            await self.delete()
            return None
        return str(backup_path)
