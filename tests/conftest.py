"""Shared pytest fixtures for gworkspace-auth tests.

This module provides in-memory keyring backends, temporary token storage,
credential records, and a scriptable refresh client.
"""

import asyncio
import io
from collections.abc import Callable
from pathlib import Path

import pytest
from keyring.backend import KeyringBackend
from keyring.errors import KeyringLocked, PasswordDeleteError

from gworkspace_auth.auth.backends import FileCacheBackend, SecretStoreBackend
from gworkspace_auth.auth.codec import CredentialCodec
from gworkspace_auth.auth.metrics import AuthMetrics
from gworkspace_auth.auth.models import StoredCredentials, now_ms
from gworkspace_auth.auth.token_storage import TokenStorage
from gworkspace_auth.errors import AuthError

CLIENT_ID = "test-client.apps.googleusercontent.com"
SCOPES = ["https://www.googleapis.com/auth/drive.file"]

# =============================================================================
# Keyring Backends
# =============================================================================


class MemoryKeyring(KeyringBackend):
    """Keyring backend holding passwords in a dict.

    Setting ``locked`` makes reads and writes fail like a locked keychain.
    """

    priority = 1

    def __init__(self) -> None:
        super().__init__()
        self.passwords: dict[tuple[str, str], str] = {}
        self.delete_calls = 0
        self.locked = False

    def get_password(self, service: str, username: str) -> str | None:
        if self.locked:
            raise KeyringLocked("keychain locked")
        return self.passwords.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        if self.locked:
            raise KeyringLocked("keychain locked")
        self.passwords[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        self.delete_calls += 1
        try:
            del self.passwords[(service, username)]
        except KeyError:
            raise PasswordDeleteError("not found") from None


class LockedKeyring(KeyringBackend):
    """Keyring backend that behaves like a locked keychain."""

    priority = 1

    def __init__(self) -> None:
        super().__init__()
        self.delete_calls = 0

    def get_password(self, service: str, username: str) -> str | None:
        raise KeyringLocked("keychain locked")

    def set_password(self, service: str, username: str, password: str) -> None:
        raise KeyringLocked("keychain locked")

    def delete_password(self, service: str, username: str) -> None:
        self.delete_calls += 1
        raise KeyringLocked("keychain locked")


@pytest.fixture
def memory_keyring() -> MemoryKeyring:
    """Create an empty in-memory keyring."""
    return MemoryKeyring()


@pytest.fixture
def locked_keyring() -> LockedKeyring:
    """Create a keyring that fails every call."""
    return LockedKeyring()


# =============================================================================
# Credential Fixtures
# =============================================================================


@pytest.fixture
def credentials() -> StoredCredentials:
    """Create a valid record expiring in one hour."""
    now = now_ms()
    return StoredCredentials.create(
        access_token="test_access_token_abc123",
        refresh_token="test_refresh_token_xyz789",
        expiry_timestamp=now + 3600_000,
        client_id=CLIENT_ID,
        scopes=SCOPES,
        stored_at=now,
    )


@pytest.fixture
def expired_credentials() -> StoredCredentials:
    """Create a record that expired a minute ago."""
    now = now_ms()
    return StoredCredentials.create(
        access_token="expired_access_token",
        refresh_token="test_refresh_token",
        expiry_timestamp=now - 60_000,
        client_id=CLIENT_ID,
        scopes=SCOPES,
        stored_at=now - 3600_000,
    )


# =============================================================================
# Token Storage Fixtures
# =============================================================================


@pytest.fixture
def token_path(tmp_path: Path) -> Path:
    """Get the path for a temporary encrypted token file."""
    return tmp_path / "google-workspace-mcp" / "oauth2-tokens.enc"


@pytest.fixture
def codec() -> CredentialCodec:
    """Create a codec with fixed key material."""
    return CredentialCodec(secret="test-key-material")


@pytest.fixture
def metrics_stream() -> io.StringIO:
    """Capture metric lines."""
    return io.StringIO()


@pytest.fixture
def metrics(metrics_stream: io.StringIO) -> AuthMetrics:
    """Create an enabled metrics emitter writing to ``metrics_stream``."""
    return AuthMetrics(enabled=True, stream=metrics_stream)


@pytest.fixture
def token_storage(
    memory_keyring: MemoryKeyring,
    token_path: Path,
    codec: CredentialCodec,
    metrics: AuthMetrics,
) -> TokenStorage:
    """Create TokenStorage backed by the in-memory keyring and a temp file."""
    return TokenStorage(
        secret_store=SecretStoreBackend(backend=memory_keyring),
        file_cache=FileCacheBackend(token_path),
        codec=codec,
        metrics=metrics,
    )


@pytest.fixture
def file_only_storage(
    locked_keyring: LockedKeyring,
    token_path: Path,
    codec: CredentialCodec,
    metrics: AuthMetrics,
) -> TokenStorage:
    """Create TokenStorage whose secret store is always unavailable."""
    return TokenStorage(
        secret_store=SecretStoreBackend(backend=locked_keyring),
        file_cache=FileCacheBackend(token_path),
        codec=codec,
        metrics=metrics,
    )


# =============================================================================
# Refresh Client Fixtures
# =============================================================================


class FakeRefreshClient:
    """Refresh client returning scripted outcomes.

    Each call pops the next entry of ``outcomes``: an exception is raised, a
    ``StoredCredentials`` is returned, and when the list is exhausted a new
    record valid for one hour is returned.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.calls = 0
        self.delay = delay
        self.outcomes: list[AuthError | StoredCredentials] = []
        self.on_call: Callable[[StoredCredentials], None] | None = None

    async def refresh_access_token(self, credentials: StoredCredentials) -> StoredCredentials:
        self.calls += 1
        if self.on_call:
            self.on_call(credentials)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        now = now_ms()
        return StoredCredentials.create(
            access_token=f"refreshed_access_token_{self.calls}",
            refresh_token=credentials.refresh_token,
            expiry_timestamp=now + 3600_000,
            client_id=credentials.client_id,
            scopes=credentials.scopes,
            stored_at=now,
        )


@pytest.fixture
def refresh_client() -> FakeRefreshClient:
    """Create a refresh client that succeeds after a short delay."""
    return FakeRefreshClient(delay=0.01)


@pytest.fixture
def make_refresh_client() -> type[FakeRefreshClient]:
    """Provide the fake refresh client class for custom delays."""
    return FakeRefreshClient


async def _no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def no_sleep() -> Callable[[float], object]:
    """Backoff sleep replacement that returns immediately."""
    return _no_sleep


# =============================================================================
# CLI Test Fixtures
# =============================================================================


@pytest.fixture
def cli_runner():
    """Create a Click CLI test runner."""
    from click.testing import CliRunner

    return CliRunner()
