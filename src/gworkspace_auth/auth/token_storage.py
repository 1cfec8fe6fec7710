"""Token storage service for cached OAuth2 credentials.

Holds a single credential record across two backends:

1. The OS secret store (primary), via ``keyring``.
2. An encrypted file at ``~/.config/google-workspace-mcp/oauth2-tokens.enc``
   (fallback).

Records that exist but cannot be decoded are classified, quarantined, and
reported once through ``TokenCacheCorruptedError``. After that the cache
behaves as empty, so the next ``get_tokens()`` returns None and the caller
asks the user to authorize again.

A backend that cannot be read at all (locked keychain, permission denied)
is never treated as corrupt: it is skipped like an absent record and left
untouched.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar, Union

from gworkspace_auth.auth.backends import (
    Found,
    Unavailable,
    FileCacheBackend,
    SecretStoreBackend,
)
from gworkspace_auth.auth.codec import CredentialCodec
from gworkspace_auth.auth.corruption import CorruptionClassifier, CorruptionDetected
from gworkspace_auth.auth.metrics import AuthMetrics
from gworkspace_auth.auth.models import (
    CorruptionReport,
    StorageSource,
    StoredCredentials,
    TokenStatus,
    now_ms,
)
from gworkspace_auth.errors import (
    PersistenceError,
    StoreUnavailableError,
    TokenCacheCorruptedError,
)

logger = logging.getLogger(__name__)

Backend = Union[SecretStoreBackend, FileCacheBackend]
T = TypeVar("T")


async def first_found(
    backends: Iterable[Backend],
    decode: Callable[[Backend, bytes], Awaitable[T | None]],
) -> T | None:
    """Load from each backend in order and decode the first usable record.

    ``Absent`` and ``Unavailable`` outcomes fall through to the next backend.
    A ``Found`` record is passed to ``decode``; a None result also falls
    through.

    Args:
        backends: Backends in priority order.
        decode: Coroutine turning raw bytes into a value, or None to skip.

    Returns:
        The first decoded value, or None when no backend produced one.
    """
    for backend in backends:
        outcome = await backend.load()
        if isinstance(outcome, Found):
            result = await decode(backend, outcome.data)
            if result is not None:
                return result
        elif isinstance(outcome, Unavailable):
            logger.info(f"Skipping {backend.source.value} backend ({outcome.summary})")
    return None


class TokenStorage:
    """Two-backend storage for the single cached OAuth2 credential record.

    Attributes:
        secret_store: Primary backend.
        file_cache: Encrypted file fallback.
        codec: Encrypts records for the file backend.
        metrics: Receives ``cache_corrupted`` events.

    Example:
        ```python
        storage = TokenStorage(metrics=AuthMetrics())

        creds = StoredCredentials.create(
            access_token="ya29...",
            refresh_token="1//...",
            expiry_timestamp=now_ms() + 3600_000,
            client_id="123.apps.googleusercontent.com",
            scopes=["https://www.googleapis.com/auth/drive.file"],
        )
        await storage.save_tokens(creds)

        try:
            cached = await storage.get_tokens()
        except TokenCacheCorruptedError:
            cached = None  # quarantined; re-authorize
        ```
    """

    def __init__(
        self,
        secret_store: SecretStoreBackend | None = None,
        file_cache: FileCacheBackend | None = None,
        codec: CredentialCodec | None = None,
        metrics: AuthMetrics | None = None,
    ) -> None:
        """Initialize token storage.

        Args:
            secret_store: Secret-store backend. Defaults to the process keyring.
            file_cache: File backend. Defaults to the per-user config directory.
            codec: File encryption codec. Keyed from the secret-store namespace
                by default.
            metrics: Metric emitter. A new one reading ``AUTH_METRICS`` by default.
        """
        self.secret_store = secret_store or SecretStoreBackend()
        self.file_cache = file_cache or FileCacheBackend()
        self.codec = codec or CredentialCodec(
            self.secret_store.service_name, self.secret_store.account_name
        )
        self.metrics = metrics or AuthMetrics()
        self._classifier = CorruptionClassifier(self.codec)

    @property
    def backends(self) -> tuple[Backend, Backend]:
        """Backends in load priority order."""
        return (self.secret_store, self.file_cache)

    def _is_encrypted(self, backend: Backend) -> bool:
        return backend.source is StorageSource.FILE

    async def save_tokens(self, credentials: StoredCredentials) -> StorageSource:
        """Persist credentials, replacing any cached record.

        Tries the secret store first and falls back to the encrypted file.
        The backend that did not receive the record is cleared so that a
        stale copy never shadows the new one.

        Args:
            credentials: Record to store.

        Returns:
            The backend that now holds the record.

        Raises:
            PersistenceError: If neither backend accepted the write.
        """
        payload = credentials.to_json()
        causes: dict[str, str] = {}

        try:
            await self.secret_store.save(payload.encode("utf-8"))
        except StoreUnavailableError as e:
            causes[self.secret_store.source.value] = e.cause_summary
            logger.warning(
                f"Secret store save failed ({e.cause_summary}), falling back to encrypted file"
            )
        else:
            await self.file_cache.delete()
            logger.info("OAuth2 tokens saved to secret store")
            return StorageSource.SECRET_STORE

        try:
            await self.file_cache.save(self.codec.encode(payload))
        except StoreUnavailableError as e:
            causes[self.file_cache.source.value] = e.cause_summary
            logger.error("Failed to save OAuth2 tokens to any backend")
            raise PersistenceError(causes) from e

        await self.secret_store.delete()
        logger.info("OAuth2 tokens saved to encrypted file")
        return StorageSource.FILE

    async def get_tokens(self) -> StoredCredentials | None:
        """Load the cached credentials.

        Returns:
            The stored record, or None when no backend holds one. None is the
            normal first-run and post-logout answer, not an error.

        Raises:
            TokenCacheCorruptedError: A stored record could not be decoded. It
                has been quarantined, so the next call no longer sees it. When
                both backends were corrupt the error carries both reports.
        """
        reports: list[CorruptionReport] = []

        async def decode(backend: Backend, raw: bytes) -> StoredCredentials | None:
            try:
                return self._classifier.inspect(
                    backend.source, raw, encrypted=self._is_encrypted(backend)
                )
            except CorruptionDetected as e:
                reports.append(await self._quarantine(backend, e.report))
                return None

        credentials = await first_found(self.backends, decode)

        if reports:
            # A valid fallback copy stays in place for the next call
            raise TokenCacheCorruptedError(reports)
        return credentials

    async def _quarantine(self, backend: Backend, report: CorruptionReport) -> CorruptionReport:
        timestamp = now_ms()
        backup_path = await backend.quarantine(timestamp)
        report = report.model_copy(update={"timestamp": timestamp, "backup_path": backup_path})

        logger.error(
            f"Corrupted credentials in {report.source.value} backend "
            f"({report.corruption_type.value}: {report.error_summary}); quarantined"
        )
        self.metrics.emit_cache_corrupted(
            source=report.source.value,
            corruption_type=report.corruption_type.value,
            recoverable=report.recoverable,
        )
        return report

    async def delete_tokens(self) -> None:
        """Remove the record from both backends. Never raises."""
        await asyncio.gather(self.secret_store.delete(), self.file_cache.delete())
        logger.info("OAuth2 tokens deleted")

    async def _first_valid(self) -> tuple[StoredCredentials | None, bool]:
        """Find the first decodable record without side effects.

        Returns:
            The record (or None) and whether any undecodable record was seen.
        """
        seen_invalid = False

        async def decode(backend: Backend, raw: bytes) -> StoredCredentials | None:
            nonlocal seen_invalid
            try:
                return self._classifier.inspect(
                    backend.source, raw, encrypted=self._is_encrypted(backend)
                )
            except CorruptionDetected:
                seen_invalid = True
                return None

        credentials = await first_found(self.backends, decode)
        return credentials, seen_invalid

    async def has_tokens(self) -> bool:
        """Check whether a decodable record exists.

        Never raises and never quarantines anything.
        """
        credentials, _ = await self._first_valid()
        return credentials is not None

    async def get_status(self) -> TokenStatus:
        """Get the status of the cached record.

        Side-effect free: a corrupt record reports ``INVALID`` and stays where
        it is until ``get_tokens()`` quarantines it.

        Returns:
            TokenStatus indicating the record's current state.
        """
        credentials, seen_invalid = await self._first_valid()

        if credentials is None:
            return TokenStatus.INVALID if seen_invalid else TokenStatus.MISSING

        if credentials.is_expired():
            return TokenStatus.EXPIRED

        return TokenStatus.VALID
