"""Unit tests for TokenStorage.

Tests cover persistence with fallback, corruption quarantine, self-healing,
and isolation of unavailable backends from corruption handling.
"""

import json
from pathlib import Path

import pytest

from gworkspace_auth.auth.backends import (
    ACCOUNT_NAME,
    SERVICE_NAME,
    Absent,
    FileCacheBackend,
    Found,
    SecretStoreBackend,
    Unavailable,
)
from gworkspace_auth.auth.models import (
    CorruptionType,
    StorageSource,
    StoredCredentials,
    TokenStatus,
)
from gworkspace_auth.auth.token_storage import TokenStorage, first_found
from gworkspace_auth.errors import (
    ErrorKind,
    PersistenceError,
    StoreUnavailableError,
    TokenCacheCorruptedError,
)

KEY = (SERVICE_NAME, ACCOUNT_NAME)


def _corrupted_files(token_path: Path) -> list[Path]:
    return sorted(token_path.parent.glob(f"{token_path.name}.corrupted-*"))


class StubBackend:
    """Backend returning a fixed outcome."""

    def __init__(self, outcome, source=StorageSource.FILE) -> None:
        self.outcome = outcome
        self.source = source
        self.loads = 0

    async def load(self):
        self.loads += 1
        return self.outcome


@pytest.mark.unit
class TestFirstFound:
    """Tests for the ordered fallback combinator."""

    @pytest.mark.asyncio
    async def test_should_stop_at_first_decoded_record(self) -> None:
        """Verify later backends are not loaded once a record decodes."""
        first = StubBackend(Found(b"one"))
        second = StubBackend(Found(b"two"))

        async def decode(backend, raw: bytes):
            return raw.decode()

        assert await first_found([first, second], decode) == "one"
        assert second.loads == 0

    @pytest.mark.asyncio
    async def test_should_fall_through_absent_and_unavailable(self) -> None:
        """Verify Absent and Unavailable outcomes move on to the next backend."""
        backends = [
            StubBackend(Absent()),
            StubBackend(Unavailable(OSError("locked"))),
            StubBackend(Found(b"three")),
        ]

        async def decode(backend, raw: bytes):
            return raw.decode()

        assert await first_found(backends, decode) == "three"

    @pytest.mark.asyncio
    async def test_should_fall_through_when_decode_returns_none(self) -> None:
        """Verify a record rejected by decode does not end the search."""
        backends = [StubBackend(Found(b"bad")), StubBackend(Found(b"good"))]

        async def decode(backend, raw: bytes):
            return None if raw == b"bad" else raw.decode()

        assert await first_found(backends, decode) == "good"

    @pytest.mark.asyncio
    async def test_should_return_none_when_nothing_found(self) -> None:
        """Verify None is returned when no backend holds a record."""

        async def decode(backend, raw: bytes):
            return raw

        assert await first_found([StubBackend(Absent()), StubBackend(Absent())], decode) is None


@pytest.mark.unit
class TestTokenStorageSave:
    """Tests for TokenStorage.save_tokens()."""

    @pytest.mark.asyncio
    async def test_should_save_to_secret_store(
        self, token_storage: TokenStorage, memory_keyring, credentials: StoredCredentials
    ) -> None:
        """Verify the secret store is the primary backend and holds plain JSON."""
        source = await token_storage.save_tokens(credentials)

        assert source == StorageSource.SECRET_STORE
        stored = json.loads(memory_keyring.passwords[KEY])
        assert stored["tokens"]["access_token"] == credentials.access_token
        assert stored["clientConfig"]["clientId"] == credentials.client_id
        assert not token_storage.file_cache.token_path.exists()

    @pytest.mark.asyncio
    async def test_should_fall_back_to_encrypted_file(
        self, file_only_storage: TokenStorage, credentials: StoredCredentials
    ) -> None:
        """Verify an unavailable secret store falls back to the encrypted file."""
        source = await file_only_storage.save_tokens(credentials)

        assert source == StorageSource.FILE
        raw = file_only_storage.file_cache.token_path.read_bytes()
        assert raw.startswith(b"v1.")
        assert credentials.access_token.encode() not in raw

    @pytest.mark.asyncio
    async def test_should_set_secure_file_permissions(
        self, file_only_storage: TokenStorage, credentials: StoredCredentials
    ) -> None:
        """Verify the token file is 0600 inside a 0700 directory."""
        await file_only_storage.save_tokens(credentials)

        token_path = file_only_storage.file_cache.token_path
        assert token_path.stat().st_mode & 0o777 == 0o600
        assert token_path.parent.stat().st_mode & 0o777 == 0o700

    @pytest.mark.asyncio
    async def test_should_remove_stale_file_after_secret_store_save(
        self,
        token_storage: TokenStorage,
        codec,
        credentials: StoredCredentials,
        expired_credentials: StoredCredentials,
    ) -> None:
        """Verify an older file copy cannot shadow the new record later."""
        await token_storage.file_cache.save(codec.encode(expired_credentials.to_json()))

        await token_storage.save_tokens(credentials)

        assert not token_storage.file_cache.token_path.exists()

    @pytest.mark.asyncio
    async def test_should_raise_persistence_error_when_both_backends_fail(
        self, locked_keyring, codec, metrics, tmp_path: Path, credentials: StoredCredentials
    ) -> None:
        """Verify a failure on both backends cites both causes by type name."""
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("file in the way")
        storage = TokenStorage(
            secret_store=SecretStoreBackend(backend=locked_keyring),
            file_cache=FileCacheBackend(blocker / "oauth2-tokens.enc"),
            codec=codec,
            metrics=metrics,
        )

        with pytest.raises(PersistenceError) as exc_info:
            await storage.save_tokens(credentials)

        error = exc_info.value
        assert error.kind == ErrorKind.PERSISTENCE_FAILURE
        assert error.causes[StorageSource.SECRET_STORE.value] == "KeyringLocked"
        assert StorageSource.FILE.value in error.causes
        assert credentials.access_token not in str(error)


@pytest.mark.unit
class TestTokenStorageGet:
    """Tests for TokenStorage.get_tokens()."""

    @pytest.mark.asyncio
    async def test_should_return_none_when_empty(self, token_storage: TokenStorage) -> None:
        """Verify an empty cache is a normal answer, not an error."""
        assert await token_storage.get_tokens() is None

    @pytest.mark.asyncio
    async def test_should_round_trip_through_secret_store(
        self, token_storage: TokenStorage, credentials: StoredCredentials
    ) -> None:
        """Verify saved credentials load back deep-equal."""
        await token_storage.save_tokens(credentials)

        assert await token_storage.get_tokens() == credentials

    @pytest.mark.asyncio
    async def test_should_round_trip_through_file_cache(
        self, file_only_storage: TokenStorage, credentials: StoredCredentials
    ) -> None:
        """Verify the file fallback path loads back deep-equal."""
        await file_only_storage.save_tokens(credentials)

        assert await file_only_storage.get_tokens() == credentials

    @pytest.mark.asyncio
    async def test_should_round_trip_record_without_optional_fields(
        self, token_storage: TokenStorage
    ) -> None:
        """Verify a minimal record survives a save/load cycle."""
        minimal = StoredCredentials.create(access_token="a", client_id="c")

        await token_storage.save_tokens(minimal)

        assert await token_storage.get_tokens() == minimal

    @pytest.mark.asyncio
    async def test_should_read_file_when_secret_store_empty(
        self, token_storage: TokenStorage, codec, credentials: StoredCredentials
    ) -> None:
        """Verify an absent secret-store record falls through to the file."""
        await token_storage.file_cache.save(codec.encode(credentials.to_json()))

        assert await token_storage.get_tokens() == credentials


@pytest.mark.unit
class TestTokenStorageCorruption:
    """Tests for corruption detection, quarantine, and self-healing."""

    @pytest.mark.asyncio
    async def test_should_quarantine_corrupted_secret_store_entry(
        self, token_storage: TokenStorage, memory_keyring
    ) -> None:
        """Verify invalid JSON in the secret store is deleted and reported once."""
        memory_keyring.passwords[KEY] = "{not json"

        with pytest.raises(TokenCacheCorruptedError) as exc_info:
            await token_storage.get_tokens()

        report = exc_info.value.report
        assert report.source == StorageSource.SECRET_STORE
        assert report.corruption_type == CorruptionType.JSON
        assert report.backup_path is None
        assert KEY not in memory_keyring.passwords
        assert await token_storage.get_tokens() is None

    @pytest.mark.asyncio
    async def test_should_quarantine_corrupted_file(
        self, file_only_storage: TokenStorage, credentials: StoredCredentials
    ) -> None:
        """Verify an undecryptable file is renamed aside and reported once."""
        await file_only_storage.save_tokens(credentials)
        token_path = file_only_storage.file_cache.token_path
        token_path.write_bytes(b"v1.garbage-ciphertext")

        with pytest.raises(TokenCacheCorruptedError) as exc_info:
            await file_only_storage.get_tokens()

        report = exc_info.value.report
        assert report.source == StorageSource.FILE
        assert report.corruption_type == CorruptionType.ENCRYPTION
        assert report.recoverable is True
        backups = _corrupted_files(token_path)
        assert len(backups) == 1
        assert report.backup_path == str(backups[0])
        assert backups[0].name == f"{token_path.name}.corrupted-{report.timestamp}"
        assert not token_path.exists()

        assert await file_only_storage.get_tokens() is None

    @pytest.mark.asyncio
    async def test_should_classify_decrypted_invalid_json(
        self, file_only_storage: TokenStorage, codec
    ) -> None:
        """Verify decryptable but unparseable plaintext is a JSON corruption."""
        await file_only_storage.file_cache.save(codec.encode("not json at all"))

        with pytest.raises(TokenCacheCorruptedError) as exc_info:
            await file_only_storage.get_tokens()

        assert exc_info.value.report.corruption_type == CorruptionType.JSON

    @pytest.mark.asyncio
    async def test_should_classify_missing_access_token_as_structure(
        self, file_only_storage: TokenStorage, codec
    ) -> None:
        """Verify missing required fields are a structure corruption."""
        payload = {"tokens": {}, "clientConfig": {"clientId": "c1"}, "storedAt": 1}
        await file_only_storage.file_cache.save(codec.encode(json.dumps(payload)))

        with pytest.raises(TokenCacheCorruptedError) as exc_info:
            await file_only_storage.get_tokens()

        report = exc_info.value.report
        assert report.corruption_type == CorruptionType.STRUCTURE
        assert "tokens.access_token" in report.missing_fields

    @pytest.mark.asyncio
    async def test_should_report_both_backends_in_one_error(
        self, token_storage: TokenStorage, memory_keyring
    ) -> None:
        """Verify simultaneous corruption yields one error with two reports."""
        memory_keyring.passwords[KEY] = '{"tokens": []}'
        token_path = token_storage.file_cache.token_path
        token_path.parent.mkdir(parents=True)
        token_path.write_bytes(b"\x00\x01garbage")

        with pytest.raises(TokenCacheCorruptedError) as exc_info:
            await token_storage.get_tokens()

        reports = exc_info.value.reports
        assert [r.source for r in reports] == [StorageSource.SECRET_STORE, StorageSource.FILE]
        assert reports[0].corruption_type == CorruptionType.STRUCTURE
        assert reports[1].corruption_type == CorruptionType.ENCRYPTION
        assert KEY not in memory_keyring.passwords
        assert len(_corrupted_files(token_path)) == 1

        assert await token_storage.get_tokens() is None

    @pytest.mark.asyncio
    async def test_should_keep_valid_file_when_secret_store_corrupted(
        self,
        token_storage: TokenStorage,
        memory_keyring,
        codec,
        credentials: StoredCredentials,
    ) -> None:
        """Verify the corruption is reported once and the valid copy is then served."""
        memory_keyring.passwords[KEY] = "corrupted"
        await token_storage.file_cache.save(codec.encode(credentials.to_json()))

        with pytest.raises(TokenCacheCorruptedError) as exc_info:
            await token_storage.get_tokens()

        assert len(exc_info.value.reports) == 1
        assert token_storage.file_cache.token_path.exists()
        assert await token_storage.get_tokens() == credentials

    @pytest.mark.asyncio
    async def test_should_emit_cache_corrupted_metric(
        self, file_only_storage: TokenStorage, metrics_stream, token_path: Path
    ) -> None:
        """Verify quarantine emits one sanitized cache_corrupted line."""
        token_path.parent.mkdir(parents=True)
        token_path.write_bytes(b"garbage")

        with pytest.raises(TokenCacheCorruptedError):
            await file_only_storage.get_tokens()

        lines = metrics_stream.getvalue().splitlines()
        assert lines == [
            "AUTH_METRIC event=cache_corrupted source=file "
            "corruption_type=encryption recoverable=true"
        ]

    @pytest.mark.asyncio
    async def test_should_not_leak_token_material_in_error(
        self, token_storage: TokenStorage, memory_keyring
    ) -> None:
        """Verify the raised error never echoes the stored payload."""
        memory_keyring.passwords[KEY] = '{"tokens": {"access_token": "ya29.SECRET"'

        with pytest.raises(TokenCacheCorruptedError) as exc_info:
            await token_storage.get_tokens()

        assert "ya29.SECRET" not in str(exc_info.value)
        assert "ya29.SECRET" not in exc_info.value.report.error_summary


@pytest.mark.unit
class TestTokenStorageUnavailable:
    """Tests isolating unavailable backends from corruption handling."""

    @pytest.mark.asyncio
    async def test_should_treat_locked_secret_store_as_absent(
        self, file_only_storage: TokenStorage, locked_keyring
    ) -> None:
        """Verify a locked keychain yields no credentials and no deletion."""
        assert await file_only_storage.get_tokens() is None
        assert locked_keyring.delete_calls == 0

    @pytest.mark.asyncio
    async def test_should_not_quarantine_unreadable_file(
        self, file_only_storage: TokenStorage, credentials: StoredCredentials
    ) -> None:
        """Verify a permission failure never renames or deletes the file."""
        await file_only_storage.save_tokens(credentials)
        token_path = file_only_storage.file_cache.token_path

        async def denied():
            return Unavailable(PermissionError("denied"))

        file_only_storage.file_cache.load = denied

        assert await file_only_storage.get_tokens() is None
        assert token_path.exists()
        assert _corrupted_files(token_path) == []

    @pytest.mark.asyncio
    async def test_should_raise_store_unavailable_from_backend_save(
        self, locked_keyring
    ) -> None:
        """Verify backend write failures surface as StoreUnavailableError."""
        backend = SecretStoreBackend(backend=locked_keyring)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await backend.save(b"{}")

        assert exc_info.value.kind == ErrorKind.STORE_UNAVAILABLE
        assert exc_info.value.retryable is True


@pytest.mark.unit
class TestTokenStorageDelete:
    """Tests for TokenStorage.delete_tokens()."""

    @pytest.mark.asyncio
    async def test_should_delete_from_both_backends(
        self,
        token_storage: TokenStorage,
        memory_keyring,
        codec,
        credentials: StoredCredentials,
    ) -> None:
        """Verify both copies are removed."""
        await token_storage.save_tokens(credentials)
        await token_storage.file_cache.save(codec.encode(credentials.to_json()))

        await token_storage.delete_tokens()

        assert KEY not in memory_keyring.passwords
        assert not token_storage.file_cache.token_path.exists()
        assert await token_storage.get_tokens() is None

    @pytest.mark.asyncio
    async def test_should_not_raise_when_nothing_stored(self, token_storage: TokenStorage) -> None:
        """Verify deletion is idempotent."""
        await token_storage.delete_tokens()
        await token_storage.delete_tokens()

    @pytest.mark.asyncio
    async def test_should_not_raise_when_secret_store_locked(
        self, file_only_storage: TokenStorage
    ) -> None:
        """Verify deletion never fails even if a backend does."""
        await file_only_storage.delete_tokens()


@pytest.mark.unit
class TestTokenStorageStatus:
    """Tests for has_tokens() and get_status()."""

    @pytest.mark.asyncio
    async def test_should_report_missing(self, token_storage: TokenStorage) -> None:
        """Verify an empty cache is MISSING."""
        assert await token_storage.has_tokens() is False
        assert await token_storage.get_status() == TokenStatus.MISSING

    @pytest.mark.asyncio
    async def test_should_report_valid(
        self, token_storage: TokenStorage, credentials: StoredCredentials
    ) -> None:
        """Verify a live record is VALID."""
        await token_storage.save_tokens(credentials)

        assert await token_storage.has_tokens() is True
        assert await token_storage.get_status() == TokenStatus.VALID

    @pytest.mark.asyncio
    async def test_should_report_expired(
        self, token_storage: TokenStorage, expired_credentials: StoredCredentials
    ) -> None:
        """Verify an expired record is EXPIRED but still present."""
        await token_storage.save_tokens(expired_credentials)

        assert await token_storage.has_tokens() is True
        assert await token_storage.get_status() == TokenStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_should_report_invalid_without_side_effects(
        self, token_storage: TokenStorage, memory_keyring, metrics_stream
    ) -> None:
        """Verify status checks never quarantine, raise, or emit metrics."""
        memory_keyring.passwords[KEY] = "corrupted"

        assert await token_storage.has_tokens() is False
        assert await token_storage.get_status() == TokenStatus.INVALID
        assert memory_keyring.passwords[KEY] == "corrupted"
        assert metrics_stream.getvalue() == ""
