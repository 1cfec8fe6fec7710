"""Corruption classification for stored credential records.

A record that a backend returned (``Found``) either decodes into valid
``StoredCredentials`` or is corrupt. The classifier runs the decode stages in
order and names the first one that fails:

1. decrypt (file backend only)   -> ``encryption``
2. JSON parse of the plaintext   -> ``json``
3. required fields present       -> ``structure``

Connectivity, permission, and lock failures never reach the classifier:
backends report them as ``Unavailable`` before any bytes are inspected.
"""

import json
from typing import Any

from pydantic import ValidationError

from gworkspace_auth.auth.codec import CredentialCodec, DecryptionError
from gworkspace_auth.auth.models import (
    CorruptionReport,
    CorruptionType,
    StorageSource,
    StoredCredentials,
)


REQUIRED_FIELDS = ("tokens.access_token", "clientConfig.clientId", "storedAt")


class CorruptionDetected(Exception):
    """Internal signal carrying a corruption report. Never leaves the storage layer."""

    def __init__(self, report: CorruptionReport) -> None:
        super().__init__(report.error_summary)
        self.report = report


def _non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


def missing_fields(payload: Any) -> list[str]:
    """List the required field paths that are absent or mistyped.

    Args:
        payload: Parsed JSON value.

    Returns:
        Dotted paths such as ``tokens.access_token``. A non-object payload
        reports ``credentials``.
    """
    if not isinstance(payload, dict):
        return ["credentials"]

    missing: list[str] = []

    tokens = payload.get("tokens")
    if not isinstance(tokens, dict):
        missing.extend(["tokens", "tokens.access_token"])
    elif not _non_empty_string(tokens.get("access_token")):
        missing.append("tokens.access_token")

    client_config = payload.get("clientConfig")
    if not isinstance(client_config, dict):
        missing.extend(["clientConfig", "clientConfig.clientId"])
    elif not _non_empty_string(client_config.get("clientId")):
        missing.append("clientConfig.clientId")

    stored_at = payload.get("storedAt")
    if isinstance(stored_at, bool) or not isinstance(stored_at, int | float) or not stored_at:
        missing.append("storedAt")

    return missing


def _validation_paths(error: ValidationError) -> list[str]:
    return [".".join(str(part) for part in item["loc"]) for item in error.errors()]


class CorruptionClassifier:
    """Decodes raw backend bytes, classifying any failure.

    Example:
        ```python
        classifier = CorruptionClassifier(codec)
        try:
            creds = classifier.inspect(StorageSource.FILE, raw, encrypted=True)
        except CorruptionDetected as e:
            print(e.report.corruption_type)
        ```
    """

    def __init__(self, codec: CredentialCodec) -> None:
        self.codec = codec

    def inspect(
        self,
        source: StorageSource,
        raw: bytes,
        encrypted: bool,
    ) -> StoredCredentials:
        """Decode raw bytes into credentials.

        Args:
            source: Backend the bytes came from.
            raw: Bytes exactly as the backend returned them.
            encrypted: Whether the bytes must be decrypted first.

        Returns:
            Valid credentials.

        Raises:
            CorruptionDetected: With a report naming the failing stage.
        """
        if encrypted:
            try:
                text = self.codec.decode(raw)
            except DecryptionError as e:
                raise CorruptionDetected(
                    self._report(source, CorruptionType.ENCRYPTION, f"DecryptionError: {e}")
                ) from e
        else:
            try:
                text = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise CorruptionDetected(
                    self._report(source, CorruptionType.JSON, "UnicodeDecodeError")
                ) from e

        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            # e.msg and position only; e.doc holds the plaintext
            raise CorruptionDetected(
                self._report(
                    source,
                    CorruptionType.JSON,
                    f"JSONDecodeError: {e.msg} at position {e.pos}",
                )
            ) from e

        missing = missing_fields(payload)
        if missing:
            raise CorruptionDetected(
                self._report(
                    source,
                    CorruptionType.STRUCTURE,
                    "Missing required credential fields",
                    missing,
                )
            )

        try:
            return StoredCredentials.model_validate(payload)
        except ValidationError as e:
            raise CorruptionDetected(
                self._report(
                    source,
                    CorruptionType.STRUCTURE,
                    "Invalid credential field types",
                    _validation_paths(e),
                )
            ) from e

    @staticmethod
    def _report(
        source: StorageSource,
        corruption_type: CorruptionType,
        summary: str,
        missing: list[str] | None = None,
    ) -> CorruptionReport:
        return CorruptionReport(
            source=source,
            corruption_type=corruption_type,
            error_summary=summary,
            recoverable=True,
            missing_fields=missing or [],
        )
