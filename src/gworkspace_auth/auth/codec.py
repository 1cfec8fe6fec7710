"""Encryption codec for the file-cache backend.

Records are encrypted with Fernet (AES-128-CBC + HMAC-SHA256), so truncated
ciphertext, a tampered token, and a wrong key all fail authentication and
surface as ``DecryptionError``.

The key is derived locally with PBKDF2-SHA256 from the user's home directory
and the secret-store namespace. This protects the file against casual disk
inspection, not against an attacker running as the same user.

Ciphertext layout::

    b"v<key-version>." + <fernet token>

The version selects the derivation used for decoding, so a new derivation can
be added without breaking records written by an older one.
"""

import base64
from collections.abc import Callable
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


KEY_SALT = b"gworkspace-auth/token-cache"
KEY_ITERATIONS = 100_000
CURRENT_KEY_VERSION = 1


class DecryptionError(Exception):
    """Ciphertext could not be authenticated or decrypted."""


def _derive_v1(secret: str) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=KEY_SALT,
        iterations=KEY_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


# Key version -> derivation. Never change an existing entry; add a new version.
KEY_DERIVATIONS: dict[int, Callable[[str], bytes]] = {
    1: _derive_v1,
}


def default_key_material(service_name: str, account_name: str) -> str:
    """Local input for key derivation: home directory plus store namespace."""
    return f"{Path.home()}:{service_name}:{account_name}"


class CredentialCodec:
    """Encrypts and decrypts serialized credential records.

    Attributes:
        key_version: Derivation version used when encoding.

    Example:
        ```python
        codec = CredentialCodec("google-workspace-mcp", "oauth2-tokens")
        blob = codec.encode('{"tokens": {...}}')
        text = codec.decode(blob)
        ```
    """

    def __init__(
        self,
        service_name: str = "google-workspace-mcp",
        account_name: str = "oauth2-tokens",
        secret: str | None = None,
        key_version: int = CURRENT_KEY_VERSION,
    ) -> None:
        """Initialize the codec.

        Args:
            service_name: Secret-store service name mixed into the key.
            account_name: Secret-store account name mixed into the key.
            secret: Explicit key material. Defaults to the local derivation input.
            key_version: Derivation version to encode with.
        """
        if key_version not in KEY_DERIVATIONS:
            raise ValueError(f"Unknown key version: {key_version}")
        self._secret = secret or default_key_material(service_name, account_name)
        self.key_version = key_version
        self._fernets: dict[int, Fernet] = {}

    def _fernet(self, version: int) -> Fernet:
        fernet = self._fernets.get(version)
        if fernet is None:
            fernet = Fernet(KEY_DERIVATIONS[version](self._secret))
            self._fernets[version] = fernet
        return fernet

    def encode(self, plaintext: str) -> bytes:
        """Encrypt a serialized record.

        Args:
            plaintext: UTF-8 JSON text.

        Returns:
            Versioned ciphertext.
        """
        token = self._fernet(self.key_version).encrypt(plaintext.encode("utf-8"))
        return b"v%d." % self.key_version + token

    def decode(self, ciphertext: bytes) -> str:
        """Decrypt a versioned ciphertext.

        Args:
            ciphertext: Bytes previously produced by ``encode``.

        Returns:
            The decrypted UTF-8 text.

        Raises:
            DecryptionError: Missing or unknown version header, truncated
                ciphertext, failed authentication, wrong key, or plaintext
                that is not UTF-8.
        """
        header, sep, token = ciphertext.partition(b".")
        if not sep or not header.startswith(b"v") or not header[1:].isdigit():
            raise DecryptionError("missing key version header")

        version = int(header[1:])
        if version not in KEY_DERIVATIONS:
            raise DecryptionError(f"unknown key version {version}")

        try:
            plaintext = self._fernet(version).decrypt(token)
        except InvalidToken as e:
            raise DecryptionError("ciphertext failed authentication") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("decrypted payload is not UTF-8") from e
