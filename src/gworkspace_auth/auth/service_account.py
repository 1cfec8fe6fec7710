"""Service-account authentication provider.

Reads a JSON key file and mints access tokens with
``google.oauth2.service_account.Credentials``. Nothing is cached on disk:
the key file itself is the durable credential.
"""

import asyncio
import logging
from pathlib import Path

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from gworkspace_auth.auth.base import AuthProvider
from gworkspace_auth.auth.models import AuthInfo, ProviderState
from gworkspace_auth.auth.refresh_client import expiry_to_ms
from gworkspace_auth.errors import (
    AuthError,
    InvalidCredentialsError,
    MissingCredentialsError,
    RefreshTransientError,
)

logger = logging.getLogger(__name__)

AUTH_TYPE = "service-account"


class ServiceAccountAuthProvider(AuthProvider):
    """Provider backed by a service-account key file.

    Attributes:
        key_path: Path to the JSON key file.
        scopes: Scopes requested for access tokens.
    """

    auth_type = AUTH_TYPE

    def __init__(self, key_path: str | Path, scopes: list[str] | None = None) -> None:
        """Initialize the provider.

        Args:
            key_path: Path to the service-account JSON key file.
            scopes: Scopes requested for access tokens.

        Raises:
            MissingCredentialsError: If no key path is given.
        """
        if not key_path:
            raise MissingCredentialsError(
                AUTH_TYPE,
                "Service account key path is required",
                field="GOOGLE_SERVICE_ACCOUNT_KEY_PATH",
            )
        self.key_path = Path(key_path)
        self.scopes = list(scopes or [])
        self._credentials: service_account.Credentials | None = None

    def _load_key(self) -> service_account.Credentials:
        return service_account.Credentials.from_service_account_file(
            str(self.key_path), scopes=self.scopes or None
        )

    async def initialize(self) -> None:
        """Load the key file once.

        Raises:
            MissingCredentialsError: The key file does not exist.
            InvalidCredentialsError: The key file is not a valid service-account key.
        """
        if self._credentials is not None:
            return

        loop = asyncio.get_running_loop()
        try:
            self._credentials = await loop.run_in_executor(None, self._load_key)
        except FileNotFoundError as e:
            raise MissingCredentialsError(
                AUTH_TYPE,
                "Service account key file not found",
                field="GOOGLE_SERVICE_ACCOUNT_KEY_PATH",
            ) from e
        except (OSError, ValueError, KeyError) as e:
            raise InvalidCredentialsError(
                AUTH_TYPE,
                "Service account key file is invalid",
                field="GOOGLE_SERVICE_ACCOUNT_KEY_PATH",
            ) from e

        logger.info("Service account authentication initialized")

    async def get_auth_client(self) -> service_account.Credentials:
        """Return service-account credentials holding a valid access token.

        Raises:
            MissingCredentialsError: The key file does not exist.
            InvalidCredentialsError: The key is invalid or was rejected.
            RefreshTransientError: The token endpoint could not be reached.
        """
        await self.initialize()
        credentials = self._credentials
        if not credentials.valid:
            await self._refresh(credentials)
        return credentials

    async def _refresh(self, credentials: service_account.Credentials) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, credentials.refresh, Request())
        except TransportError as e:
            raise RefreshTransientError("network") from e
        except RefreshError as e:
            if getattr(e, "retryable", False):
                raise RefreshTransientError("server_error") from e
            raise InvalidCredentialsError(
                AUTH_TYPE, "Service account token request was rejected"
            ) from e

    async def validate_auth(self) -> bool:
        """Check whether an access token can be obtained. Never raises."""
        try:
            credentials = await self.get_auth_client()
        except AuthError as e:
            logger.warning(f"Service account validation failed ({e.kind.value})")
            return False
        return bool(credentials.token)

    async def refresh_token(self) -> None:
        """Mint a new access token."""
        await self.initialize()
        await self._refresh(self._credentials)

    async def get_auth_info(self) -> AuthInfo:
        try:
            await self.initialize()
        except AuthError:
            return AuthInfo(auth_type=self.auth_type, is_authenticated=False, scopes=self.scopes)

        credentials = self._credentials
        expires_at = AuthInfo.expiry_from_ms(expiry_to_ms(credentials.expiry))
        return AuthInfo(
            auth_type=self.auth_type,
            is_authenticated=credentials.valid,
            state=ProviderState.AUTHENTICATED if credentials.valid else None,
            scopes=self.scopes,
            expires_at=expires_at,
        )
