"""Adapter over the google-auth OAuth2 client.

The provider only needs one capability from an OAuth2 client: exchange a
refresh token for a new access token. ``RefreshClient`` is that seam; the
google-auth implementation below maps library exceptions onto the
``RefreshTransientError`` / ``ReauthorizationRequiredError`` split that the
retry loop dispatches on.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Protocol

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from gworkspace_auth.auth.models import StoredCredentials, now_ms
from gworkspace_auth.errors import ReauthorizationRequiredError, RefreshTransientError

logger = logging.getLogger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"  # nosec B105 - public Google OAuth endpoint

# Token endpoint statuses that mean "try again later" rather than a rejected grant
SERVER_BUSY_STATUSES = frozenset({408, 429})


class RefreshClient(Protocol):
    """Anything that can refresh an access token."""

    async def refresh_access_token(self, credentials: StoredCredentials) -> StoredCredentials:
        """Return a new record carrying a fresh access token.

        Raises:
            RefreshTransientError: Network, timeout, or server failure.
            ReauthorizationRequiredError: The refresh token was revoked or expired.
        """
        ...


def expiry_to_ms(expiry: datetime | None) -> int | None:
    if expiry is None:
        return None
    # google-auth keeps expiry as naive UTC
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return round(expiry.timestamp() * 1000)


def _ms_to_expiry(expiry_ms: int | None) -> datetime | None:
    if expiry_ms is None:
        return None
    return datetime.fromtimestamp(expiry_ms / 1000, tz=timezone.utc).replace(tzinfo=None)


def build_google_credentials(
    stored: StoredCredentials,
    client_secret: str | None = None,
    token_uri: str = TOKEN_URI,
) -> Credentials:
    """Convert a stored record to google-auth Credentials.

    Args:
        stored: Cached record.
        client_secret: OAuth client secret, None for public clients.
        token_uri: Token endpoint.

    Returns:
        Credentials usable to authorize API requests.
    """
    return Credentials(
        token=stored.access_token,
        refresh_token=stored.refresh_token,
        token_uri=token_uri,
        client_id=stored.client_id,
        client_secret=client_secret,
        scopes=stored.scopes or None,
        expiry=_ms_to_expiry(stored.expiry_timestamp),
    )


def build_access_credentials(
    stored: StoredCredentials, token_uri: str = TOKEN_URI
) -> Credentials:
    """Convert a stored record to access-token-only google-auth Credentials.

    The result carries no refresh token or client secret, so google-auth
    cannot refresh it behind the provider's back. Once the token expires,
    ``refresh()`` raises ``RefreshError`` and ``call_with_refresh`` routes
    the retry through the provider.
    """
    return Credentials(
        token=stored.access_token,
        token_uri=token_uri,
        client_id=stored.client_id,
        scopes=stored.scopes or None,
        expiry=_ms_to_expiry(stored.expiry_timestamp),
    )


def is_revocation(error: RefreshError) -> bool:
    """Check whether google-auth rejected the refresh token itself."""
    return any("invalid_grant" in str(arg) for arg in error.args)


def is_transient_status(status: int | None) -> bool:
    return status is not None and (status >= 500 or status in SERVER_BUSY_STATUSES)


class StatusRecordingRequest(Request):
    """google-auth transport that remembers the last HTTP status it received.

    ``RefreshError`` does not carry the token endpoint status code.
    """

    def __init__(self, session=None) -> None:
        super().__init__(session)
        self.last_status: int | None = None

    def __call__(self, *args, **kwargs):
        response = super().__call__(*args, **kwargs)
        self.last_status = response.status
        return response


class GoogleRefreshClient:
    """Refreshes tokens through ``google.oauth2.credentials.Credentials``.

    The blocking ``Credentials.refresh`` call runs in the default executor.

    Attributes:
        client_id: OAuth client id.
        token_uri: Token endpoint.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str | None = None,
        token_uri: str = TOKEN_URI,
    ) -> None:
        self.client_id = client_id
        self._client_secret = client_secret
        self.token_uri = token_uri

    @staticmethod
    def from_google_credentials(
        credentials: Credentials, previous: StoredCredentials
    ) -> StoredCredentials:
        """Build the replacement record after a refresh.

        The refresh token is carried over when Google does not rotate it.
        """
        return StoredCredentials.create(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token or previous.refresh_token,
            expiry_timestamp=expiry_to_ms(credentials.expiry),
            token_type=previous.token_type,
            scopes=previous.scopes,
            client_id=previous.client_id,
            stored_at=now_ms(),
            user_id=previous.user_id,
        )

    async def refresh_access_token(self, credentials: StoredCredentials) -> StoredCredentials:
        """Exchange the refresh token for a new access token.

        Args:
            credentials: Current record. Must carry a refresh token.

        Returns:
            The refreshed record.

        Raises:
            RefreshTransientError: Transport failure or retryable server error.
                ``status_code`` holds the token endpoint's HTTP status when one
                was received.
            ReauthorizationRequiredError: No refresh token, or Google rejected it.
        """
        if not credentials.refresh_token:
            raise ReauthorizationRequiredError("no_refresh_token")

        google_credentials = build_google_credentials(
            credentials, self._client_secret, self.token_uri
        )
        request = StatusRecordingRequest()
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, google_credentials.refresh, request)
        except TransportError as e:
            raise RefreshTransientError("network") from e
        except RefreshError as e:
            status = request.last_status
            if getattr(e, "retryable", False) or is_transient_status(status):
                raise RefreshTransientError("server_error", status_code=status) from e
            reason = "invalid_grant" if is_revocation(e) else "refresh_rejected"
            logger.warning(f"Token endpoint rejected the refresh token ({reason})")
            raise ReauthorizationRequiredError(reason) from e

        return self.from_google_credentials(google_credentials, credentials)
