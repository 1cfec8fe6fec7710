"""Common interface for authentication providers."""

from abc import ABC, abstractmethod

from google.auth.credentials import Credentials

from gworkspace_auth.auth.models import AuthInfo


class AuthProvider(ABC):
    """A source of authenticated google-auth credentials.

    Providers are constructed once per process and shared by every caller.

    Attributes:
        auth_type: ``"oauth2"`` or ``"service-account"``.
    """

    auth_type: str

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the provider. Safe to call more than once."""

    @abstractmethod
    async def get_auth_client(self) -> Credentials:
        """Return credentials ready to authorize API requests.

        Raises:
            AuthError: Classified failure; see ``gworkspace_auth.errors``.
        """

    @abstractmethod
    async def validate_auth(self) -> bool:
        """Check whether the provider can currently authorize requests. Never raises."""

    @abstractmethod
    async def refresh_token(self) -> None:
        """Force a token refresh."""

    @abstractmethod
    async def get_auth_info(self) -> AuthInfo:
        """Summarize the authentication state without exposing secrets."""

    async def health_check(self) -> bool:
        """Report whether the provider is usable. Never raises."""
        return await self.validate_auth()
