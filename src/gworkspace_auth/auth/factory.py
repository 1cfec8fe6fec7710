"""Authentication provider selection.

Mode resolution:

1. ``GOOGLE_AUTH_MODE`` wins when set.
2. Only a service-account key path set -> ``service-account``.
3. Only an OAuth client id set (secret optional) -> ``oauth2``.
4. Both set -> ``service-account``.
5. Neither set -> ``service-account``, which then fails validation with
   ``MissingCredentialsError``.

The selected mode's required fields are validated before anything is built,
so a half-configured provider is never returned.
"""

import logging

import httpx

from gworkspace_auth.auth.backends import TOKEN_FILE_NAME, FileCacheBackend
from gworkspace_auth.auth.base import AuthProvider
from gworkspace_auth.auth.metrics import AuthMetrics
from gworkspace_auth.auth.oauth2_provider import OAuth2AuthProvider
from gworkspace_auth.auth.service_account import ServiceAccountAuthProvider
from gworkspace_auth.auth.token_storage import TokenStorage
from gworkspace_auth.config import AuthSettings
from gworkspace_auth.errors import InvalidCredentialsError, MissingCredentialsError

logger = logging.getLogger(__name__)

OAUTH2 = "oauth2"
SERVICE_ACCOUNT = "service-account"


class AuthFactory:
    """Builds the process-wide authentication provider from settings."""

    @staticmethod
    def determine_mode(settings: AuthSettings) -> str:
        """Pick the authentication mode.

        Args:
            settings: Parsed settings.

        Returns:
            ``"oauth2"`` or ``"service-account"``.
        """
        if settings.auth_mode:
            return settings.auth_mode

        has_service_account = bool(settings.service_account_key_path)
        has_oauth = bool(settings.oauth_client_id)

        if has_oauth and not has_service_account:
            return OAUTH2
        # Key path only, both, or neither
        return SERVICE_ACCOUNT

    @classmethod
    def validate_config(cls, settings: AuthSettings, mode: str) -> None:
        """Check the fields the mode requires.

        Raises:
            MissingCredentialsError: A required field is unset.
            InvalidCredentialsError: A field is set but malformed, or the mode
                is unknown.
        """
        if mode == SERVICE_ACCOUNT:
            cls._validate_service_account(settings)
        elif mode == OAUTH2:
            cls._validate_oauth2(settings)
        else:
            raise InvalidCredentialsError(
                mode, f"Unsupported authentication mode: {mode}", field="GOOGLE_AUTH_MODE"
            )

    @staticmethod
    def _validate_service_account(settings: AuthSettings) -> None:
        key_path = settings.service_account_key_path
        if key_path is None:
            raise MissingCredentialsError(
                SERVICE_ACCOUNT,
                "Service account authentication requires GOOGLE_SERVICE_ACCOUNT_KEY_PATH",
                field="GOOGLE_SERVICE_ACCOUNT_KEY_PATH",
            )
        if not key_path.strip():
            raise InvalidCredentialsError(
                SERVICE_ACCOUNT,
                "GOOGLE_SERVICE_ACCOUNT_KEY_PATH must be a non-empty path",
                field="GOOGLE_SERVICE_ACCOUNT_KEY_PATH",
            )

    @staticmethod
    def _validate_oauth2(settings: AuthSettings) -> None:
        client_id = settings.oauth_client_id
        if client_id is None:
            raise MissingCredentialsError(
                OAUTH2,
                "OAuth2 authentication requires GOOGLE_OAUTH_CLIENT_ID",
                field="GOOGLE_OAUTH_CLIENT_ID",
            )
        if not client_id.strip():
            raise InvalidCredentialsError(
                OAUTH2,
                "GOOGLE_OAUTH_CLIENT_ID must be a non-empty string",
                field="GOOGLE_OAUTH_CLIENT_ID",
            )

        # The secret is optional (public clients) but must not be blank when given
        secret = settings.oauth_client_secret
        if secret is not None and not secret.strip():
            raise InvalidCredentialsError(
                OAUTH2,
                "GOOGLE_OAUTH_CLIENT_SECRET must be a non-empty string when provided",
                field="GOOGLE_OAUTH_CLIENT_SECRET",
            )

        port = settings.oauth_port
        if port is not None and not 1 <= port <= 65535:
            raise InvalidCredentialsError(
                OAUTH2,
                "GOOGLE_OAUTH_PORT must be between 1 and 65535",
                field="GOOGLE_OAUTH_PORT",
            )

        if settings.oauth_redirect_uri:
            try:
                url = httpx.URL(settings.oauth_redirect_uri)
            except httpx.InvalidURL:
                url = None
            if url is None or url.scheme not in ("http", "https") or not url.host:
                raise InvalidCredentialsError(
                    OAUTH2,
                    "GOOGLE_OAUTH_REDIRECT_URI must be an http(s) URL",
                    field="GOOGLE_OAUTH_REDIRECT_URI",
                )

    @staticmethod
    def create_token_storage(
        settings: AuthSettings, metrics: AuthMetrics | None = None
    ) -> TokenStorage:
        """Build token storage whose file backend lives in ``settings.config_dir``."""
        return TokenStorage(
            file_cache=FileCacheBackend(settings.config_dir / TOKEN_FILE_NAME),
            metrics=metrics,
        )

    @classmethod
    def create_auth_provider(
        cls,
        settings: AuthSettings | None = None,
        storage: TokenStorage | None = None,
        metrics: AuthMetrics | None = None,
    ) -> AuthProvider:
        """Select, validate, and build the provider.

        Args:
            settings: Parsed settings. Read from the environment when omitted.
            storage: Token storage for OAuth2. Built from ``settings.config_dir``
                when omitted.
            metrics: Metric emitter shared by storage and provider.

        Returns:
            A fully configured provider.

        Raises:
            MissingCredentialsError: Required configuration is absent.
            InvalidCredentialsError: Configuration is malformed.
        """
        settings = settings or AuthSettings.from_env()
        mode = cls.determine_mode(settings)
        logger.info(
            f"Authentication mode: {mode}"
            + ("" if settings.auth_mode else " (auto-detected)")
        )

        try:
            cls.validate_config(settings, mode)
        except (MissingCredentialsError, InvalidCredentialsError) as e:
            logger.error(f"Authentication configuration invalid ({e.field or mode})")
            raise

        if mode == SERVICE_ACCOUNT:
            logger.info("Service account key path: [CONFIGURED]")
            return ServiceAccountAuthProvider(
                settings.service_account_key_path, scopes=settings.oauth_scopes
            )

        metrics = metrics or (storage.metrics if storage else AuthMetrics())
        storage = storage or cls.create_token_storage(settings, metrics)
        client_type = "confidential" if settings.oauth_client_secret else "public"
        logger.info(f"OAuth2 client id: [CONFIGURED] ({client_type} client)")
        return OAuth2AuthProvider(
            client_id=settings.oauth_client_id,
            storage=storage,
            client_secret=settings.oauth_client_secret,
            scopes=settings.oauth_scopes,
            retry_policy=settings.retry_policy(),
            metrics=metrics,
            proactive_refresh=settings.proactive_refresh,
            refresh_threshold_ms=settings.refresh_threshold_ms,
            refresh_jitter_ms=settings.refresh_jitter_ms,
        )
