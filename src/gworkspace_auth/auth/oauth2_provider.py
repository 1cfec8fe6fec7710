"""OAuth2 authentication provider.

Owns the in-memory credential record for the process and hands out
google-auth credentials to API callers. Tokens are refreshed:

- proactively, when the remaining lifetime drops below a threshold
  (``GOOGLE_OAUTH2_REFRESH_THRESHOLD``, default 5 minutes);
- when the cached token has already expired;
- on demand, when an API call wrapped in ``call_with_refresh`` reports an
  expired token.

All refresh paths share one in-flight operation: concurrent callers attach to
the running refresh and observe its single outcome.

State machine::

    UNAUTHENTICATED -> AUTHENTICATED <-> REFRESHING
                                      -> REAUTH_REQUIRED (until new authorization)
"""

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials

from gworkspace_auth.auth.base import AuthProvider
from gworkspace_auth.auth.metrics import AuthMetrics
from gworkspace_auth.auth.models import AuthInfo, ProviderState, RetryPolicy, StoredCredentials
from gworkspace_auth.auth.refresh_client import (
    TOKEN_URI,
    GoogleRefreshClient,
    RefreshClient,
    build_access_credentials,
)
from gworkspace_auth.auth.retry import retry_refresh
from gworkspace_auth.auth.token_storage import TokenStorage
from gworkspace_auth.auth.token_utils import (
    DEFAULT_REFRESH_JITTER_MS,
    DEFAULT_REFRESH_THRESHOLD_MS,
    is_expiring_soon,
)
from gworkspace_auth.errors import (
    AuthError,
    PersistenceError,
    ReauthorizationRequiredError,
    RefreshTransientError,
    TokenCacheCorruptedError,
    safe_error_summary,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

REFRESH_PROACTIVE = "proactive"
REFRESH_EXPIRED = "expired"
REFRESH_ON_DEMAND = "on_demand"
REFRESH_MANUAL = "manual"


@dataclass
class RefreshState:
    """In-memory credential and the refresh currently running, if any."""

    current_credentials: StoredCredentials | None = None
    in_flight: "asyncio.Task[StoredCredentials] | None" = None


def is_token_expired_error(error: BaseException) -> bool:
    """Check whether an API failure means the access token is no longer valid."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code == 401
    return isinstance(error, RefreshError)


class OAuth2AuthProvider(AuthProvider):
    """Provider backed by cached user OAuth2 tokens.

    The authorization-code exchange happens elsewhere; its result enters
    through ``store_authorized_credentials``. Construct one instance per
    process and share it.

    Attributes:
        state: Current ``ProviderState``.
        storage: Token storage service.
        metrics: Metric emitter.
        retry_policy: Refresh retry policy.

    Example:
        ```python
        provider = OAuth2AuthProvider(client_id, storage, client_secret=secret)
        try:
            creds = await provider.get_auth_client()
        except ReauthorizationRequiredError:
            print(user_message(...))

        # Retry once with a fresh token when the call returns 401
        result = await provider.call_with_refresh(lambda c: list_files(c))
        ```
    """

    auth_type = "oauth2"

    def __init__(
        self,
        client_id: str,
        storage: TokenStorage,
        client_secret: str | None = None,
        scopes: list[str] | None = None,
        refresh_client: RefreshClient | None = None,
        retry_policy: RetryPolicy | None = None,
        metrics: AuthMetrics | None = None,
        proactive_refresh: bool = True,
        refresh_threshold_ms: int = DEFAULT_REFRESH_THRESHOLD_MS,
        refresh_jitter_ms: int = DEFAULT_REFRESH_JITTER_MS,
        token_uri: str = TOKEN_URI,
        rand: Callable[[], float] = random.random,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the provider.

        Args:
            client_id: OAuth client id.
            storage: Token storage service.
            client_secret: OAuth client secret. None for public (PKCE) clients.
            scopes: Scopes requested at authorization.
            refresh_client: Token refresher. Defaults to google-auth.
            retry_policy: Refresh retry policy.
            metrics: Metric emitter. Defaults to the storage service's emitter.
            proactive_refresh: Refresh before expiry.
            refresh_threshold_ms: Proactive refresh threshold.
            refresh_jitter_ms: Upper bound of the random early refresh offset.
            token_uri: Token endpoint.
            rand: Jitter source.
            sleep: Backoff sleep.
        """
        self.client_id = client_id
        self._client_secret = client_secret
        self.scopes = list(scopes or [])
        self.storage = storage
        self.refresh_client = refresh_client or GoogleRefreshClient(
            client_id, client_secret, token_uri
        )
        self.retry_policy = retry_policy or RetryPolicy()
        self.metrics = metrics or storage.metrics
        self.proactive_refresh = proactive_refresh
        self.refresh_threshold_ms = refresh_threshold_ms
        self.refresh_jitter_ms = refresh_jitter_ms
        self.token_uri = token_uri
        self._rand = rand
        self._sleep = sleep

        self.state = ProviderState.UNAUTHENTICATED
        self._refresh_state = RefreshState()
        self._lock = asyncio.Lock()

    @property
    def credentials(self) -> StoredCredentials | None:
        """The in-memory credential record."""
        return self._refresh_state.current_credentials

    async def initialize(self) -> None:
        """Load cached credentials if none are held in memory.

        Absent or corrupted caches leave the provider without credentials;
        ``get_auth_client`` reports that as ``ReauthorizationRequiredError``.
        """
        try:
            await self._ensure_credentials()
        except ReauthorizationRequiredError:
            pass

    async def _ensure_credentials(self) -> StoredCredentials:
        current = self._refresh_state.current_credentials
        if current is not None:
            return current

        async with self._lock:
            current = self._refresh_state.current_credentials
            if current is not None:
                return current

            try:
                stored = await self.storage.get_tokens()
            except TokenCacheCorruptedError as e:
                # Already quarantined; the cache is empty now
                self.state = ProviderState.REAUTH_REQUIRED
                raise ReauthorizationRequiredError("cache_corrupted") from e

            if stored is None:
                if self.state is not ProviderState.REAUTH_REQUIRED:
                    self.state = ProviderState.UNAUTHENTICATED
                raise ReauthorizationRequiredError("no_credentials")

            self._refresh_state.current_credentials = stored
            self.state = ProviderState.AUTHENTICATED
            logger.info("Loaded cached OAuth2 credentials")
            return stored

    def _to_client(self, credentials: StoredCredentials) -> Credentials:
        return build_access_credentials(credentials, self.token_uri)

    async def get_auth_client(self) -> Credentials:
        """Return credentials for API requests, refreshing first when due.

        Returns:
            google-auth Credentials carrying a current access token and no
            refresh token. Refreshes only happen through this provider.

        Raises:
            ReauthorizationRequiredError: No cached credentials, the cache was
                corrupted, or the refresh token was rejected.
            RefreshTransientError: The token has expired and could not be
                refreshed right now. Retry later.
        """
        credentials = await self._ensure_credentials()

        if credentials.is_expired():
            credentials = await self._refresh(REFRESH_EXPIRED, observed=credentials)
        elif (
            self.proactive_refresh
            and credentials.refresh_token
            and is_expiring_soon(
                credentials.expiry_timestamp,
                self.refresh_threshold_ms,
                self.refresh_jitter_ms,
                rand=self._rand,
            )
        ):
            try:
                credentials = await self._refresh(REFRESH_PROACTIVE, observed=credentials)
            except RefreshTransientError:
                if credentials.is_expired():
                    raise
                logger.warning("Proactive refresh failed, using the current token until expiry")

        return self._to_client(credentials)

    async def _refresh(
        self, refresh_type: str, observed: StoredCredentials | None
    ) -> StoredCredentials:
        """Join the running refresh or start one.

        Args:
            refresh_type: Trigger, reported in metrics.
            observed: Record the caller decided to refresh. If another refresh
                already replaced it, that result is returned without a new
                network call. None forces a refresh.
        """
        async with self._lock:
            state = self._refresh_state
            task = state.in_flight
            if task is None:
                current = state.current_credentials
                if current is None:
                    raise ReauthorizationRequiredError("no_credentials")
                if observed is not None and current is not observed and not current.is_expired():
                    return current

                if refresh_type == REFRESH_PROACTIVE:
                    self.metrics.emit_refresh_proactive(
                        time_until_expiry_ms=current.time_until_expiry_ms(),
                        threshold_ms=self.refresh_threshold_ms,
                    )
                task = asyncio.create_task(self._execute_refresh(current, refresh_type))
                task.add_done_callback(self._clear_in_flight)
                state.in_flight = task

        # Shielded so one cancelled caller does not cancel the shared refresh
        return await asyncio.shield(task)

    def _clear_in_flight(self, task: "asyncio.Task[StoredCredentials]") -> None:
        if self._refresh_state.in_flight is task:
            self._refresh_state.in_flight = None

    async def _execute_refresh(
        self, current: StoredCredentials, refresh_type: str
    ) -> StoredCredentials:
        start = time.monotonic()
        self.state = ProviderState.REFRESHING
        logger.info(f"Refreshing OAuth2 tokens ({refresh_type})")

        try:
            refreshed, attempts = await retry_refresh(
                lambda: self.refresh_client.refresh_access_token(current),
                self.retry_policy,
                sleep=self._sleep,
                rand=self._rand,
            )
        except ReauthorizationRequiredError as e:
            self._emit_failure(e, start, refresh_type, retry_count=0)
            logger.error(f"OAuth2 refresh token rejected ({e.reason}), re-authorization required")
            self._refresh_state.current_credentials = None
            self.state = ProviderState.REAUTH_REQUIRED
            await self.storage.delete_tokens()
            raise
        except RefreshTransientError as e:
            self._emit_failure(e, start, refresh_type, retry_count=max(e.attempts - 1, 0))
            logger.error(f"OAuth2 token refresh failed after {e.attempts} attempt(s) ({e.reason})")
            self.state = ProviderState.AUTHENTICATED
            raise
        except Exception as e:
            self._emit_failure(e, start, refresh_type, retry_count=0)
            logger.error(f"OAuth2 token refresh failed ({safe_error_summary(e)})")
            self.state = ProviderState.AUTHENTICATED
            raise

        self._refresh_state.current_credentials = refreshed
        self.state = ProviderState.AUTHENTICATED
        await self._persist(refreshed)

        self.metrics.emit_refresh_success(
            duration_ms=(time.monotonic() - start) * 1000,
            refresh_type=refresh_type,
            time_until_expiry_ms=refreshed.time_until_expiry_ms(),
            attempts=attempts,
        )
        logger.info(f"OAuth2 token refresh completed ({refresh_type})")
        return refreshed

    def _emit_failure(
        self, error: Exception, start: float, refresh_type: str, retry_count: int
    ) -> None:
        self.metrics.emit_refresh_failure(
            error=error.kind.value if isinstance(error, AuthError) else safe_error_summary(error),
            duration_ms=(time.monotonic() - start) * 1000,
            refresh_type=refresh_type,
            retry_count=retry_count,
        )

    async def _persist(self, credentials: StoredCredentials) -> None:
        """Save credentials; a failure keeps the in-memory record usable."""
        try:
            await self.storage.save_tokens(credentials)
        except PersistenceError as e:
            logger.warning(
                "Refreshed tokens could not be saved; they stay valid for this process"
            )
            self.metrics.emit_persistence_failure(error=e.kind.value)

    async def refresh_token(self) -> None:
        """Force a refresh, joining one that is already running.

        Raises:
            ReauthorizationRequiredError: No credentials or the refresh token
                was rejected.
            RefreshTransientError: The refresh failed temporarily.
        """
        await self._ensure_credentials()
        await self._refresh(REFRESH_MANUAL, observed=None)

    async def call_with_refresh(self, operation: Callable[[Credentials], Awaitable[T]]) -> T:
        """Run an API call, refreshing once if it reports an expired token.

        Args:
            operation: Coroutine function taking google-auth credentials.

        Returns:
            The operation's result.

        Raises:
            AuthError: When no usable credentials can be obtained.
            Exception: Whatever the operation raises on its retry, or on the
                first call for failures other than an expired token.
        """
        client = await self.get_auth_client()
        observed = self._refresh_state.current_credentials
        try:
            return await operation(client)
        except (httpx.HTTPStatusError, RefreshError) as e:
            if not is_token_expired_error(e):
                raise
            logger.info("API call reported an expired access token, refreshing")

        refreshed = await self._refresh(REFRESH_ON_DEMAND, observed=observed)
        return await operation(self._to_client(refreshed))

    async def validate_auth(self) -> bool:
        """Check whether a usable access token is available. Never raises."""
        try:
            await self.get_auth_client()
        except AuthError as e:
            logger.debug(f"OAuth2 validation failed ({e.kind.value})")
            return False
        return True

    async def get_auth_info(self) -> AuthInfo:
        """Summarize the provider state without exposing tokens."""
        await self.initialize()
        credentials = self._refresh_state.current_credentials
        if credentials is None:
            return AuthInfo(
                auth_type=self.auth_type,
                is_authenticated=False,
                state=self.state,
                scopes=self.scopes,
            )
        return AuthInfo(
            auth_type=self.auth_type,
            is_authenticated=not credentials.is_expired(),
            state=self.state,
            scopes=credentials.scopes or self.scopes,
            expires_at=AuthInfo.expiry_from_ms(credentials.expiry_timestamp),
            has_refresh_token=bool(credentials.refresh_token),
        )

    async def store_authorized_credentials(self, credentials: StoredCredentials) -> None:
        """Adopt credentials from a completed authorization.

        Leaves ``REAUTH_REQUIRED`` and persists the record. A persistence
        failure is logged; the credentials remain usable in this process.
        """
        async with self._lock:
            self._refresh_state.current_credentials = credentials
            self.state = ProviderState.AUTHENTICATED
        await self._persist(credentials)
        logger.info("Stored newly authorized OAuth2 credentials")

    async def logout(self) -> None:
        """Forget the in-memory credentials and delete the cached copies."""
        async with self._lock:
            self._refresh_state.current_credentials = None
            self.state = ProviderState.UNAUTHENTICATED
        await self.storage.delete_tokens()
        logger.info("Logged out of OAuth2")
