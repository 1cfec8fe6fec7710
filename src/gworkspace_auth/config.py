"""Environment configuration for authentication.

All settings come from environment variables. ``AuthSettings.from_env()``
parses them once; malformed values raise ``InvalidCredentialsError`` naming the
variable (never echoing its value, which may be a secret).
"""

import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from gworkspace_auth.auth.backends import DEFAULT_CONFIG_DIR
from gworkspace_auth.auth.models import RetryPolicy
from gworkspace_auth.auth.token_utils import (
    DEFAULT_REFRESH_JITTER_MS,
    DEFAULT_REFRESH_THRESHOLD_MS,
)
from gworkspace_auth.errors import InvalidCredentialsError

CONFIG_AUTH_TYPE = "config"

AUTH_MODES = ("oauth2", "service-account")

DEFAULT_SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/drive.file",
]

DEFAULT_OAUTH_PORT = 3000

_FALSE_VALUES = frozenset({"false", "0", "off", "no"})


def _get(environ: Mapping[str, str], name: str) -> str | None:
    value = environ.get(name)
    if value is None or value == "":
        return None
    return value


def _invalid(name: str, expected: str) -> InvalidCredentialsError:
    return InvalidCredentialsError(CONFIG_AUTH_TYPE, f"{name} must be {expected}", field=name)


def _int(environ: Mapping[str, str], name: str) -> int | None:
    value = _get(environ, name)
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        raise _invalid(name, "an integer") from None


def _float(environ: Mapping[str, str], name: str) -> float | None:
    value = _get(environ, name)
    if value is None:
        return None
    try:
        return float(value.strip())
    except ValueError:
        raise _invalid(name, "a number") from None


def _int_list(environ: Mapping[str, str], name: str) -> tuple[int, ...] | None:
    value = _get(environ, name)
    if value is None:
        return None
    try:
        return tuple(int(part.strip()) for part in value.split(",") if part.strip())
    except ValueError:
        raise _invalid(name, "a comma-separated list of integers") from None


def _bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    value = _get(environ, name)
    if value is None:
        return default
    return value.strip().lower() not in _FALSE_VALUES


class AuthSettings(BaseModel):
    """Authentication settings.

    Attributes:
        auth_mode: Explicit mode (``oauth2`` or ``service-account``), or None
            to auto-detect.
        oauth_client_id: OAuth client id.
        oauth_client_secret: OAuth client secret. None for public clients.
        oauth_redirect_uri: Redirect URI registered for the client.
        oauth_port: Local callback port.
        oauth_scopes: Requested scopes.
        service_account_key_path: Path to a service-account JSON key.
        proactive_refresh: Refresh tokens before they expire.
        refresh_threshold_ms: Proactive refresh threshold.
        refresh_jitter_ms: Upper bound of the random early refresh offset.
        config_dir: Directory holding the encrypted token file.
    """

    auth_mode: str | None = None
    oauth_client_id: str | None = None
    oauth_client_secret: str | None = Field(default=None, repr=False)
    oauth_redirect_uri: str | None = None
    oauth_port: int | None = None
    oauth_scopes: list[str] = Field(default_factory=lambda: list(DEFAULT_SCOPES))
    service_account_key_path: str | None = None

    retry_max_attempts: int | None = None
    retry_base_delay_ms: int | None = None
    retry_max_delay_ms: int | None = None
    retry_jitter: float | None = None
    retry_retriable_codes: tuple[int, ...] | None = None
    request_timeout_ms: int | None = None
    total_timeout_ms: int | None = None

    proactive_refresh: bool = True
    refresh_threshold_ms: int = DEFAULT_REFRESH_THRESHOLD_MS
    refresh_jitter_ms: int = DEFAULT_REFRESH_JITTER_MS
    config_dir: Path = DEFAULT_CONFIG_DIR

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AuthSettings":
        """Build settings from environment variables.

        Args:
            environ: Mapping to read. Defaults to ``os.environ``.

        Returns:
            Parsed settings.

        Raises:
            InvalidCredentialsError: A variable is malformed.
        """
        env = os.environ if environ is None else environ

        auth_mode = _get(env, "GOOGLE_AUTH_MODE")
        if auth_mode is not None:
            auth_mode = auth_mode.strip().lower()
            if auth_mode not in AUTH_MODES:
                raise _invalid("GOOGLE_AUTH_MODE", "'oauth2' or 'service-account'")

        client_id = _get(env, "GOOGLE_OAUTH_CLIENT_ID")
        port = _int(env, "GOOGLE_OAUTH_PORT")
        redirect_uri = _get(env, "GOOGLE_OAUTH_REDIRECT_URI")
        if client_id is not None:
            port = port if port is not None else DEFAULT_OAUTH_PORT
            redirect_uri = redirect_uri or f"http://localhost:{port}/oauth2callback"

        scopes_value = _get(env, "GOOGLE_OAUTH_SCOPES")
        scopes = (
            [s.strip() for s in scopes_value.split(",") if s.strip()]
            if scopes_value
            else list(DEFAULT_SCOPES)
        )

        threshold = _int(env, "GOOGLE_OAUTH2_REFRESH_THRESHOLD")
        jitter = _int(env, "GOOGLE_OAUTH2_REFRESH_JITTER")
        if threshold is not None and threshold < 0:
            raise _invalid("GOOGLE_OAUTH2_REFRESH_THRESHOLD", "zero or positive")
        if jitter is not None and jitter < 0:
            raise _invalid("GOOGLE_OAUTH2_REFRESH_JITTER", "zero or positive")

        config_dir = _get(env, "GWORKSPACE_AUTH_CONFIG_DIR")

        return cls(
            auth_mode=auth_mode,
            oauth_client_id=client_id,
            oauth_client_secret=_get(env, "GOOGLE_OAUTH_CLIENT_SECRET"),
            oauth_redirect_uri=redirect_uri,
            oauth_port=port,
            oauth_scopes=scopes,
            service_account_key_path=_get(env, "GOOGLE_SERVICE_ACCOUNT_KEY_PATH"),
            retry_max_attempts=_int(env, "GOOGLE_RETRY_MAX_ATTEMPTS"),
            retry_base_delay_ms=_int(env, "GOOGLE_RETRY_BASE_DELAY"),
            retry_max_delay_ms=_int(env, "GOOGLE_RETRY_MAX_DELAY"),
            retry_jitter=_float(env, "GOOGLE_RETRY_JITTER"),
            retry_retriable_codes=_int_list(env, "GOOGLE_RETRY_RETRIABLE_CODES"),
            request_timeout_ms=_int(env, "GOOGLE_REQUEST_TIMEOUT"),
            total_timeout_ms=_int(env, "GOOGLE_TOTAL_TIMEOUT"),
            proactive_refresh=_bool(env, "GOOGLE_OAUTH2_PROACTIVE_REFRESH", True),
            refresh_threshold_ms=(
                threshold if threshold is not None else DEFAULT_REFRESH_THRESHOLD_MS
            ),
            refresh_jitter_ms=jitter if jitter is not None else DEFAULT_REFRESH_JITTER_MS,
            config_dir=Path(config_dir).expanduser() if config_dir else DEFAULT_CONFIG_DIR,
        )

    def retry_policy(self) -> RetryPolicy:
        """Build the refresh retry policy, filling unset values with defaults.

        Raises:
            InvalidCredentialsError: The combined values are out of range.
        """
        overrides = {
            "max_attempts": self.retry_max_attempts,
            "base_delay_ms": self.retry_base_delay_ms,
            "max_delay_ms": self.retry_max_delay_ms,
            "jitter_fraction": self.retry_jitter,
            "retriable_status_codes": self.retry_retriable_codes,
            "request_timeout_ms": self.request_timeout_ms,
            "total_timeout_ms": self.total_timeout_ms,
        }
        try:
            return RetryPolicy(**{k: v for k, v in overrides.items() if v is not None})
        except ValidationError as e:
            fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err["loc"]) or "retry"
            raise InvalidCredentialsError(
                CONFIG_AUTH_TYPE, f"Retry configuration is invalid ({fields})", field=fields
            ) from e
