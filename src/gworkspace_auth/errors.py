"""Error taxonomy for the credential lifecycle.

Every failure that crosses a component boundary is an ``AuthError`` carrying
a closed ``ErrorKind``. Callers dispatch on ``error.kind`` rather than on the
concrete class, and ``user_message()`` maps every kind to the text shown to
an operator.

Messages are assembled from fixed text and exception type names only. Raw
backend exceptions are chained with ``raise ... from`` so they remain
available to a debugger, but their messages (which may embed token
fragments) are never interpolated into an ``AuthError``.
"""

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from gworkspace_auth.auth.models import CorruptionReport

REAUTH_HINT = "Run 'gworkspace-auth status' and re-authorize the application."


class ErrorKind(str, Enum):
    """Closed set of failure kinds."""

    MISSING_CREDENTIALS = "missing_credentials"
    INVALID_CREDENTIALS = "invalid_credentials"
    STORE_UNAVAILABLE = "store_unavailable"
    TOKEN_CACHE_CORRUPTED = "token_cache_corrupted"
    REAUTHORIZATION_REQUIRED = "reauthorization_required"
    REFRESH_TRANSIENT_FAILURE = "refresh_transient_failure"
    PERSISTENCE_FAILURE = "persistence_failure"


def safe_error_summary(error: BaseException | None) -> str:
    """Describe an exception without its message.

    Args:
        error: Exception to describe.

    Returns:
        The exception's type name, or ``"unknown"``.
    """
    if error is None:
        return "unknown"
    return type(error).__name__


class AuthError(Exception):
    """Base class for classified credential lifecycle failures.

    Attributes:
        kind: The failure kind.
        retryable: Whether retrying the same call later may succeed.
        needs_reauth: Whether the user must authorize the application again.
        context: Non-secret details for logging.
    """

    kind: ErrorKind
    retryable: bool = False
    needs_reauth: bool = False

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}


class MissingCredentialsError(AuthError):
    """Configuration lacks a field required by the selected auth mode."""

    kind = ErrorKind.MISSING_CREDENTIALS

    def __init__(self, auth_type: str, message: str, field: str | None = None) -> None:
        super().__init__(message, {"auth_type": auth_type, "field": field})
        self.auth_type = auth_type
        self.field = field


class InvalidCredentialsError(AuthError):
    """Configuration is present but malformed."""

    kind = ErrorKind.INVALID_CREDENTIALS

    def __init__(self, auth_type: str, message: str, field: str | None = None) -> None:
        super().__init__(message, {"auth_type": auth_type, "field": field})
        self.auth_type = auth_type
        self.field = field


class StoreUnavailableError(AuthError):
    """A storage backend could not be reached. Never a sign of corruption."""

    kind = ErrorKind.STORE_UNAVAILABLE
    retryable = True

    def __init__(self, source: str, operation: str, cause: BaseException | None = None) -> None:
        summary = safe_error_summary(cause)
        super().__init__(
            f"Token store '{source}' unavailable during {operation} ({summary})",
            {"source": source, "operation": operation, "cause": summary},
        )
        self.source = source
        self.operation = operation
        self.cause_summary = summary


class TokenCacheCorruptedError(AuthError):
    """Cached credentials were unreadable and have been quarantined.

    The cache behaves as empty afterwards; the user has to authorize again.
    When both backends were corrupted at once, ``reports`` holds one report
    per backend.
    """

    kind = ErrorKind.TOKEN_CACHE_CORRUPTED
    needs_reauth = True

    def __init__(self, reports: "list[CorruptionReport]") -> None:
        if not reports:
            raise ValueError("TokenCacheCorruptedError requires at least one report")
        sources = ", ".join(r.source.value for r in reports)
        types = ", ".join(r.corruption_type.value for r in reports)
        super().__init__(
            f"Token cache corrupted ({sources}: {types}); cached credentials were quarantined",
            {"sources": sources, "corruption_types": types},
        )
        self.reports = list(reports)

    @property
    def report(self) -> "CorruptionReport":
        """The first (primary backend) corruption report."""
        return self.reports[0]


class ReauthorizationRequiredError(AuthError):
    """No usable credentials: absent, quarantined, or the refresh token was revoked.

    Terminal until a new authorization is stored. Never retried.
    """

    kind = ErrorKind.REAUTHORIZATION_REQUIRED
    needs_reauth = True

    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(message or f"Authorization required ({reason})", {"reason": reason})
        self.reason = reason


class RefreshTransientError(AuthError):
    """Network, timeout, or 5xx failure while refreshing the access token."""

    kind = ErrorKind.REFRESH_TRANSIENT_FAILURE
    retryable = True

    def __init__(
        self,
        reason: str,
        status_code: int | None = None,
        attempts: int = 0,
    ) -> None:
        detail = f"status {status_code}" if status_code is not None else reason
        super().__init__(
            f"Token refresh failed temporarily ({detail})",
            {"reason": reason, "status_code": status_code, "attempts": attempts},
        )
        self.reason = reason
        self.status_code = status_code
        self.attempts = attempts


class PersistenceError(AuthError):
    """Credentials could not be saved to any backend."""

    kind = ErrorKind.PERSISTENCE_FAILURE
    retryable = True

    def __init__(self, causes: dict[str, str]) -> None:
        cited = "; ".join(f"{source}: {summary}" for source, summary in causes.items())
        super().__init__(f"Failed to save OAuth2 tokens ({cited})", {"causes": dict(causes)})
        self.causes = dict(causes)


_USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.MISSING_CREDENTIALS: (
        "Authentication is not configured. Set GOOGLE_OAUTH_CLIENT_ID or "
        "GOOGLE_SERVICE_ACCOUNT_KEY_PATH."
    ),
    ErrorKind.INVALID_CREDENTIALS: "Authentication configuration is invalid. Check the environment.",
    ErrorKind.STORE_UNAVAILABLE: "The credential store is temporarily unavailable. Try again.",
    ErrorKind.TOKEN_CACHE_CORRUPTED: f"Cached credentials were corrupted and removed. {REAUTH_HINT}",
    ErrorKind.REAUTHORIZATION_REQUIRED: f"Please authenticate. {REAUTH_HINT}",
    ErrorKind.REFRESH_TRANSIENT_FAILURE: "Token refresh failed temporarily. Try again shortly.",
    ErrorKind.PERSISTENCE_FAILURE: "Credentials could not be saved; they remain valid for this session.",
}


def user_message(error: AuthError) -> str:
    """Return the operator-facing message for a classified failure.

    Args:
        error: A classified failure.

    Returns:
        Actionable text. Kinds that need re-authorization say so explicitly.
    """
    return _USER_MESSAGES[error.kind]
