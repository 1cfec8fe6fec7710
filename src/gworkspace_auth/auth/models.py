"""Data models for cached OAuth2 credentials.

The JSON form of ``StoredCredentials`` is the persisted record shared by both
storage backends::

    {
      "tokens": {"access_token": ..., "refresh_token": ..., "expiry_date": <epoch-ms>,
                 "token_type": "Bearer", "scope": ...},
      "clientConfig": {"clientId": ..., "scopes": [...]},
      "storedAt": <epoch-ms>,
      "userId": ...
    }
"""

import time
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, model_validator


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class StorageSource(str, Enum):
    """Storage backends that can hold the credential record."""

    SECRET_STORE = "secret-store"
    FILE = "file"


class CorruptionType(str, Enum):
    """Stage at which a stored record failed to decode."""

    ENCRYPTION = "encryption"
    JSON = "json"
    STRUCTURE = "structure"


class TokenStatus(str, Enum):
    """Status of the cached credential record."""

    VALID = "valid"
    EXPIRED = "expired"
    MISSING = "missing"
    INVALID = "invalid"


class ProviderState(str, Enum):
    """Lifecycle state of an OAuth2 provider."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    REAUTH_REQUIRED = "reauth_required"


class OAuth2Tokens(BaseModel):
    """Token set returned by the Google token endpoint."""

    access_token: str = Field(..., min_length=1, description="Access token for API calls")
    refresh_token: str | None = Field(default=None, description="Refresh token")
    expiry_date: int | None = Field(default=None, description="Expiry in epoch milliseconds")
    token_type: str = Field(default="Bearer", description="Token type")
    scope: str | None = Field(default=None, description="Space separated granted scopes")


class ClientConfig(BaseModel):
    """OAuth client the tokens were issued to."""

    client_id: str = Field(..., alias="clientId", min_length=1)
    scopes: list[str] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class StoredCredentials(BaseModel):
    """The single cached credential record.

    Replaced wholesale on every refresh. Two records are equal when every
    field is equal, so a save/load cycle can be checked with ``==``.
    """

    tokens: OAuth2Tokens
    client_config: ClientConfig = Field(..., alias="clientConfig")
    stored_at: int = Field(..., alias="storedAt", gt=0)
    user_id: str | None = Field(default=None, alias="userId")

    model_config = {"populate_by_name": True}

    @classmethod
    def create(
        cls,
        *,
        access_token: str,
        client_id: str,
        refresh_token: str | None = None,
        expiry_timestamp: int | None = None,
        token_type: str = "Bearer",
        scope: str | None = None,
        scopes: list[str] | None = None,
        stored_at: int | None = None,
        user_id: str | None = None,
    ) -> "StoredCredentials":
        """Build a record from flat fields."""
        scopes = list(scopes or [])
        return cls(
            tokens=OAuth2Tokens(
                access_token=access_token,
                refresh_token=refresh_token,
                expiry_date=expiry_timestamp,
                token_type=token_type,
                scope=scope if scope is not None else (" ".join(scopes) or None),
            ),
            client_config=ClientConfig(client_id=client_id, scopes=scopes),
            stored_at=stored_at or now_ms(),
            user_id=user_id,
        )

    def to_json(self) -> str:
        """Serialize to the persisted JSON form."""
        return self.model_dump_json(by_alias=True)

    @property
    def access_token(self) -> str:
        return self.tokens.access_token

    @property
    def refresh_token(self) -> str | None:
        return self.tokens.refresh_token

    @property
    def expiry_timestamp(self) -> int | None:
        return self.tokens.expiry_date

    @property
    def token_type(self) -> str:
        return self.tokens.token_type

    @property
    def client_id(self) -> str:
        return self.client_config.client_id

    @property
    def scopes(self) -> list[str]:
        return self.client_config.scopes

    def time_until_expiry_ms(self, now: int | None = None) -> int | None:
        """Milliseconds until expiry, or None when the expiry is unknown."""
        if self.tokens.expiry_date is None:
            return None
        return self.tokens.expiry_date - (now if now is not None else now_ms())

    def is_expired(self, buffer_ms: int = 0, now: int | None = None) -> bool:
        """Check if the access token is expired or within ``buffer_ms`` of expiry."""
        remaining = self.time_until_expiry_ms(now)
        if remaining is None:
            return False
        return remaining <= buffer_ms


class CorruptionReport(BaseModel):
    """Diagnosis of a stored record that exists but cannot be decoded.

    Never persisted. Attached to ``TokenCacheCorruptedError`` and summarized
    in the ``cache_corrupted`` metric.
    """

    source: StorageSource
    timestamp: int = Field(default_factory=now_ms)
    backup_path: str | None = None
    error_summary: str
    corruption_type: CorruptionType
    recoverable: bool = True
    missing_fields: list[str] = Field(default_factory=list)


class RetryPolicy(BaseModel):
    """Retry behaviour for token refresh. Immutable and shared by reference."""

    max_attempts: int = Field(default=3, gt=0)
    base_delay_ms: int = Field(default=1000, gt=0)
    max_delay_ms: int = Field(default=30000, gt=0)
    jitter_fraction: float = Field(default=0.1, ge=0.0, le=1.0)
    retriable_status_codes: tuple[int, ...] = (429, 500, 502, 503, 504)
    request_timeout_ms: int = Field(default=30000, gt=0)
    total_timeout_ms: int = Field(default=120000, gt=0)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_bounds(self) -> "RetryPolicy":
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be greater than or equal to base_delay_ms")
        for code in self.retriable_status_codes:
            if not 100 <= code <= 599:
                raise ValueError(f"invalid HTTP status code in retriable_status_codes: {code}")
        return self

    def is_retriable_status(self, status_code: int | None) -> bool:
        """Network failures (no status) are always retriable."""
        return status_code is None or status_code in self.retriable_status_codes


class AuthInfo(BaseModel):
    """Non-secret summary of a provider's authentication state."""

    auth_type: str
    is_authenticated: bool
    state: ProviderState | None = None
    scopes: list[str] = Field(default_factory=list)
    expires_at: datetime | None = None
    has_refresh_token: bool = False

    @staticmethod
    def expiry_from_ms(expiry_ms: int | None) -> datetime | None:
        if expiry_ms is None:
            return None
        return datetime.fromtimestamp(expiry_ms / 1000, tz=timezone.utc)
