"""OAuth2 credential lifecycle for Google Workspace MCP.

This package caches OAuth2 tokens in the OS secret store (falling back to an
encrypted file), recovers from corrupted caches, and refreshes tokens for
concurrent callers with a single in-flight refresh.

Quick Start:
    ```python
    from gworkspace_auth import AuthFactory

    provider = AuthFactory.create_auth_provider()
    credentials = await provider.get_auth_client()
    ```
"""

from gworkspace_auth.auth.base import AuthProvider
from gworkspace_auth.auth.metrics import AuthMetrics
from gworkspace_auth.auth.models import (
    AuthInfo,
    CorruptionReport,
    CorruptionType,
    ProviderState,
    RetryPolicy,
    StorageSource,
    StoredCredentials,
    TokenStatus,
)
from gworkspace_auth.auth.oauth2_provider import OAuth2AuthProvider
from gworkspace_auth.auth.service_account import ServiceAccountAuthProvider
from gworkspace_auth.auth.token_storage import TokenStorage

__all__ = [
    "AuthProvider",
    "AuthMetrics",
    "AuthInfo",
    "CorruptionReport",
    "CorruptionType",
    "ProviderState",
    "RetryPolicy",
    "StorageSource",
    "StoredCredentials",
    "TokenStatus",
    "OAuth2AuthProvider",
    "ServiceAccountAuthProvider",
    "TokenStorage",
]
