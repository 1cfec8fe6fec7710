"""Unit tests for AuthFactory mode selection and validation."""

from pathlib import Path

import pytest

from gworkspace_auth.auth.factory import OAUTH2, SERVICE_ACCOUNT, AuthFactory
from gworkspace_auth.auth.oauth2_provider import OAuth2AuthProvider
from gworkspace_auth.auth.service_account import ServiceAccountAuthProvider
from gworkspace_auth.config import AuthSettings
from gworkspace_auth.errors import InvalidCredentialsError, MissingCredentialsError


def _settings(**env: str) -> AuthSettings:
    return AuthSettings.from_env(env)


@pytest.mark.unit
class TestDetermineMode:
    """Tests for AuthFactory.determine_mode()."""

    @pytest.mark.parametrize(
        "env,expected",
        [
            ({"GOOGLE_SERVICE_ACCOUNT_KEY_PATH": "/k.json"}, SERVICE_ACCOUNT),
            ({"GOOGLE_OAUTH_CLIENT_ID": "client"}, OAUTH2),
            (
                {"GOOGLE_OAUTH_CLIENT_ID": "client", "GOOGLE_SERVICE_ACCOUNT_KEY_PATH": "/k.json"},
                SERVICE_ACCOUNT,
            ),
            ({}, SERVICE_ACCOUNT),
            (
                {"GOOGLE_AUTH_MODE": "oauth2", "GOOGLE_SERVICE_ACCOUNT_KEY_PATH": "/k.json"},
                OAUTH2,
            ),
        ],
    )
    def test_should_select_mode(self, env: dict, expected: str) -> None:
        assert AuthFactory.determine_mode(_settings(**env)) == expected


@pytest.mark.unit
class TestValidateConfig:
    """Tests for AuthFactory.validate_config()."""

    def test_should_require_key_path_for_service_account(self) -> None:
        with pytest.raises(MissingCredentialsError) as exc_info:
            AuthFactory.validate_config(_settings(), SERVICE_ACCOUNT)

        assert exc_info.value.field == "GOOGLE_SERVICE_ACCOUNT_KEY_PATH"

    def test_should_reject_blank_key_path(self) -> None:
        with pytest.raises(InvalidCredentialsError):
            AuthFactory.validate_config(
                _settings(GOOGLE_SERVICE_ACCOUNT_KEY_PATH="   "), SERVICE_ACCOUNT
            )

    def test_should_require_client_id_for_oauth2(self) -> None:
        with pytest.raises(MissingCredentialsError) as exc_info:
            AuthFactory.validate_config(_settings(GOOGLE_AUTH_MODE="oauth2"), OAUTH2)

        assert exc_info.value.field == "GOOGLE_OAUTH_CLIENT_ID"

    def test_should_reject_blank_client_id(self) -> None:
        with pytest.raises(InvalidCredentialsError):
            AuthFactory.validate_config(_settings(GOOGLE_OAUTH_CLIENT_ID="  "), OAUTH2)

    def test_should_accept_public_client(self) -> None:
        AuthFactory.validate_config(_settings(GOOGLE_OAUTH_CLIENT_ID="client"), OAUTH2)

    def test_should_reject_blank_secret(self) -> None:
        with pytest.raises(InvalidCredentialsError) as exc_info:
            AuthFactory.validate_config(
                _settings(GOOGLE_OAUTH_CLIENT_ID="client", GOOGLE_OAUTH_CLIENT_SECRET=" "),
                OAUTH2,
            )

        assert exc_info.value.field == "GOOGLE_OAUTH_CLIENT_SECRET"

    @pytest.mark.parametrize("port", ["0", "70000"])
    def test_should_reject_port_out_of_range(self, port: str) -> None:
        with pytest.raises(InvalidCredentialsError) as exc_info:
            AuthFactory.validate_config(
                _settings(GOOGLE_OAUTH_CLIENT_ID="client", GOOGLE_OAUTH_PORT=port), OAUTH2
            )

        assert exc_info.value.field == "GOOGLE_OAUTH_PORT"

    @pytest.mark.parametrize("uri", ["not a url", "ftp://host/cb", "http:///cb"])
    def test_should_reject_bad_redirect_uri(self, uri: str) -> None:
        with pytest.raises(InvalidCredentialsError) as exc_info:
            AuthFactory.validate_config(
                _settings(GOOGLE_OAUTH_CLIENT_ID="client", GOOGLE_OAUTH_REDIRECT_URI=uri), OAUTH2
            )

        assert exc_info.value.field == "GOOGLE_OAUTH_REDIRECT_URI"

    def test_should_reject_unknown_mode(self) -> None:
        with pytest.raises(InvalidCredentialsError):
            AuthFactory.validate_config(_settings(), "kerberos")


@pytest.mark.unit
class TestCreateAuthProvider:
    """Tests for AuthFactory.create_auth_provider()."""

    def test_should_build_oauth2_provider(self, token_storage) -> None:
        settings = _settings(
            GOOGLE_OAUTH_CLIENT_ID="client",
            GOOGLE_OAUTH_CLIENT_SECRET="secret",
            GOOGLE_RETRY_MAX_ATTEMPTS="4",
            GOOGLE_OAUTH2_REFRESH_THRESHOLD="60000",
        )

        provider = AuthFactory.create_auth_provider(settings, storage=token_storage)

        assert isinstance(provider, OAuth2AuthProvider)
        assert provider.client_id == "client"
        assert provider.storage is token_storage
        assert provider.metrics is token_storage.metrics
        assert provider.retry_policy.max_attempts == 4
        assert provider.refresh_threshold_ms == 60000

    def test_should_build_service_account_provider(self) -> None:
        provider = AuthFactory.create_auth_provider(
            _settings(GOOGLE_SERVICE_ACCOUNT_KEY_PATH="/keys/sa.json")
        )

        assert isinstance(provider, ServiceAccountAuthProvider)
        assert provider.key_path == Path("/keys/sa.json")

    def test_should_fail_without_configuration(self) -> None:
        with pytest.raises(MissingCredentialsError):
            AuthFactory.create_auth_provider(_settings())

    def test_should_not_log_client_id(self, caplog) -> None:
        caplog.set_level("INFO")

        AuthFactory.create_auth_provider(
            _settings(GOOGLE_OAUTH_CLIENT_ID="very-private-client-id"),
        )

        assert "very-private-client-id" not in caplog.text
        assert "[CONFIGURED]" in caplog.text

    def test_should_place_token_file_in_config_dir(self, tmp_path: Path) -> None:
        storage = AuthFactory.create_token_storage(
            _settings(GWORKSPACE_AUTH_CONFIG_DIR=str(tmp_path))
        )

        assert storage.file_cache.token_path == tmp_path / "oauth2-tokens.enc"
