"""Unit tests for core/config.py -- Settings validation.

Settings are constructed directly with keyword overrides and _env_file=None,
so the cached get_settings() instance used by the rest of the suite is never
touched.

Covers:
- SECRET_KEY policy: generated in debug mode, required otherwise, minimum length
- JWT_ALGORITHM restricted to HMAC algorithms
- BCRYPT_ROUNDS range and positive lockout/TTL values
- refresh tokens must outlive access tokens
- list-valued settings parsed from JSON environment variables
"""

import pytest
from pydantic import ValidationError

from core.config import Settings

KEY = "k" * 32


class TestSecretKey:
    def test_debug_generates_key(self, monkeypatch) -> None:
        monkeypatch.delenv("SECRET_KEY", raising=False)
        settings = Settings(_env_file=None, debug=True)
        assert len(settings.secret_key) >= 32

    def test_production_requires_key(self, monkeypatch) -> None:
        monkeypatch.delenv("SECRET_KEY", raising=False)
        monkeypatch.delenv("DEBUG", raising=False)
        with pytest.raises(ValidationError, match="SECRET_KEY is required"):
            Settings(_env_file=None)

    def test_short_key_rejected(self) -> None:
        with pytest.raises(ValidationError, match="at least 32 characters"):
            Settings(_env_file=None, secret_key="too-short")

    def test_explicit_key_kept(self) -> None:
        assert Settings(_env_file=None, secret_key=KEY).secret_key == KEY


class TestFieldValidators:
    @pytest.mark.parametrize("algorithm", ["HS256", "HS384", "HS512"])
    def test_hmac_algorithms_accepted(self, algorithm) -> None:
        assert Settings(_env_file=None, secret_key=KEY, jwt_algorithm=algorithm).jwt_algorithm == algorithm

    @pytest.mark.parametrize("algorithm", ["RS256", "none", "hs256"])
    def test_other_algorithms_rejected(self, algorithm) -> None:
        with pytest.raises(ValidationError, match="JWT_ALGORITHM"):
            Settings(_env_file=None, secret_key=KEY, jwt_algorithm=algorithm)

    @pytest.mark.parametrize("rounds", [3, 32])
    def test_bcrypt_rounds_range(self, rounds) -> None:
        with pytest.raises(ValidationError, match="BCRYPT_ROUNDS"):
            Settings(_env_file=None, secret_key=KEY, bcrypt_rounds=rounds)

    @pytest.mark.parametrize("field", ["lockout_threshold", "lockout_duration_seconds", "access_token_ttl_seconds"])
    def test_positive_values(self, field) -> None:
        with pytest.raises(ValidationError, match="positive integer"):
            Settings(_env_file=None, secret_key=KEY, **{field: 0})

    def test_refresh_must_outlive_access(self) -> None:
        with pytest.raises(ValidationError, match="REFRESH_TOKEN_TTL_SECONDS"):
            Settings(_env_file=None, secret_key=KEY, access_token_ttl_seconds=600, refresh_token_ttl_seconds=600)


class TestEnvironment:
    def test_defaults(self) -> None:
        settings = Settings(_env_file=None, secret_key=KEY)
        assert settings.lockout_threshold == 5
        assert settings.lockout_duration_seconds == 900
        assert settings.access_token_ttl_seconds == 3600
        assert settings.refresh_token_ttl_seconds == 7 * 24 * 3600
        assert settings.password_reset_requests_per_hour == 3
        assert settings.self_registration_enabled is True

    def test_reads_environment(self, monkeypatch) -> None:
        monkeypatch.setenv("LOCKOUT_THRESHOLD", "7")
        monkeypatch.setenv("SELF_REGISTRATION_ENABLED", "false")
        monkeypatch.setenv("CORS_ORIGINS", '["https://app.example.com"]')
        settings = Settings(_env_file=None, secret_key=KEY)
        assert settings.lockout_threshold == 7
        assert settings.self_registration_enabled is False
        assert settings.cors_origins == ["https://app.example.com"]
