"""
Tests for settings and secret loading
"""
from decimal import Decimal

import pytest
from pydantic import ValidationError

from booking_api.config import Settings
from booking_api.secrets import MissingSecretError, load_secret

from .conftest import JWT_TEST_SECRET


class TestLoadSecret:

    def test_mounted_secret_wins(self, tmp_path, monkeypatch):
        (tmp_path / "jwt_secret_key").write_text("from-mount\n")
        monkeypatch.setenv("JWT_SECRET_KEY", "from-env")

        assert load_secret("jwt_secret_key", secrets_dir=tmp_path) == "from-mount"

    def test_file_variable(self, tmp_path, monkeypatch):
        secret_file = tmp_path / "db_url"
        secret_file.write_text("postgresql://u:p@db/booking")
        monkeypatch.setenv("DATABASE_URL_FILE", str(secret_file))

        assert load_secret("database_url", secrets_dir=tmp_path / "none") == "postgresql://u:p@db/booking"

    def test_file_variable_pointing_nowhere(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DATABASE_URL_FILE", str(tmp_path / "missing"))

        with pytest.raises(MissingSecretError):
            load_secret("database_url", secrets_dir=tmp_path)

    def test_environment_then_default(self, tmp_path, monkeypatch):
        monkeypatch.delenv("SOME_TOKEN", raising=False)
        monkeypatch.delenv("SOME_TOKEN_FILE", raising=False)
        assert load_secret("some-token", default="fallback", secrets_dir=tmp_path) == "fallback"

        monkeypatch.setenv("SOME_TOKEN", "from-env")
        assert load_secret("some-token", default="fallback", secrets_dir=tmp_path) == "from-env"

    def test_required_secret_missing(self, tmp_path, monkeypatch):
        monkeypatch.delenv("SOME_TOKEN", raising=False)
        monkeypatch.delenv("SOME_TOKEN_FILE", raising=False)

        assert load_secret("some_token", secrets_dir=tmp_path) is None
        with pytest.raises(MissingSecretError):
            load_secret("some_token", required=True, secrets_dir=tmp_path)


class TestSettings:

    def test_fixed_rate_accepts_legacy_variable(self, monkeypatch):
        monkeypatch.delenv("FX_FIXED_RATE", raising=False)
        monkeypatch.setenv("FX_FAKE", "36.5")

        assert Settings(jwt_secret_key=JWT_TEST_SECRET).fx_fixed_rate == Decimal("36.5")

    def test_comma_separated_lists(self, monkeypatch):
        monkeypatch.setenv("CORS_ORIGINS", "http://a.test, http://b.test")
        monkeypatch.setenv("FX_PROVIDER_URLS", "https://r1.test,https://r2.test")

        settings = Settings(jwt_secret_key=JWT_TEST_SECRET)

        assert settings.cors_origins == ["http://a.test", "http://b.test"]
        assert settings.fx_provider_urls == ["https://r1.test", "https://r2.test"]

    def test_values_are_normalised(self):
        settings = Settings(
            jwt_secret_key=JWT_TEST_SECRET, storage_backend="MEMORY", log_level="debug", fx_provider="HTTP"
        )

        assert settings.storage_backend == "memory"
        assert settings.log_level == "DEBUG"
        assert settings.fx_provider == "http"

    @pytest.mark.parametrize("field, value", [
        ("storage_backend", "sqlite"),
        ("fx_provider", "magic"),
        ("jwt_algorithm", "RS256"),
        ("jwt_secret_key", "too-short"),
    ])
    def test_invalid_values_are_rejected(self, field, value):
        kwargs = {"jwt_secret_key": JWT_TEST_SECRET, field: value}
        with pytest.raises(ValidationError):
            Settings(**kwargs)
