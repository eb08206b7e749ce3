"""Unit tests for core/config.py -- settings validation."""

import pytest
from pydantic import ValidationError

from core.config import Settings
from conftest import make_settings


class TestSecretKey:
    def test_generated_in_debug(self):
        settings = Settings(_env_file=None, debug=True, secret_key="")
        assert len(settings.secret_key) >= 32

    def test_required_in_production(self):
        with pytest.raises(ValidationError, match="SECRET_KEY is required"):
            Settings(_env_file=None, debug=False, secret_key="")

    def test_short_key_rejected(self):
        with pytest.raises(ValidationError, match="at least 32"):
            Settings(_env_file=None, debug=True, secret_key="short")


class TestDerived:
    def test_cors_origin_list(self):
        settings = make_settings(cors_origins=" http://a.test ,http://b.test,, ")
        assert settings.cors_origin_list == ["http://a.test", "http://b.test"]

    def test_google_enabled_needs_both_values(self):
        assert not make_settings(google_client_id="id").google_enabled
        assert make_settings(google_client_id="id", google_client_secret="secret").google_enabled

    def test_defaults(self):
        settings = make_settings()
        assert settings.login_rate_limit_attempts == 100
        assert settings.login_rate_limit_window_seconds == 900
        assert settings.remember_me_seconds == 30 * 24 * 3600
        assert settings.rp_name == "Enisi"
        assert settings.trust_proxy_headers is True
