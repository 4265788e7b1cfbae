import pytest
from pydantic import ValidationError

from portalauth.config import Environment, Settings, get_settings, reset_settings_cache

SECRET = "config-test-secret-0123456789abcdefghij"


class TestSettings:
    def test_defaults(self):
        settings = Settings(jwt_secret=SECRET)

        assert settings.access_token_ttl_seconds == 24 * 60 * 60
        assert settings.refresh_token_ttl_seconds == 7 * 24 * 60 * 60
        assert settings.otp_ttl_seconds == 300
        assert settings.otp_max_attempts == 3
        assert settings.login_max_attempts == 5
        assert settings.lockout_minutes == 15
        assert settings.anti_enumeration_floor_ms == 800
        assert settings.secure_cookies is False

    @pytest.mark.parametrize("secret", [None, "", "short-secret"])
    def test_weak_or_missing_secret_refuses_to_start(self, secret):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=secret)

    def test_production_forces_secure_cookies(self):
        assert Settings(jwt_secret=SECRET, environment="Production").secure_cookies
        assert Settings(jwt_secret=SECRET, force_secure_cookies=True).secure_cookies

    def test_cors_origins_split(self):
        settings = Settings(jwt_secret=SECRET, cors_allow_origins="https://a.test, https://b.test,")

        assert settings.cors_allow_origins == ["https://a.test", "https://b.test"]

    def test_trusted_proxies_split(self):
        assert Settings(jwt_secret=SECRET).trusted_proxy_ips == []
        settings = Settings(jwt_secret=SECRET, trusted_proxy_ips="10.0.0.1, 172.16.0.0/12")

        assert settings.trusted_proxy_ips == ["10.0.0.1", "172.16.0.0/12"]

    def test_blank_redis_url_disables_redis(self):
        assert Settings(jwt_secret=SECRET, redis_url="  ").redis_url is None

    def test_non_positive_limits_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, login_max_attempts=0)


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", SECRET)
        monkeypatch.setenv("ENVIRONMENT", "staging")
        monkeypatch.setenv("OTP_MAX_ATTEMPTS", "4")
        monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "900")

        settings = Settings.from_env()

        assert settings.environment == Environment.STAGING
        assert settings.otp_max_attempts == 4
        assert settings.access_token_ttl_seconds == 900

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        monkeypatch.setenv("APP_NAME", "First")
        reset_settings_cache()
        first = get_settings()
        monkeypatch.setenv("APP_NAME", "Second")

        assert get_settings() is first
        reset_settings_cache()
        assert get_settings().app_name == "Second"
