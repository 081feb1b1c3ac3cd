from __future__ import annotations

import pytest

from teamauth.core.config import DEV_CURSOR_SECRET, DEV_JWT_SECRET, Settings, validate_settings
from teamauth.core.errors import ConfigError


def test_development_defaults_are_accepted() -> None:
    # Local runs work without any secrets configured.
    settings = Settings(environment="development")
    assert validate_settings(settings) is settings


def test_production_requires_real_secrets() -> None:
    # Shipping the development signing key is refused at start-up.
    with pytest.raises(ConfigError, match="jwt_secret"):
        validate_settings(Settings(environment="production", jwt_secret=DEV_JWT_SECRET))
    with pytest.raises(ConfigError, match="audit_cursor_secret"):
        validate_settings(
            Settings(
                environment="production",
                jwt_secret="a-real-production-secret-value",
                audit_cursor_secret=DEV_CURSOR_SECRET,
            )
        )


def test_short_signing_keys_are_rejected() -> None:
    # HS256 keys must carry a minimum amount of entropy.
    with pytest.raises(ConfigError):
        validate_settings(Settings(jwt_secret="short"))


def test_public_suffix_apex_is_rejected() -> None:
    # An apex on the public suffix list could never be honoured by browsers.
    with pytest.raises(ConfigError, match="cookie_apex_domain"):
        validate_settings(Settings(cookie_apex_domain="replit.app"))
    with pytest.raises(ConfigError, match="cookie_domain_override"):
        validate_settings(Settings(cookie_domain_override="vercel.app"))


def test_host_override_is_accepted() -> None:
    # "host" is the documented host-only switch, not a domain.
    validate_settings(Settings(cookie_domain_override="host"))


def test_cache_window_and_lifetimes_are_bounded() -> None:
    # Long permission caches would delay revocations.
    with pytest.raises(ConfigError):
        validate_settings(Settings(permission_cache_ttl_s=300))
    with pytest.raises(ConfigError):
        validate_settings(Settings(access_token_ttl_s=0))
    with pytest.raises(ConfigError):
        validate_settings(Settings(access_token_ttl_s=90 * 86400, refresh_token_ttl_days=30))
    with pytest.raises(ConfigError):
        validate_settings(Settings(audit_default_page_size=500, audit_max_page_size=200))
    with pytest.raises(ConfigError, match="permission_cache_max_entries"):
        validate_settings(Settings(permission_cache_max_entries=0))
    with pytest.raises(ConfigError, match="sso_code_ttl_s"):
        validate_settings(Settings(sso_code_ttl_s=3600))
