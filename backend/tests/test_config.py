"""Tests for settings validation and secret lookup."""

import pytest
from pydantic import ValidationError

from gatishil_auth.config import Settings
from gatishil_auth.core.errors import MisconfiguredError


def test_require_returns_configured_secret(settings):
    assert settings.require("sms_api_key") == "aakash-test-token"


@pytest.mark.parametrize("name", ["sms_api_key", "identity_service_key", "admin_task_secret"])
def test_require_missing_secret(settings_factory, name):
    with pytest.raises(MisconfiguredError) as exc_info:
        settings_factory(**{name: "  "}).require(name)
    # The setting name stays out of the client message
    assert name not in exc_info.value.message


def test_short_pepper_counts_as_missing(settings_factory):
    with pytest.raises(MisconfiguredError):
        settings_factory(otp_pepper="too-short").require("otp_pepper")


def test_pin_peppers_during_rotation(settings_factory):
    settings = settings_factory(pin_pepper="current-pepper-0001", pin_pepper_prev="previous-pepper-01")
    assert settings.pin_peppers == ["current-pepper-0001", "previous-pepper-01"]


@pytest.mark.parametrize("previous", ["", "short", "current-pepper-0001"])
def test_pin_peppers_ignore_unusable_previous(settings_factory, previous):
    settings = settings_factory(pin_pepper="current-pepper-0001", pin_pepper_prev=previous)
    assert settings.pin_peppers == ["current-pepper-0001"]


def test_production_requires_https_origins(settings_factory):
    with pytest.raises(ValidationError):
        settings_factory(dev_mode=False, webauthn_origins=["http://gatishilnepal.org"])


@pytest.mark.parametrize("ttl", [60, 3600])
def test_production_bounds_challenge_ttl(settings_factory, ttl):
    with pytest.raises(ValidationError):
        settings_factory(dev_mode=False, webauthn_challenge_ttl_seconds=ttl)


def test_production_settings_accept_defaults(settings_factory):
    settings = settings_factory(dev_mode=False)
    assert settings.webauthn_challenge_ttl_seconds == 600


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("OTP_TTL_SECONDS", "240")
    monkeypatch.setenv("WEBAUTHN_ORIGINS", '["https://gatishilnepal.org"]')
    settings = Settings(_env_file=None)
    assert settings.otp_ttl_seconds == 240
    assert settings.webauthn_origins == ["https://gatishilnepal.org"]
