from __future__ import annotations

import pytest

from app.config import ConfigurationError, Settings, validate_sync_settings

GOOD_KEY = "k" * 32


def _settings(**overrides) -> Settings:
  base = {
    "environment": "production",
    "github_encryption_key": GOOD_KEY,
    "github_webhook_secret": "hook-secret",
    "service_api_token": "svc-token",
  }
  base.update(overrides)
  return Settings(**base)


def test_complete_production_settings_pass():
  validate_sync_settings(_settings())


@pytest.mark.parametrize(
  "overrides",
  [
    {"github_encryption_key": None},
    {"github_webhook_secret": None},
    {"github_webhook_secret": "   "},
    {"service_api_token": None},
  ],
)
def test_production_requires_sync_secrets(overrides):
  with pytest.raises(ConfigurationError):
    validate_sync_settings(_settings(**overrides))


def test_short_key_is_fatal_in_every_environment():
  with pytest.raises(ConfigurationError):
    validate_sync_settings(_settings(environment="development", github_encryption_key="short"))


def test_development_tolerates_missing_secrets():
  validate_sync_settings(
    _settings(environment="development", github_encryption_key=None, github_webhook_secret=None, service_api_token=None)
  )


def test_cors_origins_are_split():
  s = _settings(cors_origins="http://a.test, http://b.test ,")
  assert s.cors_origin_list() == ["http://a.test", "http://b.test"]
