from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict

ENCRYPTION_KEY_BYTES = 32


class ConfigurationError(RuntimeError):
  pass


class Settings(BaseSettings):
  model_config = SettingsConfigDict(env_file=".env", extra="ignore")

  database_url: str = "postgresql+asyncpg://issuesync:issuesync@db:5432/issuesync"
  environment: str = "development"  # development | production
  app_version: str = "v2026-10-18"

  github_encryption_key: str | None = None
  github_webhook_secret: str | None = None
  github_api_url: str = "https://api.github.com"
  github_graphql_url: str = "https://api.github.com/graphql"
  github_timeout_seconds: float = 8.0
  github_user_agent: str = "issue-sync/1.0"
  github_label_color: str = "0e8a16"

  service_api_token: str | None = None

  log_level: str = "INFO"
  log_json: bool = False

  cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"

  def cors_origin_list(self) -> list[str]:
    return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

  def is_production(self) -> bool:
    return self.environment.strip().lower() == "production"


settings = Settings()


def validate_sync_settings(s: Settings | None = None) -> None:
  """Fail fast on sync misconfiguration.

  A short encryption key is always fatal. A missing key or webhook secret is
  fatal in production; in development the affected operations fail when used.
  """
  s = s or settings
  key = s.github_encryption_key or ""
  if key and len(key.encode("utf-8")) < ENCRYPTION_KEY_BYTES:
    raise ConfigurationError(f"GITHUB_ENCRYPTION_KEY must be at least {ENCRYPTION_KEY_BYTES} bytes")
  if not s.is_production():
    return
  if not key:
    raise ConfigurationError("GITHUB_ENCRYPTION_KEY is required in production")
  if not (s.github_webhook_secret or "").strip():
    raise ConfigurationError("GITHUB_WEBHOOK_SECRET is required in production")
  if not (s.service_api_token or "").strip():
    raise ConfigurationError("SERVICE_API_TOKEN is required in production")
