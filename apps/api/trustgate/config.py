from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
  model_config = SettingsConfigDict(env_file=".env", extra="ignore")

  database_url: str = "postgresql+asyncpg://trustgate:trustgate@db:5432/trustgate"
  app_secret: str = "dev-secret-change-me"
  fernet_key: str = "AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA="
  app_version: str = "v2026-10-19"
  build_sha: str = "dev"
  api_docs_enabled: bool = True
  log_level: str = "INFO"

  cookie_secure: bool = False
  cookie_domain: str | None = None
  session_ttl_days: int = 7

  oauth_challenge_ttl_seconds: int = 600
  magic_link_ttl_seconds: int = 600
  totp_window: int = 2
  totp_issuer: str = "Trustgate"
  backup_code_count: int = 10

  # Public origin shared by the UI and this API; magic links and OAuth callbacks point here.
  base_url: str = "http://localhost:3000"

  smtp_host: str | None = None
  smtp_port: int = 587
  smtp_username: str | None = None
  smtp_password: str | None = None
  smtp_from: str | None = None
  smtp_starttls: bool = True

  google_client_id: str | None = None
  google_client_secret: str | None = None
  github_client_id: str | None = None
  github_client_secret: str | None = None
  discord_client_id: str | None = None
  discord_client_secret: str | None = None

  cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
  cors_origin_regex: str = r"^http://(localhost|127\.0\.0\.1):3000$"
  trusted_hosts: str = "localhost,127.0.0.1,api,web,test"

  def cors_origin_list(self) -> list[str]:
    return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

  def trusted_host_list(self) -> list[str]:
    return [h.strip() for h in self.trusted_hosts.split(",") if h.strip()]


settings = Settings()
