"""Anarchy & Associates — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class FirmSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── Document store ─────────────────────────────────────────
    # An explicit URL wins; otherwise the PostgreSQL parts are used.
    database_url: str = ""
    postgres_user: str = "anarchy"
    postgres_password: str = "change-me-in-production"
    postgres_db: str = "anarchy_associates"
    postgres_host: str = "localhost"
    postgres_port: int = 5432

    @property
    def database_url_sync(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # ── Business rules ─────────────────────────────────────────
    client_case_limit: int = 5
    bypass_confirmation_phrase: str = "confirm"
    bypass_request_ttl_minutes: int = 15

    # ── Audit ──────────────────────────────────────────────────
    audit_default_limit: int = 50

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = FirmSettings()
