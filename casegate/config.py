"""CaseGate — Application configuration via environment variables."""

from __future__ import annotations

from pydantic import model_validator
from pydantic_settings import BaseSettings


class CaseGateSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── PostgreSQL (durable store) ─────────────────────────────
    postgres_user: str = "casegate"
    postgres_password: str = "change-me-in-production"
    postgres_db: str = "casegate"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    database_url_override: str = ""

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # ── Policy ─────────────────────────────────────────────────
    policy_file: str = ""

    # ── Review analytics ───────────────────────────────────────
    quick_approval_threshold_seconds: float = 5.0
    quick_approval_min_count: int = 3
    quick_approval_lookback_hours: int = 24
    bulk_approval_threshold_count: int = 10
    bulk_approval_window_minutes: int = 1

    # ── Send gate ──────────────────────────────────────────────
    send_lease_seconds: float = 120.0
    send_lease_wait_seconds: float = 0.0
    transport_timeout_seconds: float = 30.0

    # ── Conflict matching ──────────────────────────────────────
    conflict_match_cap: int = 5
    conflict_similarity_threshold: float = 0.85

    # ── Audit API ──────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"

    @model_validator(mode="after")
    def _transport_deadline_within_lease(self) -> "CaseGateSettings":
        if self.transport_timeout_seconds >= self.send_lease_seconds:
            raise ValueError("transport_timeout_seconds must be shorter than send_lease_seconds")
        return self


settings = CaseGateSettings()
