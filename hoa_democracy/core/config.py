"""Configuration management for the HOA democracy service."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_default_private_key() -> str:
    default_path = Path(__file__).resolve().parent / "../.." / "configs" / "dev-jwt.pem"
    if default_path.exists():
        return default_path.read_text(encoding="utf-8")
    raise FileNotFoundError("Default JWT private key not found. Provide JWT_PRIVATE_KEY environment variable.")


class Settings(BaseSettings):
    app_name: str = Field(default="HOA Democracy")
    version: str = Field(default="0.1.0")
    docs_url: str | None = Field(default="/docs")
    redoc_url: str | None = Field(default="/redoc")
    openapi_url: str = Field(default="/openapi.json")

    database_url: str = Field(default="postgresql+psycopg://hoa:hoa@db:5432/hoa")
    sqlite_busy_timeout_seconds: float = Field(default=5.0)

    ledger_lock_timeout_seconds: float = Field(default=5.0, gt=0)
    receipt_code_bytes: int = Field(default=8, ge=8, le=16)
    voter_token_secret: str = Field(default="change-me-voter-token-secret")
    binding_polls_enabled: bool = Field(default=False)

    aws_region: str = Field(default="us-east-1")
    s3_endpoint_url: str | None = Field(default=None)
    audit_log_bucket: str = Field(default="hoa-audit-logs")
    audit_log_prefix: str = Field(default="audit/records")
    audit_log_sample_rate: float = Field(default=1.0)

    enable_metrics: bool = Field(default=True)
    enable_tracing: bool = Field(default=True)
    otel_exporter_endpoint: str | None = Field(default=None)

    jwt_algorithm: str = Field(default="RS256")
    jwt_private_key: str = Field(default_factory=_load_default_private_key)
    access_token_expire_minutes: int = Field(default=15)
    refresh_token_expire_days: int = Field(default=7)
    default_role: str = Field(default="MEMBER")
    admin_emails: list[str] = Field(default_factory=lambda: ["admin@example.com"])
    default_user_hashed_password: str = Field(
        default="$2b$12$oyI2qhzyapMI2vlA38nS4uK91tQ8gjVjTgQExlbDGQLHw6/oEFzOG"
    )  # password: changeme
    default_user_password: str = Field(default="changeme")

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()


__all__ = ["Settings", "get_settings"]
