"""
Dashboard configuration, read from the environment (and ``.env``) with pydantic-settings.

The process refuses to start when the database URL, the scanning backend or
the token-signing secret are unusable, since every request touches at least one of them.
"""

import sys
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_JWT_SECRET_LENGTH = 32


class ConfigurationError(Exception):
    """Startup configuration is missing or inconsistent."""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Postgres; the read URL points at a replica when one exists
    database_url: str = ""
    database_read_url: str | None = None
    database_pool_size: int = 10
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # HTTP server
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "SentinelAI Dashboard API"
    api_version: str = "0.1.0"
    api_description: str = "Token-metered scam and phishing scanning for the SentinelAI dashboard"
    site_url: str = "http://localhost:3000"

    # Remote risk-scoring backend; it also relays the Paystack payment calls
    scan_api_base_url: str = "https://sentinelai-backend.vercel.app/"
    scan_api_key: str = ""
    http_timeout_seconds: float = 30.0

    # GoTrue-compatible identity provider
    identity_url: str = ""
    identity_anon_key: str = ""
    identity_jwt_secret: str = ""
    identity_jwt_audience: str = "authenticated"

    # Public bucket for profile pictures, on the identity provider's host
    avatar_bucket: str = "avatars"
    avatar_max_bytes: int = 2 * 1024 * 1024

    # Metering
    signup_free_tokens: int = 2
    text_max_length: int = 1000
    recent_results_limit: int = 10

    # In-memory per-user state; dropped after idling this long or past the token expiry
    session_idle_seconds: float = 3600.0
    max_user_sessions: int = 10_000

    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "json"

    metrics_enabled: bool = True
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "sentinel-dashboard-api"

    def problems(self) -> list[str]:
        """Every reason this configuration cannot serve requests, empty when it can."""
        found: list[str] = []

        if not self.database_url:
            found.append("DATABASE_URL is required")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            found.append(f"DATABASE_URL must point at PostgreSQL, got {self.database_url[:20]}...")

        if not self.scan_api_base_url.startswith(("http://", "https://")):
            found.append("SCAN_API_BASE_URL must be an http(s) URL")

        if self.identity_jwt_secret and len(self.identity_jwt_secret) < MIN_JWT_SECRET_LENGTH:
            found.append(
                f"IDENTITY_JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )

        if self.signup_free_tokens < 0:
            found.append("SIGNUP_FREE_TOKENS cannot be negative")
        if self.text_max_length < 1:
            found.append("TEXT_MAX_LENGTH must be positive")
        if self.recent_results_limit < 1:
            found.append("RECENT_RESULTS_LIMIT must be positive")
        if self.avatar_max_bytes < 1:
            found.append("AVATAR_MAX_BYTES must be positive")
        if self.session_idle_seconds <= 0 or self.max_user_sessions < 1:
            found.append("SESSION_IDLE_SECONDS and MAX_USER_SESSIONS must be positive")

        return found

    @model_validator(mode="after")
    def refuse_unusable_config(self) -> "Settings":
        found = self.problems()
        if found:
            banner = "=" * 60
            report = "\n".join(
                ["", banner, "SENTINEL DASHBOARD CANNOT START", banner]
                + [f"  - {item}" for item in found]
                + [banner, ""]
            )
            print(report, file=sys.stderr)
            raise ConfigurationError(report)
        return self

    @property
    def read_database_url(self) -> str:
        return self.database_read_url or self.database_url

    @property
    def scan_api_root(self) -> str:
        """Scanning backend base URL with exactly one trailing slash."""
        return self.scan_api_base_url.rstrip("/") + "/"

    @property
    def password_reset_redirect(self) -> str:
        return f"{self.site_url.rstrip('/')}/reset-password"


settings = Settings()
