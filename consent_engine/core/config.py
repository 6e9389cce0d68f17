"""
Consent Engine - Configuration

Centralized configuration for consent policy, persistence, audit,
rate limiting, service orchestration and prompt fatigue.
"""

from __future__ import annotations

from datetime import timedelta
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConsentEngineConfig(BaseSettings):
    """
    Consent engine configuration.

    Loaded from environment variables with sensible defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="CONSENT_ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ═══════════════════════════════════════════════════════════════
    # CONSENT POLICY
    # ═══════════════════════════════════════════════════════════════

    policy_version: str = Field(
        default="3.0",
        description="Version of the consent policy new records are issued under",
    )
    consent_expiry_months: int = Field(
        default=24,
        ge=1,
        description="Months a consent decision stays valid",
    )

    # ═══════════════════════════════════════════════════════════════
    # PERSISTENCE
    # ═══════════════════════════════════════════════════════════════

    storage_key: str = Field(
        default="consent-engine:consent",
        description="Key-value slot holding the consent envelope",
    )
    history_key: str = Field(
        default="consent-engine:consent-metrics",
        description="Key-value slot holding the banner show history",
    )
    remote_store_url: str | None = Field(
        default=None,
        description="Base URL of a remote consent store (optional)",
    )
    remote_store_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="HTTP timeout for the remote consent store",
    )

    # ═══════════════════════════════════════════════════════════════
    # AUDIT & RATE LIMITING
    # ═══════════════════════════════════════════════════════════════

    audit_log_path: str | None = Field(
        default=None,
        description="Append-only JSON-lines file for audit entries (optional)",
    )
    rate_limit_max_updates: int = Field(
        default=10,
        ge=1,
        description="Maximum consent updates per identity per window",
    )
    rate_limit_window_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Rolling rate limit window",
    )

    # ═══════════════════════════════════════════════════════════════
    # SERVICE ORCHESTRATION
    # ═══════════════════════════════════════════════════════════════

    health_check_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Delay between a successful load and its health check",
    )
    dependency_recheck_interval_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Delay before re-checking unmet service dependencies",
    )
    dependency_recheck_max_attempts: int = Field(
        default=10,
        ge=0,
        description="Re-checks before a deferred service is marked as error",
    )
    retry_base_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Backoff unit; retry n waits retry_base_seconds * 2**n",
    )

    # ═══════════════════════════════════════════════════════════════
    # PROMPT FATIGUE
    # ═══════════════════════════════════════════════════════════════

    fatigue_base_delay_hours: float = Field(
        default=24.0,
        gt=0,
        description="Minimum time between prompts at fatigue level 0",
    )
    fatigue_max_delay_days: float = Field(
        default=7.0,
        gt=0,
        description="Upper bound on the time between prompts",
    )
    max_fatigue_level: float = Field(
        default=10.0,
        gt=0,
        description="Fatigue level ceiling",
    )

    # ═══════════════════════════════════════════════════════════════
    # LOGGING
    # ═══════════════════════════════════════════════════════════════

    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(default=False, description="Render logs as JSON")

    @property
    def fatigue_base_delay(self) -> timedelta:
        return timedelta(hours=self.fatigue_base_delay_hours)

    @property
    def fatigue_max_delay(self) -> timedelta:
        return timedelta(days=self.fatigue_max_delay_days)


@lru_cache
def get_consent_config() -> ConsentEngineConfig:
    """Get the cached consent engine configuration."""
    return ConsentEngineConfig()
