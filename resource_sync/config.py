"""Application configuration management."""

import os
from datetime import timedelta
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_path: str = "/data/resource-sync.db"

    # Encryption (credentials at rest)
    encryption_key_file: str = "/secrets/encryption.key"

    # Server
    public_url: str = "http://localhost:3000"
    log_level: str = "info"
    api_key: Optional[str] = None  # Control API disabled when unset

    # Runtime features
    enabled_families: str = "calendar,mailbox"
    enable_webhooks: bool = True
    webhook_path_prefix: str = "/api/webhooks"

    # Rate limiting
    rate_limit_per_minute: int = 60

    # Scheduling
    sync_interval_minutes: int = 5
    webhook_renewal_minutes: int = 30
    liveness_timeout_minutes: int = 30

    # Sync strategy
    full_sync_staleness_days: int = 7
    full_sync_lookback_days: int = 30
    entity_page_size: int = 250

    # Error backoff
    backoff_base_delay_ms: int = 1000
    backoff_max_delay_ms: int = 60000
    max_consecutive_errors: int = 5

    # Push notifications
    webhook_debounce_seconds: float = 5.0
    webhook_renewal_buffer_minutes: int = 60
    webhook_lease_days: int = 7

    # Retention (days)
    audit_log_retention_days: int = 90

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def enabled_family_list(self) -> list[str]:
        return [f.strip() for f in self.enabled_families.split(",") if f.strip()]

    @property
    def liveness_timeout(self) -> timedelta:
        return timedelta(minutes=self.liveness_timeout_minutes)

    @property
    def full_sync_staleness(self) -> timedelta:
        return timedelta(days=self.full_sync_staleness_days)

    @property
    def full_sync_lookback(self) -> timedelta:
        return timedelta(days=self.full_sync_lookback_days)

    @property
    def webhook_debounce_window(self) -> timedelta:
        return timedelta(seconds=self.webhook_debounce_seconds)

    @property
    def webhook_renewal_buffer(self) -> timedelta:
        return timedelta(minutes=self.webhook_renewal_buffer_minutes)

    @property
    def webhook_lease(self) -> timedelta:
        return timedelta(days=self.webhook_lease_days)

    def webhook_callback_url(self, family: str) -> str:
        """Public URL the provider should push notifications for ``family`` to."""
        return f"{self.public_url.rstrip('/')}{self.webhook_path_prefix}/{family}"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def get_encryption_key() -> bytes:
    """Load encryption key from file."""
    key_file = get_settings().encryption_key_file

    if not os.path.exists(key_file):
        raise RuntimeError(f"Encryption key file not found at {key_file}")

    with open(key_file, "rb") as f:
        key = f.read()
        # Only strip trailing newlines; a general strip() can corrupt binary keys
        while key and key[-1:] in (b"\n", b"\r"):
            key = key[:-1]

    if len(key) < 32:
        raise RuntimeError("Invalid encryption key: must be at least 32 bytes")

    return key
