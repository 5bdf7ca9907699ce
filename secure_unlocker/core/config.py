"""
Configuration Management

Centralized configuration using Pydantic Settings.
All settings loaded from environment variables with sensible defaults.
"""
import logging
from typing import List, Optional

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ignore extra environment variables that aren't defined in the model
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ============================================================
    # API Server
    # ============================================================
    listen_address: str = Field("127.0.0.1", description="Address for the API server to listen on")
    port: int = Field(3456, description="Port for the API server to listen on")
    listen_retry_seconds: float = Field(
        60.0,
        description="How long to wait for the listen address to become available at startup"
    )
    public_dir: Optional[str] = Field(
        None,
        description="Directory with static web client assets (served without authentication)"
    )

    # ============================================================
    # Authentication
    # ============================================================
    allowed_public_keys: str = Field(
        "",
        description="Comma-separated Ed25519 public keys (64 hex characters each)"
    )
    trusted_keys_file: Optional[str] = Field(
        None,
        description="Optional YAML allow-list of trusted keys (defaults to config/trusted_keys.yaml)"
    )
    freshness_window_seconds: int = Field(
        300,
        description="Maximum age (either direction) of a signed request timestamp"
    )

    # ============================================================
    # Rate Limiting
    # ============================================================
    rate_limit_window_seconds: int = Field(900, description="Failure window length (15 minutes)")
    auth_failure_limit: int = Field(20, description="Authentication failures per window per client")
    mount_failure_limit: int = Field(10, description="Mount/unmount failures per window per client")

    # ============================================================
    # Volumes & Workers
    # ============================================================
    volumes_file: Optional[str] = Field(
        None,
        description="YAML file describing encrypted volumes (defaults to config/volumes.yaml)"
    )
    pipes_dir: str = Field(
        "/var/lib/secure-unlocker/pipes",
        description="Directory holding one secret pipe per volume (systemd supervisor)"
    )
    supervisor: str = Field("thread", description="Worker supervisor backend: thread or systemd")
    unit_prefix: str = Field(
        "secure-unlocker",
        description="Prefix for systemd units and device-mapper names"
    )
    sudo_path: str = Field("/run/wrappers/bin/sudo", description="sudo binary used for systemctl")
    systemctl_path: str = Field(
        "/run/current-system/sw/bin/systemctl",
        description="systemctl binary"
    )
    settle_delay_seconds: float = Field(
        0.5,
        description="Pause after starting a worker before the secret is written"
    )
    channel_write_timeout_seconds: float = Field(
        1.0,
        description="Upper bound for delivering a secret into a volume's channel"
    )
    worker_poll_interval_seconds: float = Field(
        0.5,
        description="How often an idle in-process worker checks for a stop signal"
    )
    worker_stop_timeout_seconds: float = Field(
        30.0,
        description="How long to wait for a worker to stop before cleaning up anyway"
    )

    # ============================================================
    # Logging Configuration
    # ============================================================
    log_level: str = Field("INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)")
    log_format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    @property
    def allowed_public_keys_list(self) -> List[str]:
        """Parse the allowed public keys into a list."""
        return [key.strip() for key in self.allowed_public_keys.split(",") if key.strip()]


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings (singleton).

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure root logging from settings."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=settings.log_format,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
