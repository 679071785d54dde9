"""
Configuration Management

This module provides environment-driven configuration for the background core:
- Request client defaults (timeouts, retries, backoff, caching)
- API manager tuning (usage-stat persistence cadence, error window, OAuth refresh)
- Settings storage location and backend selection
- Credential encryption parameters
- Audit logging switches
"""

import os
import secrets
from pathlib import Path
from typing import Dict, Optional, Any
from enum import Enum

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment types"""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


ENVIRONMENT_ALIASES = {
    "dev": Environment.DEVELOPMENT,
    "develop": Environment.DEVELOPMENT,
    "stage": Environment.STAGING,
    "stag": Environment.STAGING,
    "prod": Environment.PRODUCTION,
}


class LogLevel(str, Enum):
    """Logging levels"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StorageBackendType(str, Enum):
    """Where persisted settings live"""
    MEMORY = "memory"
    FILE = "file"


class RequestSettings(BaseSettings):
    """Defaults for the retrying request client"""

    timeout_ms: int = Field(default=10000, ge=100, le=300000, description="Per-attempt request timeout in ms")
    retries: int = Field(default=3, ge=0, le=10, description="Maximum retries after the first attempt")
    retry_delay_ms: int = Field(default=1000, ge=0, le=60000, description="Initial retry delay in ms")
    backoff_factor: float = Field(default=2.0, ge=1.0, le=10.0, description="Exponential backoff factor")
    jitter_ratio: float = Field(default=0.2, ge=0.0, le=1.0, description="Upper bound of random jitter as a share of the delay")

    cache_ttl_ms: int = Field(default=5 * 60 * 1000, ge=0, description="Default response cache TTL in ms")
    cache_max_entries: int = Field(default=1000, ge=10, le=100000, description="Maximum cached responses")

    default_requests_per_minute: int = Field(default=60, ge=1, le=10000, description="Per-minute ceiling for unconfigured resources")
    default_concurrent_requests: int = Field(default=6, ge=1, le=100, description="Concurrency ceiling for unconfigured resources")

    user_agent: str = Field(default="BrowserHelper/0.1", description="User-Agent header sent with every request")


class ApiSettings(BaseSettings):
    """API manager tuning"""

    stats_persist_every: int = Field(default=10, ge=1, le=1000, description="Persist usage stats every N requests")
    error_window_minutes: int = Field(default=5, ge=1, le=120, description="Window for the recent-errors availability check")
    error_threshold: int = Field(default=3, ge=0, le=100, description="Errors tolerated inside the window")

    token_refresh_ratio: float = Field(default=0.9, gt=0.0, lt=1.0, description="Share of token lifetime after which it is refreshed")
    default_token_lifetime_seconds: int = Field(default=3600, ge=60, description="Lifetime assumed when expires_in is missing")
    oauth_redirect_uri: str = Field(default="https://extension.invalid/oauth2", description="OAuth redirect URI")


class StorageSettings(BaseSettings):
    """Persistent settings storage"""

    backend: StorageBackendType = Field(default=StorageBackendType.FILE, description="Settings storage backend")
    data_directory: Path = Field(default=Path.home() / ".browser_helper", description="Data storage directory")
    settings_filename: str = Field(default="settings.json", description="Settings document file name")
    sync_debounce_ms: int = Field(default=2000, ge=0, le=60000, description="Debounce before persisting deferred writes")


class EncryptionSettings(BaseSettings):
    """Credential encryption settings"""

    master_key: SecretStr = Field(
        default_factory=lambda: SecretStr(secrets.token_urlsafe(32)),
        description="Master key protecting stored API keys"
    )
    key_salt: SecretStr = Field(
        default_factory=lambda: SecretStr(secrets.token_urlsafe(16)),
        description="Salt for key derivation"
    )
    pbkdf2_iterations: int = Field(default=100000, ge=50000, description="PBKDF2 iteration count")


class AuditSettings(BaseSettings):
    """Audit logging settings"""

    audit_enabled: bool = Field(default=True, description="Enable credential audit logging")


class Settings(BaseSettings):
    """Main application settings"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="forbid"
    )

    app_name: str = Field(default="browser-helper", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: Environment = Field(default=Environment.DEVELOPMENT, description="Application environment")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")

    request: RequestSettings = Field(default_factory=RequestSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    encryption: EncryptionSettings = Field(default_factory=EncryptionSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)

    @field_validator("environment", mode="before")
    @classmethod
    def normalize_environment(cls, v):
        """Accept short aliases such as dev, stage and prod"""
        if isinstance(v, str):
            return ENVIRONMENT_ALIASES.get(v.lower(), v.lower())
        return v

    @model_validator(mode="after")
    def validate_debug_in_production(self):
        """Ensure debug is disabled in production"""
        if self.environment == Environment.PRODUCTION and self.debug:
            raise ValueError("Debug mode cannot be enabled in production environment")
        return self

    def ensure_directories(self):
        """Create the data directory with owner-only permissions"""
        directory = self.storage.data_directory
        directory.mkdir(parents=True, exist_ok=True)
        os.chmod(directory, 0o700)

    def get_storage_path(self, filename: Optional[str] = None) -> Path:
        """Get storage path for a file (the settings document by default)"""
        return self.storage.data_directory / (filename or self.storage.settings_filename)

    def get_default_headers(self) -> Dict[str, str]:
        """Headers sent with every outbound request"""
        return {
            "User-Agent": self.request.user_agent,
            "Accept": "application/json",
        }

    def summary(self) -> Dict[str, Any]:
        """Non-secret view of the active configuration"""
        return {
            "app_name": self.app_name,
            "app_version": self.app_version,
            "environment": self.environment.value,
            "storage_backend": self.storage.backend.value,
            "data_directory": str(self.storage.data_directory),
            "request_timeout_ms": self.request.timeout_ms,
            "request_retries": self.request.retries,
        }


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Process-wide settings, loaded on first use"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings

