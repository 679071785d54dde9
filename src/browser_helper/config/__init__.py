"""
Configuration Package

Environment-based settings for the background core and the credential vault
used to seal API keys and OAuth tokens before they are persisted.
"""

from .settings import (
    Settings,
    Environment,
    LogLevel,
    StorageBackendType,
    RequestSettings,
    ApiSettings,
    StorageSettings,
    EncryptionSettings,
    AuditSettings,
    get_settings
)

from .credentials import (
    CredentialError,
    CredentialVault
)

__all__ = [
    # Settings classes
    "Settings",
    "Environment",
    "LogLevel",
    "StorageBackendType",
    "RequestSettings",
    "ApiSettings",
    "StorageSettings",
    "EncryptionSettings",
    "AuditSettings",

    # Settings functions
    "get_settings",

    # Credentials
    "CredentialError",
    "CredentialVault"
]
