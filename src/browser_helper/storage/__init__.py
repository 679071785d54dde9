"""
Storage Package

The persistent settings document shared by the API manager and the feature
manager, with memory and JSON-file backends.
"""

from .settings_store import (
    DEFAULT_SETTINGS,
    StorageError,
    StorageBackend,
    MemoryStorageBackend,
    JsonFileStorageBackend,
    SettingsStore,
    create_backend,
    fill_missing_defaults
)

__all__ = [
    "DEFAULT_SETTINGS",
    "StorageError",
    "StorageBackend",
    "MemoryStorageBackend",
    "JsonFileStorageBackend",
    "SettingsStore",
    "create_backend",
    "fill_missing_defaults"
]
