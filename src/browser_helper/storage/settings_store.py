"""
Persistent Settings Store

This module owns the extension's settings document:
- Dotted-path reads and writes with defaults
- Change listeners on exact, ancestor and wildcard paths
- Immediate or deferred (debounced) persistence
- Last-write-wins reconciliation of external changes
- Backup and restore of the whole document
- Pluggable backends (memory, JSON file)
"""

import asyncio
import copy
import json
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Any, Optional, Callable, List, Set

import structlog

from ..config.settings import Settings, StorageBackendType, get_settings

logger = structlog.get_logger(__name__)

ChangeListener = Callable[[Any, Any, str], None]

WILDCARD = "*"
BACKUP_VERSION = 1

DEFAULT_SETTINGS: Dict[str, Any] = {
    "features": {
        "enabledFeatures": [],
        "disabledFeatures": [],
        "featureSettings": {},
    },
    "ui": {
        "theme": "system",
        "fontSize": "medium",
        "layoutDensity": "comfortable",
        "showCommandBar": True,
        "quickAccessFeatures": [],
    },
    "privacy": {
        "telemetryEnabled": True,
        "saveHistory": True,
        "syncEnabled": True,
        "syncFeatures": ["settings", "notes"],
    },
    "api": {
        "offlineMode": False,
        "cacheResults": True,
        "cacheDuration": 60 * 60 * 1000,
    },
}


class StorageError(Exception):
    """Raised when the settings document cannot be read or written"""


def fill_missing_defaults(target: Dict[str, Any], source: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively copy keys missing from target; existing values and lists win"""
    for key, default in source.items():
        if key not in target:
            target[key] = copy.deepcopy(default)
        elif isinstance(default, dict) and isinstance(target[key], dict):
            fill_missing_defaults(target[key], default)
    return target


class StorageBackend(ABC):
    """Where the settings document is persisted"""

    @abstractmethod
    async def load(self) -> Optional[Dict[str, Any]]:
        """Return the stored document, or None when nothing is stored"""
        pass

    @abstractmethod
    async def save(self, data: Dict[str, Any]):
        """Replace the stored document"""
        pass

    @abstractmethod
    async def clear(self):
        """Remove the stored document"""
        pass


class MemoryStorageBackend(StorageBackend):
    """Process-local backend, used for tests and ephemeral sessions"""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data = copy.deepcopy(initial) if initial is not None else None
        self.save_count = 0

    async def load(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._data)

    async def save(self, data: Dict[str, Any]):
        self._data = copy.deepcopy(data)
        self.save_count += 1

    async def clear(self):
        self._data = None


class JsonFileStorageBackend(StorageBackend):
    """Stores the document as a JSON file with owner-only permissions"""

    def __init__(self, path: Path):
        self.path = Path(path)

    async def load(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            logger.info("No stored settings found, starting fresh", path=str(self.path))
            return None

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to read settings from {self.path}: {e}") from e

    async def save(self, data: Dict[str, Any]):
        self.path.parent.mkdir(parents=True, exist_ok=True)

        # Write to a temporary file first, then rename for an atomic replace
        temp_path = self.path.with_suffix(".tmp")
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.chmod(temp_path, 0o600)
            os.replace(temp_path, self.path)
        except (OSError, TypeError) as e:
            raise StorageError(f"Failed to write settings to {self.path}: {e}") from e

    async def clear(self):
        if self.path.exists():
            self.path.unlink()


def create_backend(settings: Settings, filename: Optional[str] = None) -> StorageBackend:
    """Build the backend selected in configuration"""
    if settings.storage.backend == StorageBackendType.MEMORY:
        return MemoryStorageBackend()
    settings.ensure_directories()
    return JsonFileStorageBackend(settings.get_storage_path(filename))


class SettingsStore:
    """In-memory cache of the settings document with persistence and change notification"""

    def __init__(
        self,
        backend: Optional[StorageBackend] = None,
        settings: Optional[Settings] = None,
        defaults: Optional[Dict[str, Any]] = None,
    ):
        self.settings = settings or get_settings()
        self.backend = backend or create_backend(self.settings)
        self.defaults = defaults if defaults is not None else DEFAULT_SETTINGS
        self.initialized = False

        self._data: Dict[str, Any] = copy.deepcopy(self.defaults)
        self._listeners: Dict[str, Set[ChangeListener]] = {}
        self._dirty = False
        self._flush_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    async def initialize(self):
        """Load the stored document and fill in missing defaults"""
        if self.initialized:
            return

        logger.info("Initializing settings store", backend=type(self.backend).__name__)
        try:
            stored = await self.backend.load()
        except StorageError as e:
            logger.error("Failed to load settings, using defaults", error=str(e))
            stored = None

        self._data = stored if isinstance(stored, dict) else copy.deepcopy(self.defaults)
        fill_missing_defaults(self._data, self.defaults)
        self.initialized = True
        logger.info("Settings store initialized")

    def get(self, path: str, default: Any = None) -> Any:
        """Read a value by dotted path; returns a copy so callers cannot mutate the cache"""
        current: Any = self._data
        for part in path.split("."):
            if not isinstance(current, dict) or part not in current:
                return default
            current = current[part]
        if current is None:
            return default
        return copy.deepcopy(current)

    async def set(self, path: str, value: Any, persist_now: bool = True):
        """Write a value by dotted path, persisting and notifying only on change"""
        parts = path.split(".")
        current = self._data
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]

        key = parts[-1]
        old_value = copy.deepcopy(current.get(key))
        if key in current and old_value == value:
            return

        current[key] = copy.deepcopy(value)

        if persist_now:
            await self.save()
        else:
            self._schedule_flush()

        self._notify(path, copy.deepcopy(value), old_value)

    async def delete(self, path: str, persist_now: bool = True) -> bool:
        """Remove a key by dotted path"""
        parts = path.split(".")
        current: Any = self._data
        for part in parts[:-1]:
            if not isinstance(current, dict) or part not in current:
                return False
            current = current[part]
        if not isinstance(current, dict) or parts[-1] not in current:
            return False

        old_value = current.pop(parts[-1])
        if persist_now:
            await self.save()
        else:
            self._schedule_flush()
        self._notify(path, None, old_value)
        return True

    async def save(self):
        """Persist the whole document"""
        async with self._lock:
            await self.backend.save(copy.deepcopy(self._data))
            self._dirty = False

    def _schedule_flush(self):
        self._dirty = True
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
        try:
            self._flush_task = asyncio.get_running_loop().create_task(self._deferred_flush())
        except RuntimeError:
            # No running loop; the write stays pending until flush()
            self._flush_task = None

    async def _deferred_flush(self):
        try:
            await asyncio.sleep(self.settings.storage.sync_debounce_ms / 1000)
            await self.save()
        except asyncio.CancelledError:
            pass
        except StorageError as e:
            logger.error("Deferred settings write failed", error=str(e))

    async def flush(self):
        """Write any deferred changes now"""
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
        self._flush_task = None
        if self._dirty:
            await self.save()

    @property
    def has_pending_writes(self) -> bool:
        return self._dirty

    def add_change_listener(self, path: str, callback: ChangeListener) -> Callable[[], None]:
        """Subscribe to changes at path, any descendant of path, or '*' for everything"""
        self._listeners.setdefault(path, set()).add(callback)

        def remove():
            listeners = self._listeners.get(path)
            if listeners is not None:
                listeners.discard(callback)
                if not listeners:
                    del self._listeners[path]

        return remove

    def _listener_paths(self, path: str) -> List[str]:
        parts = path.split(".")
        paths = [path]
        paths.extend(".".join(parts[:i]) for i in range(len(parts) - 1, 0, -1))
        paths.append(WILDCARD)
        return paths

    def _notify(self, path: str, new_value: Any, old_value: Any):
        for listener_path in self._listener_paths(path):
            for callback in list(self._listeners.get(listener_path, ())):
                try:
                    callback(new_value, old_value, path)
                except Exception as e:
                    logger.error("Settings change listener failed", path=listener_path, error=str(e))

    def handle_external_change(self, new_settings: Dict[str, Any]) -> bool:
        """Adopt a document written by another context (last write wins)"""
        if new_settings == self._data:
            return False

        logger.info("Settings changed externally, updating")
        old_settings = self._data
        self._data = copy.deepcopy(new_settings)
        self._notify("settings", self.snapshot(), old_settings)
        return True

    def snapshot(self) -> Dict[str, Any]:
        """Deep copy of the full document"""
        return copy.deepcopy(self._data)

    def create_backup(self) -> Dict[str, Any]:
        """Serializable backup of the settings document"""
        return {
            "version": BACKUP_VERSION,
            "timestamp": int(time.time() * 1000),
            "settings": self.snapshot(),
        }

    async def restore_from_backup(self, backup: Dict[str, Any]):
        """Replace the document with a backup produced by create_backup()"""
        if not isinstance(backup, dict) or not backup.get("version"):
            raise ValueError("Invalid backup format")

        restored = backup.get("settings")
        if not isinstance(restored, dict):
            raise ValueError("Backup does not contain settings")

        old_settings = self._data
        self._data = fill_missing_defaults(copy.deepcopy(restored), self.defaults)
        await self.save()
        self._notify("settings", self.snapshot(), old_settings)
        logger.info("Settings restored from backup", version=backup["version"])

    async def reset_to_defaults(self):
        """Discard all stored settings"""
        old_settings = self._data
        self._data = copy.deepcopy(self.defaults)
        await self.save()
        self._notify("settings", self.snapshot(), old_settings)

    async def handle_restart(self):
        """Flush pending writes and make sure the store is loaded"""
        logger.info("Handling settings store restart")
        await self.flush()
        if not self.initialized:
            await self.initialize()

    async def shutdown(self):
        """Flush pending writes"""
        await self.flush()
