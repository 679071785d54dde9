"""
Background Service

Composition root of the extension's background context:
- Ordered, idempotent initialization (settings store, API manager, features)
- Restart detection with per-component recovery
- Install/update handling with significant-version detection
- Message handling for UI contexts
- Bounded error log kept in local storage
"""

import asyncio
import time
import traceback
from typing import Any, Dict, Optional

import httpx
import structlog

from .browser.auth_flow import AuthFlowLauncher
from .browser.events import EventBus, EventType
from .browser.permissions import InMemoryPermissionBroker, PermissionBroker
from .config.settings import Settings, get_settings
from .features.manager import FeatureManager
from .integrations.api_manager import ApiManager
from .integrations.request_client import RequestClient
from .storage.settings_store import SettingsStore, StorageError, create_backend

logger = structlog.get_logger(__name__)

LOCAL_FILENAME = "local.json"
MAX_ERROR_LOG = 50

# Per-device state that is never synced with the settings document
LOCAL_DEFAULTS: Dict[str, Any] = {
    "restartCount": 0,
    "lastVersion": None,
    "errorLog": [],
}


def _version_parts(version: str):
    parts = []
    for piece in (version or "0.0.0").split("."):
        try:
            parts.append(int(piece))
        except ValueError:
            parts.append(0)
    while len(parts) < 2:
        parts.append(0)
    return parts


def is_significant_update(old_version: str, new_version: str) -> bool:
    """A major or minor version increase"""
    old_parts = _version_parts(old_version)
    new_parts = _version_parts(new_version)
    return new_parts[0] > old_parts[0] or (new_parts[0] == old_parts[0] and new_parts[1] > old_parts[1])


class BackgroundService:
    """Owns and initializes every background component"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[SettingsStore] = None,
        local_store: Optional[SettingsStore] = None,
        broker: Optional[PermissionBroker] = None,
        events: Optional[EventBus] = None,
        auth_flow: Optional[AuthFlowLauncher] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        api_manager: Optional[ApiManager] = None,
        feature_manager: Optional[FeatureManager] = None,
    ):
        self.settings = settings or get_settings()
        self.events = events or EventBus()
        self.store = store or SettingsStore(settings=self.settings)
        self.local_store = local_store or SettingsStore(
            backend=create_backend(self.settings, LOCAL_FILENAME),
            settings=self.settings,
            defaults=LOCAL_DEFAULTS,
        )
        self.broker = broker or InMemoryPermissionBroker()

        self.api_manager = api_manager or ApiManager(
            self.store,
            client=RequestClient(self.settings, http_client=http_client),
            events=self.events,
            auth_flow=auth_flow,
            settings=self.settings,
        )
        self.feature_manager = feature_manager or FeatureManager(self.store, self.broker, self.events)

        self.initialized = False
        self.restart_count = 0
        self._init_future: Optional[asyncio.Future] = None

    async def initialize(self):
        """Bring every component up in dependency order; concurrent callers share one run"""
        if self.initialized:
            return
        if self._init_future is not None:
            return await asyncio.shield(self._init_future)

        self._init_future = asyncio.get_running_loop().create_future()
        start = time.monotonic()
        try:
            logger.info("Starting background initialization")
            await self._perform_initialization()
        except Exception as e:
            logger.error("Background initialization failed", error=str(e))
            await self.record_error(e)
            self.events.broadcast(EventType.BACKGROUND_ERROR, error={"message": str(e)})
            self._init_future.set_exception(e)
            self._init_future.exception()
            raise
        else:
            self.initialized = True
            self._init_future.set_result(None)
            duration_ms = round((time.monotonic() - start) * 1000, 2)
            logger.info("Background initialization complete", duration_ms=duration_ms)
            self.events.broadcast(EventType.BACKGROUND_INITIALIZED, duration_ms=duration_ms)
        finally:
            self._init_future = None

    async def _perform_initialization(self):
        await self.store.initialize()
        await self.local_store.initialize()
        await self.api_manager.initialize()
        await self.feature_manager.initialize()

        if self.restart_count > 0:
            await self._restore_state()

    async def _restore_state(self):
        logger.info("Restoring state after restart", restart_count=self.restart_count)
        for component in (self.store, self.api_manager, self.feature_manager):
            try:
                await component.handle_restart()
            except Exception as e:
                logger.error("Component restart handling failed", component=type(component).__name__, error=str(e))

    async def handle_startup(self):
        """Browser started: count the restart, then initialize"""
        logger.info("Extension starting up")
        await self.local_store.initialize()
        self.restart_count = self.local_store.get("restartCount", 0) + 1
        await self._set_local("restartCount", self.restart_count)
        await self.initialize()

    async def handle_install(self, reason: str) -> Dict[str, Any]:
        """Installed or updated: note significant version jumps, then initialize"""
        logger.info("Extension installed", reason=reason)
        result: Dict[str, Any] = {"reason": reason, "significantUpdate": False}

        if reason == "update":
            await self.local_store.initialize()
            last_version = self.local_store.get("lastVersion") or "0.0.0"
            current_version = self.settings.app_version
            result["significantUpdate"] = is_significant_update(last_version, current_version)
            if result["significantUpdate"]:
                logger.info("Significant update installed", previous=last_version, current=current_version)
            await self._set_local("lastVersion", current_version)

        await self.initialize()
        return result

    async def handle_message(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Answer a message addressed to the background context; None when not ours"""
        if message.get("target") != "background":
            return None

        message_type = message.get("type")
        logger.debug("Background received message", message_type=message_type)

        if message_type == "isInitialized":
            return {"initialized": self.initialized}

        if message_type == "initialize":
            try:
                await self.initialize()
            except Exception as e:
                return {"success": False, "error": str(e)}
            return {"success": True}

        if message_type == "getState":
            return {"initialized": self.initialized, "restartCount": self.restart_count}

        return None

    async def record_error(self, error: BaseException):
        """Append to the local error log, keeping the newest entries"""
        logger.error("Uncaught error in background context", error=str(error))
        error_log = self.local_store.get("errorLog", [])
        error_log.append({
            "timestamp": int(time.time() * 1000),
            "message": str(error),
            "type": type(error).__name__,
            "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
            "restartCount": self.restart_count,
        })
        await self._set_local("errorLog", error_log[-MAX_ERROR_LOG:])

    async def _set_local(self, path: str, value: Any):
        try:
            await self.local_store.set(path, value)
        except StorageError as e:
            logger.error("Failed to write local state", path=path, error=str(e))

    async def get_health_status(self) -> Dict[str, Any]:
        return {
            "initialized": self.initialized,
            "restart_count": self.restart_count,
            "features": self.feature_manager.get_state(),
            "api": await self.api_manager.get_health_status(),
            "pending_settings_writes": self.store.has_pending_writes,
        }

    async def shutdown(self):
        """Deactivate features, stop API work and flush storage"""
        logger.info("Shutting down background service")
        await self.feature_manager.shutdown()
        await self.api_manager.shutdown()
        await self.api_manager.client.close()
        await self.store.shutdown()
        await self.local_store.shutdown()
        await self.events.drain(timeout=1.0)
        logger.info("Background service shutdown complete")


# Global background service instance
_background_service: Optional[BackgroundService] = None


def get_background_service() -> BackgroundService:
    """Get the process-wide background service"""
    global _background_service
    if _background_service is None:
        _background_service = BackgroundService()
    return _background_service
