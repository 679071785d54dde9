"""
Feature Lifecycle Manager

This module owns the feature registry and moves features between inactive
and active state:
- Registration with settings seeding and validation
- Persistent enable/disable lists with default-enabled fallback
- Activation pipeline: dependencies, conflicts, permissions, settings, hook
- A single activation worker so prompts and hooks never interleave
- Shared outcomes for concurrent activations of the same feature
- Cascading deactivation (dependents first)
- Automatic deactivation when required grants are revoked
- Restoration of enabled features after a restart
"""

import asyncio
import inspect
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Union

import structlog
from pydantic import ValidationError

from ..browser.events import EventBus, EventType
from ..browser.permissions import PermissionBroker, PermissionSet
from ..storage.settings_store import SettingsStore, StorageError
from .builtin import builtin_features
from .models import FeatureDefinition, FeatureError, FeatureErrorKind, FeatureInstance

logger = structlog.get_logger(__name__)

ENABLED_PATH = "features.enabledFeatures"
DISABLED_PATH = "features.disabledFeatures"
SETTINGS_PATH = "features.featureSettings"


async def _call_hook(hook: Callable[..., Any], *args) -> Any:
    result = hook(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class FeatureManager:
    """Registry and lifecycle state machine for optional features"""

    def __init__(
        self,
        store: SettingsStore,
        broker: PermissionBroker,
        events: Optional[EventBus] = None,
        catalog: Optional[Iterable[FeatureDefinition]] = None,
    ):
        self.store = store
        self.broker = broker
        self.events = events or EventBus()
        self._catalog = catalog

        self._registry: Dict[str, FeatureDefinition] = {}
        self._active: Dict[str, FeatureInstance] = {}

        # Activation queue: one pending future per feature id, drained by one worker
        self._pending: Dict[str, asyncio.Future] = {}
        self._queue: Deque[str] = deque()
        self._worker: Optional[asyncio.Task] = None
        self._activation_stack: List[str] = []
        self._deactivating: set = set()

        self.initialized = False
        self._init_future: Optional[asyncio.Future] = None
        self._restore_in_progress = False
        self._remove_permission_listener: Optional[Callable[[], None]] = None

    async def initialize(self):
        """Register the catalog, watch permission changes and restore enabled features"""
        if self.initialized:
            return
        if self._init_future is not None:
            return await asyncio.shield(self._init_future)

        self._init_future = asyncio.get_running_loop().create_future()
        try:
            logger.info("Initializing feature manager")
            if not self.store.initialized:
                await self.store.initialize()

            catalog = self._catalog if self._catalog is not None else builtin_features()
            for definition in catalog:
                await self.register_feature(definition)
            logger.info("Features registered", count=len(self._registry))

            self._remove_permission_listener = self.broker.add_change_listener(self.handle_permission_change)
            self.initialized = True
            await self.restore_enabled_features()
        except Exception as e:
            logger.error("Failed to initialize feature manager", error=str(e))
            self._init_future.set_exception(e)
            # Every waiter re-raises; mark this one retrieved
            self._init_future.exception()
            raise
        else:
            self._init_future.set_result(None)
            logger.info("Feature manager initialized")
        finally:
            self._init_future = None

    # Registry

    async def register_feature(self, definition: Union[FeatureDefinition, Dict[str, Any]]) -> bool:
        """Add a definition; False if it is invalid or its id is taken"""
        if not isinstance(definition, FeatureDefinition):
            try:
                definition = FeatureDefinition.model_validate(definition)
            except ValidationError as e:
                logger.error("Invalid feature definition", errors=e.errors(include_url=False))
                return False

        if definition.id in self._registry:
            logger.error("Feature already registered", feature_id=definition.id)
            return False

        self._registry[definition.id] = definition

        if definition.default_settings:
            path = f"{SETTINGS_PATH}.{definition.id}"
            current = self.store.get(path, {})
            merged = {**definition.default_settings, **current}
            if merged != current:
                try:
                    await self.store.set(path, merged, persist_now=False)
                except StorageError as e:
                    logger.error("Failed to seed feature settings", feature_id=definition.id, error=str(e))

        logger.debug("Feature registered", feature_id=definition.id, category=definition.category)
        return True

    async def unregister_feature(self, feature_id: str) -> bool:
        """Remove a definition, deactivating it first"""
        if feature_id not in self._registry:
            logger.error("Feature not found", feature_id=feature_id)
            return False

        if feature_id in self._active:
            await self.deactivate_feature(feature_id)
        del self._registry[feature_id]
        return True

    def get_all_features(self) -> List[FeatureDefinition]:
        return list(self._registry.values())

    def get_features_by_category(self, category: str) -> List[FeatureDefinition]:
        category = getattr(category, "value", category)
        return [definition for definition in self._registry.values() if definition.category == category]

    def get_feature(self, feature_id: str) -> Optional[FeatureDefinition]:
        return self._registry.get(feature_id)

    def get_active_feature(self, feature_id: str) -> Optional[FeatureInstance]:
        return self._active.get(feature_id)

    def is_feature_active(self, feature_id: str) -> bool:
        return feature_id in self._active

    def is_feature_enabled(self, feature_id: str) -> bool:
        """Disabled list beats enabled list beats the definition's default"""
        if feature_id in self.store.get(DISABLED_PATH, []):
            return False
        if feature_id in self.store.get(ENABLED_PATH, []):
            return True
        definition = self._registry.get(feature_id)
        return bool(definition and definition.default_enabled)

    # Enable / disable

    async def enable_feature(self, feature_id: str) -> bool:
        """Persistently enable a feature and try to activate it"""
        if feature_id not in self._registry:
            logger.error("Feature not found", feature_id=feature_id)
            return False

        try:
            await self._move_between_lists(feature_id, remove_from=DISABLED_PATH, add_to=ENABLED_PATH)
        except StorageError as e:
            logger.error("Failed to persist enabled state", feature_id=feature_id, error=str(e))
            return False

        if feature_id not in self._active:
            try:
                await self.activate_feature(feature_id)
            except FeatureError as e:
                # The feature stays enabled but inactive
                logger.error("Failed to activate feature", feature_id=feature_id, error=e.message)
        return True

    async def disable_feature(self, feature_id: str) -> bool:
        """Persistently disable a feature and deactivate it"""
        if feature_id not in self._registry:
            logger.error("Feature not found", feature_id=feature_id)
            return False

        try:
            await self._move_between_lists(feature_id, remove_from=ENABLED_PATH, add_to=DISABLED_PATH)
        except StorageError as e:
            logger.error("Failed to persist disabled state", feature_id=feature_id, error=str(e))
            return False

        if feature_id in self._active:
            await self.deactivate_feature(feature_id)
        return True

    async def _move_between_lists(self, feature_id: str, remove_from: str, add_to: str):
        source = self.store.get(remove_from, [])
        if feature_id in source:
            source.remove(feature_id)
            await self.store.set(remove_from, source)

        target = self.store.get(add_to, [])
        if feature_id not in target:
            target.append(feature_id)
            await self.store.set(add_to, target)

    # Activation

    def _in_worker(self) -> bool:
        return self._worker is not None and asyncio.current_task() is self._worker

    async def activate_feature(self, feature_id: str) -> FeatureInstance:
        """Activate a feature (and its dependencies); concurrent callers share one outcome"""
        if feature_id not in self._registry:
            raise FeatureError(f'Feature with ID "{feature_id}" not found', FeatureErrorKind.UNKNOWN_FEATURE, feature_id)

        if feature_id in self._active:
            return self._active[feature_id]

        # Called from a hook or a dependency walk: the worker is busy with us, so run inline
        if self._in_worker():
            return await self._activate_inline(feature_id)

        future = self._pending.get(feature_id)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._pending[feature_id] = future
            self._queue.append(feature_id)
            logger.debug("Feature activation queued", feature_id=feature_id, queue_length=len(self._queue))
            if self._worker is None or self._worker.done():
                self._worker = asyncio.get_running_loop().create_task(self._process_activation_queue())

        return await asyncio.shield(future)

    async def _activate_inline(self, feature_id: str) -> FeatureInstance:
        if feature_id in self._activation_stack:
            cycle = " -> ".join(self._activation_stack + [feature_id])
            raise FeatureError(
                f'Circular dependency while activating "{feature_id}": {cycle}',
                FeatureErrorKind.DEPENDENCY_ACTIVATION_FAILED,
                feature_id,
            )

        future = self._pending.get(feature_id)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._pending[feature_id] = future
        await self._run_activation(feature_id)
        return await future

    async def _process_activation_queue(self):
        try:
            while self._queue:
                feature_id = self._queue.popleft()
                # Already settled inline as somebody's dependency
                if feature_id not in self._pending:
                    continue
                await self._run_activation(feature_id)
        finally:
            self._worker = None

    async def _run_activation(self, feature_id: str):
        """Run the pipeline for feature_id and settle its pending future"""
        future = self._pending[feature_id]
        self._activation_stack.append(feature_id)
        try:
            instance = await self._activate(feature_id)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            if not future.done():
                future.set_exception(e)
        else:
            if not future.done():
                future.set_result(instance)
        finally:
            self._activation_stack.pop()
            self._pending.pop(feature_id, None)

    async def _activate(self, feature_id: str) -> FeatureInstance:
        definition = self._registry.get(feature_id)
        if definition is None:
            raise FeatureError(f'Feature with ID "{feature_id}" not found', FeatureErrorKind.UNKNOWN_FEATURE, feature_id)

        if feature_id in self._active:
            return self._active[feature_id]

        logger.info("Activating feature", feature_id=feature_id)

        for dependency_id in definition.dependencies:
            if dependency_id not in self._registry:
                raise FeatureError(
                    f'Dependency "{dependency_id}" not found for feature "{feature_id}"',
                    FeatureErrorKind.DEPENDENCY_MISSING,
                    feature_id,
                    dependency_id,
                )
            if dependency_id in self._active:
                continue
            try:
                await self.activate_feature(dependency_id)
            except FeatureError as e:
                raise FeatureError(
                    f'Failed to activate dependency "{dependency_id}" for feature "{feature_id}": {e.message}',
                    FeatureErrorKind.DEPENDENCY_ACTIVATION_FAILED,
                    feature_id,
                    dependency_id,
                ) from e

        for conflict_id in definition.conflicts:
            if conflict_id in self._active:
                raise FeatureError(
                    f'Feature "{feature_id}" conflicts with active feature "{conflict_id}"',
                    FeatureErrorKind.CONFLICT_ACTIVE,
                    feature_id,
                    conflict_id,
                )

        required = PermissionSet.of(definition.permissions)
        if not required.is_empty() and not await self.broker.contains(required):
            raise FeatureError(
                f'Feature "{feature_id}" requires permissions: {", ".join(definition.permissions)}',
                FeatureErrorKind.PERMISSION_REQUIRED,
                feature_id,
            )

        optional = PermissionSet.of(definition.optional_permissions)
        if not optional.is_empty() and not await self.broker.contains(optional):
            if not await self.broker.request(optional):
                raise FeatureError(
                    f'User denied optional permissions for feature "{feature_id}"',
                    FeatureErrorKind.PERMISSION_DENIED,
                    feature_id,
                )

        origins = PermissionSet.of(origins=definition.host_permissions)
        if not origins.is_empty() and not await self.broker.contains(origins):
            if not await self.broker.request(origins):
                raise FeatureError(
                    f'User denied host permissions for feature "{feature_id}"',
                    FeatureErrorKind.PERMISSION_DENIED,
                    feature_id,
                )

        instance = FeatureInstance(
            id=feature_id,
            definition=definition,
            settings=self.get_feature_settings(feature_id),
            deactivate=lambda: self.deactivate_feature(feature_id),
        )

        if definition.on_activate is not None:
            try:
                await _call_hook(definition.on_activate, instance)
            except Exception as e:
                logger.error("Activation hook failed", feature_id=feature_id, error=str(e))
                raise FeatureError(
                    f'Failed to initialize feature "{feature_id}": {e}',
                    FeatureErrorKind.HOOK_FAILURE,
                    feature_id,
                ) from e

        # Dependencies may have been deactivated, or conflicts activated, while the hook ran
        lost_dependency = next((dep for dep in definition.dependencies if dep not in self._active), None)
        new_conflict = next((other for other in definition.conflicts if other in self._active), None)
        if lost_dependency is not None or new_conflict is not None:
            await self._undo_activation(instance)
            if lost_dependency is not None:
                raise FeatureError(
                    f'Dependency "{lost_dependency}" of feature "{feature_id}" was deactivated during activation',
                    FeatureErrorKind.DEPENDENCY_ACTIVATION_FAILED,
                    feature_id,
                    lost_dependency,
                )
            raise FeatureError(
                f'Feature "{feature_id}" conflicts with active feature "{new_conflict}"',
                FeatureErrorKind.CONFLICT_ACTIVE,
                feature_id,
                new_conflict,
            )

        self._active[feature_id] = instance
        self.events.broadcast(EventType.FEATURE_ACTIVATED, featureId=feature_id)
        logger.info("Feature activated", feature_id=feature_id)
        return instance

    async def _undo_activation(self, instance: FeatureInstance):
        logger.warning("Rolling back activation", feature_id=instance.id)
        if instance.definition.on_deactivate is not None:
            try:
                await _call_hook(instance.definition.on_deactivate, instance)
            except Exception as e:
                logger.error("Deactivation hook failed", feature_id=instance.id, error=str(e))
        instance.active = False

    # Deactivation

    async def deactivate_feature(self, feature_id: str) -> bool:
        """Deactivate a feature after every active feature depending on it"""
        if feature_id not in self._active or feature_id in self._deactivating:
            return False

        logger.info("Deactivating feature", feature_id=feature_id)
        self._deactivating.add(feature_id)
        try:
            dependents = [
                active_id
                for active_id, instance in self._active.items()
                if active_id != feature_id and feature_id in instance.definition.dependencies
            ]
            for dependent_id in dependents:
                await self.deactivate_feature(dependent_id)

            instance = self._active[feature_id]
            if instance.definition.on_deactivate is not None:
                try:
                    await _call_hook(instance.definition.on_deactivate, instance)
                except Exception as e:
                    logger.error("Deactivation hook failed", feature_id=feature_id, error=str(e))

            instance.active = False
            del self._active[feature_id]
        finally:
            self._deactivating.discard(feature_id)

        self.events.broadcast(EventType.FEATURE_DEACTIVATED, featureId=feature_id)
        logger.info("Feature deactivated", feature_id=feature_id)
        return True

    # Settings

    def get_feature_settings(self, feature_id: str) -> Dict[str, Any]:
        """Stored overrides merged over the definition's defaults"""
        definition = self._registry.get(feature_id)
        if definition is None:
            logger.error("Feature not found", feature_id=feature_id)
            return {}
        return {**definition.default_settings, **self.store.get(f"{SETTINGS_PATH}.{feature_id}", {})}

    async def update_feature_settings(self, feature_id: str, settings: Dict[str, Any]) -> bool:
        """Merge settings into the stored values and push them to the live instance"""
        if feature_id not in self._registry:
            logger.error("Feature not found", feature_id=feature_id)
            return False

        path = f"{SETTINGS_PATH}.{feature_id}"
        new_settings = {**self.store.get(path, {}), **settings}
        await self.store.set(path, new_settings)

        instance = self._active.get(feature_id)
        if instance is not None:
            instance.settings = self.get_feature_settings(feature_id)
            if instance.on_settings_change is not None:
                try:
                    await _call_hook(instance.on_settings_change, dict(instance.settings))
                except Exception as e:
                    logger.error("Settings change hook failed", feature_id=feature_id, error=str(e))
        return True

    async def reset_feature_settings(self, feature_id: str) -> bool:
        definition = self._registry.get(feature_id)
        if definition is None:
            logger.error("Feature not found", feature_id=feature_id)
            return False

        await self.store.set(f"{SETTINGS_PATH}.{feature_id}", dict(definition.default_settings))
        instance = self._active.get(feature_id)
        if instance is not None:
            instance.settings = dict(definition.default_settings)
        return True

    # Permissions

    async def request_feature_permissions(self, feature_id: str) -> bool:
        """Prompt once for everything a feature can use"""
        definition = self._registry.get(feature_id)
        if definition is None:
            raise FeatureError(f'Feature with ID "{feature_id}" not found', FeatureErrorKind.UNKNOWN_FEATURE, feature_id)

        grants = PermissionSet.of(
            definition.permissions + definition.optional_permissions,
            definition.host_permissions,
        )
        if grants.is_empty():
            return True
        return await self.broker.request(grants)

    async def handle_permission_change(self, delta: PermissionSet):
        """Deactivate active features that lost a grant they require"""
        for feature_id, instance in list(self._active.items()):
            required = instance.definition.required_grants
            if not required.intersects(delta):
                continue
            if feature_id not in self._active:
                continue
            if not await self.broker.contains(required):
                logger.info("Deactivating feature after permission change", feature_id=feature_id)
                await self.deactivate_feature(feature_id)

    # Restart

    async def restore_enabled_features(self) -> Dict[str, List[str]]:
        """Activate every persisted-enabled feature; failures do not stop the batch"""
        restored: List[str] = []
        failed: List[str] = []
        if self._restore_in_progress:
            return {"restored": restored, "failed": failed}

        self._restore_in_progress = True
        try:
            logger.info("Restoring enabled features")
            for feature_id in self.store.get(ENABLED_PATH, []):
                if feature_id not in self._registry or feature_id in self._active:
                    continue
                try:
                    await self.activate_feature(feature_id)
                    restored.append(feature_id)
                except FeatureError as e:
                    logger.error("Failed to restore feature", feature_id=feature_id, error=e.message)
                    failed.append(feature_id)

            logger.info("Feature restoration finished", restored=len(restored), failed=len(failed))
            if restored or failed:
                self.events.broadcast(EventType.FEATURES_RESTORED, restored=restored, failed=failed)
        finally:
            self._restore_in_progress = False

        return {"restored": restored, "failed": failed}

    async def handle_restart(self):
        logger.info("Handling feature manager restart")
        if not self.initialized:
            await self.initialize()
        else:
            await self.restore_enabled_features()

    def get_state(self) -> Dict[str, Any]:
        """Snapshot of registry and lifecycle state"""
        return {
            "initialized": self.initialized,
            "registered": sorted(self._registry),
            "active": sorted(self._active),
            "enabled": sorted(fid for fid in self._registry if self.is_feature_enabled(fid)),
            "pending": list(self._pending),
        }

    async def shutdown(self):
        """Stop the activation worker and deactivate everything"""
        logger.info("Shutting down feature manager")
        if self._remove_permission_listener is not None:
            self._remove_permission_listener()
            self._remove_permission_listener = None

        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()
        self._queue.clear()

        for feature_id in list(self._active):
            await self.deactivate_feature(feature_id)
        logger.info("Feature manager shutdown complete")
