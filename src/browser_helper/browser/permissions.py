"""
Permission Broker

Abstraction over the browser's permission API. Features declare API
permissions and host origins; the broker answers whether they are held and
prompts the user for missing ones.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Union

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PermissionSet:
    """API permissions plus host origins"""
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    origins: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def of(cls, permissions: Optional[Iterable[str]] = None, origins: Optional[Iterable[str]] = None) -> "PermissionSet":
        return cls(frozenset(permissions or ()), frozenset(origins or ()))

    def is_empty(self) -> bool:
        return not self.permissions and not self.origins

    def intersects(self, other: "PermissionSet") -> bool:
        return bool(self.permissions & other.permissions or self.origins & other.origins)

    def issubset(self, other: "PermissionSet") -> bool:
        return self.permissions <= other.permissions and self.origins <= other.origins

    def union(self, other: "PermissionSet") -> "PermissionSet":
        return PermissionSet(self.permissions | other.permissions, self.origins | other.origins)

    def difference(self, other: "PermissionSet") -> "PermissionSet":
        return PermissionSet(self.permissions - other.permissions, self.origins - other.origins)

    def to_dict(self) -> Dict[str, List[str]]:
        return {"permissions": sorted(self.permissions), "origins": sorted(self.origins)}


PermissionListener = Callable[[PermissionSet], Union[Awaitable[Any], Any]]
PermissionPrompt = Callable[[PermissionSet], Awaitable[bool]]


class PermissionBroker(ABC):
    """Checks and requests permission grants"""

    def __init__(self):
        self._listeners: List[PermissionListener] = []

    @abstractmethod
    async def contains(self, request: PermissionSet) -> bool:
        """Whether every permission and origin in request is currently granted"""
        pass

    @abstractmethod
    async def request(self, request: PermissionSet) -> bool:
        """Ask for request interactively; False when the user declines"""
        pass

    def add_change_listener(self, listener: PermissionListener) -> Callable[[], None]:
        """Subscribe to grant/revocation deltas"""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def _notify(self, delta: PermissionSet):
        for listener in list(self._listeners):
            try:
                result = listener(delta)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("Permission change listener failed", error=str(e))


class InMemoryPermissionBroker(PermissionBroker):
    """Broker holding grants in memory; prompts are answered by a callback"""

    def __init__(
        self,
        granted: Optional[PermissionSet] = None,
        prompt: Optional[PermissionPrompt] = None,
        auto_grant: bool = False,
    ):
        super().__init__()
        self.granted = granted or PermissionSet()
        self._prompt = prompt
        self.auto_grant = auto_grant
        self.prompt_count = 0

    async def contains(self, request: PermissionSet) -> bool:
        return request.issubset(self.granted)

    async def request(self, request: PermissionSet) -> bool:
        if await self.contains(request):
            return True

        self.prompt_count += 1
        if self._prompt is not None:
            accepted = await self._prompt(request)
        else:
            accepted = self.auto_grant

        if not accepted:
            logger.info("Permission request declined", **request.to_dict())
            return False

        await self.grant(request)
        return True

    async def grant(self, delta: PermissionSet):
        """Add grants and notify listeners of the added set"""
        added = delta.difference(self.granted)
        self.granted = self.granted.union(delta)
        if not added.is_empty():
            await self._notify(added)

    async def revoke(self, delta: PermissionSet):
        """Remove grants and notify listeners of the removed set"""
        removed = PermissionSet(
            self.granted.permissions & delta.permissions,
            self.granted.origins & delta.origins,
        )
        self.granted = self.granted.difference(delta)
        if not removed.is_empty():
            await self._notify(removed)
