"""
Per-Resource Rate Limiting

This module gates outbound calls per resource (one resource per external
service):
- Sliding 60-second window capping how many calls may start
- Concurrency ceiling on calls simultaneously in flight
- FIFO wait queue for calls that cannot be admitted yet
- Event-driven queue draining: completions wake the drain loop immediately,
  and a timer wakes it when the oldest window entry ages out
- Status snapshots for monitoring
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar('T')

WINDOW_SECONDS = 60.0


@dataclass
class RateLimitRule:
    """Ceilings for one resource"""
    requests_per_minute: int = 60
    concurrent_requests: int = 6
    window_seconds: float = WINDOW_SECONDS

    def __post_init__(self):
        if self.requests_per_minute < 1 or self.concurrent_requests < 1:
            raise ValueError("Rate limit ceilings must be positive")


@dataclass
class QueuedRequest:
    """A deferred call waiting for capacity"""
    thunk: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    enqueued_at: float


class ResourceLimiter:
    """Sliding window plus concurrency gate for a single resource"""

    def __init__(self, resource_id: str, rule: RateLimitRule, clock: Callable[[], float] = time.monotonic):
        self.resource_id = resource_id
        self.rule = rule
        self._clock = clock

        self.active_requests = 0
        self.request_history: Deque[float] = deque()
        self.queue: Deque[QueuedRequest] = deque()
        self.queue_processing = False

        self.peak_active_requests = 0
        self.total_admitted = 0
        self.total_queued = 0

        self._capacity_released = asyncio.Event()
        self._drain_task: Optional[asyncio.Task] = None

    @property
    def requests_per_minute(self) -> int:
        return self.rule.requests_per_minute

    @property
    def concurrent_requests(self) -> int:
        return self.rule.concurrent_requests

    def _prune_history(self, now: float):
        window_start = now - self.rule.window_seconds
        while self.request_history and self.request_history[0] <= window_start:
            self.request_history.popleft()

    def check_limit(self) -> bool:
        """Whether a call could be admitted right now"""
        if self.active_requests >= self.rule.concurrent_requests:
            return False
        self._prune_history(self._clock())
        return len(self.request_history) < self.rule.requests_per_minute

    def record_request(self):
        """Count an admitted call against both ceilings"""
        self.request_history.append(self._clock())
        self.active_requests += 1
        self.total_admitted += 1
        self.peak_active_requests = max(self.peak_active_requests, self.active_requests)

    def record_completion(self):
        """Release an admission slot and wake the queue"""
        self.active_requests = max(0, self.active_requests - 1)
        self._capacity_released.set()
        if self.queue and not self.queue_processing:
            self._start_drain()

    def _seconds_until_window_slot(self) -> Optional[float]:
        self._prune_history(self._clock())
        if len(self.request_history) < self.rule.requests_per_minute:
            return None
        oldest = self.request_history[0]
        return max(0.0, oldest + self.rule.window_seconds - self._clock())

    def enqueue(self, thunk: Callable[[], Awaitable[T]]) -> "asyncio.Future[T]":
        """Append a call to the FIFO queue; the returned future carries its outcome"""
        future = asyncio.get_running_loop().create_future()
        self.queue.append(QueuedRequest(thunk=thunk, future=future, enqueued_at=self._clock()))
        self.total_queued += 1
        logger.debug("Request queued", resource=self.resource_id, queue_length=len(self.queue))

        if not self.queue_processing:
            self._start_drain()
        return future

    def _start_drain(self):
        self.queue_processing = True
        self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self):
        try:
            while self.queue:
                if self.check_limit():
                    item = self.queue.popleft()
                    if item.future.cancelled():
                        continue
                    self.record_request()
                    asyncio.get_running_loop().create_task(self._run_queued(item))
                    continue

                self._capacity_released.clear()
                # Concurrency-bound waits have no timeout: only a completion frees a slot
                timeout = self._seconds_until_window_slot()
                try:
                    await asyncio.wait_for(self._capacity_released.wait(), timeout)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.queue_processing = False

    async def _run_queued(self, item: QueuedRequest):
        try:
            result = await item.thunk()
        except Exception as e:
            if not item.future.done():
                item.future.set_exception(e)
        else:
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self.record_completion()

    async def run(self, thunk: Callable[[], Awaitable[T]]) -> T:
        """Run thunk now if capacity allows (and nobody is queued), otherwise wait in line"""
        if not self.queue and self.check_limit():
            self.record_request()
            try:
                return await thunk()
            finally:
                self.record_completion()

        return await self.enqueue(thunk)

    def reset(self):
        """Forget history; in-flight and queued calls are unaffected"""
        self.request_history.clear()
        self._capacity_released.set()

    def get_status(self) -> Dict[str, Any]:
        """Get current limiter status"""
        self._prune_history(self._clock())
        return {
            "resource": self.resource_id,
            "requests_per_minute": self.rule.requests_per_minute,
            "concurrent_requests": self.rule.concurrent_requests,
            "active_requests": self.active_requests,
            "requests_in_window": len(self.request_history),
            "queue_length": len(self.queue),
            "queue_processing": self.queue_processing,
            "peak_active_requests": self.peak_active_requests,
            "total_admitted": self.total_admitted,
            "total_queued": self.total_queued,
            "utilization": len(self.request_history) / self.rule.requests_per_minute,
        }


class RateLimiter:
    """Independent limiters keyed by resource id"""

    def __init__(self, default_rule: Optional[RateLimitRule] = None, clock: Callable[[], float] = time.monotonic):
        self.default_rule = default_rule or RateLimitRule()
        self._clock = clock
        self._resources: Dict[str, ResourceLimiter] = {}

    def configure(self, resource_id: str, requests_per_minute: Optional[int] = None,
                  concurrent_requests: Optional[int] = None) -> ResourceLimiter:
        """Create or update the limiter for a resource"""
        rule = RateLimitRule(
            requests_per_minute=requests_per_minute or self.default_rule.requests_per_minute,
            concurrent_requests=concurrent_requests or self.default_rule.concurrent_requests,
            window_seconds=self.default_rule.window_seconds,
        )
        limiter = self._resources.get(resource_id)
        if limiter is None:
            limiter = ResourceLimiter(resource_id, rule, self._clock)
            self._resources[resource_id] = limiter
        else:
            limiter.rule = rule
            limiter._capacity_released.set()

        logger.info(
            "Rate limit configured",
            resource=resource_id,
            requests_per_minute=rule.requests_per_minute,
            concurrent_requests=rule.concurrent_requests,
        )
        return limiter

    def get(self, resource_id: str) -> ResourceLimiter:
        """Limiter for a resource, created with the default rule on first use"""
        limiter = self._resources.get(resource_id)
        if limiter is None:
            limiter = ResourceLimiter(resource_id, RateLimitRule(
                requests_per_minute=self.default_rule.requests_per_minute,
                concurrent_requests=self.default_rule.concurrent_requests,
                window_seconds=self.default_rule.window_seconds,
            ), self._clock)
            self._resources[resource_id] = limiter
        return limiter

    def check_limit(self, resource_id: str) -> bool:
        return self.get(resource_id).check_limit()

    def record_request(self, resource_id: str):
        self.get(resource_id).record_request()

    def record_completion(self, resource_id: str):
        self.get(resource_id).record_completion()

    def enqueue(self, resource_id: str, thunk: Callable[[], Awaitable[T]]) -> "asyncio.Future[T]":
        return self.get(resource_id).enqueue(thunk)

    async def run(self, resource_id: str, thunk: Callable[[], Awaitable[T]]) -> T:
        return await self.get(resource_id).run(thunk)

    def get_status(self, resource_id: str) -> Dict[str, Any]:
        return self.get(resource_id).get_status()

    def get_all_status(self) -> Dict[str, Dict[str, Any]]:
        return {resource_id: limiter.get_status() for resource_id, limiter in self._resources.items()}

    def reset(self, resource_id: Optional[str] = None):
        """Reset one resource, or all of them"""
        if resource_id is None:
            targets = list(self._resources.values())
        elif resource_id in self._resources:
            targets = [self._resources[resource_id]]
        else:
            targets = []

        for limiter in targets:
            limiter.reset()
