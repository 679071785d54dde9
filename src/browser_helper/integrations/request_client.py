"""
Retrying Request Client

This module performs logical API requests with:
- Cache-first reads for cacheable requests (GET by default)
- Per-resource rate limiting (admit immediately or wait in the FIFO queue)
- Per-attempt timeouts enforced by cancellation
- Failure classification into ApiError kinds
- Exponential backoff with jitter for retryable failures
- Bounded-concurrency batches with per-index failure reporting
"""

import asyncio
import json
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from ..config.settings import Settings, get_settings
from ..utils.cache import ResponseCache
from ..utils.rate_limiter import RateLimiter, RateLimitRule
from .errors import ApiError, ErrorKind

logger = structlog.get_logger(__name__)

DEFAULT_RESOURCE = "default"


@dataclass
class RequestMetrics:
    """Request client metrics"""
    total_requests: int = 0
    network_attempts: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    retried_attempts: int = 0
    cache_hits: int = 0
    average_response_time: float = 0.0
    last_request_time: Optional[datetime] = None
    last_failure_time: Optional[datetime] = None


@dataclass
class BatchFailure:
    """A failed entry of a batch, by its original position"""
    index: int
    error: ApiError


@dataclass
class BatchResult:
    """Batch outcome; results[i] is None where request i failed"""
    results: List[Any]
    errors: List[BatchFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class BackoffWait(wait_base):
    """initial * factor ** attempt, plus up to jitter_ratio of that at random"""

    def __init__(self, initial: float, factor: float, jitter_ratio: float = 0.2,
                 rng: Callable[[], float] = random.random):
        self.initial = initial
        self.factor = factor
        self.jitter_ratio = jitter_ratio
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        attempt = retry_state.attempt_number - 1
        delay = self.initial * (self.factor ** attempt)
        return delay + delay * self.jitter_ratio * self.rng()


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ApiError) and error.is_retryable()


def create_cache_key(url: str, method: str = "GET", headers: Optional[Dict[str, str]] = None,
                     body: Any = None) -> str:
    """Cache key for a request; non-GET keys fold in headers and body"""
    method = method.upper()
    if method == "GET":
        return f"{method}:{url}"

    header_str = json.dumps(headers or {}, sort_keys=True)
    if body is None:
        body_str = ""
    elif isinstance(body, bytes):
        body_str = body.decode("utf-8", errors="replace")
    elif isinstance(body, str):
        body_str = body
    else:
        body_str = json.dumps(body, sort_keys=True, default=str)
    return f"{method}:{url}:{header_str}:{body_str}"


class RequestClient:
    """HTTP client with caching, rate limiting and retries"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        rate_limiter: Optional[RateLimiter] = None,
        cache: Optional[ResponseCache] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        request_settings = self.settings.request

        self.rate_limiter = rate_limiter or RateLimiter(RateLimitRule(
            requests_per_minute=request_settings.default_requests_per_minute,
            concurrent_requests=request_settings.default_concurrent_requests,
        ))
        self.cache = cache or ResponseCache(
            max_entries=request_settings.cache_max_entries,
            default_ttl_seconds=request_settings.cache_ttl_ms / 1000,
        )
        self.cache_enabled = True
        self.metrics = RequestMetrics()

        self._client = http_client
        self._owns_client = http_client is None
        self._sleep = sleep
        self._api_keys: Dict[str, Any] = {}

    async def __aenter__(self):
        """Async context manager entry"""
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.close()

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure HTTP client is initialized"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self.settings.get_default_headers(),
                follow_redirects=True,
                limits=httpx.Limits(
                    max_keepalive_connections=10,
                    max_connections=20,
                    keepalive_expiry=30
                )
            )
            self._owns_client = True
        return self._client

    async def close(self):
        """Close HTTP client if this instance created it"""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def set_api_key(self, service_id: str, api_key: Optional[Any]):
        """Register (or with None, forget) the credential for a service"""
        if api_key:
            self._api_keys[service_id] = api_key
        else:
            self._api_keys.pop(service_id, None)

    def get_api_key(self, service_id: str) -> Optional[Any]:
        return self._api_keys.get(service_id)

    create_cache_key = staticmethod(create_cache_key)

    async def _send_once(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Any,
        timeout_seconds: float,
    ) -> httpx.Response:
        """One network attempt; every failure comes back as an ApiError"""
        client = await self._ensure_client()

        kwargs: Dict[str, Any] = {"headers": headers, "timeout": timeout_seconds}
        if body is not None:
            if isinstance(body, (str, bytes)):
                kwargs["content"] = body
            else:
                kwargs["json"] = body

        self.metrics.network_attempts += 1
        start_time = time.monotonic()
        try:
            response = await asyncio.wait_for(
                client.request(method, url, **kwargs),
                timeout=timeout_seconds,
            )
        except (asyncio.TimeoutError, httpx.HTTPError, httpx.InvalidURL) as e:
            raise ApiError.from_transport_error(e, url) from e
        finally:
            self._record_response_time(time.monotonic() - start_time)

        if not response.is_success:
            raise ApiError.from_response(response, url)
        return response

    def _record_response_time(self, elapsed: float):
        if self.metrics.average_response_time == 0:
            self.metrics.average_response_time = elapsed
        else:
            # Exponential moving average
            self.metrics.average_response_time = 0.9 * self.metrics.average_response_time + 0.1 * elapsed

    @staticmethod
    def _parse_body(response: httpx.Response, url: str) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ApiError(
                "Response was not valid JSON",
                ErrorKind.UNKNOWN,
                {"url": url, "responseText": response.text[:500]},
                response.status_code,
                e,
            ) from e

    def _before_retry(self, url: str, retries: int) -> Callable[[RetryCallState], None]:
        def log_retry(retry_state: RetryCallState):
            self.metrics.retried_attempts += 1
            error = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.warning(
                "Retrying API request",
                url=url,
                attempt=retry_state.attempt_number,
                retries=retries,
                delay_ms=int(delay * 1000),
                kind=error.kind.value if isinstance(error, ApiError) else None,
            )
        return log_retry

    async def _execute(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Any,
        timeout_seconds: float,
        retries: int,
        retry_delay_ms: float,
        backoff_factor: float,
    ) -> Any:
        """Run attempts until success, a non-retryable error, or retries are exhausted"""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(retries + 1),
            wait=BackoffWait(
                initial=retry_delay_ms / 1000,
                factor=backoff_factor,
                jitter_ratio=self.settings.request.jitter_ratio,
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._before_retry(url, retries),
            sleep=self._sleep,
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                response = await self._send_once(method, url, headers, body, timeout_seconds)
                return self._parse_body(response, url)

    async def request(
        self,
        url: str,
        method: str = "GET",
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        resource_id: str = DEFAULT_RESOURCE,
        timeout_ms: Optional[int] = None,
        retries: Optional[int] = None,
        retry_delay_ms: Optional[float] = None,
        backoff_factor: Optional[float] = None,
        use_cache: Optional[bool] = None,
        force_fresh: bool = False,
        cache_ttl_ms: Optional[int] = None,
    ) -> Any:
        """Perform one logical request and return the parsed JSON body"""
        defaults = self.settings.request
        method = method.upper()
        request_headers = dict(headers or {})

        cacheable = self.cache_enabled and (method == "GET" if use_cache is None else use_cache)
        cache_key = create_cache_key(url, method, request_headers, body)

        self.metrics.total_requests += 1
        self.metrics.last_request_time = datetime.now(timezone.utc)

        if cacheable and not force_fresh:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                self.metrics.cache_hits += 1
                logger.debug("Serving cached response", url=url, resource=resource_id)
                return cached

        ttl_ms = defaults.cache_ttl_ms if cache_ttl_ms is None else cache_ttl_ms

        async def admitted_call():
            data = await self._execute(
                method=method,
                url=url,
                headers=request_headers,
                body=body,
                timeout_seconds=(timeout_ms if timeout_ms is not None else defaults.timeout_ms) / 1000,
                retries=defaults.retries if retries is None else retries,
                retry_delay_ms=defaults.retry_delay_ms if retry_delay_ms is None else retry_delay_ms,
                backoff_factor=defaults.backoff_factor if backoff_factor is None else backoff_factor,
            )
            if cacheable and data is not None:
                await self.cache.set(cache_key, data, ttl_ms / 1000)
            return data

        try:
            result = await self.rate_limiter.run(resource_id, admitted_call)
        except ApiError as e:
            self.metrics.failed_requests += 1
            self.metrics.last_failure_time = datetime.now(timezone.utc)
            logger.error("API request failed", url=url, resource=resource_id, kind=e.kind.value, status=e.status)
            raise

        self.metrics.successful_requests += 1
        return result

    async def get(self, url: str, **options) -> Any:
        return await self.request(url, method="GET", **options)

    async def post(self, url: str, body: Any = None, **options) -> Any:
        return await self.request(url, method="POST", body=body, **options)

    async def put(self, url: str, body: Any = None, **options) -> Any:
        return await self.request(url, method="PUT", body=body, **options)

    async def patch(self, url: str, body: Any = None, **options) -> Any:
        return await self.request(url, method="PATCH", body=body, **options)

    async def delete(self, url: str, **options) -> Any:
        return await self.request(url, method="DELETE", **options)

    async def fetch(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        resource_id: str = DEFAULT_RESOURCE,
        timeout_ms: Optional[int] = None,
    ) -> httpx.Response:
        """Single rate-limited attempt returning the raw response (no cache, no retries)"""
        timeout_seconds = (timeout_ms if timeout_ms is not None else self.settings.request.timeout_ms) / 1000

        async def admitted_call():
            return await self._send_once(method.upper(), url, dict(headers or {}), None, timeout_seconds)

        return await self.rate_limiter.run(resource_id, admitted_call)

    async def batch(
        self,
        requests: List[Dict[str, Any]],
        resource_id: Optional[str] = None,
        concurrency: int = 3,
        abort_on_error: bool = False,
    ) -> BatchResult:
        """Run request specs ({"url": ..., **options}) with at most `concurrency` in flight"""
        if not requests:
            return BatchResult(results=[])

        results: List[Any] = [None] * len(requests)
        errors: List[BatchFailure] = []
        pending_indexes = iter(range(len(requests)))

        async def worker():
            for index in pending_indexes:
                options = dict(requests[index])
                url = options.pop("url", None)
                if resource_id is not None:
                    options["resource_id"] = resource_id
                try:
                    if not url:
                        raise ApiError("Batch request is missing a url", ErrorKind.BAD_REQUEST, {"index": index})
                    results[index] = await self.request(url, **options)
                except ApiError as e:
                    errors.append(BatchFailure(index=index, error=e))
                    if abort_on_error:
                        raise
                except Exception as e:
                    error = ApiError(str(e) or "Request failed", ErrorKind.UNKNOWN, {"url": url}, None, e)
                    errors.append(BatchFailure(index=index, error=error))
                    if abort_on_error:
                        raise error from e

        workers = [asyncio.create_task(worker()) for _ in range(max(1, min(concurrency, len(requests))))]
        try:
            await asyncio.gather(*workers)
        finally:
            for task in workers:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        errors.sort(key=lambda failure: failure.index)
        if errors:
            logger.warning("Batch completed with failures", total=len(requests), failed=len(errors))
        return BatchResult(results=results, errors=errors)

    async def get_health_status(self) -> Dict[str, Any]:
        """Get client health status"""
        return {
            "metrics": {
                "total_requests": self.metrics.total_requests,
                "network_attempts": self.metrics.network_attempts,
                "successful_requests": self.metrics.successful_requests,
                "failed_requests": self.metrics.failed_requests,
                "retried_attempts": self.metrics.retried_attempts,
                "cache_hits": self.metrics.cache_hits,
                "average_response_time": self.metrics.average_response_time,
            },
            "cache": self.cache.get_stats(),
            "rate_limits": self.rate_limiter.get_all_status(),
            "configured_keys": sorted(self._api_keys),
        }
