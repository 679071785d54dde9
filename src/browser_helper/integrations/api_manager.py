"""
API Manager

Service-level policy on top of the request client:
- Static per-service configuration (auth type, rate limits, cache TTL)
- Encrypted API key storage forwarded to the request client
- Usage and error statistics with bounded persistence
- Availability checks (offline mode, credentials, rate limits, recent errors)
- OAuth implicit-grant tokens with background refresh
- Connection tests against each service
"""

import asyncio
import copy
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar
from urllib.parse import quote, urlencode

import structlog

from ..browser.auth_flow import (
    AuthFlowError,
    AuthFlowLauncher,
    OAuthToken,
    UnavailableAuthFlow,
    extract_token_from_redirect
)
from ..browser.events import EventBus, EventType
from ..config.credentials import CredentialError, CredentialVault
from ..config.settings import Settings, get_settings
from ..storage.settings_store import SettingsStore, StorageError
from .errors import ApiError, ErrorKind
from .request_client import RequestClient
from .services import ServiceRegistry

logger = structlog.get_logger(__name__)

T = TypeVar('T')

SETTINGS_PATH = "api"
HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


class AuthType(str, Enum):
    """How a service authenticates"""
    NONE = "none"
    API_KEY = "apiKey"
    OAUTH = "oauth"


@dataclass(frozen=True)
class ServiceConfig:
    """Static description of an external service"""
    name: str
    auth_type: AuthType
    requests_per_minute: int
    concurrent_requests: int
    cache_ttl_ms: int
    description: str = ""
    documentation: str = ""


SERVICE_CONFIG: Dict[str, ServiceConfig] = {
    "google_translate": ServiceConfig(
        name="Google Translate",
        auth_type=AuthType.API_KEY,
        requests_per_minute=60,
        concurrent_requests=4,
        cache_ttl_ms=DAY_MS,
        description="Translate text between languages",
        documentation="https://cloud.google.com/translate/docs",
    ),
    "claude": ServiceConfig(
        name="Claude by Anthropic",
        auth_type=AuthType.API_KEY,
        requests_per_minute=20,
        concurrent_requests=2,
        cache_ttl_ms=7 * DAY_MS,
        description="AI text generation for page summarization",
        documentation="https://anthropic.com/claude",
    ),
    "dictionary": ServiceConfig(
        name="Dictionary API",
        auth_type=AuthType.NONE,
        requests_per_minute=30,
        concurrent_requests=3,
        cache_ttl_ms=30 * DAY_MS,
        description="Word definitions and language references",
        documentation="https://dictionaryapi.dev/",
    ),
    "exchange_rates": ServiceConfig(
        name="Exchange Rates API",
        auth_type=AuthType.NONE,
        requests_per_minute=30,
        concurrent_requests=2,
        cache_ttl_ms=HOUR_MS,
        description="Currency exchange rates",
        documentation="https://open.er-api.com/v6/documentation",
    ),
    "web_archive": ServiceConfig(
        name="Web Archive API",
        auth_type=AuthType.NONE,
        requests_per_minute=10,
        concurrent_requests=1,
        cache_ttl_ms=DAY_MS,
        description="Internet Archive (Wayback Machine) integration",
        documentation="https://archive.org/help/wayback_api.php",
    ),
}


@dataclass
class AuthToken:
    """Cached OAuth token with its absolute expiry (epoch seconds)"""
    token: OAuthToken
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return self.expires_at > now


def empty_usage_stats() -> Dict[str, Any]:
    return {
        "requestCount": 0,
        "lastRequest": None,
        "errorCount": 0,
        "lastError": None,
        "quotaUsage": 0,
    }


def validate_api_key(service_id: str, api_key: Any) -> bool:
    """Best-effort key format check; a failure is only logged"""
    if not api_key or not isinstance(api_key, str):
        return False
    if service_id == "google_translate":
        return 20 <= len(api_key) <= 50
    if service_id == "claude":
        return api_key.startswith("sk-ant-") and len(api_key) > 20
    return len(api_key) > 5


class ApiManager:
    """Credentials, accounting and availability for every configured service"""

    def __init__(
        self,
        store: SettingsStore,
        client: Optional[RequestClient] = None,
        events: Optional[EventBus] = None,
        vault: Optional[CredentialVault] = None,
        auth_flow: Optional[AuthFlowLauncher] = None,
        settings: Optional[Settings] = None,
        service_config: Optional[Dict[str, ServiceConfig]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self._owns_client = client is None
        self.client = client or RequestClient(self.settings)
        self.events = events or EventBus()
        self.vault = vault or CredentialVault(self.settings)
        self.auth_flow = auth_flow or UnavailableAuthFlow(self.settings.api.oauth_redirect_uri)
        self.service_config = service_config if service_config is not None else SERVICE_CONFIG
        self.services = ServiceRegistry(self.client)
        self._clock = clock

        self.initialized = False
        self.api_keys: Dict[str, str] = {}
        self.usage_stats: Dict[str, Dict[str, Any]] = {}
        self.auth_tokens: Dict[str, AuthToken] = {}
        self._refresh_tasks: Dict[str, asyncio.Task] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _require_service(self, service_id: str) -> ServiceConfig:
        config = self.service_config.get(service_id)
        if config is None:
            raise ValueError(f"Unknown API: {service_id}")
        return config

    async def initialize(self):
        """Load keys, configure limits, load statistics, then announce readiness"""
        if self.initialized:
            return

        try:
            logger.info("Initializing API manager")
            if not self.store.initialized:
                await self.store.initialize()

            self._load_api_keys()
            self._configure_rate_limits()
            self._load_usage_stats()

            self.client.cache_enabled = bool(self.store.get(f"{SETTINGS_PATH}.cacheResults", True))
            self.initialized = True
            logger.info("API manager initialized", services=list(self.service_config))
            self.events.broadcast(EventType.API_READY)
        except Exception as e:
            logger.error("Failed to initialize API manager", error=str(e))
            self.events.broadcast(EventType.API_ERROR, error=str(e))
            raise

    def _load_api_keys(self):
        sealed_keys = self.store.get(f"{SETTINGS_PATH}.apiKeys", {})
        for service_id, sealed in sealed_keys.items():
            if not sealed:
                continue
            try:
                api_key = self.vault.open(sealed)
            except CredentialError as e:
                logger.error("Stored API key could not be opened", service=service_id, error=str(e))
                continue
            self.api_keys[service_id] = api_key
            self.client.set_api_key(service_id, api_key)

        logger.info("API keys loaded", count=len(self.api_keys))

    def _configure_rate_limits(self):
        for service_id, config in self.service_config.items():
            self.client.rate_limiter.configure(
                service_id,
                requests_per_minute=config.requests_per_minute,
                concurrent_requests=config.concurrent_requests,
            )

    def _load_usage_stats(self):
        stored = self.store.get(f"{SETTINGS_PATH}.usageStats", {})
        self.usage_stats = stored if isinstance(stored, dict) else {}
        for service_id in self.service_config:
            self.usage_stats.setdefault(service_id, empty_usage_stats())

    async def set_api_key(self, service_id: str, api_key: str) -> bool:
        """Store a key for a service and hand it to the request client"""
        if service_id not in self.service_config:
            logger.error("Cannot set key for unknown API", service=service_id)
            return False

        if not validate_api_key(service_id, api_key):
            logger.warning("API key failed format validation", service=service_id)

        try:
            sealed_keys = self.store.get(f"{SETTINGS_PATH}.apiKeys", {})
            sealed_keys[service_id] = self.vault.seal(api_key)
            await self.store.set(f"{SETTINGS_PATH}.apiKeys", sealed_keys)
        except (StorageError, AttributeError) as e:
            logger.error("Failed to store API key", service=service_id, error=str(e))
            return False

        self.client.set_api_key(service_id, api_key)
        self.api_keys[service_id] = api_key
        self.vault.audit("api_key_set", {"service": service_id})
        logger.info("API key set", service=service_id)
        return True

    async def remove_api_key(self, service_id: str) -> bool:
        """Forget the key for a service"""
        self.client.set_api_key(service_id, None)
        self.api_keys.pop(service_id, None)

        try:
            sealed_keys = self.store.get(f"{SETTINGS_PATH}.apiKeys", {})
            sealed_keys.pop(service_id, None)
            await self.store.set(f"{SETTINGS_PATH}.apiKeys", sealed_keys)
        except StorageError as e:
            logger.error("Failed to remove stored API key", service=service_id, error=str(e))
            return False

        self.vault.audit("api_key_removed", {"service": service_id})
        logger.info("API key removed", service=service_id)
        return True

    def has_api_key(self, service_id: str) -> bool:
        return bool(self.api_keys.get(service_id))

    def get_api_services(self) -> List[Dict[str, Any]]:
        """Every configured service with its status"""
        return [
            {
                "id": service_id,
                "name": config.name,
                "description": config.description,
                "documentation": config.documentation,
                "authType": config.auth_type.value,
                "hasKey": self.has_api_key(service_id),
                "usageStats": copy.deepcopy(self.usage_stats.get(service_id, empty_usage_stats())),
            }
            for service_id, config in self.service_config.items()
        ]

    def check_api_availability(self, service_id: str) -> Dict[str, Any]:
        """Whether a service can be called right now, and if not, why"""
        config = self.service_config.get(service_id)
        if config is None:
            return {"available": False, "reason": "Unknown API"}

        if self.store.get(f"{SETTINGS_PATH}.offlineMode", False):
            return {"available": False, "reason": "Offline mode enabled"}

        if config.auth_type == AuthType.API_KEY and not self.has_api_key(service_id):
            return {"available": False, "reason": "API key not configured"}

        if not self.client.rate_limiter.check_limit(service_id):
            return {"available": False, "reason": "Rate limited"}

        if self._has_recent_errors(service_id):
            return {"available": False, "reason": "Service may be unavailable (recent errors)"}

        return {"available": True, "reason": None}

    def _has_recent_errors(self, service_id: str) -> bool:
        stats = self.usage_stats.get(service_id)
        if not stats or not stats.get("lastError"):
            return False

        window_start = self._now_ms() - self.settings.api.error_window_minutes * 60 * 1000
        return (
            stats["lastError"]["timestamp"] > window_start
            and stats["errorCount"] > self.settings.api.error_threshold
        )

    async def authenticate(self, service_id: str, force_refresh: bool = False, interactive: bool = True) -> str:
        """Return an access token for an OAuth service, running the browser flow when needed"""
        config = self._require_service(service_id)
        if config.auth_type != AuthType.OAUTH:
            raise ValueError(f"API {service_id} does not use OAuth authentication")

        cached = self.auth_tokens.get(service_id)
        if cached and not force_refresh and cached.is_valid(self._clock()):
            return cached.token.access_token

        auth_config = self.store.get(f"{SETTINGS_PATH}.authConfig.{service_id}", {})
        if not auth_config.get("clientId"):
            raise ApiError(f"OAuth configuration missing for {service_id}", ErrorKind.AUTH, {"apiId": service_id})

        try:
            redirect_url = await self.auth_flow.launch(self.build_auth_url(service_id, auth_config), interactive)
            token = extract_token_from_redirect(redirect_url)
        except AuthFlowError as e:
            # A failed silent refresh keeps a token that has not expired yet
            if interactive or not (cached and cached.is_valid(self._clock())):
                self._clear_token(service_id)
            logger.error("Authentication failed", service=service_id, error=str(e))
            raise ApiError(
                f"Authentication failed for {service_id}: {e}",
                ErrorKind.AUTH,
                {"apiId": service_id},
                None,
                e,
            ) from e

        lifetime = token.expires_in or self.settings.api.default_token_lifetime_seconds
        self.auth_tokens[service_id] = AuthToken(token=token, expires_at=self._clock() + lifetime)
        self.vault.audit("oauth_token_issued", {"service": service_id, "expires_in": lifetime})
        self._schedule_token_refresh(service_id)

        return token.access_token

    def build_auth_url(self, service_id: str, auth_config: Dict[str, Any]) -> str:
        """Implicit-grant authorization URL for a service"""
        query = urlencode(
            {
                "client_id": auth_config["clientId"],
                "redirect_uri": self.auth_flow.redirect_uri,
                "response_type": "token",
                "scope": " ".join(auth_config.get("scopes", [])),
            },
            quote_via=quote,
        )
        if service_id.startswith("google_"):
            return f"https://accounts.google.com/o/oauth2/auth?{query}"
        return f"{auth_config['authUrl']}?{query}"

    def _schedule_token_refresh(self, service_id: str):
        self._cancel_refresh(service_id)

        token = self.auth_tokens.get(service_id)
        if token is None:
            return

        delay = max(0.0, (token.expires_at - self._clock()) * self.settings.api.token_refresh_ratio)
        self._refresh_tasks[service_id] = asyncio.get_running_loop().create_task(
            self._refresh_after(service_id, delay)
        )

    async def _refresh_after(self, service_id: str, delay: float):
        await asyncio.sleep(delay)
        # This task is replaced by the one authenticate() schedules
        self._refresh_tasks.pop(service_id, None)
        try:
            await self.authenticate(service_id, force_refresh=True, interactive=False)
            logger.info("OAuth token refreshed", service=service_id)
        except ApiError as e:
            logger.error("Failed to refresh token", service=service_id, error=e.message)

    def _cancel_refresh(self, service_id: str):
        task = self._refresh_tasks.pop(service_id, None)
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _clear_token(self, service_id: str):
        self._cancel_refresh(service_id)
        if self.auth_tokens.pop(service_id, None) is not None:
            self.vault.audit("oauth_token_cleared", {"service": service_id})

    async def make_request(self, service_id: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        """Run request_fn with usage and error accounting for service_id"""
        config = self._require_service(service_id)
        self._record_request_attempt(service_id)

        try:
            result = await request_fn()
        except Exception as e:
            await self._handle_api_error(service_id, config, e)
            raise

        await self._record_request_success(service_id)
        return result

    async def request(self, service_id: str, url: str, **options) -> Any:
        """Request through the client under the service's limits and default cache TTL"""
        config = self._require_service(service_id)
        options.setdefault("cache_ttl_ms", config.cache_ttl_ms)
        return await self.make_request(
            service_id,
            lambda: self.client.request(url, resource_id=service_id, **options),
        )

    def _record_request_attempt(self, service_id: str):
        stats = self.usage_stats.setdefault(service_id, empty_usage_stats())
        stats["requestCount"] += 1
        stats["lastRequest"] = self._now_ms()

    async def _record_request_success(self, service_id: str):
        stats = self.usage_stats[service_id]
        stats["quotaUsage"] += 1
        if stats["quotaUsage"] % self.settings.api.stats_persist_every == 0:
            await self._save_usage_stats()

    async def _handle_api_error(self, service_id: str, config: ServiceConfig, error: Exception):
        stats = self.usage_stats.setdefault(service_id, empty_usage_stats())
        stats["errorCount"] += 1
        stats["lastError"] = {
            "timestamp": self._now_ms(),
            "message": error.message if isinstance(error, ApiError) else str(error),
            "type": error.kind.value if isinstance(error, ApiError) else ErrorKind.UNKNOWN.value,
        }
        logger.warning("API call failed", service=service_id, error_type=stats["lastError"]["type"])

        await self._save_usage_stats()

        if isinstance(error, ApiError) and error.kind == ErrorKind.AUTH and config.auth_type == AuthType.OAUTH:
            self._clear_token(service_id)

    async def _save_usage_stats(self):
        try:
            await self.store.set(f"{SETTINGS_PATH}.usageStats", self.usage_stats)
        except StorageError as e:
            logger.error("Failed to save API usage statistics", error=str(e))

    async def reset_usage_stats(self, service_id: str = "all") -> bool:
        """Zero the statistics of one service, or of all with 'all'"""
        if service_id == "all":
            for key in list(self.usage_stats):
                self.usage_stats[key] = empty_usage_stats()
        elif service_id in self.usage_stats:
            self.usage_stats[service_id] = empty_usage_stats()

        try:
            await self.store.set(f"{SETTINGS_PATH}.usageStats", self.usage_stats)
        except StorageError as e:
            logger.error("Failed to reset usage statistics", service=service_id, error=str(e))
            return False
        return True

    async def test_api_connection(self, service_id: str) -> Dict[str, Any]:
        """Make the cheapest real call to a service and report how it went"""
        self._require_service(service_id)

        start = self._clock()
        error_message = None
        try:
            await self.services.probe(service_id)
            success = True
        except ApiError as e:
            success = False
            error_message = f"{e.kind.value}: {e.message}"
        except ValueError as e:
            success = False
            error_message = str(e)

        return {
            "apiId": service_id,
            "success": success,
            "duration": int((self._clock() - start) * 1000),
            "timestamp": self._now_ms(),
            "error": error_message,
        }

    async def configure_api(self, api_settings: Dict[str, Any]) -> bool:
        """Merge values into the api settings group"""
        try:
            merged = {**self.store.get(SETTINGS_PATH, {}), **api_settings}
            await self.store.set(SETTINGS_PATH, merged)
        except StorageError as e:
            logger.error("Failed to configure API settings", error=str(e))
            return False

        if "cacheResults" in api_settings:
            self.client.cache_enabled = bool(api_settings["cacheResults"])
        return True

    async def handle_restart(self):
        """Re-read keys and statistics after the host restarted"""
        logger.info("Handling API manager restart")
        if not self.initialized:
            await self.initialize()
            return

        self._load_api_keys()
        self._load_usage_stats()

    async def get_health_status(self) -> Dict[str, Any]:
        """Availability of every service plus client health"""
        return {
            "initialized": self.initialized,
            "services": {service_id: self.check_api_availability(service_id) for service_id in self.service_config},
            "authenticated": sorted(
                service_id for service_id, token in self.auth_tokens.items() if token.is_valid(self._clock())
            ),
            "client": await self.client.get_health_status(),
        }

    async def shutdown(self):
        """Stop token refreshes and persist statistics"""
        logger.info("Shutting down API manager")
        for service_id in list(self._refresh_tasks):
            self._cancel_refresh(service_id)

        await self._save_usage_stats()
        if self._owns_client:
            await self.client.close()
        logger.info("API manager shutdown complete")
