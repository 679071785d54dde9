"""
Unit tests for the API manager

Covers credential storage, availability checks, usage accounting, OAuth
token handling and connection tests.
"""

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio

from browser_helper.browser.auth_flow import ScriptedAuthFlow
from browser_helper.browser.events import EventType
from browser_helper.config.credentials import CredentialVault
from browser_helper.integrations.api_manager import (
    ApiManager,
    AuthType,
    ServiceConfig,
    validate_api_key,
)
from browser_helper.integrations.errors import ApiError, ErrorKind
from browser_helper.storage.settings_store import StorageError

CLAUDE_KEY = "sk-ant-" + "k" * 30
REDIRECT_URI = "https://ext.test/cb"


@pytest.fixture
def api_transport(transport):
    def respond(request):
        if request.url.path.startswith("/missing"):
            return httpx.Response(404, json={"error": "missing"})
        return httpx.Response(200, json={"path": request.url.path})
    return transport(respond)


@pytest_asyncio.fixture
async def api_manager(settings_store, event_bus, test_settings, api_transport, make_request_client):
    manager = ApiManager(
        settings_store,
        client=make_request_client(api_transport),
        events=event_bus,
        settings=test_settings,
    )
    await manager.initialize()
    yield manager
    await manager.shutdown()


class TokenResponder:
    """Auth flow answers handing out tok1, tok2, ... in order"""

    def __init__(self, expires_in: int = 3600):
        self.issued = 0
        self.expires_in = expires_in
        self.cancel = False

    def __call__(self, url: str) -> str:
        if self.cancel:
            return ""
        self.issued += 1
        return f"{REDIRECT_URI}#access_token=tok{self.issued}&token_type=Bearer&expires_in={self.expires_in}"


@pytest.fixture
def token_responder():
    return TokenResponder()


@pytest_asyncio.fixture
async def oauth_manager(settings_store, event_bus, test_settings, api_transport, make_request_client, token_responder):
    await settings_store.set("api.authConfig", {
        "drive": {"clientId": "cid", "scopes": ["read", "write"], "authUrl": "https://auth.test/authorize"},
    })
    manager = ApiManager(
        settings_store,
        client=make_request_client(api_transport),
        events=event_bus,
        auth_flow=ScriptedAuthFlow(REDIRECT_URI, token_responder),
        settings=test_settings,
        service_config={
            "drive": ServiceConfig(
                name="Drive",
                auth_type=AuthType.OAUTH,
                requests_per_minute=10,
                concurrent_requests=1,
                cache_ttl_ms=1000,
            ),
            "dictionary": ServiceConfig(
                name="Dictionary API",
                auth_type=AuthType.NONE,
                requests_per_minute=30,
                concurrent_requests=3,
                cache_ttl_ms=1000,
            ),
        },
    )
    await manager.initialize()
    yield manager
    await manager.shutdown()


class TestApiKeyValidation:
    """Test advisory key format checks"""

    @pytest.mark.parametrize("service_id,key,expected", [
        ("google_translate", "g" * 20, True),
        ("google_translate", "g" * 51, False),
        ("google_translate", "short", False),
        ("claude", CLAUDE_KEY, True),
        ("claude", "sk-ant-short", False),
        ("claude", "x" * 40, False),
        ("dictionary", "123456", True),
        ("dictionary", "12345", False),
        ("dictionary", "", False),
        ("dictionary", None, False),
    ])
    def test_validate_api_key(self, service_id, key, expected):
        assert validate_api_key(service_id, key) is expected


class TestApiManagerInitialization:
    """Test startup behavior"""

    @pytest.mark.asyncio
    async def test_initialize_configures_services(self, api_manager, event_bus):
        limiter = api_manager.client.rate_limiter.get("claude")

        assert api_manager.initialized
        assert limiter.requests_per_minute == 20
        assert limiter.concurrent_requests == 2
        assert set(api_manager.usage_stats) == {
            "google_translate", "claude", "dictionary", "exchange_rates", "web_archive"
        }
        assert len(event_bus.events_of(EventType.API_READY)) == 1

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, api_manager, event_bus):
        await api_manager.initialize()
        assert len(event_bus.events_of(EventType.API_READY)) == 1

    @pytest.mark.asyncio
    async def test_stored_keys_loaded(self, settings_store, test_settings, make_request_client, api_transport):
        vault = CredentialVault(test_settings)
        await settings_store.set("api.apiKeys", {"claude": vault.seal(CLAUDE_KEY), "dictionary": "not:sealed"})

        manager = ApiManager(settings_store, client=make_request_client(api_transport), settings=test_settings)
        await manager.initialize()

        assert manager.has_api_key("claude")
        assert manager.client.get_api_key("claude") == CLAUDE_KEY
        assert not manager.has_api_key("dictionary")
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_cache_preference_applied(self, settings_store, test_settings, make_request_client, api_transport):
        await settings_store.set("api.cacheResults", False)

        manager = ApiManager(settings_store, client=make_request_client(api_transport), settings=test_settings)
        await manager.initialize()

        assert manager.client.cache_enabled is False
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_initialize_failure_broadcasts_error(self, event_bus, test_settings, make_request_client, api_transport):
        store = MagicMock(initialized=False)
        store.initialize = AsyncMock(side_effect=StorageError("disk unavailable"))

        manager = ApiManager(store, client=make_request_client(api_transport), events=event_bus, settings=test_settings)

        with pytest.raises(StorageError):
            await manager.initialize()

        errors = event_bus.events_of(EventType.API_ERROR)
        assert len(errors) == 1
        assert errors[0].payload["error"] == "disk unavailable"
        assert not manager.initialized


class TestApiKeys:
    """Test key storage"""

    @pytest.mark.asyncio
    async def test_set_api_key_seals_and_forwards(self, api_manager, settings_store):
        assert await api_manager.set_api_key("claude", CLAUDE_KEY) is True

        stored = settings_store.get("api.apiKeys.claude")
        assert stored != CLAUDE_KEY
        assert api_manager.vault.open(stored) == CLAUDE_KEY
        assert api_manager.client.get_api_key("claude") == CLAUDE_KEY
        assert api_manager.has_api_key("claude")

    @pytest.mark.asyncio
    async def test_badly_formatted_key_still_stored(self, api_manager):
        assert await api_manager.set_api_key("claude", "not-a-claude-key") is True
        assert api_manager.has_api_key("claude")

    @pytest.mark.asyncio
    async def test_unknown_service_rejected(self, api_manager):
        assert await api_manager.set_api_key("nope", "whatever-key") is False

    @pytest.mark.asyncio
    async def test_storage_failure_returns_false(self, api_manager, settings_store):
        settings_store.backend.save = AsyncMock(side_effect=StorageError("read-only"))

        assert await api_manager.set_api_key("claude", CLAUDE_KEY) is False
        assert not api_manager.has_api_key("claude")

    @pytest.mark.asyncio
    async def test_remove_api_key(self, api_manager, settings_store):
        await api_manager.set_api_key("claude", CLAUDE_KEY)

        assert await api_manager.remove_api_key("claude") is True
        assert not api_manager.has_api_key("claude")
        assert api_manager.client.get_api_key("claude") is None
        assert "claude" not in settings_store.get("api.apiKeys", {})

    @pytest.mark.asyncio
    async def test_get_api_services(self, api_manager):
        await api_manager.set_api_key("google_translate", "g" * 30)

        services = {service["id"]: service for service in api_manager.get_api_services()}

        assert len(services) == 5
        assert services["google_translate"]["hasKey"] is True
        assert services["google_translate"]["authType"] == "apiKey"
        assert services["dictionary"]["authType"] == "none"
        assert services["claude"]["usageStats"]["requestCount"] == 0


class TestAvailability:
    """Test availability reasons"""

    @pytest.mark.asyncio
    async def test_unknown_api(self, api_manager):
        assert api_manager.check_api_availability("nope") == {"available": False, "reason": "Unknown API"}

    @pytest.mark.asyncio
    async def test_offline_mode(self, api_manager, settings_store):
        await settings_store.set("api.offlineMode", True)
        assert api_manager.check_api_availability("dictionary")["reason"] == "Offline mode enabled"

    @pytest.mark.asyncio
    async def test_missing_key(self, api_manager):
        assert api_manager.check_api_availability("claude")["reason"] == "API key not configured"

    @pytest.mark.asyncio
    async def test_available_without_key_requirement(self, api_manager):
        assert api_manager.check_api_availability("dictionary") == {"available": True, "reason": None}

    @pytest.mark.asyncio
    async def test_rate_limited(self, api_manager):
        api_manager.client.rate_limiter.record_request("web_archive")
        assert api_manager.check_api_availability("web_archive")["reason"] == "Rate limited"

    @pytest.mark.asyncio
    async def test_recent_errors(self, api_manager):
        now_ms = int(time.time() * 1000)
        api_manager.usage_stats["dictionary"].update(
            errorCount=4,
            lastError={"timestamp": now_ms, "message": "Server error", "type": "server"},
        )
        assert api_manager.check_api_availability("dictionary")["reason"] == "Service may be unavailable (recent errors)"

    @pytest.mark.asyncio
    async def test_old_errors_ignored(self, api_manager):
        ten_minutes_ago = int(time.time() * 1000) - 10 * 60 * 1000
        api_manager.usage_stats["dictionary"].update(
            errorCount=10,
            lastError={"timestamp": ten_minutes_ago, "message": "Server error", "type": "server"},
        )
        assert api_manager.check_api_availability("dictionary")["available"] is True

    @pytest.mark.asyncio
    async def test_few_errors_tolerated(self, api_manager):
        api_manager.usage_stats["dictionary"].update(
            errorCount=3,
            lastError={"timestamp": int(time.time() * 1000), "message": "Server error", "type": "server"},
        )
        assert api_manager.check_api_availability("dictionary")["available"] is True


class TestUsageAccounting:
    """Test request accounting and persistence cadence"""

    @pytest.mark.asyncio
    async def test_success_counted(self, api_manager):
        result = await api_manager.make_request("dictionary", AsyncMock(return_value={"ok": True}))

        stats = api_manager.usage_stats["dictionary"]
        assert result == {"ok": True}
        assert stats["requestCount"] == 1
        assert stats["quotaUsage"] == 1
        assert stats["errorCount"] == 0
        assert isinstance(stats["lastRequest"], int)

    @pytest.mark.asyncio
    async def test_stats_persisted_every_tenth_request(self, api_manager, settings_store):
        request_fn = AsyncMock(return_value={})
        for _ in range(9):
            await api_manager.make_request("dictionary", request_fn)
        assert settings_store.get("api.usageStats.dictionary.requestCount") is None

        await api_manager.make_request("dictionary", request_fn)
        assert settings_store.get("api.usageStats.dictionary.requestCount") == 10

    @pytest.mark.asyncio
    async def test_persist_cadence_counts_successes_only(self, api_manager, settings_store):
        error = ApiError("Resource not found", ErrorKind.NOT_FOUND, status=404)
        with pytest.raises(ApiError):
            await api_manager.make_request("dictionary", AsyncMock(side_effect=error))

        request_fn = AsyncMock(return_value={})
        for _ in range(9):
            await api_manager.make_request("dictionary", request_fn)
        assert settings_store.get("api.usageStats.dictionary.quotaUsage") == 0

        await api_manager.make_request("dictionary", request_fn)
        assert settings_store.get("api.usageStats.dictionary.quotaUsage") == 10
        assert settings_store.get("api.usageStats.dictionary.requestCount") == 11

    @pytest.mark.asyncio
    async def test_failure_recorded_and_persisted(self, api_manager, settings_store):
        error = ApiError("Resource not found", ErrorKind.NOT_FOUND, status=404)

        with pytest.raises(ApiError):
            await api_manager.make_request("dictionary", AsyncMock(side_effect=error))

        stats = api_manager.usage_stats["dictionary"]
        assert stats["errorCount"] == 1
        assert stats["quotaUsage"] == 0
        assert stats["lastError"]["type"] == "not_found"
        assert stats["lastError"]["message"] == "Resource not found"
        assert settings_store.get("api.usageStats.dictionary.errorCount") == 1

    @pytest.mark.asyncio
    async def test_unclassified_failure(self, api_manager):
        with pytest.raises(RuntimeError):
            await api_manager.make_request("dictionary", AsyncMock(side_effect=RuntimeError("boom")))

        assert api_manager.usage_stats["dictionary"]["lastError"]["type"] == "unknown"

    @pytest.mark.asyncio
    async def test_unknown_service_raises(self, api_manager):
        with pytest.raises(ValueError, match="Unknown API: nope"):
            await api_manager.make_request("nope", AsyncMock())

    @pytest.mark.asyncio
    async def test_request_goes_through_service_limiter(self, api_manager, api_transport):
        result = await api_manager.request("dictionary", "https://api.test/words")

        assert result == {"path": "/words"}
        assert api_manager.usage_stats["dictionary"]["requestCount"] == 1
        assert api_manager.client.rate_limiter.get("dictionary").total_admitted == 1

    @pytest.mark.asyncio
    async def test_request_failure_counted(self, api_manager):
        with pytest.raises(ApiError):
            await api_manager.request("dictionary", "https://api.test/missing")

        assert api_manager.usage_stats["dictionary"]["errorCount"] == 1

    @pytest.mark.asyncio
    async def test_reset_usage_stats(self, api_manager, settings_store):
        await api_manager.make_request("dictionary", AsyncMock(return_value={}))
        await api_manager.make_request("claude", AsyncMock(return_value={}))

        assert await api_manager.reset_usage_stats("dictionary") is True
        assert api_manager.usage_stats["dictionary"]["requestCount"] == 0
        assert api_manager.usage_stats["claude"]["requestCount"] == 1

        assert await api_manager.reset_usage_stats() is True
        assert api_manager.usage_stats["claude"]["requestCount"] == 0
        assert settings_store.get("api.usageStats.claude.requestCount") == 0


class TestConnectionTests:
    """Test per-service connection probes"""

    @pytest.mark.asyncio
    async def test_successful_probe(self, api_manager, api_transport):
        result = await api_manager.test_api_connection("dictionary")

        assert result["apiId"] == "dictionary"
        assert result["success"] is True
        assert result["error"] is None
        assert result["duration"] >= 0
        assert api_transport.requests[0].url.host == "api.dictionaryapi.dev"

    @pytest.mark.asyncio
    async def test_failed_probe_reports_kind(self, api_manager):
        result = await api_manager.test_api_connection("claude")

        assert result["success"] is False
        assert result["error"] == "auth: Claude API key not configured"

    @pytest.mark.asyncio
    async def test_unknown_service(self, api_manager):
        with pytest.raises(ValueError):
            await api_manager.test_api_connection("nope")


class TestConfiguration:
    """Test api settings group updates"""

    @pytest.mark.asyncio
    async def test_configure_api_merges(self, api_manager, settings_store):
        assert await api_manager.configure_api({"cacheResults": False, "offlineMode": True}) is True

        assert api_manager.client.cache_enabled is False
        assert settings_store.get("api.offlineMode") is True
        assert settings_store.get("api.cacheDuration") == 60 * 60 * 1000

    @pytest.mark.asyncio
    async def test_handle_restart_reloads_keys(self, api_manager, settings_store):
        await settings_store.set("api.apiKeys", {"claude": api_manager.vault.seal(CLAUDE_KEY)})

        await api_manager.handle_restart()

        assert api_manager.has_api_key("claude")

    @pytest.mark.asyncio
    async def test_health_status(self, api_manager):
        status = await api_manager.get_health_status()

        assert status["initialized"] is True
        assert status["services"]["dictionary"]["available"] is True
        assert status["authenticated"] == []
        assert "metrics" in status["client"]


class TestOAuth:
    """Test implicit-grant token handling"""

    @pytest.mark.asyncio
    async def test_authenticate_launches_flow(self, oauth_manager):
        token = await oauth_manager.authenticate("drive")

        assert token == "tok1"
        assert oauth_manager.auth_flow.launched_urls == [
            "https://auth.test/authorize?client_id=cid&redirect_uri=https%3A%2F%2Fext.test%2Fcb"
            "&response_type=token&scope=read%20write"
        ]
        assert "drive" in oauth_manager._refresh_tasks

    @pytest.mark.asyncio
    async def test_valid_token_reused(self, oauth_manager, token_responder):
        await oauth_manager.authenticate("drive")
        assert await oauth_manager.authenticate("drive") == "tok1"
        assert token_responder.issued == 1

    @pytest.mark.asyncio
    async def test_force_refresh(self, oauth_manager):
        await oauth_manager.authenticate("drive")
        assert await oauth_manager.authenticate("drive", force_refresh=True) == "tok2"

    @pytest.mark.asyncio
    async def test_expired_token_reissued(self, oauth_manager):
        await oauth_manager.authenticate("drive")
        oauth_manager.auth_tokens["drive"].expires_at = time.time() - 1

        assert await oauth_manager.authenticate("drive") == "tok2"

    @pytest.mark.asyncio
    async def test_scheduled_refresh_replaces_token(self, oauth_manager):
        await oauth_manager.authenticate("drive")
        oauth_manager._refresh_tasks["drive"].cancel()

        await oauth_manager._refresh_after("drive", 0)

        assert oauth_manager.auth_tokens["drive"].token.access_token == "tok2"
        assert "drive" in oauth_manager._refresh_tasks

    @pytest.mark.asyncio
    async def test_silent_refresh_failure_keeps_valid_token(self, oauth_manager, token_responder):
        await oauth_manager.authenticate("drive")
        oauth_manager._refresh_tasks["drive"].cancel()
        token_responder.cancel = True

        await oauth_manager._refresh_after("drive", 0)

        assert oauth_manager.auth_tokens["drive"].token.access_token == "tok1"
        assert await oauth_manager.authenticate("drive") == "tok1"

    @pytest.mark.asyncio
    async def test_silent_refresh_failure_drops_expired_token(self, oauth_manager, token_responder):
        await oauth_manager.authenticate("drive")
        oauth_manager._refresh_tasks["drive"].cancel()
        oauth_manager.auth_tokens["drive"].expires_at = time.time() - 1
        token_responder.cancel = True

        await oauth_manager._refresh_after("drive", 0)

        assert "drive" not in oauth_manager.auth_tokens

    @pytest.mark.asyncio
    async def test_google_services_use_google_endpoint(self, oauth_manager):
        url = oauth_manager.build_auth_url("google_drive", {"clientId": "cid", "scopes": []})
        assert url.startswith("https://accounts.google.com/o/oauth2/auth?client_id=cid")

    @pytest.mark.asyncio
    async def test_cancelled_flow(self, oauth_manager, token_responder):
        token_responder.cancel = True

        with pytest.raises(ApiError) as exc_info:
            await oauth_manager.authenticate("drive")

        assert exc_info.value.kind == ErrorKind.AUTH
        assert exc_info.value.message == "Authentication failed for drive: Authorization was cancelled"
        assert "drive" not in oauth_manager.auth_tokens

    @pytest.mark.asyncio
    async def test_missing_client_id(self, oauth_manager, settings_store):
        await settings_store.set("api.authConfig", {})

        with pytest.raises(ApiError, match="OAuth configuration missing for drive"):
            await oauth_manager.authenticate("drive")

    @pytest.mark.asyncio
    async def test_non_oauth_service(self, oauth_manager):
        with pytest.raises(ValueError):
            await oauth_manager.authenticate("dictionary")

    @pytest.mark.asyncio
    async def test_auth_failure_clears_token(self, oauth_manager):
        await oauth_manager.authenticate("drive")
        refresh_task = oauth_manager._refresh_tasks["drive"]

        with pytest.raises(ApiError):
            await oauth_manager.make_request(
                "drive", AsyncMock(side_effect=ApiError("Authentication failed", ErrorKind.AUTH, status=401))
            )
        await asyncio.gather(refresh_task, return_exceptions=True)

        assert "drive" not in oauth_manager.auth_tokens
        assert refresh_task.cancelled()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_refresh(self, oauth_manager):
        await oauth_manager.authenticate("drive")
        refresh_task = oauth_manager._refresh_tasks["drive"]

        await oauth_manager.shutdown()
        await asyncio.gather(refresh_task, return_exceptions=True)

        assert refresh_task.cancelled()
        assert oauth_manager._refresh_tasks == {}
