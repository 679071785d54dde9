"""
Pytest configuration and shared fixtures for the browser helper background core

This module provides:
- Isolated settings with in-memory storage and fast retries
- Settings store, permission broker and event bus fixtures
- httpx MockTransport helpers for faking external services
- A polling helper for asynchronous conditions
"""

import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List

import httpx
import pytest
import pytest_asyncio
import structlog
from pydantic import SecretStr

from browser_helper.browser.events import EventBus
from browser_helper.browser.permissions import InMemoryPermissionBroker
from browser_helper.config.settings import (
    ApiSettings,
    AuditSettings,
    EncryptionSettings,
    Environment,
    RequestSettings,
    Settings,
    StorageBackendType,
    StorageSettings,
)
from browser_helper.integrations.request_client import RequestClient
from browser_helper.storage.settings_store import MemoryStorageBackend, SettingsStore

# Configure test logging
structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer(colors=False),
    ],
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=False,
)


async def wait_for_condition(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005):
    """Poll predicate until it holds or fail the test"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("Condition not met before timeout")
        await asyncio.sleep(interval)


class RecordingTransport:
    """MockTransport handler that records requests and replays scripted responses"""

    def __init__(self, responder: Callable[[httpx.Request], Any]):
        self.responder = responder
        self.requests: List[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        result = self.responder(request)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self), follow_redirects=True)


@pytest.fixture(scope="function")
def temp_dir():
    """Create a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture(scope="function")
def test_settings(temp_dir):
    """Create test settings with memory storage and no retry delays."""
    return Settings(
        _env_file=None,
        environment=Environment.DEVELOPMENT,
        debug=True,
        request=RequestSettings(
            timeout_ms=1000,
            retries=3,
            retry_delay_ms=0,
            cache_ttl_ms=60000,
        ),
        api=ApiSettings(stats_persist_every=10),
        storage=StorageSettings(
            backend=StorageBackendType.MEMORY,
            data_directory=temp_dir / "data",
            sync_debounce_ms=10,
        ),
        encryption=EncryptionSettings(
            master_key=SecretStr("test_key_32_bytes_for_testing_only"),
            key_salt=SecretStr("test_salt_value"),
            pbkdf2_iterations=50000,
        ),
        audit=AuditSettings(audit_enabled=True),
    )


@pytest.fixture(scope="function")
def memory_backend():
    return MemoryStorageBackend()


@pytest_asyncio.fixture(scope="function")
async def settings_store(memory_backend, test_settings):
    """Initialized settings store over a memory backend."""
    store = SettingsStore(backend=memory_backend, settings=test_settings)
    await store.initialize()
    yield store
    await store.shutdown()


@pytest.fixture(scope="function")
def permission_broker():
    """Broker that grants every prompt."""
    return InMemoryPermissionBroker(auto_grant=True)


@pytest.fixture(scope="function")
def event_bus():
    return EventBus()


@pytest.fixture
def wait_for():
    return wait_for_condition


@pytest.fixture
def transport():
    """Factory for recording transports driven by a responder callable."""
    return RecordingTransport


@pytest.fixture(scope="function")
def json_transport():
    """Factory for recording transports answering with a fixed JSON body."""
    def make(body: Any = None, status_code: int = 200, headers: Dict[str, str] = None) -> RecordingTransport:
        payload = {"ok": True} if body is None else body
        return RecordingTransport(lambda request: httpx.Response(status_code, json=payload, headers=headers))
    return make


@pytest_asyncio.fixture(scope="function")
async def make_request_client(test_settings):
    """Factory for request clients bound to a recording transport."""
    clients: List[RequestClient] = []
    http_clients: List[httpx.AsyncClient] = []

    def make(transport: RecordingTransport, **kwargs) -> RequestClient:
        http_client = transport.client()
        http_clients.append(http_client)
        client = RequestClient(test_settings, http_client=http_client, **kwargs)
        clients.append(client)
        return client

    yield make

    for client in clients:
        await client.close()
    for http_client in http_clients:
        await http_client.aclose()
