"""
API Integrations Package

Everything between a feature and an external HTTP service:
- Classified ApiError taxonomy driving retries and messaging
- Retrying request client with caching, rate limiting and batches
- Service wrappers (translate, dictionary, Claude, exchange rates, web archive)
- API manager for credentials, usage accounting, availability and OAuth
"""

from .errors import ErrorKind, ApiError, classify_status
from .request_client import (
    RequestClient,
    RequestMetrics,
    BatchFailure,
    BatchResult,
    BackoffWait,
    create_cache_key
)
from .services import (
    TranslateService,
    DictionaryService,
    ClaudeService,
    ExchangeRateService,
    WebArchiveService,
    ServiceRegistry
)
from .api_manager import (
    AuthType,
    ServiceConfig,
    SERVICE_CONFIG,
    AuthToken,
    ApiManager,
    validate_api_key
)

__all__ = [
    # Errors
    "ErrorKind",
    "ApiError",
    "classify_status",

    # Request client
    "RequestClient",
    "RequestMetrics",
    "BatchFailure",
    "BatchResult",
    "BackoffWait",
    "create_cache_key",

    # Services
    "TranslateService",
    "DictionaryService",
    "ClaudeService",
    "ExchangeRateService",
    "WebArchiveService",
    "ServiceRegistry",

    # API manager
    "AuthType",
    "ServiceConfig",
    "SERVICE_CONFIG",
    "AuthToken",
    "ApiManager",
    "validate_api_key"
]
