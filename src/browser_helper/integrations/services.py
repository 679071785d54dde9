"""
External service wrappers

Thin clients for the services the extension's features call. Each one
routes through the shared RequestClient under its own resource id so the
service's rate limit applies.
"""

import time
from textwrap import dedent
from typing import Any, Dict, Optional
from urllib.parse import quote

import structlog

from .errors import ApiError, ErrorKind
from .request_client import RequestClient

logger = structlog.get_logger(__name__)

DAY_MS = 24 * 60 * 60 * 1000

SUMMARY_LENGTHS = {
    "brief": "1-2 paragraphs",
    "medium": "3-5 paragraphs",
    "comprehensive": "5+ paragraphs",
}

SUMMARY_STYLES = {
    "standard": "Provide a neutral, balanced summary",
    "simplified": "Provide a simplified summary in plain language",
    "academic": "Provide an academic summary with formal language",
    "explanatory": "Provide an explanatory summary that clarifies complex concepts",
}


class ServiceClient:
    """Base for a service bound to one resource id"""

    service_id = "default"

    def __init__(self, client: RequestClient):
        self.client = client

    def _require_api_key(self, display_name: str) -> str:
        api_key = self.client.get_api_key(self.service_id)
        if not api_key:
            raise ApiError(f"{display_name} API key not configured", ErrorKind.AUTH, {"apiId": self.service_id})
        return api_key


class TranslateService(ServiceClient):
    """Google Translate"""

    service_id = "google_translate"
    base_url = "https://translation.googleapis.com/language/translate/v2"

    async def translate_text(self, text: str, target_language: str, source_language: str = "auto") -> Dict[str, Any]:
        api_key = self._require_api_key("Google Translate")
        body: Dict[str, Any] = {"q": text, "target": target_language, "format": "text"}
        if source_language != "auto":
            body["source"] = source_language

        return await self.client.post(
            self.base_url,
            body,
            resource_id=self.service_id,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    async def detect_language(self, text: str) -> Dict[str, Any]:
        api_key = self._require_api_key("Google Translate")
        return await self.client.post(
            f"{self.base_url}/detect",
            {"q": text},
            resource_id=self.service_id,
            headers={"Authorization": f"Bearer {api_key}"},
        )


class DictionaryService(ServiceClient):
    """Free Dictionary API (no key)"""

    service_id = "dictionary"
    base_url = "https://api.dictionaryapi.dev/api/v2/entries"

    async def get_definition(self, word: str, language: str = "en") -> Any:
        return await self.client.get(
            f"{self.base_url}/{language}/{quote(word, safe='')}",
            resource_id=self.service_id,
            use_cache=True,
            cache_ttl_ms=7 * DAY_MS,
        )


class ClaudeService(ServiceClient):
    """Anthropic Claude, used for page summaries"""

    service_id = "claude"
    url = "https://api.anthropic.com/v1/complete"

    @staticmethod
    def build_prompt(content: str, style: str = "standard", length: str = "medium", humanize: bool = True) -> str:
        length_instruction = SUMMARY_LENGTHS.get(length, SUMMARY_LENGTHS["medium"])
        style_instruction = SUMMARY_STYLES.get(style, SUMMARY_STYLES["standard"])
        humanize_instruction = "Ensure the summary sounds natural and human-written." if humanize else ""

        return dedent(f"""
            Summarize the following content in {length_instruction}.
            {style_instruction}.
            {humanize_instruction}
            Content to summarize:
            {content}
        """).strip()

    async def summarize(self, content: str, style: str = "standard", length: str = "medium",
                        humanize: bool = True) -> Dict[str, Any]:
        api_key = self._require_api_key("Claude")
        return await self.client.post(
            self.url,
            {
                "prompt": self.build_prompt(content, style, length, humanize),
                "model": "claude-1",
                "max_tokens_to_sample": 2048,
                "temperature": 0.7,
            },
            resource_id=self.service_id,
            headers={"x-api-key": api_key, "anthropic-version": "2023-06-01"},
            use_cache=True,
        )


class ExchangeRateService(ServiceClient):
    """ExchangeRate-API open endpoint"""

    service_id = "exchange_rates"
    base_url = "https://open.er-api.com/v6/latest"

    async def get_current_rates(self, base_currency: str = "USD") -> Dict[str, Any]:
        return await self.client.get(
            f"{self.base_url}/{base_currency}",
            resource_id=self.service_id,
            use_cache=True,
            cache_ttl_ms=60 * 60 * 1000,
        )

    async def convert_currency(self, amount: float, from_currency: str, to_currency: str) -> Dict[str, Any]:
        rates = await self.get_current_rates(from_currency)
        rate = (rates or {}).get("rates", {}).get(to_currency)
        if rate is None:
            raise ApiError(f"Currency not available: {to_currency}", ErrorKind.NOT_FOUND, {"currency": to_currency})

        return {
            "amount": amount,
            "from": from_currency,
            "to": to_currency,
            "rate": rate,
            "result": amount * rate,
            "timestamp": rates.get("time_last_update_unix"),
        }


class WebArchiveService(ServiceClient):
    """Internet Archive (Wayback Machine)"""

    service_id = "web_archive"

    async def check_archive(self, url: str) -> Dict[str, Any]:
        return await self.client.get(
            f"https://archive.org/wayback/available?url={quote(url, safe='')}",
            resource_id=self.service_id,
            use_cache=True,
            cache_ttl_ms=DAY_MS,
        )

    async def save_to_archive(self, url: str) -> Dict[str, Any]:
        """Ask the archive to capture url; the capture address is the final redirect target"""
        try:
            response = await self.client.fetch(f"https://web.archive.org/save/{url}", resource_id=self.service_id)
        except ApiError as e:
            raise ApiError("Failed to archive URL", e.kind, {"url": url}, e.status, e) from e

        return {
            "original_url": url,
            "archive_url": str(response.url),
            "timestamp": int(time.time() * 1000),
        }


class ServiceRegistry:
    """All service wrappers sharing one request client"""

    def __init__(self, client: RequestClient):
        self.translate = TranslateService(client)
        self.dictionary = DictionaryService(client)
        self.claude = ClaudeService(client)
        self.exchange_rates = ExchangeRateService(client)
        self.web_archive = WebArchiveService(client)

    async def probe(self, service_id: str) -> Optional[Any]:
        """Cheapest real call for a service, used by connection tests"""
        if service_id == "google_translate":
            return await self.translate.detect_language("Hello world")
        if service_id == "claude":
            return await self.claude.summarize(
                "This is a test of the Claude API connection.", length="brief", humanize=False
            )
        if service_id == "dictionary":
            return await self.dictionary.get_definition("test")
        if service_id == "exchange_rates":
            return await self.exchange_rates.get_current_rates("USD")
        if service_id == "web_archive":
            return await self.web_archive.check_archive("https://example.com")
        raise ValueError(f"No test available for API: {service_id}")
