"""
Interactive OAuth authorization flow

The browser opens the provider's consent page and hands back the final
redirect URL; implicit-grant tokens travel in its fragment.
"""

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Union
from urllib.parse import parse_qs, urlparse


class AuthFlowError(Exception):
    """The authorization flow failed or was cancelled"""


@dataclass
class OAuthToken:
    """Token parsed from an implicit-grant redirect"""
    access_token: str
    token_type: Optional[str]
    expires_in: Optional[int]


class AuthFlowLauncher(ABC):
    """Launches the browser's web authorization flow"""

    @property
    @abstractmethod
    def redirect_uri(self) -> str:
        """Redirect URI registered for this extension"""
        pass

    @abstractmethod
    async def launch(self, url: str, interactive: bool = True) -> str:
        """Run the flow starting at url and return the final redirect URL"""
        pass


class UnavailableAuthFlow(AuthFlowLauncher):
    """Used when no browser is attached; every launch fails"""

    def __init__(self, redirect_uri: str):
        self._redirect_uri = redirect_uri

    @property
    def redirect_uri(self) -> str:
        return self._redirect_uri

    async def launch(self, url: str, interactive: bool = True) -> str:
        raise AuthFlowError("Interactive authorization is not available in this context")


class ScriptedAuthFlow(AuthFlowLauncher):
    """Answers launches from a callback; for headless runs and tests"""

    def __init__(self, redirect_uri: str, respond: Callable[[str], Union[str, Awaitable[str]]]):
        self._redirect_uri = redirect_uri
        self._respond = respond
        self.launched_urls: List[str] = []

    @property
    def redirect_uri(self) -> str:
        return self._redirect_uri

    async def launch(self, url: str, interactive: bool = True) -> str:
        self.launched_urls.append(url)
        result = self._respond(url)
        if inspect.isawaitable(result):
            result = await result
        if not result:
            raise AuthFlowError("Authorization was cancelled")
        return result


def extract_token_from_redirect(redirect_url: str) -> OAuthToken:
    """Parse access_token, token_type and expires_in from the URL fragment"""
    params = parse_qs(urlparse(redirect_url).fragment)

    access_token = params.get("access_token", [None])[0]
    if not access_token:
        error = params.get("error", ["no access_token in redirect"])[0]
        raise AuthFlowError(f"Authorization did not return a token: {error}")

    expires_in = params.get("expires_in", [None])[0]
    try:
        expires = int(expires_in) if expires_in is not None else None
    except ValueError:
        expires = None

    return OAuthToken(
        access_token=access_token,
        token_type=params.get("token_type", [None])[0],
        expires_in=expires,
    )
