"""
Browser Collaborators Package

Interfaces the background core consumes from the browser host: permission
grants, the broadcast event surface and the interactive OAuth flow.
"""

from .permissions import (
    PermissionSet,
    PermissionBroker,
    InMemoryPermissionBroker
)

from .events import (
    EventType,
    Event,
    EventBus
)

from .auth_flow import (
    AuthFlowError,
    OAuthToken,
    AuthFlowLauncher,
    UnavailableAuthFlow,
    ScriptedAuthFlow,
    extract_token_from_redirect
)

__all__ = [
    # Permissions
    "PermissionSet",
    "PermissionBroker",
    "InMemoryPermissionBroker",

    # Events
    "EventType",
    "Event",
    "EventBus",

    # OAuth flow
    "AuthFlowError",
    "OAuthToken",
    "AuthFlowLauncher",
    "UnavailableAuthFlow",
    "ScriptedAuthFlow",
    "extract_token_from_redirect"
]
