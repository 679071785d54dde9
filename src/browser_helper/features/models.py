"""
Feature Models

Pydantic models for the declarative feature catalog plus the runtime
instance created on activation. Definitions accept camelCase keys as well
as snake_case so catalog entries can be loaded from stored JSON.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..browser.permissions import PermissionSet


class FeatureCategory(str, Enum):
    """Catalog sections"""
    TEXT_TOOLS = "text-tools"
    CONTENT_ANALYSIS = "content-analysis"
    VISUAL_TOOLS = "visual-tools"
    PRODUCTIVITY = "productivity"
    NAVIGATION = "navigation"
    UTILITIES = "utilities"


# Hooks receive the FeatureInstance being activated or deactivated
FeatureHook = Callable[..., Any]


class FeatureDefinition(BaseModel):
    """A registrable optional capability"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        arbitrary_types_allowed=True,
        frozen=True,
    )

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    category: str = Field(min_length=1)
    description: str = ""

    permissions: List[str] = Field(default_factory=list)
    optional_permissions: List[str] = Field(default_factory=list)
    host_permissions: List[str] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    conflicts: List[str] = Field(default_factory=list)

    default_enabled: bool = False
    default_settings: Dict[str, Any] = Field(default_factory=dict)

    on_activate: Optional[FeatureHook] = None
    on_deactivate: Optional[FeatureHook] = None

    @field_validator("category", mode="before")
    @classmethod
    def normalize_category(cls, v):
        if isinstance(v, FeatureCategory):
            return v.value
        return v

    @property
    def required_grants(self) -> PermissionSet:
        """Mandatory permissions and host origins"""
        return PermissionSet.of(self.permissions, self.host_permissions)

    def summary(self) -> Dict[str, Any]:
        """Serializable view without hooks"""
        return self.model_dump(by_alias=True, exclude={"on_activate", "on_deactivate"})


@dataclass
class FeatureInstance:
    """Live state of an activated feature"""
    id: str
    definition: FeatureDefinition
    settings: Dict[str, Any]
    deactivate: Callable[[], Awaitable[bool]]
    active: bool = True
    on_settings_change: Optional[Callable[[Dict[str, Any]], Any]] = None
    state: Dict[str, Any] = field(default_factory=dict)


class FeatureErrorKind(str, Enum):
    """Why a feature operation failed"""
    UNKNOWN_FEATURE = "unknown_feature"
    DUPLICATE_REGISTRATION = "duplicate_registration"
    DEPENDENCY_MISSING = "dependency_missing"
    DEPENDENCY_ACTIVATION_FAILED = "dependency_activation_failed"
    CONFLICT_ACTIVE = "conflict_active"
    PERMISSION_REQUIRED = "permission_required"
    PERMISSION_DENIED = "permission_denied"
    HOOK_FAILURE = "hook_failure"


class FeatureError(Exception):
    """A feature could not be registered or activated"""

    def __init__(
        self,
        message: str,
        kind: FeatureErrorKind,
        feature_id: str,
        related_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.feature_id = feature_id
        self.related_id = related_id

    def __repr__(self) -> str:
        return f"FeatureError(kind={self.kind.value!r}, feature_id={self.feature_id!r}, message={self.message!r})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "kind": self.kind.value,
            "featureId": self.feature_id,
            "relatedId": self.related_id,
        }
