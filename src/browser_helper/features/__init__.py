"""
Features Package

Declarative catalog of optional capabilities and the manager that
activates and deactivates them.
"""

from .models import (
    FeatureCategory,
    FeatureDefinition,
    FeatureInstance,
    FeatureErrorKind,
    FeatureError
)

from .builtin import builtin_features

from .manager import FeatureManager

__all__ = [
    # Models
    "FeatureCategory",
    "FeatureDefinition",
    "FeatureInstance",
    "FeatureErrorKind",
    "FeatureError",

    # Catalog
    "builtin_features",

    # Lifecycle
    "FeatureManager"
]
