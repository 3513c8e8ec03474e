"""
Plugin system for the Vault Transit Unseal Operator.

The unseal logic itself lives in reconciler plugins; this package provides
their interface and the registry that discovers them.
"""

from plugins.reconcilers.base import (
    ReconcilerPlugin,
    ReconcilerContext,
    ReconcileResult,
)
from plugins.registry import PluginRegistry, get_registry

__all__ = [
    "ReconcilerPlugin",
    "ReconcilerContext",
    "ReconcileResult",
    "PluginRegistry",
    "get_registry",
]
