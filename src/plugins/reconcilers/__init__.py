"""
Reconciler plugins package.

Reconciler plugins implement the unseal logic for VaultTransitUnseal
resources. They are discovered via Python entry points
(group: 'vault_unseal.reconcilers').
"""

from plugins.reconcilers.base import (
    ReconcilerPlugin,
    ReconcilerContext,
    ReconcileResult,
)

__all__ = ["ReconcilerPlugin", "ReconcilerContext", "ReconcileResult"]
