"""
Reconciler Plugin Base - Abstract interface for unseal reconcilers.

A reconciler plugin owns the domain logic of driving one Vault deployment
to the unsealed state. The operator fetches the VaultTransitUnseal resource,
hands it to the plugin and schedules the next run from the returned
ReconcileResult. Plugins are discovered via Python entry points in the
'vault_unseal.reconcilers' group.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from config import OperatorConfig
from db import DatabaseManager
from secret_manager import SecretManager
from vault_client import VaultClientFactory

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """
    Result from a reconciler's reconcile() call.

    ``requeue_after`` is in seconds; zero leaves scheduling to the periodic
    resync. ``error`` should be an ``errors.OperatorError`` so the operator
    can tell retryable failures from permanent ones; any other exception is
    treated as permanent.
    """

    error: Optional[BaseException] = None
    requeue_after: float = 0.0


class ReconcilerContext:
    """
    Collaborators the operator lends to reconciler plugins.

    All members are shared across concurrent reconciliations and are safe
    for concurrent use.
    """

    def __init__(
        self,
        db: DatabaseManager,
        client_factory: VaultClientFactory,
        secret_manager: SecretManager,
        config: OperatorConfig,
    ):
        self.db = db
        self.client_factory = client_factory
        self.secret_manager = secret_manager
        self.config = config

    async def update_status(self, resource_id: int, status: Dict[str, Any]) -> None:
        """
        Replace the opaque status document of a resource.

        Args:
            resource_id: The resource ID.
            status: New status document, owned by the plugin.
        """
        await self.db.update_status(resource_id, status)


class ReconcilerPlugin(ABC):
    """
    Abstract base class for reconciler plugins.

    The operator guarantees that reconcile() is never called concurrently
    for the same resource.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this reconciler."""
        pass

    @property
    def version(self) -> str:
        return "0.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Plugin-specific configuration read from the environment."""
        return {}

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Called once before the first reconcile()."""
        pass

    @abstractmethod
    async def reconcile(
        self, resource: Dict[str, Any], ctx: ReconcilerContext
    ) -> ReconcileResult:
        """
        Reconcile a single resource.

        Args:
            resource: The resource row, passed through untouched.
            ctx: ReconcilerContext with the Vault client factory and the
                secret manager.

        Returns:
            ReconcileResult with an optional error and a requeue hint.
        """
        pass

    async def stop(self) -> None:
        """Graceful shutdown. Clean up any resources."""
        pass
