"""Pytest configuration and fixtures."""

import asyncio
from typing import Any, Dict, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

from db import ConflictError


class InMemorySecretStore:
    """
    Secret half of DatabaseManager backed by a dict.

    Honors the same optimistic concurrency contract as the PostgreSQL
    store: create fails if the secret exists, update fails if the stored
    resource_version moved. ``yield_on_read`` makes every read yield to the
    event loop so concurrent writers interleave.
    """

    def __init__(self, yield_on_read: bool = False):
        self.secrets: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.yield_on_read = yield_on_read
        self.conflicts = 0
        self.writes = 0
        self.fail_with: Optional[Exception] = None

    def seed(
        self,
        namespace: str,
        name: str,
        data: Dict[str, bytes],
        annotations: Optional[Dict[str, str]] = None,
    ) -> None:
        self.secrets[(namespace, name)] = {
            "namespace": namespace,
            "name": name,
            "data": dict(data),
            "annotations": dict(annotations or {}),
            "resource_version": 1,
        }

    async def get_secret(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        if self.fail_with is not None:
            raise self.fail_with
        stored = self.secrets.get((namespace, name))
        snapshot = None
        if stored is not None:
            snapshot = {
                **stored,
                "data": dict(stored["data"]),
                "annotations": dict(stored["annotations"]),
            }
        if self.yield_on_read:
            await asyncio.sleep(0)
        return snapshot

    async def create_secret(self, namespace, name, data, annotations) -> int:
        if (namespace, name) in self.secrets:
            self.conflicts += 1
            raise ConflictError(namespace, name, "already exists")
        self.writes += 1
        self.seed(namespace, name, data, annotations)
        return 1

    async def update_secret(
        self, namespace, name, data, annotations, resource_version
    ) -> int:
        stored = self.secrets.get((namespace, name))
        if stored is None or stored["resource_version"] != resource_version:
            self.conflicts += 1
            raise ConflictError(namespace, name, "stale")
        self.writes += 1
        stored["data"] = dict(data)
        stored["annotations"] = dict(annotations)
        stored["resource_version"] += 1
        return stored["resource_version"]


@pytest.fixture
def secret_store():
    return InMemorySecretStore()


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def sample_resource():
    """Sample VaultTransitUnseal row as returned by DatabaseManager."""
    return {
        "id": 7,
        "namespace": "vault",
        "name": "vault-unseal",
        "spec": {
            "vaultPod": {"namespace": "vault", "selector": {"app": "vault"}},
            "transitVault": {"address": "http://transit:8200", "keyName": "autounseal"},
        },
        "status": {},
        "generation": 2,
        "observed_generation": 1,
        "reconcile_state": "pending",
        "state_message": None,
        "retry_count": 0,
        "config_error_count": 0,
        "last_reconcile_time": None,
    }

