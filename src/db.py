"""
Database Manager - PostgreSQL-backed object store.

Holds the VaultTransitUnseal resources, the managed secrets and the
reconciliation history. Secrets are versioned for optimistic concurrency:
every write bumps ``resource_version`` and conditional updates fail with
``ConflictError`` when the version moved underneath the caller.
"""

import asyncpg
import base64
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from migrate import run_migrations

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class NamespacedName:
    """Identity of a namespaced object."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_resource(cls, resource: Dict[str, Any]) -> "NamespacedName":
        return cls(namespace=resource["namespace"], name=resource["name"])


class ReconcileState(Enum):
    """Controller bookkeeping state of a resource."""

    PENDING = "pending"
    READY = "ready"
    RETRYING = "retrying"
    FAILED = "failed"


class ConflictError(Exception):
    """A write lost an optimistic concurrency race."""

    def __init__(self, namespace: str, name: str, reason: str):
        super().__init__(f"conflict writing secret {namespace}/{name}: {reason}")
        self.namespace = namespace
        self.name = name
        self.reason = reason


def _encode_data(data: Dict[str, bytes]) -> str:
    return json.dumps(
        {k: base64.b64encode(v).decode("ascii") for k, v in data.items()},
        sort_keys=True,
    )


def _decode_data(raw: Any) -> Dict[str, bytes]:
    if not raw:
        return {}
    encoded = json.loads(raw) if isinstance(raw, str) else raw
    return {k: base64.b64decode(v) for k, v in encoded.items()}


class DatabaseManager:
    """Manages PostgreSQL database operations for the operator."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Resource Methods ====================

    async def get_resource(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """Get a VaultTransitUnseal resource by identity."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM vault_transit_unseals
                WHERE namespace = $1 AND name = $2
                """,
                namespace,
                name,
            )
            if not row:
                return None

            return self._parse_resource_row(row)

    async def list_resources(
        self,
        namespace: Optional[str] = None,
        state: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """List resources with optional filters."""
        async with self.pool.acquire() as conn:
            query = "SELECT * FROM vault_transit_unseals WHERE 1=1"
            params = []
            param_count = 0

            if namespace:
                param_count += 1
                query += f" AND namespace = ${param_count}"
                params.append(namespace)

            if state:
                param_count += 1
                query += f" AND reconcile_state = ${param_count}"
                params.append(state)

            param_count += 1
            query += f" ORDER BY namespace, name LIMIT ${param_count}"
            params.append(limit)

            rows = await conn.fetch(query, *params)
            return [self._parse_resource_row(row) for row in rows]

    async def list_resources_changed_since(
        self, since: Optional[datetime], limit: int = 500
    ) -> List[Dict[str, Any]]:
        """
        Get resources whose spec changed after ``since``.

        ``updated_at`` only moves on external writes (spec or generation
        changes), never on controller bookkeeping, so this acts as the
        watch stream.
        """
        async with self.pool.acquire() as conn:
            if since is None:
                rows = await conn.fetch(
                    """
                    SELECT * FROM vault_transit_unseals
                    ORDER BY updated_at ASC
                    LIMIT $1
                    """,
                    limit,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT * FROM vault_transit_unseals
                    WHERE updated_at > $1
                    ORDER BY updated_at ASC
                    LIMIT $2
                    """,
                    since,
                    limit,
                )
            return [self._parse_resource_row(row) for row in rows]

    async def get_resources_needing_reconciliation(
        self, limit: int = 500
    ) -> List[Dict[str, Any]]:
        """
        Get resources a resync should enqueue.

        Failed resources are skipped until their generation moves past the
        one that failed.
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM vault_transit_unseals
                WHERE reconcile_state != 'failed'
                   OR generation > observed_generation
                ORDER BY
                    CASE reconcile_state
                        WHEN 'pending' THEN 0
                        WHEN 'retrying' THEN 1
                        ELSE 2
                    END,
                    last_reconcile_time ASC NULLS FIRST
                LIMIT $1
                """,
                limit,
            )

            return [self._parse_resource_row(row) for row in rows]

    async def update_reconcile_state(
        self,
        resource_id: int,
        state: ReconcileState,
        message: Optional[str] = None,
        observed_generation: Optional[int] = None,
        config_error: bool = False,
    ):
        """
        Update the controller bookkeeping of a resource.

        READY and FAILED reset both counters. RETRYING increments
        retry_count; config_error_count is incremented when the retry was
        caused by a configuration error and reset otherwise.
        """
        async with self.pool.acquire() as conn:
            sets = [
                "reconcile_state = $1",
                "state_message = $2",
                "last_reconcile_time = NOW()",
            ]
            params: List[Any] = [state.value, message]
            param_count = 2

            if observed_generation is not None:
                param_count += 1
                sets.append(f"observed_generation = ${param_count}")
                params.append(observed_generation)

            if state == ReconcileState.RETRYING:
                sets.append("retry_count = retry_count + 1")
                if config_error:
                    sets.append("config_error_count = config_error_count + 1")
                else:
                    sets.append("config_error_count = 0")
            elif state in (ReconcileState.READY, ReconcileState.FAILED):
                sets.append("retry_count = 0")
                sets.append("config_error_count = 0")

            param_count += 1
            params.append(resource_id)

            query = (
                f"UPDATE vault_transit_unseals SET {', '.join(sets)} "
                f"WHERE id = ${param_count}"
            )
            await conn.execute(query, *params)

    async def update_status(self, resource_id: int, status: Dict[str, Any]) -> None:
        """Replace the opaque status document written by the reconciler plugin."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE vault_transit_unseals SET status = $1 WHERE id = $2",
                json.dumps(status),
                resource_id,
            )

    async def record_reconciliation(
        self,
        resource_id: int,
        generation: int,
        success: bool,
        error_kind: Optional[str] = None,
        error_message: Optional[str] = None,
        requeue_after: Optional[float] = None,
        duration_seconds: Optional[float] = None,
        trace_id: Optional[str] = None,
    ):
        """Record a reconciliation attempt in history."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO reconciliation_history (
                    resource_id, generation, success, error_kind,
                    error_message, requeue_after, duration_seconds, trace_id
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                resource_id,
                generation,
                success,
                error_kind,
                error_message,
                requeue_after,
                duration_seconds,
                trace_id,
            )

    async def get_reconciliation_history(
        self, resource_id: int, limit: int = 10
    ) -> List[Dict[str, Any]]:
        """Get reconciliation history for a resource."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM reconciliation_history
                WHERE resource_id = $1
                ORDER BY reconcile_time DESC
                LIMIT $2
                """,
                resource_id,
                limit,
            )

            return [dict(row) for row in rows]

    def _parse_resource_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """
        Parse a resource row, converting the JSON columns to dicts.

        Args:
            row: An asyncpg.Record from a database query

        Returns:
            A dictionary with the resource data
        """
        result = dict(row)
        result["spec"] = json.loads(result["spec"]) if result.get("spec") else {}
        result["status"] = (
            json.loads(result["status"]) if result.get("status") else {}
        )
        return result

    # ==================== Secret Methods ====================

    async def get_secret(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """Get a managed secret, or None if it does not exist."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM managed_secrets
                WHERE namespace = $1 AND name = $2
                """,
                namespace,
                name,
            )
            if not row:
                return None
            return self._parse_secret_row(row)

    async def create_secret(
        self,
        namespace: str,
        name: str,
        data: Dict[str, bytes],
        annotations: Dict[str, str],
    ) -> int:
        """
        Create a managed secret.

        Returns:
            The new resource version.

        Raises:
            ConflictError: If the secret already exists.
        """
        async with self.pool.acquire() as conn:
            version = await conn.fetchval(
                """
                INSERT INTO managed_secrets (namespace, name, data, annotations)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (namespace, name) DO NOTHING
                RETURNING resource_version
                """,
                namespace,
                name,
                _encode_data(data),
                json.dumps(annotations, sort_keys=True),
            )
            if version is None:
                raise ConflictError(namespace, name, "already exists")
            return version

    async def update_secret(
        self,
        namespace: str,
        name: str,
        data: Dict[str, bytes],
        annotations: Dict[str, str],
        resource_version: int,
    ) -> int:
        """
        Replace a managed secret if it is still at ``resource_version``.

        Returns:
            The new resource version.

        Raises:
            ConflictError: If the stored version differs or the secret is gone.
        """
        async with self.pool.acquire() as conn:
            version = await conn.fetchval(
                """
                UPDATE managed_secrets
                SET data = $3,
                    annotations = $4,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE namespace = $1
                  AND name = $2
                  AND resource_version = $5
                RETURNING resource_version
                """,
                namespace,
                name,
                _encode_data(data),
                json.dumps(annotations, sort_keys=True),
                resource_version,
            )
            if version is None:
                raise ConflictError(
                    namespace, name, f"resource version {resource_version} is stale"
                )
            return version

    def _parse_secret_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """Parse a secret row, decoding the base64 payload to bytes."""
        result = dict(row)
        result["data"] = _decode_data(result.get("data"))
        annotations = result.get("annotations")
        result["annotations"] = (
            json.loads(annotations) if isinstance(annotations, str) else annotations
        ) or {}
        return result
