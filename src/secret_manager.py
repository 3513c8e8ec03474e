"""
Secret Manager - idempotent materialization of derived credentials.

Writes go through the store's optimistic concurrency check rather than an
in-process lock: a lost race is retried once from a fresh read before the
failure is surfaced.
"""

import logging
from enum import Enum
from typing import Dict, Optional

from db import ConflictError, DatabaseManager
from errors import ConfigError, TransientError

logger = logging.getLogger(__name__)

# One initial attempt plus a single retry after a conflict
MAX_WRITE_ATTEMPTS = 2


class OperationResult(Enum):
    """What a create-or-update call did."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class SecretManager:
    """Creates, updates and reads managed secrets."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def create_or_update(
        self,
        namespace: str,
        name: str,
        data: Dict[str, bytes],
        annotations: Optional[Dict[str, str]] = None,
    ) -> OperationResult:
        """
        Create or update a secret.

        Supplied annotations overwrite existing keys and leave the others in
        place. The data payload is replaced wholesale: callers pass the full
        desired set of keys on every call.

        Args:
            namespace: Secret namespace
            name: Secret name
            data: Complete desired payload, key -> bytes
            annotations: Annotations to merge into the existing ones

        Returns:
            The operation performed.

        Raises:
            ValueError: If namespace, name or a data key is empty.
            TransientError: If the store fails or the write conflicts twice.
        """
        if not namespace or not name:
            raise ValueError("namespace and name must not be empty")
        if any(not key for key in data):
            raise ValueError("secret data keys must not be empty")

        annotations = annotations or {}
        desired_data = dict(data)

        try:
            op = await self._write(namespace, name, desired_data, annotations)
        except Exception as e:
            raise TransientError("failed to create/update secret", e).with_context(
                "namespace", namespace
            ).with_context("name", name) from e

        logger.debug(
            f"Secret operation completed: operation={op.value} "
            f"secret={namespace}/{name} annotationCount={len(annotations)}"
        )
        return op

    async def _write(
        self,
        namespace: str,
        name: str,
        data: Dict[str, bytes],
        annotations: Dict[str, str],
    ) -> OperationResult:
        attempt = 0
        while True:
            attempt += 1
            current = await self.db.get_secret(namespace, name)
            try:
                if current is None:
                    await self.db.create_secret(namespace, name, data, annotations)
                    return OperationResult.CREATED

                merged = dict(current["annotations"])
                merged.update(annotations)

                if current["data"] == data and current["annotations"] == merged:
                    return OperationResult.UNCHANGED

                await self.db.update_secret(
                    namespace, name, data, merged, current["resource_version"]
                )
                return OperationResult.UPDATED
            except ConflictError as e:
                if attempt >= MAX_WRITE_ATTEMPTS:
                    raise
                logger.info(f"Retrying secret write after conflict: {e}")

    async def get(self, namespace: str, name: str, key: str) -> bytes:
        """
        Read one key of a secret.

        Raises:
            ConfigError: If the secret does not exist, or exists without ``key``.
            TransientError: If the store fails.
        """
        try:
            secret = await self.db.get_secret(namespace, name)
        except Exception as e:
            raise TransientError("failed to get secret", e).with_context(
                "namespace", namespace
            ).with_context("name", name) from e

        if secret is None:
            raise ConfigError("secret not found").with_context(
                "namespace", namespace
            ).with_context("name", name)

        try:
            return secret["data"][key]
        except KeyError:
            raise ConfigError("key not found in secret").with_context(
                "namespace", namespace
            ).with_context("name", name).with_context("key", key) from None
