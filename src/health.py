"""
Health checks for the operator process.

Liveness only looks at the controller's own loop. Readiness makes one
lightweight status call to Vault, bounded by the probe deadline. Both
report failures as values and never raise.
"""

import asyncio
import logging
from typing import Callable, Optional, Tuple

from vault_client import VaultClient

logger = logging.getLogger(__name__)


class HealthChecker:
    """Liveness and readiness probes."""

    def __init__(
        self,
        status_client: VaultClient,
        is_alive: Callable[[], bool],
        probe_timeout: float = 5.0,
    ):
        self._status_client = status_client
        self._is_alive = is_alive
        self._probe_timeout = probe_timeout

    async def liveness(self, timeout: Optional[float] = None) -> Tuple[bool, str]:
        """Report whether the reconciliation loop is running."""
        try:
            alive = self._is_alive()
        except Exception as e:
            logger.error(f"Liveness check raised: {e}", exc_info=True)
            return False, f"liveness check failed: {e}"

        if alive:
            return True, "controller loop is running"
        return False, "controller loop is not running"

    async def readiness(self, timeout: Optional[float] = None) -> Tuple[bool, str]:
        """
        Report whether Vault is reachable.

        Sealed and uninitialized instances count as reachable: unsealing
        them is the operator's job.
        """
        deadline = timeout if timeout is not None else self._probe_timeout
        try:
            await asyncio.wait_for(
                self._status_client.health(
                    standby_ok=True, sealed_code=200, uninit_code=200
                ),
                timeout=deadline,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Readiness probe timed out after {deadline}s")
            return False, f"vault status call timed out after {deadline}s"
        except Exception as e:
            logger.warning(f"Readiness probe failed: {e}")
            return False, f"vault unreachable: {e}"

        return True, "vault is reachable"
