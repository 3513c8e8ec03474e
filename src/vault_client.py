"""
Vault HTTP client and per-pod client factory.

Client handles are cheap and short-lived: each request opens its own
aiohttp session, so a handle owns no connection state and needs no close.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

logger = logging.getLogger(__name__)

VAULT_PORT = 8200


class VaultClientError(Exception):
    """Raised when a client cannot be built or Vault answers with an error."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


@dataclass(frozen=True)
class ComputeUnit:
    """One running Vault instance (pod), addressable by its IP."""

    namespace: str
    name: str
    pod_ip: str


@dataclass(frozen=True)
class VaultConfig:
    """Connection settings for a single client handle."""

    address: str
    tls_skip_verify: bool = False
    timeout: float = 30.0


class VaultClient:
    """Minimal async client for the Vault system endpoints."""

    def __init__(self, config: VaultConfig):
        if not config.address:
            raise VaultClientError("vault address must not be empty")
        if not config.address.startswith(("http://", "https://")):
            raise VaultClientError(
                f"vault address must be an http(s) URL, got {config.address!r}"
            )
        if config.timeout <= 0:
            raise VaultClientError("vault client timeout must be positive")
        self.config = config
        self.address = config.address.rstrip("/")

    def _session(self) -> aiohttp.ClientSession:
        connector = aiohttp.TCPConnector(ssl=not self.config.tls_skip_verify)
        return aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=self.config.timeout),
        )

    async def _get(
        self, path: str, params: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        url = f"{self.address}{path}"
        async with self._session() as session:
            async with session.get(url, params=params) as response:
                if 200 <= response.status < 300:
                    return await response.json(content_type=None)
                body = await response.text()
                raise VaultClientError(
                    f"GET {path} returned {response.status}: {body[:200]}",
                    status=response.status,
                )

    async def health(
        self,
        standby_ok: bool = False,
        sealed_code: Optional[int] = None,
        uninit_code: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Call ``/v1/sys/health``.

        Vault encodes seal and init state in the status code; the overrides
        let a caller treat those states as a successful response.
        """
        params: Dict[str, str] = {}
        if standby_ok:
            params["standbyok"] = "true"
        if sealed_code is not None:
            params["sealedcode"] = str(sealed_code)
        if uninit_code is not None:
            params["uninitcode"] = str(uninit_code)
        return await self._get("/v1/sys/health", params=params or None)

    async def seal_status(self) -> Dict[str, Any]:
        """Call ``/v1/sys/seal-status``."""
        return await self._get("/v1/sys/seal-status")

    async def is_sealed(self) -> bool:
        status = await self.seal_status()
        return bool(status.get("sealed", True))


class VaultClientFactory:
    """
    Builds client handles addressed at individual Vault pods.

    The TLS and timeout settings are captured once; every call returns an
    independent handle, so the factory can be shared across workers.
    """

    def __init__(self, tls_skip_verify: bool, timeout: float):
        self._tls_skip_verify = tls_skip_verify
        self._timeout = timeout

    @property
    def tls_skip_verify(self) -> bool:
        return self._tls_skip_verify

    @property
    def timeout(self) -> float:
        return self._timeout

    def new_client(self, address: str) -> VaultClient:
        """Build a handle for an explicit address."""
        return VaultClient(
            VaultConfig(
                address=address,
                tls_skip_verify=self._tls_skip_verify,
                timeout=self._timeout,
            )
        )

    def new_client_for_pod(self, unit: ComputeUnit) -> VaultClient:
        """
        Build a handle addressed at a pod's IP on the Vault port.

        Raises:
            VaultClientError: If the pod has no IP yet or the config is invalid.
        """
        if not unit.pod_ip:
            raise VaultClientError(
                f"pod {unit.namespace}/{unit.name} has no IP address assigned"
            )
        return self.new_client(f"http://{unit.pod_ip}:{VAULT_PORT}")
