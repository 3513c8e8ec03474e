"""
Main entry point for the Vault Transit Unseal Operator.

Builds the configuration once, wires every component with it and runs the
controller next to the HTTP server until a shutdown signal arrives.
"""

import asyncio
import logging
import signal
from typing import Optional

from config import Config
from controller import Controller
from db import DatabaseManager
from events import EventBus
from health import HealthChecker
from plugins.reconcilers.base import ReconcilerContext
from plugins.registry import discover_plugins, get_registry
from secret_manager import SecretManager
from server import HTTPServer, create_app
from vault_client import VaultClientFactory

logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the controller and HTTP server."""

    def __init__(self, config: Config):
        self.config = config
        self.db: Optional[DatabaseManager] = None
        self.controller: Optional[Controller] = None
        self.http_server: Optional[HTTPServer] = None
        self.running = False
        self._stopped = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing Vault Transit Unseal Operator")
        op_config = self.config.operator

        discover_plugins()
        registry = get_registry()
        reconciler = await registry.get_reconciler_plugin(op_config.delegate or None)

        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await self.db.connect()
        await self.db.initialize_schema()
        logger.info("Database initialized")

        client_factory = VaultClientFactory(
            tls_skip_verify=not op_config.enable_tls_validation,
            timeout=op_config.default_vault_timeout,
        )
        reconciler_ctx = ReconcilerContext(
            db=self.db,
            client_factory=client_factory,
            secret_manager=SecretManager(self.db),
            config=op_config,
        )

        self.controller = Controller(
            db_manager=self.db,
            reconciler=reconciler,
            reconciler_ctx=reconciler_ctx,
            config=op_config,
            event_bus=EventBus(),
        )

        health_config = self.config.health
        checker = HealthChecker(
            status_client=client_factory.new_client(health_config.vault_address),
            is_alive=self.controller.is_alive,
            probe_timeout=health_config.probe_timeout,
        )
        self.http_server = HTTPServer(
            create_app(
                checker, db=self.db, controller=self.controller, registry=registry
            ),
            host=health_config.host,
            port=health_config.port,
        )

        logger.info(f"All components initialized (reconciler: {reconciler.name})")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        tasks = [
            asyncio.create_task(self.controller.start()),
            asyncio.create_task(self.http_server.start()),
        ]

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping Vault Transit Unseal Operator")
        self.running = False

        if self.controller:
            await self.controller.stop()
            await self.controller.reconciler.stop()

        if self.http_server:
            await self.http_server.stop()

        if self.db:
            await self.db.close()

        logger.info("Vault Transit Unseal Operator stopped")


async def main():
    """Main entry point."""
    config = Config.from_env()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    app = Application(config)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    finally:
        await app.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
