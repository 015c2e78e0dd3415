"""
Main entry point for the Sentry Project Operator.

Wires the store, the Sentry client, the reconciler, the controller loop and
the HTTP API together and runs them until a shutdown signal arrives.
"""

import asyncio
import logging
import os
import signal
from typing import Optional

from api import APIServer
from config import get_config
from controller import Controller
from db import DatabaseManager
from events import EventBus
from reconciler import SentryProjectReconciler
from sentry_client import SentryClient

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class Application:
    """Main application that owns every long-lived component."""

    def __init__(self):
        self.config = get_config()
        self.db: Optional[DatabaseManager] = None
        self.sentry: Optional[SentryClient] = None
        self.controller: Optional[Controller] = None
        self.api: Optional[APIServer] = None
        self.event_bus: Optional[EventBus] = None
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing Sentry Project Operator")

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

        sentry_config = self.config.sentry
        self.sentry = SentryClient(
            base_url=sentry_config.base_url,
            token=sentry_config.token,
            timeout=sentry_config.timeout,
        )
        await self.sentry.initialize()

        self.event_bus = EventBus()

        self.controller = Controller(
            db_manager=self.db,
            reconciler=SentryProjectReconciler(client=self.sentry, store=self.db),
            config=self.config.controller,
            event_bus=self.event_bus,
        )

        api_config = self.config.api
        self.api = APIServer(
            host=api_config.host, port=api_config.port, log_level=api_config.log_level
        )
        self.api.set_db_manager(self.db)
        self.api.set_event_bus(self.event_bus)

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting Sentry Project Operator")

        tasks = [
            asyncio.create_task(self.controller.start()),
            asyncio.create_task(self.api.start()),
        ]
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        logger.info("Stopping Sentry Project Operator")
        self.running = False

        if self.controller:
            await self.controller.stop()
        if self.api:
            await self.api.stop()
        if self.sentry:
            await self.sentry.close()
        if self.db:
            await self.db.close()

        logger.info("Sentry Project Operator stopped")


async def main():
    """Main entry point."""
    app = Application()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
