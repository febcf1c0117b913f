"""
Main entry point for the Dead Man's Snitch operator.

Wires the store, the monitor client, the reconciler, the controller loop
and the HTTP API together.
"""

import asyncio
import logging
import signal
from typing import Optional

from api import HTTPAPI
from config import get_config
from controller import Controller
from db import DatabaseManager
from dmsclient import DeadMansSnitchClient
from models import OperatorCredential
from reconciler import DeadMansSnitchReconciler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the controller and the API."""

    def __init__(self):
        self.config = get_config()
        self.db: Optional[DatabaseManager] = None
        self.controller: Optional[Controller] = None
        self.api: Optional[HTTPAPI] = None
        self.running = False

    async def load_credential(self) -> OperatorCredential:
        """
        Read the operator credential once from its well-known secret.

        Raises:
            RuntimeError: If the secret does not exist.
            ValueError: If the secret has no API key.
        """
        snitch_config = self.config.snitch
        secret = await self.db.get_secret(
            snitch_config.operator_namespace, snitch_config.api_secret_name
        )
        if secret is None:
            raise RuntimeError(
                f"Operator secret {snitch_config.operator_namespace}/"
                f"{snitch_config.api_secret_name} not found"
            )
        return OperatorCredential.from_secret(secret)

    async def wait_for_credential(self) -> Optional[OperatorCredential]:
        """
        Load the operator credential, retrying until the secret is usable.

        The API is already serving while this waits, so the secret can be
        seeded through it (``dmsctl secret``). Returns None if the
        application stops first.
        """
        snitch_config = self.config.snitch
        while self.running:
            try:
                return await self.load_credential()
            except (RuntimeError, ValueError) as e:
                logger.warning(
                    f"{e}; waiting for {snitch_config.operator_namespace}/"
                    f"{snitch_config.api_secret_name}"
                )
            await asyncio.sleep(self.config.controller.reconcile_interval)
        return None

    def build_controller(self, credential: OperatorCredential) -> Controller:
        """Build the monitor client, reconciler and controller for a credential."""
        snitch_config = self.config.snitch
        dms = DeadMansSnitchClient(
            api_key=credential.api_key,
            api_base_url=snitch_config.api_url,
            timeout=snitch_config.timeout,
        )

        ctrl_config = self.config.controller
        reconciler = DeadMansSnitchReconciler(
            self.db,
            dms,
            credential,
            snitch_interval=snitch_config.snitch_interval,
            alert_type=snitch_config.alert_type,
            retry_delay=ctrl_config.retry_delay,
        )
        return Controller(db_manager=self.db, reconciler=reconciler, config=ctrl_config)

    async def initialize(self):
        """Initialize the store and the API."""
        logger.info("Initializing Dead Man's Snitch operator")
        logging.getLogger().setLevel(self.config.api.log_level.upper())

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

        api_config = self.config.api
        self.api = HTTPAPI(self.db, host=api_config.host, port=api_config.port)

        logger.info("All components initialized")

    async def run_controller(self):
        """Read the credential once, then run the reconciliation loop."""
        credential = await self.wait_for_credential()
        if credential is None:
            return
        logger.info(f"Loaded operator credential (tag: {credential.tag or 'none'})")
        self.controller = self.build_controller(credential)
        await self.controller.start()

    async def start(self):
        """Start the application."""
        if not self.api:
            await self.initialize()

        self.running = True
        logger.info("Starting Dead Man's Snitch operator")

        tasks = [
            asyncio.create_task(self.run_controller()),
            asyncio.create_task(self.api.start()),
        ]

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        logger.info("Stopping Dead Man's Snitch operator")
        self.running = False

        if self.controller:
            await self.controller.stop()

        if self.api:
            await self.api.stop()

        if self.db:
            await self.db.close()

        logger.info("Dead Man's Snitch operator stopped")


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
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
