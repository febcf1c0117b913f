"""
Operator Controller - Main reconciliation loop.

Polls the store for ClusterDeployments that changed or are due for a
resync and dispatches them to the reconciler, never running the same
cluster twice at once.
"""

import asyncio
import logging
import time
from typing import Optional, Set

from config import ControllerConfig
from db import DatabaseManager, ReconcileStatus
from models import ClusterDeployment
from reconciler.base import ReconcilerPlugin, ReconcileRequest, ReconcileResult

logger = logging.getLogger(__name__)


class Controller:
    """
    Main controller that implements the reconciliation loop.

    Reconciliations for different clusters run concurrently, bounded by
    ``max_concurrent_reconciles``; a cluster already in flight is skipped.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        reconciler: ReconcilerPlugin,
        config: Optional[ControllerConfig] = None,
    ):
        self.db = db_manager
        self.reconciler = reconciler
        self.config = config or ControllerConfig()
        self.reconcile_interval = self.config.reconcile_interval
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.semaphore = asyncio.Semaphore(self.max_concurrent_reconciles)
        self.running = False
        self._in_flight: Set[ReconcileRequest] = set()

    async def start(self):
        """Start the controller reconciliation loop."""
        logger.info(f"Starting controller with reconciler '{self.reconciler.name}'")
        self.running = True
        await self.db.reset_stale_reconciling()

        try:
            await self._reconciliation_loop()
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise

    async def stop(self):
        """Stop the controller."""
        logger.info("Stopping controller")
        self.running = False

    async def _reconciliation_loop(self):
        """Main reconciliation loop - watches for ClusterDeployments to reconcile."""
        while self.running:
            try:
                await self.run_once()
                await asyncio.sleep(self.reconcile_interval)

            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)
                await asyncio.sleep(10)

    async def run_once(self) -> int:
        """
        Run one polling pass.

        Returns:
            Number of ClusterDeployments dispatched.
        """
        cluster_deployments = (
            await self.db.get_cluster_deployments_needing_reconciliation(
                limit=self.max_concurrent_reconciles * 2
            )
        )
        pending = [
            cd
            for cd in cluster_deployments
            if ReconcileRequest(cd.namespace, cd.name) not in self._in_flight
        ]
        if not pending:
            return 0

        logger.info(f"Found {len(pending)} ClusterDeployments needing reconciliation")
        await asyncio.gather(
            *(self._reconcile_cluster_deployment(cd) for cd in pending),
            return_exceptions=True,
        )
        return len(pending)

    async def _reconcile_cluster_deployment(self, cd: ClusterDeployment):
        """Reconcile a single ClusterDeployment and record the outcome."""
        request = ReconcileRequest(cd.namespace, cd.name)
        if request in self._in_flight:
            return
        self._in_flight.add(request)

        try:
            async with self.semaphore:
                start_time = time.monotonic()
                try:
                    await self.db.mark_reconciling(cd.id)

                    try:
                        result = await self.reconciler.reconcile(request)
                    except Exception as e:
                        logger.error(f"Error reconciling {request}: {e}", exc_info=True)
                        result = ReconcileResult(
                            success=False,
                            message=f"Reconciliation error: {e}",
                            error=e,
                            requeue_after=self.config.retry_delay,
                        )

                    await self._record_result(cd, result)
                except Exception as e:
                    logger.error(
                        f"Error recording reconciliation of {request}: {e}",
                        exc_info=True,
                    )
                    await self._release(cd, f"Reconciliation error: {e}")
                    return

                status = ReconcileStatus.READY if result.success else ReconcileStatus.FAILED
                logger.info(
                    f"Reconciled {request} in {time.monotonic() - start_time:.2f}s: "
                    f"{status.value}"
                )
        finally:
            self._in_flight.discard(request)

    async def _release(self, cd: ClusterDeployment, message: str):
        """Record a retryable failure so the record leaves 'reconciling'."""
        try:
            await self.db.mark_failed(
                cd.id,
                cd.generation,
                message,
                retryable=True,
                base_delay=self.config.backoff_base_delay,
                max_delay=self.config.backoff_max_delay,
                jitter_factor=self.config.backoff_jitter_factor,
            )
        except Exception as e:
            # Left in 'reconciling' until reset_stale_reconciling runs
            logger.error(f"Failed to mark {cd.namespace}/{cd.name} as failed: {e}")

    async def _record_result(self, cd: ClusterDeployment, result: ReconcileResult):
        if result.success:
            await self.db.mark_reconciled(
                cd.id,
                cd.generation,
                result.message,
                result.requeue_after or self.config.resync_interval,
            )
            return

        logger.error(f"Failed to reconcile {cd.namespace}/{cd.name}: {result.message}")
        await self.db.mark_failed(
            cd.id,
            cd.generation,
            result.message,
            retryable=result.retryable,
            base_delay=max(result.requeue_after or 0, self.config.backoff_base_delay),
            max_delay=self.config.backoff_max_delay,
            jitter_factor=self.config.backoff_jitter_factor,
        )

    async def trigger_reconciliation(self, namespace: str, name: str) -> bool:
        """Manually trigger reconciliation for a specific ClusterDeployment."""
        logger.info(f"Manually triggering reconciliation for {namespace}/{name}")
        return await self.db.mark_for_reconciliation(namespace, name)
