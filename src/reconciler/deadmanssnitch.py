"""
Dead Man's Snitch Reconciler - Keeps one snitch and one SyncSet per cluster.

Loads the ClusterDeployment and its footprint, asks the engine what to do,
and hands the decision to the ActionExecutor.
"""

import logging
from typing import Any

from dmsclient import MonitorClient
from models import (
    FINALIZER,
    ClusterDeployment,
    OperatorCredential,
    PayloadDecodeError,
    decode_snitch_url,
    owns_sync_set,
    snitch_name,
)
from reconciler.base import ReconcilerPlugin, ReconcileRequest, ReconcileResult
from reconciler.engine import Action, Footprint, decide, needs_observation
from reconciler.executor import ActionExecutor

logger = logging.getLogger(__name__)


class DeadMansSnitchReconciler(ReconcilerPlugin):
    """Reconciles ClusterDeployments against Dead Man's Snitch."""

    def __init__(
        self,
        store: Any,
        dms: MonitorClient,
        credential: OperatorCredential,
        snitch_interval: str = "15_minute",
        alert_type: str = "basic",
        retry_delay: int = 30,
    ):
        self.store = store
        self.dms = dms
        self.executor = ActionExecutor(
            store,
            dms,
            credential,
            snitch_interval=snitch_interval,
            alert_type=alert_type,
            retry_delay=retry_delay,
        )

    @property
    def name(self) -> str:
        return "deadmanssnitch"

    async def reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        logger.info(f"Reconciling ClusterDeployment {request}")

        cd = await self.store.get_cluster_deployment(request.namespace, request.name)
        if cd is None:
            logger.info(f"ClusterDeployment {request} not found, nothing to do")
            return ReconcileResult(success=True, message="not found")

        if not needs_observation(cd):
            logger.debug(f"ClusterDeployment {request} is not monitored")
            return ReconcileResult(
                success=True, message="not monitorable", action=Action.NOOP.value
            )

        try:
            footprint = await self.observe(cd)
        except Exception as e:
            return self.executor.classify(e, Action.NOOP)

        decision = decide(cd, footprint)
        logger.info(
            f"ClusterDeployment {request}: {decision.action.value} ({decision.reason})"
        )
        return await self.executor.execute(cd, footprint, decision)

    async def observe(self, cd: ClusterDeployment) -> Footprint:
        """Snapshot the finalizer, the owned SyncSet and the snitches by name."""
        footprint = Footprint(has_finalizer=cd.has_finalizer(FINALIZER))

        for sync_set in await self.store.list_sync_sets(cd.namespace):
            if not owns_sync_set(cd, sync_set):
                continue
            footprint.sync_set = sync_set
            try:
                footprint.snitch_url = decode_snitch_url(sync_set)
            except PayloadDecodeError as e:
                logger.warning(f"Skipping SyncSet payload: {e}")

        footprint.snitches = await self.dms.find_snitches_by_name(snitch_name(cd))
        return footprint
