"""
Action Executor - Applies reconciliation decisions.

Translates a Decision into calls against the monitor service and the
resource store, in the order that keeps every step resumable, and maps
failures onto retryable or fatal results.
"""

import logging
from typing import Any, Optional

from db import ConflictError
from dmsclient import DMSClientError, MonitorClient
from models import (
    FINALIZER,
    ClusterDeployment,
    OperatorCredential,
    PayloadDecodeError,
    Snitch,
    SyncSet,
    build_sync_set,
    decode_snitch_url,
    owns_sync_set,
    snitch_name,
)
from reconciler.base import ReconcileResult
from reconciler.engine import Action, Decision, Footprint

logger = logging.getLogger(__name__)


class SyncSetConflictError(Exception):
    """The SyncSet name derived for a cluster is held by a foreign SyncSet."""


# Errors a retry cannot resolve
FATAL_ERRORS = (SyncSetConflictError, ValueError)


class ActionExecutor:
    """Runs the PROVISION and TEARDOWN protocols for one ClusterDeployment."""

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
        self.credential = credential
        self.snitch_interval = snitch_interval
        self.alert_type = alert_type
        self.retry_delay = retry_delay

    async def execute(
        self, cd: ClusterDeployment, footprint: Footprint, decision: Decision
    ) -> ReconcileResult:
        """Apply a decision and report the outcome."""
        try:
            if decision.action is Action.PROVISION:
                await self.provision(cd, footprint)
            elif decision.action is Action.TEARDOWN:
                await self.teardown(cd, footprint)
            elif decision.check_in is not None:
                await self.dms.check_in(decision.check_in)
        except Exception as e:
            return self.classify(e, decision.action)

        return ReconcileResult(
            success=True,
            message=f"{decision.action.value}: {decision.reason}",
            action=decision.action.value,
        )

    async def provision(self, cd: ClusterDeployment, footprint: Footprint) -> None:
        """
        Create the snitch and the SyncSet for a monitorable cluster.

        Steps run in order and stop at the first failure:

        1. Reuse a snitch found by name, or create one.
        2. Add the finalizer, so the snitch is never orphaned.
        3. Re-look-up the snitch; check in once if it is still pending.
        4. Create the SyncSet, or refresh ours if its URL is stale.
        """
        name = snitch_name(cd)

        if footprint.snitches:
            logger.info(f"Reusing existing snitch {name}")
        else:
            await self.dms.create(
                name,
                [self.credential.tag],
                interval=self.snitch_interval,
                alert_type=self.alert_type,
            )

        await self.store.add_finalizer(cd, FINALIZER)

        snitches = await self.dms.find_snitches_by_name(name)
        if not snitches:
            raise DMSClientError(f"Snitch {name} not found after creation")
        snitch = snitches[0]
        if snitch.is_pending:
            await self.dms.check_in(snitch)

        await self._apply_sync_set(cd, snitch, footprint.sync_set)

    async def _apply_sync_set(
        self, cd: ClusterDeployment, snitch: Snitch, existing: Optional[SyncSet]
    ) -> None:
        desired = build_sync_set(cd, snitch, self.credential)

        if existing is None:
            try:
                await self.store.create_sync_set(desired)
                return
            except ConflictError:
                current = await self.store.get_sync_set(desired.namespace, desired.name)
                if current is not None and not owns_sync_set(cd, current):
                    raise SyncSetConflictError(
                        f"SyncSet {desired.namespace}/{desired.name} exists and does "
                        f"not reference {cd.name}"
                    )
                raise

        try:
            if decode_snitch_url(existing) == snitch.check_in_url:
                return
        except PayloadDecodeError as e:
            logger.warning(f"Replacing unreadable SyncSet payload: {e}")

        desired.resource_version = existing.resource_version
        await self.store.update_sync_set(desired)

    async def teardown(self, cd: ClusterDeployment, footprint: Footprint) -> None:
        """
        Remove the snitch and SyncSet, then release the finalizer.

        The finalizer goes last so that the record cannot disappear before
        external cleanup is confirmed.
        """
        for snitch in footprint.snitches:
            if not snitch.token:
                raise DMSClientError(
                    f"Snitch {snitch.name} has no token, cannot delete it"
                )
            await self.dms.delete(snitch.token)

        if footprint.sync_set is not None:
            await self.store.delete_sync_set(
                footprint.sync_set.namespace, footprint.sync_set.name
            )

        await self.store.remove_finalizer(cd, FINALIZER)

    def classify(self, exc: Exception, action: Action) -> ReconcileResult:
        """
        Turn an exception into a retryable or fatal result.

        Only errors that another attempt cannot fix are fatal: a foreign
        SyncSet holding our name, or an invalid value. Everything else,
        store outages included, is retried.
        """
        message = str(exc) or type(exc).__name__

        if isinstance(exc, FATAL_ERRORS):
            logger.error(f"{action.value} failed: {message}", exc_info=exc)
            return ReconcileResult(
                success=False,
                message=message,
                error=exc,
                action=action.value,
            )

        expected = isinstance(exc, (DMSClientError, ConflictError))
        logger.warning(
            f"{action.value} failed, will retry: {message}",
            exc_info=None if expected else exc,
        )
        return ReconcileResult(
            success=False,
            message=message,
            requeue_after=self.retry_delay,
            error=exc,
            action=action.value,
        )
