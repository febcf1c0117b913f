"""Unit tests for controller.py - Main reconciliation controller."""

import asyncio
import logging

import pytest
from unittest.mock import AsyncMock, MagicMock

from config import ControllerConfig
from controller import Controller
from models import ClusterDeployment
from reconciler.base import ReconcileRequest, ReconcileResult


def _cd(name="testCluster", cd_id=1, generation=1):
    return ClusterDeployment(
        name=name, namespace="testNamespace", id=cd_id, generation=generation
    )


class TestController:
    """Tests for Controller class."""

    @pytest.fixture
    def mock_db(self):
        db = AsyncMock()
        db.get_cluster_deployments_needing_reconciliation = AsyncMock(return_value=[])
        db.mark_reconciling = AsyncMock()
        db.mark_reconciled = AsyncMock()
        db.mark_failed = AsyncMock()
        db.reset_stale_reconciling = AsyncMock(return_value=0)
        db.mark_for_reconciliation = AsyncMock(return_value=True)
        return db

    @pytest.fixture
    def mock_reconciler(self):
        reconciler = MagicMock()
        reconciler.name = "deadmanssnitch"
        reconciler.reconcile = AsyncMock(
            return_value=ReconcileResult(success=True, message="noop: in sync")
        )
        return reconciler

    @pytest.fixture
    def controller(self, mock_db, mock_reconciler):
        config = ControllerConfig(
            reconcile_interval=1,
            resync_interval=300,
            max_concurrent_reconciles=2,
            retry_delay=10,
            backoff_base_delay=20,
            backoff_max_delay=600,
            backoff_jitter_factor=0.2,
        )
        return Controller(db_manager=mock_db, reconciler=mock_reconciler, config=config)

    def test_init(self, controller):
        assert controller.reconcile_interval == 1
        assert controller.max_concurrent_reconciles == 2
        assert controller.running is False

    def test_default_config(self, mock_db, mock_reconciler):
        controller = Controller(db_manager=mock_db, reconciler=mock_reconciler)
        assert controller.config == ControllerConfig()

    @pytest.mark.asyncio
    async def test_run_once_nothing_to_do(self, controller, mock_reconciler):
        assert await controller.run_once() == 0
        mock_reconciler.reconcile.assert_not_called()

    @pytest.mark.asyncio
    async def test_run_once_records_success(self, controller, mock_db, mock_reconciler):
        mock_db.get_cluster_deployments_needing_reconciliation.return_value = [
            _cd(generation=4)
        ]

        assert await controller.run_once() == 1

        mock_db.get_cluster_deployments_needing_reconciliation.assert_awaited_once_with(
            limit=4
        )
        mock_db.mark_reconciling.assert_awaited_once_with(1)
        mock_reconciler.reconcile.assert_awaited_once_with(
            ReconcileRequest("testNamespace", "testCluster")
        )
        mock_db.mark_reconciled.assert_awaited_once_with(1, 4, "noop: in sync", 300)
        mock_db.mark_failed.assert_not_called()

    @pytest.mark.asyncio
    async def test_retryable_failure_uses_backoff(
        self, controller, mock_db, mock_reconciler
    ):
        mock_db.get_cluster_deployments_needing_reconciliation.return_value = [_cd()]
        mock_reconciler.reconcile.return_value = ReconcileResult(
            success=False, message="unavailable", requeue_after=45
        )

        await controller.run_once()

        mock_db.mark_failed.assert_awaited_once_with(
            1,
            1,
            "unavailable",
            retryable=True,
            base_delay=45,
            max_delay=600,
            jitter_factor=0.2,
        )
        mock_db.mark_reconciled.assert_not_called()

    @pytest.mark.asyncio
    async def test_fatal_failure_not_retried(self, controller, mock_db, mock_reconciler):
        mock_db.get_cluster_deployments_needing_reconciliation.return_value = [_cd()]
        mock_reconciler.reconcile.return_value = ReconcileResult(
            success=False, message="SyncSet conflict"
        )

        await controller.run_once()

        kwargs = mock_db.mark_failed.await_args.kwargs
        assert kwargs["retryable"] is False
        assert kwargs["base_delay"] == 20

    @pytest.mark.asyncio
    async def test_reconciler_exception_is_retryable(
        self, controller, mock_db, mock_reconciler
    ):
        mock_db.get_cluster_deployments_needing_reconciliation.return_value = [_cd()]
        mock_reconciler.reconcile.side_effect = RuntimeError("boom")

        await controller.run_once()

        args = mock_db.mark_failed.await_args
        assert "boom" in args.args[2]
        assert args.kwargs["retryable"] is True

    @pytest.mark.asyncio
    async def test_success_requeue_hint(self, controller, mock_db, mock_reconciler):
        mock_db.get_cluster_deployments_needing_reconciliation.return_value = [_cd()]
        mock_reconciler.reconcile.return_value = ReconcileResult(
            success=True, message="ok", requeue_after=60
        )

        await controller.run_once()

        assert mock_db.mark_reconciled.await_args.args[3] == 60

    @pytest.mark.asyncio
    async def test_in_flight_cluster_is_skipped(
        self, controller, mock_db, mock_reconciler
    ):
        mock_db.get_cluster_deployments_needing_reconciliation.return_value = [
            _cd("busy", 1),
            _cd("idle", 2),
        ]
        controller._in_flight.add(ReconcileRequest("testNamespace", "busy"))

        assert await controller.run_once() == 1

        mock_reconciler.reconcile.assert_awaited_once_with(
            ReconcileRequest("testNamespace", "idle")
        )

    @pytest.mark.asyncio
    async def test_in_flight_released_after_failure(
        self, controller, mock_db, mock_reconciler
    ):
        mock_db.get_cluster_deployments_needing_reconciliation.return_value = [_cd()]
        mock_reconciler.reconcile.side_effect = RuntimeError("boom")

        await controller.run_once()

        assert controller._in_flight == set()

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self, controller, mock_db, mock_reconciler):
        mock_db.get_cluster_deployments_needing_reconciliation.return_value = [
            _cd(f"c{i}", i) for i in range(4)
        ]
        active = 0
        peak = 0

        async def slow_reconcile(request):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return ReconcileResult(success=True)

        mock_reconciler.reconcile.side_effect = slow_reconcile

        assert await controller.run_once() == 4
        assert peak <= 2
        assert mock_db.mark_reconciled.await_count == 4

    @pytest.mark.asyncio
    async def test_start_resets_stale_records(self, controller, mock_db):
        async def stop_after_first_pass(limit):
            controller.running = False
            return []

        mock_db.get_cluster_deployments_needing_reconciliation.side_effect = (
            stop_after_first_pass
        )

        await asyncio.wait_for(controller.start(), timeout=5)

        mock_db.reset_stale_reconciling.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop(self, controller):
        controller.running = True
        await controller.stop()
        assert controller.running is False

    @pytest.mark.asyncio
    async def test_trigger_reconciliation(self, controller, mock_db):
        assert await controller.trigger_reconciliation("testNamespace", "testCluster")
        mock_db.mark_for_reconciliation.assert_awaited_once_with(
            "testNamespace", "testCluster"
        )

    @pytest.mark.asyncio
    async def test_store_error_recording_result_releases_record(
        self, controller, mock_db, caplog
    ):
        mock_db.get_cluster_deployments_needing_reconciliation.return_value = [_cd()]
        mock_db.mark_reconciled.side_effect = OSError("connection reset")

        with caplog.at_level(logging.ERROR, logger="controller"):
            await controller.run_once()

        mock_db.mark_failed.assert_awaited_once()
        args = mock_db.mark_failed.await_args
        assert "connection reset" in args.args[2]
        assert args.kwargs["retryable"] is True
        assert args.kwargs["base_delay"] == 20
        assert "connection reset" in caplog.text
        assert controller._in_flight == set()

    @pytest.mark.asyncio
    async def test_store_error_marking_reconciling_releases_record(
        self, controller, mock_db, mock_reconciler
    ):
        mock_db.get_cluster_deployments_needing_reconciliation.return_value = [_cd()]
        mock_db.mark_reconciling.side_effect = OSError("connection reset")

        await controller.run_once()

        mock_reconciler.reconcile.assert_not_called()
        assert mock_db.mark_failed.await_args.kwargs["retryable"] is True
        assert controller._in_flight == set()

    @pytest.mark.asyncio
    async def test_store_down_while_releasing_is_logged(
        self, controller, mock_db, caplog
    ):
        mock_db.get_cluster_deployments_needing_reconciliation.return_value = [_cd()]
        mock_db.mark_reconciled.side_effect = OSError("connection reset")
        mock_db.mark_failed.side_effect = OSError("connection refused")

        with caplog.at_level(logging.ERROR, logger="controller"):
            assert await controller.run_once() == 1

        assert "Failed to mark testNamespace/testCluster as failed" in caplog.text
        assert controller._in_flight == set()
