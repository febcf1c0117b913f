"""
Database Manager - PostgreSQL schema and operations.

Stores ClusterDeployments, Secrets and SyncSets, plus the reconcile
bookkeeping the controller uses to schedule work.
"""

import asyncpg
import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from models import ClusterDeployment, Secret, SyncSet

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS cluster_deployments (
    id SERIAL PRIMARY KEY,
    namespace VARCHAR(253) NOT NULL,
    name VARCHAR(253) NOT NULL,
    labels JSONB NOT NULL DEFAULT '{}'::jsonb,
    installed BOOLEAN NOT NULL DEFAULT FALSE,
    finalizers JSONB NOT NULL DEFAULT '[]'::jsonb,
    resource_version INTEGER NOT NULL DEFAULT 1,
    generation INTEGER NOT NULL DEFAULT 1,
    observed_generation INTEGER NOT NULL DEFAULT 0,
    deletion_timestamp TIMESTAMP,
    reconcile_status VARCHAR(32) NOT NULL DEFAULT 'pending',
    status_message TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_reconcile_time TIMESTAMP,
    next_reconcile_time TIMESTAMP DEFAULT NOW(),
    created_at TIMESTAMP NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMP NOT NULL DEFAULT NOW(),
    UNIQUE (namespace, name)
);

CREATE INDEX IF NOT EXISTS idx_cluster_deployments_next_reconcile
    ON cluster_deployments (next_reconcile_time);

CREATE TABLE IF NOT EXISTS secrets (
    id SERIAL PRIMARY KEY,
    namespace VARCHAR(253) NOT NULL,
    name VARCHAR(253) NOT NULL,
    data JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMP NOT NULL DEFAULT NOW(),
    UNIQUE (namespace, name)
);

CREATE TABLE IF NOT EXISTS sync_sets (
    id SERIAL PRIMARY KEY,
    namespace VARCHAR(253) NOT NULL,
    name VARCHAR(253) NOT NULL,
    cluster_deployment_refs JSONB NOT NULL DEFAULT '[]'::jsonb,
    resources JSONB NOT NULL DEFAULT '[]'::jsonb,
    resource_version INTEGER NOT NULL DEFAULT 1,
    created_at TIMESTAMP NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMP NOT NULL DEFAULT NOW(),
    UNIQUE (namespace, name)
);
"""


class ConflictError(Exception):
    """Raised when a write is based on a stale or duplicate record."""


class ReconcileStatus(Enum):
    """Reconcile status of a ClusterDeployment."""

    PENDING = "pending"
    RECONCILING = "reconciling"
    READY = "ready"
    FAILED = "failed"


def _loads(value: Any, default: Any) -> Any:
    if value is None:
        return default
    return json.loads(value) if isinstance(value, str) else value


class DatabaseManager:
    """Manages PostgreSQL database operations for the operator."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Create tables if they do not exist."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(SCHEMA)
        logger.info("Database schema initialized")

    # ==================== ClusterDeployment Methods ====================

    async def create_cluster_deployment(
        self,
        namespace: str,
        name: str,
        labels: Optional[Dict[str, str]] = None,
        installed: bool = False,
    ) -> ClusterDeployment:
        """
        Create a ClusterDeployment.

        Raises:
            ConflictError: If one already exists with this namespace and name.
        """
        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO cluster_deployments (namespace, name, labels, installed)
                    VALUES ($1, $2, $3, $4)
                    RETURNING *
                    """,
                    namespace,
                    name,
                    json.dumps(labels or {}),
                    installed,
                )
            except asyncpg.UniqueViolationError as e:
                raise ConflictError(
                    f"ClusterDeployment {namespace}/{name} already exists"
                ) from e

        logger.info(f"Created ClusterDeployment {namespace}/{name}")
        return self._parse_cluster_deployment_row(row)

    async def get_cluster_deployment(
        self, namespace: str, name: str
    ) -> Optional[ClusterDeployment]:
        """Get a ClusterDeployment, or None if it does not exist."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM cluster_deployments WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if not row:
                return None
            return self._parse_cluster_deployment_row(row)

    async def get_cluster_deployment_status(
        self, namespace: str, name: str
    ) -> Optional[Dict[str, Any]]:
        """Get the reconcile bookkeeping columns of a ClusterDeployment."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT reconcile_status, status_message, retry_count,
                       generation, observed_generation,
                       last_reconcile_time, next_reconcile_time
                FROM cluster_deployments
                WHERE namespace = $1 AND name = $2
                """,
                namespace,
                name,
            )
            return dict(row) if row else None

    async def list_cluster_deployments(
        self, namespace: Optional[str] = None, limit: int = 100
    ) -> List[ClusterDeployment]:
        """List ClusterDeployments, optionally within one namespace."""
        async with self.pool.acquire() as conn:
            if namespace:
                rows = await conn.fetch(
                    """
                    SELECT * FROM cluster_deployments
                    WHERE namespace = $1
                    ORDER BY name
                    LIMIT $2
                    """,
                    namespace,
                    limit,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM cluster_deployments ORDER BY namespace, name LIMIT $1",
                    limit,
                )
            return [self._parse_cluster_deployment_row(row) for row in rows]

    async def update_cluster_deployment(
        self,
        namespace: str,
        name: str,
        labels: Optional[Dict[str, str]] = None,
        installed: Optional[bool] = None,
    ) -> Optional[ClusterDeployment]:
        """
        Replace labels and/or the installed flag of a ClusterDeployment.

        Schedules the record for immediate reconciliation. Returns None if
        the record does not exist.
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE cluster_deployments
                SET labels = COALESCE($3, labels),
                    installed = COALESCE($4, installed),
                    resource_version = resource_version + 1,
                    generation = generation + 1,
                    reconcile_status = 'pending',
                    retry_count = 0,
                    next_reconcile_time = NOW(),
                    updated_at = NOW()
                WHERE namespace = $1 AND name = $2
                RETURNING *
                """,
                namespace,
                name,
                json.dumps(labels) if labels is not None else None,
                installed,
            )
            if not row:
                return None

        logger.info(f"Updated ClusterDeployment {namespace}/{name}")
        return self._parse_cluster_deployment_row(row)

    async def request_cluster_deployment_deletion(
        self, namespace: str, name: str
    ) -> bool:
        """
        Mark a ClusterDeployment for deletion.

        A record without finalizers is removed right away; otherwise it stays
        until its last finalizer is removed.

        Returns:
            True if the record existed, False otherwise.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE cluster_deployments
                    SET deletion_timestamp = COALESCE(deletion_timestamp, NOW()),
                        resource_version = resource_version + 1,
                        generation = generation + 1,
                        reconcile_status = 'pending',
                        retry_count = 0,
                        next_reconcile_time = NOW(),
                        updated_at = NOW()
                    WHERE namespace = $1 AND name = $2
                    RETURNING id
                    """,
                    namespace,
                    name,
                )
                if not row:
                    return False
                await self._delete_if_finalized(conn, row["id"])

        logger.info(f"Marked ClusterDeployment {namespace}/{name} for deletion")
        return True

    async def add_finalizer(self, cd: ClusterDeployment, finalizer: str) -> None:
        """
        Add a finalizer to a ClusterDeployment.

        No-op if already present. Updates ``cd`` in place on success.

        Raises:
            ConflictError: If the record changed since ``cd`` was read.
        """
        if cd.has_finalizer(finalizer):
            return

        finalizers = cd.finalizers + [finalizer]
        new_version = await self._write_finalizers(cd, finalizers)
        cd.finalizers = finalizers
        cd.resource_version = new_version
        logger.info(f"Added finalizer {finalizer} to {cd.namespace}/{cd.name}")

    async def remove_finalizer(self, cd: ClusterDeployment, finalizer: str) -> None:
        """
        Remove a finalizer from a ClusterDeployment.

        A record marked for deletion is removed once its last finalizer goes.

        Raises:
            ConflictError: If the record changed since ``cd`` was read.
        """
        if not cd.has_finalizer(finalizer):
            return

        finalizers = [f for f in cd.finalizers if f != finalizer]
        new_version = await self._write_finalizers(cd, finalizers)
        cd.finalizers = finalizers
        cd.resource_version = new_version
        logger.info(f"Removed finalizer {finalizer} from {cd.namespace}/{cd.name}")

    async def _write_finalizers(
        self, cd: ClusterDeployment, finalizers: List[str]
    ) -> int:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                new_version = await conn.fetchval(
                    """
                    UPDATE cluster_deployments
                    SET finalizers = $3,
                        resource_version = resource_version + 1,
                        updated_at = NOW()
                    WHERE id = $1 AND resource_version = $2
                    RETURNING resource_version
                    """,
                    cd.id,
                    cd.resource_version,
                    json.dumps(finalizers),
                )
                if new_version is None:
                    raise ConflictError(
                        f"ClusterDeployment {cd.namespace}/{cd.name} was modified "
                        f"(resource_version {cd.resource_version} is stale)"
                    )
                if not finalizers:
                    await self._delete_if_finalized(conn, cd.id)
                return new_version

    async def _delete_if_finalized(self, conn: asyncpg.Connection, cd_id: int) -> None:
        deleted = await conn.fetchval(
            """
            DELETE FROM cluster_deployments
            WHERE id = $1
              AND deletion_timestamp IS NOT NULL
              AND finalizers = '[]'::jsonb
            RETURNING id
            """,
            cd_id,
        )
        if deleted:
            logger.info(f"Deleted ClusterDeployment {cd_id}")

    # ==================== Reconcile Bookkeeping ====================

    async def get_cluster_deployments_needing_reconciliation(
        self, limit: int = 10
    ) -> List[ClusterDeployment]:
        """Find ClusterDeployments due for reconciliation, deletions first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM cluster_deployments
                WHERE reconcile_status != 'reconciling'
                  AND (
                    last_reconcile_time IS NULL
                    OR generation > observed_generation
                    OR next_reconcile_time <= NOW()
                  )
                ORDER BY
                    CASE WHEN deletion_timestamp IS NOT NULL THEN 0 ELSE 1 END,
                    next_reconcile_time ASC NULLS FIRST
                LIMIT $1
                """,
                limit,
            )
            return [self._parse_cluster_deployment_row(row) for row in rows]

    async def mark_reconciling(self, cd_id: int) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE cluster_deployments
                SET reconcile_status = 'reconciling', updated_at = NOW()
                WHERE id = $1
                """,
                cd_id,
            )

    async def mark_reconciled(
        self, cd_id: int, generation: int, message: str, next_delay: int
    ) -> None:
        """Record a successful reconciliation and schedule the next resync."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE cluster_deployments
                SET reconcile_status = $2,
                    status_message = $3,
                    retry_count = 0,
                    observed_generation = GREATEST(observed_generation, $5),
                    last_reconcile_time = NOW(),
                    next_reconcile_time = NOW() + INTERVAL '1 second' * $4
                WHERE id = $1
                """,
                cd_id,
                ReconcileStatus.READY.value,
                message,
                next_delay,
                generation,
            )

    async def mark_failed(
        self,
        cd_id: int,
        generation: int,
        message: str,
        retryable: bool = True,
        base_delay: int = 60,
        max_delay: int = 3600,
        jitter_factor: float = 0.1,
    ) -> None:
        """
        Record a failed reconciliation.

        Retryable failures are rescheduled with exponential backoff and
        jitter; fatal ones wait until the record's generation changes.

        Args:
            cd_id: The ClusterDeployment ID
            generation: Generation that was reconciled
            message: Failure message
            retryable: Whether to schedule a retry
            base_delay: Base delay in seconds
            max_delay: Maximum delay in seconds
            jitter_factor: Jitter factor ±X
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE cluster_deployments
                SET reconcile_status = $2,
                    status_message = $3,
                    retry_count = retry_count + 1,
                    observed_generation = GREATEST(observed_generation, $8),
                    last_reconcile_time = NOW(),
                    next_reconcile_time = CASE
                        WHEN $4::boolean THEN NOW() + (
                            INTERVAL '1 second' * LEAST(
                                $5 * POWER(2, LEAST(retry_count, 10)),
                                $6
                            ) * (1 + (random() * 2 - 1) * $7)
                        )
                        ELSE NULL
                    END
                WHERE id = $1
                """,
                cd_id,
                ReconcileStatus.FAILED.value,
                message,
                retryable,
                base_delay,
                max_delay,
                jitter_factor,
                generation,
            )

    async def reset_stale_reconciling(self) -> int:
        """
        Return records stuck in 'reconciling' to 'pending'.

        Called at startup: a crash mid-reconcile leaves the status behind.
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                UPDATE cluster_deployments
                SET reconcile_status = 'pending', next_reconcile_time = NOW()
                WHERE reconcile_status = 'reconciling'
                RETURNING id
                """
            )
            if rows:
                logger.info(f"Reset {len(rows)} stale reconciling record(s)")
            return len(rows)

    async def mark_for_reconciliation(self, namespace: str, name: str) -> bool:
        """Manually trigger reconciliation for a ClusterDeployment."""
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                """
                UPDATE cluster_deployments
                SET next_reconcile_time = NOW()
                WHERE namespace = $1 AND name = $2
                RETURNING id
                """,
                namespace,
                name,
            )
            return result is not None

    # ==================== Secret Methods ====================

    async def get_secret(self, namespace: str, name: str) -> Optional[Secret]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM secrets WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if not row:
                return None
            return Secret(
                name=row["name"],
                namespace=row["namespace"],
                data=_loads(row["data"], {}),
            )

    async def put_secret(self, secret: Secret) -> None:
        """Create or replace a Secret."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO secrets (namespace, name, data)
                VALUES ($1, $2, $3)
                ON CONFLICT (namespace, name) DO UPDATE SET data = EXCLUDED.data
                """,
                secret.namespace,
                secret.name,
                json.dumps(secret.data),
            )

    # ==================== SyncSet Methods ====================

    async def get_sync_set(self, namespace: str, name: str) -> Optional[SyncSet]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM sync_sets WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if not row:
                return None
            return self._parse_sync_set_row(row)

    async def list_sync_sets(self, namespace: str) -> List[SyncSet]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM sync_sets WHERE namespace = $1 ORDER BY name",
                namespace,
            )
            return [self._parse_sync_set_row(row) for row in rows]

    async def create_sync_set(self, sync_set: SyncSet) -> SyncSet:
        """
        Create a SyncSet.

        Raises:
            ConflictError: If a SyncSet with the same name already exists.
        """
        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO sync_sets
                        (namespace, name, cluster_deployment_refs, resources)
                    VALUES ($1, $2, $3, $4)
                    RETURNING *
                    """,
                    sync_set.namespace,
                    sync_set.name,
                    json.dumps(sync_set.cluster_deployment_refs),
                    json.dumps(sync_set.resources),
                )
            except asyncpg.UniqueViolationError as e:
                raise ConflictError(
                    f"SyncSet {sync_set.namespace}/{sync_set.name} already exists"
                ) from e

        logger.info(f"Created SyncSet {sync_set.namespace}/{sync_set.name}")
        return self._parse_sync_set_row(row)

    async def update_sync_set(self, sync_set: SyncSet) -> SyncSet:
        """
        Replace the refs and resources of a SyncSet.

        Raises:
            ConflictError: If the SyncSet changed since it was read.
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE sync_sets
                SET cluster_deployment_refs = $3,
                    resources = $4,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE namespace = $1 AND name = $2 AND resource_version = $5
                RETURNING *
                """,
                sync_set.namespace,
                sync_set.name,
                json.dumps(sync_set.cluster_deployment_refs),
                json.dumps(sync_set.resources),
                sync_set.resource_version,
            )
            if not row:
                raise ConflictError(
                    f"SyncSet {sync_set.namespace}/{sync_set.name} was modified "
                    f"or deleted"
                )

        logger.info(f"Updated SyncSet {sync_set.namespace}/{sync_set.name}")
        return self._parse_sync_set_row(row)

    async def delete_sync_set(self, namespace: str, name: str) -> bool:
        """Delete a SyncSet. Returns False if it did not exist."""
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                "DELETE FROM sync_sets WHERE namespace = $1 AND name = $2 RETURNING id",
                namespace,
                name,
            )
            if result:
                logger.info(f"Deleted SyncSet {namespace}/{name}")
                return True
            return False

    # ==================== Row Parsing ====================

    def _parse_cluster_deployment_row(self, row: asyncpg.Record) -> ClusterDeployment:
        """Convert a cluster_deployments row, decoding its JSON columns."""
        result = dict(row)
        result["labels"] = _loads(result.get("labels"), {})
        result["finalizers"] = _loads(result.get("finalizers"), [])
        return ClusterDeployment.from_row(result)

    def _parse_sync_set_row(self, row: asyncpg.Record) -> SyncSet:
        result = dict(row)
        result["cluster_deployment_refs"] = _loads(
            result.get("cluster_deployment_refs"), []
        )
        result["resources"] = _loads(result.get("resources"), [])
        return SyncSet.from_row(result)
