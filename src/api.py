"""
HTTP API - REST endpoints for ClusterDeployments and SyncSets.

Lets users create and label ClusterDeployments, request their deletion,
trigger reconciliation, and inspect the SyncSets the operator manages.
"""

import logging
import re
from datetime import datetime
from typing import Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, field_validator

from db import ConflictError
from models import (
    ClusterDeployment,
    PayloadDecodeError,
    Secret,
    SyncSet,
    decode_snitch_url,
)

logger = logging.getLogger(__name__)

# Kubernetes-style name pattern: lowercase alphanumeric, hyphens, max 63 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_NAME_LENGTH = 63
MAX_LABELS = 64


def validate_name_format(value: str, field_name: str) -> str:
    """Validate that a name follows Kubernetes naming conventions."""
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lowercase alphanumeric characters or '-', "
            f"must start and end with an alphanumeric character"
        )
    return value


def validate_labels(value: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    if value is not None and len(value) > MAX_LABELS:
        raise ValueError(f"labels cannot have more than {MAX_LABELS} entries")
    return value


class ClusterDeploymentCreate(BaseModel):
    """Request model for creating a ClusterDeployment."""

    name: str = Field(..., description="Cluster name")
    labels: Dict[str, str] = Field(default_factory=dict)
    installed: bool = Field(default=False)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "name")

    @field_validator("labels")
    @classmethod
    def validate_labels(cls, v: Dict[str, str]) -> Dict[str, str]:
        return validate_labels(v)


class ClusterDeploymentUpdate(BaseModel):
    """Request model for updating a ClusterDeployment. Labels are replaced."""

    labels: Optional[Dict[str, str]] = None
    installed: Optional[bool] = None

    @field_validator("labels")
    @classmethod
    def validate_labels(cls, v: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        return validate_labels(v)


class ClusterDeploymentResponse(BaseModel):
    """Response model for a ClusterDeployment."""

    name: str
    namespace: str
    labels: Dict[str, str]
    installed: bool
    finalizers: List[str]
    deletion_timestamp: Optional[datetime] = None
    resource_version: int
    generation: int

    @classmethod
    def from_record(cls, cd: ClusterDeployment) -> "ClusterDeploymentResponse":
        return cls(
            name=cd.name,
            namespace=cd.namespace,
            labels=cd.labels,
            installed=cd.installed,
            finalizers=cd.finalizers,
            deletion_timestamp=cd.deletion_timestamp,
            resource_version=cd.resource_version,
            generation=cd.generation,
        )


class SyncSetResponse(BaseModel):
    """Response model for a SyncSet. The embedded secret is not returned."""

    name: str
    namespace: str
    cluster_deployment_refs: List[str]
    snitch_url: Optional[str] = None

    @classmethod
    def from_record(cls, sync_set: SyncSet) -> "SyncSetResponse":
        try:
            snitch_url = decode_snitch_url(sync_set)
        except PayloadDecodeError:
            snitch_url = None
        return cls(
            name=sync_set.name,
            namespace=sync_set.namespace,
            cluster_deployment_refs=sync_set.cluster_deployment_refs,
            snitch_url=snitch_url,
        )


class SecretPut(BaseModel):
    """Request model for creating or replacing a Secret."""

    data: Dict[str, str] = Field(default_factory=dict)


class SecretResponse(BaseModel):
    """Response model for a Secret. Only key names are returned."""

    name: str
    namespace: str
    keys: List[str]


class HTTPAPI:
    """FastAPI application over the operator's store."""

    def __init__(self, db_manager, host: str = "0.0.0.0", port: int = 8000):
        self.host = host
        self.port = port
        self.server: Optional[uvicorn.Server] = None
        self._db_manager = db_manager
        self.app = FastAPI(
            title="Dead Man's Snitch Operator API",
            description="Manage ClusterDeployments monitored by Dead Man's Snitch",
            version="1.0.0",
        )
        self._setup_routes()

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes.

        - Health check: GET /
        - ClusterDeployments: /api/v1/namespaces/{namespace}/clusterdeployments
        - All ClusterDeployments: GET /api/v1/clusterdeployments
        - Reconciliation: POST .../clusterdeployments/{name}/reconcile
        - Status: GET .../clusterdeployments/{name}/status
        - SyncSets: GET /api/v1/namespaces/{namespace}/syncsets
        - Secrets: PUT /api/v1/namespaces/{namespace}/secrets/{name}
        """
        db = self._db_manager
        prefix = "/api/v1/namespaces/{namespace}/clusterdeployments"

        @self.app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "dms-operator"}

        @self.app.post(
            prefix, response_model=ClusterDeploymentResponse, status_code=201
        )
        async def create_cluster_deployment(
            namespace: str, body: ClusterDeploymentCreate
        ):
            """Create a ClusterDeployment."""
            try:
                validate_name_format(namespace, "namespace")
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            try:
                cd = await db.create_cluster_deployment(
                    namespace, body.name, labels=body.labels, installed=body.installed
                )
            except ConflictError as e:
                raise HTTPException(status_code=409, detail=str(e))
            return ClusterDeploymentResponse.from_record(cd)

        @self.app.get(
            "/api/v1/clusterdeployments",
            response_model=List[ClusterDeploymentResponse],
        )
        async def list_cluster_deployments(
            namespace: Optional[str] = None, limit: int = 100
        ):
            """List ClusterDeployments, optionally filtered by namespace."""
            cds = await db.list_cluster_deployments(namespace=namespace, limit=limit)
            return [ClusterDeploymentResponse.from_record(cd) for cd in cds]

        @self.app.get(prefix + "/{name}", response_model=ClusterDeploymentResponse)
        async def get_cluster_deployment(namespace: str, name: str):
            """Get a ClusterDeployment."""
            cd = await db.get_cluster_deployment(namespace, name)
            if cd is None:
                raise HTTPException(
                    status_code=404, detail="ClusterDeployment not found"
                )
            return ClusterDeploymentResponse.from_record(cd)

        @self.app.patch(prefix + "/{name}", response_model=ClusterDeploymentResponse)
        async def update_cluster_deployment(
            namespace: str, name: str, body: ClusterDeploymentUpdate
        ):
            """Replace labels and/or set the installed flag."""
            cd = await db.update_cluster_deployment(
                namespace, name, labels=body.labels, installed=body.installed
            )
            if cd is None:
                raise HTTPException(
                    status_code=404, detail="ClusterDeployment not found"
                )
            return ClusterDeploymentResponse.from_record(cd)

        @self.app.delete(prefix + "/{name}", status_code=202)
        async def delete_cluster_deployment(namespace: str, name: str):
            """Request deletion; cleanup finishes asynchronously."""
            if not await db.request_cluster_deployment_deletion(namespace, name):
                raise HTTPException(
                    status_code=404, detail="ClusterDeployment not found"
                )
            return {"message": f"ClusterDeployment {namespace}/{name} marked for deletion"}

        @self.app.post(prefix + "/{name}/reconcile", status_code=202)
        async def trigger_reconcile(namespace: str, name: str):
            """Trigger reconciliation of a ClusterDeployment."""
            if not await db.mark_for_reconciliation(namespace, name):
                raise HTTPException(
                    status_code=404, detail="ClusterDeployment not found"
                )
            return {"message": "Reconciliation triggered"}

        @self.app.get(prefix + "/{name}/status")
        async def get_reconcile_status(namespace: str, name: str):
            """Get the reconcile status of a ClusterDeployment."""
            status = await db.get_cluster_deployment_status(namespace, name)
            if status is None:
                raise HTTPException(
                    status_code=404, detail="ClusterDeployment not found"
                )
            return status

        @self.app.get(
            "/api/v1/namespaces/{namespace}/syncsets",
            response_model=List[SyncSetResponse],
        )
        async def list_sync_sets(namespace: str):
            """List SyncSets in a namespace."""
            sync_sets = await db.list_sync_sets(namespace)
            return [SyncSetResponse.from_record(ss) for ss in sync_sets]

        @self.app.put(
            "/api/v1/namespaces/{namespace}/secrets/{name}",
            response_model=SecretResponse,
        )
        async def put_secret(namespace: str, name: str, body: SecretPut):
            """Create or replace a Secret, e.g. the operator's API key."""
            try:
                validate_name_format(namespace, "namespace")
                validate_name_format(name, "name")
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            await db.put_secret(Secret(name=name, namespace=namespace, data=body.data))
            return SecretResponse(
                name=name, namespace=namespace, keys=sorted(body.data)
            )

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP API on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP API")
        if self.server:
            self.server.should_exit = True
