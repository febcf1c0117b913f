"""
Domain records - ClusterDeployments, Snitches, SyncSets and Secrets.

Also holds the naming conventions that tie a ClusterDeployment to the
snitch and SyncSet owned on its behalf.
"""

import base64
import binascii
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

# Labels on a ClusterDeployment
MANAGED_LABEL = "api.openshift.com/managed"
NOALERTS_LABEL = "api.openshift.com/noalerts"

# Marks that a snitch was created and must be cleaned up
FINALIZER = "dms.managed.openshift.io/deadmanssnitch"

SYNCSET_POSTFIX = "-dms"

# Secret delivered to the target cluster via the SyncSet
SNITCH_SECRET_NAME = "dms-secret"
SNITCH_SECRET_NAMESPACE = "openshift-monitoring"
KEY_SNITCH_URL = "SNITCH_URL"

# Operator secret holding the Dead Man's Snitch credentials
API_SECRET_NAME = "deadmanssnitch-api-key"
API_SECRET_KEY = "deadmanssnitch-api-key"
TAG_KEY = "hive-cluster-tag"


class PayloadDecodeError(Exception):
    """Raised when a SyncSet does not carry a readable snitch secret."""


@dataclass
class ClusterDeployment:
    """A managed cluster record."""

    name: str
    namespace: str
    labels: Dict[str, str] = field(default_factory=dict)
    installed: bool = False
    deletion_timestamp: Optional[datetime] = None
    finalizers: List[str] = field(default_factory=list)
    resource_version: int = 1
    generation: int = 1
    id: Optional[int] = None

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def has_label(self, key: str) -> bool:
        """Presence check only, the label value is not inspected."""
        return key in self.labels

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ClusterDeployment":
        return cls(
            id=row.get("id"),
            name=row["name"],
            namespace=row["namespace"],
            labels=row.get("labels") or {},
            installed=bool(row.get("installed")),
            deletion_timestamp=row.get("deletion_timestamp"),
            finalizers=list(row.get("finalizers") or []),
            resource_version=row.get("resource_version", 1),
            generation=row.get("generation", 1),
        )


class Snitch(BaseModel):
    """A Dead Man's Snitch check, as returned by the API."""

    token: str = ""
    name: str = ""
    check_in_url: str = ""
    status: str = ""
    tags: List[str] = Field(default_factory=list)
    interval: str = ""
    alert_type: str = ""
    href: str = ""
    notes: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"


@dataclass
class SyncSet:
    """Delivery artifact that applies embedded resources to a cluster."""

    name: str
    namespace: str
    cluster_deployment_refs: List[str] = field(default_factory=list)
    resources: List[Dict[str, Any]] = field(default_factory=list)
    resource_version: int = 1
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SyncSet":
        return cls(
            id=row.get("id"),
            name=row["name"],
            namespace=row["namespace"],
            cluster_deployment_refs=list(row.get("cluster_deployment_refs") or []),
            resources=list(row.get("resources") or []),
            resource_version=row.get("resource_version", 1),
        )


@dataclass
class Secret:
    """A plain secret record. Values are stored decoded."""

    name: str
    namespace: str
    data: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class OperatorCredential:
    """Dead Man's Snitch API key and the tag applied to created snitches."""

    api_key: str = field(repr=False)
    tag: str

    @classmethod
    def from_secret(cls, secret: Secret) -> "OperatorCredential":
        """
        Build the credential from the operator secret.

        Raises:
            ValueError: If the API key is missing from the secret.
        """
        api_key = secret.data.get(API_SECRET_KEY, "")
        if not api_key:
            raise ValueError(
                f"Secret {secret.namespace}/{secret.name} has no '{API_SECRET_KEY}' key"
            )
        return cls(api_key=api_key, tag=secret.data.get(TAG_KEY, ""))


class _ManifestMetadata(BaseModel):
    name: str
    namespace: str = ""


class _SecretManifest(BaseModel):
    apiVersion: Literal["v1"]
    kind: Literal["Secret"]
    metadata: _ManifestMetadata
    type: str = "Opaque"
    data: Dict[str, str] = Field(default_factory=dict)


def sync_set_name(cd: ClusterDeployment) -> str:
    """Name of the SyncSet owned by a cluster."""
    return f"{cd.name}{SYNCSET_POSTFIX}"


def snitch_name(cd: ClusterDeployment) -> str:
    """Name of the snitch owned by a cluster, qualified by its namespace."""
    return f"{cd.name}.{cd.namespace}"


def _b64(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


def build_sync_set(
    cd: ClusterDeployment, snitch: Snitch, credential: OperatorCredential
) -> SyncSet:
    """Build the SyncSet delivering a snitch's check-in URL to a cluster."""
    secret_manifest = {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": SNITCH_SECRET_NAME,
            "namespace": SNITCH_SECRET_NAMESPACE,
        },
        "type": "Opaque",
        "data": {
            KEY_SNITCH_URL: _b64(snitch.check_in_url),
            TAG_KEY: _b64(credential.tag),
        },
    }
    return SyncSet(
        name=sync_set_name(cd),
        namespace=cd.namespace,
        cluster_deployment_refs=[cd.name],
        resources=[secret_manifest],
    )


def decode_snitch_url(sync_set: SyncSet) -> str:
    """
    Extract the check-in URL embedded in a SyncSet.

    Resources that are not Secrets are skipped; the first snitch Secret wins.

    Raises:
        PayloadDecodeError: If no embedded Secret carries a decodable URL.
    """
    for raw in sync_set.resources:
        if not isinstance(raw, dict) or raw.get("kind") != "Secret":
            continue
        try:
            manifest = _SecretManifest.model_validate(raw)
        except ValidationError as e:
            raise PayloadDecodeError(
                f"SyncSet {sync_set.namespace}/{sync_set.name}: malformed Secret: {e}"
            ) from e
        encoded = manifest.data.get(KEY_SNITCH_URL)
        if encoded is None:
            continue
        try:
            return base64.b64decode(encoded, validate=True).decode()
        except (binascii.Error, UnicodeDecodeError) as e:
            raise PayloadDecodeError(
                f"SyncSet {sync_set.namespace}/{sync_set.name}: "
                f"{KEY_SNITCH_URL} is not valid base64"
            ) from e

    raise PayloadDecodeError(
        f"SyncSet {sync_set.namespace}/{sync_set.name} carries no {KEY_SNITCH_URL}"
    )


def owns_sync_set(cd: ClusterDeployment, sync_set: SyncSet) -> bool:
    """A SyncSet belongs to a cluster by derived name and back reference."""
    return (
        sync_set.namespace == cd.namespace
        and sync_set.name == sync_set_name(cd)
        and cd.name in sync_set.cluster_deployment_refs
    )
