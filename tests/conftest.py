"""Pytest configuration and fixtures."""

import copy
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from db import ConflictError
from models import (
    API_SECRET_KEY,
    FINALIZER,
    MANAGED_LABEL,
    TAG_KEY,
    ClusterDeployment,
    OperatorCredential,
    Secret,
    Snitch,
    SyncSet,
)

TEST_CLUSTER_NAME = "testCluster"
TEST_NAMESPACE = "testNamespace"
TEST_SNITCH_URL = "https://nosnch.in/12345"
TEST_SNITCH_TOKEN = "abcdefg"
TEST_TAG = "hive-test"
TEST_API_KEY = "abc123"
TEST_OTHER_SYNCSET_POSTFIX = "-something-else"


class InMemoryStore:
    """
    Store double with the same contract as DatabaseManager.

    Records are copied in and out so callers hold snapshots, and writes
    check resource_version the way the database does.
    """

    def __init__(self):
        self.cluster_deployments = {}
        self.sync_sets = {}
        self.secrets = {}
        self._next_id = 1

    def _id(self) -> int:
        self._next_id += 1
        return self._next_id

    def add_cluster_deployment(self, cd: ClusterDeployment) -> ClusterDeployment:
        cd = copy.deepcopy(cd)
        cd.id = cd.id or self._id()
        self.cluster_deployments[(cd.namespace, cd.name)] = cd
        return copy.deepcopy(cd)

    def add_sync_set(self, sync_set: SyncSet) -> None:
        sync_set = copy.deepcopy(sync_set)
        sync_set.id = sync_set.id or self._id()
        self.sync_sets[(sync_set.namespace, sync_set.name)] = sync_set

    async def get_cluster_deployment(self, namespace, name):
        cd = self.cluster_deployments.get((namespace, name))
        return copy.deepcopy(cd) if cd else None

    async def update_cluster_deployment(
        self, namespace, name, labels=None, installed=None
    ):
        cd = self.cluster_deployments.get((namespace, name))
        if cd is None:
            return None
        if labels is not None:
            cd.labels = dict(labels)
        if installed is not None:
            cd.installed = installed
        cd.resource_version += 1
        cd.generation += 1
        return copy.deepcopy(cd)

    async def request_cluster_deployment_deletion(self, namespace, name):
        cd = self.cluster_deployments.get((namespace, name))
        if cd is None:
            return False
        cd.deletion_timestamp = cd.deletion_timestamp or datetime.now(timezone.utc)
        cd.resource_version += 1
        cd.generation += 1
        self._delete_if_finalized(cd)
        return True

    async def add_finalizer(self, cd, finalizer):
        if cd.has_finalizer(finalizer):
            return
        self._write_finalizers(cd, cd.finalizers + [finalizer])

    async def remove_finalizer(self, cd, finalizer):
        if not cd.has_finalizer(finalizer):
            return
        self._write_finalizers(cd, [f for f in cd.finalizers if f != finalizer])

    def _write_finalizers(self, cd, finalizers):
        stored = self.cluster_deployments.get((cd.namespace, cd.name))
        if stored is None or stored.resource_version != cd.resource_version:
            raise ConflictError(f"ClusterDeployment {cd.namespace}/{cd.name} is stale")
        stored.finalizers = list(finalizers)
        stored.resource_version += 1
        cd.finalizers = list(finalizers)
        cd.resource_version = stored.resource_version
        self._delete_if_finalized(stored)

    def _delete_if_finalized(self, cd):
        if cd.deletion_timestamp is not None and not cd.finalizers:
            del self.cluster_deployments[(cd.namespace, cd.name)]

    async def get_secret(self, namespace, name):
        return copy.deepcopy(self.secrets.get((namespace, name)))

    async def get_sync_set(self, namespace, name):
        return copy.deepcopy(self.sync_sets.get((namespace, name)))

    async def list_sync_sets(self, namespace):
        return [
            copy.deepcopy(ss)
            for (ns, _), ss in sorted(self.sync_sets.items())
            if ns == namespace
        ]

    async def create_sync_set(self, sync_set):
        key = (sync_set.namespace, sync_set.name)
        if key in self.sync_sets:
            raise ConflictError(f"SyncSet {sync_set.namespace}/{sync_set.name} exists")
        self.add_sync_set(sync_set)
        return copy.deepcopy(self.sync_sets[key])

    async def update_sync_set(self, sync_set):
        key = (sync_set.namespace, sync_set.name)
        stored = self.sync_sets.get(key)
        if stored is None or stored.resource_version != sync_set.resource_version:
            raise ConflictError(f"SyncSet {sync_set.namespace}/{sync_set.name} is stale")
        stored.cluster_deployment_refs = list(sync_set.cluster_deployment_refs)
        stored.resources = copy.deepcopy(sync_set.resources)
        stored.resource_version += 1
        return copy.deepcopy(stored)

    async def delete_sync_set(self, namespace, name):
        return self.sync_sets.pop((namespace, name), None) is not None


class FakeMonitor:
    """
    Stateful Dead Man's Snitch double.

    New snitches start pending and turn healthy on their first check-in.
    Every method is an AsyncMock so calls can be counted.
    """

    def __init__(self):
        self.snitches = {}
        self._counter = 0
        self.create = AsyncMock(side_effect=self._create)
        self.delete = AsyncMock(side_effect=self._delete)
        self.find_snitches_by_name = AsyncMock(side_effect=self._find)
        self.check_in = AsyncMock(side_effect=self._check_in)

    async def _create(self, name, tags, interval="15_minute", alert_type="basic"):
        self._counter += 1
        token = f"token{self._counter}"
        snitch = Snitch(
            token=token,
            name=name,
            tags=list(tags),
            status="pending",
            interval=interval,
            alert_type=alert_type,
            check_in_url=f"https://nosnch.in/{token}",
        )
        self.snitches[token] = snitch
        return snitch.model_copy()

    async def _delete(self, token):
        return self.snitches.pop(token, None) is not None

    async def _find(self, name):
        return [s.model_copy() for s in self.snitches.values() if s.name == name]

    async def _check_in(self, snitch):
        stored = self.snitches.get(snitch.token)
        if stored is not None:
            stored.status = "healthy"


def make_cluster_deployment(
    labels=None, installed=True, finalizers=None, deleted=False
) -> ClusterDeployment:
    return ClusterDeployment(
        name=TEST_CLUSTER_NAME,
        namespace=TEST_NAMESPACE,
        labels={MANAGED_LABEL: "true"} if labels is None else labels,
        installed=installed,
        finalizers=[FINALIZER] if finalizers is None else finalizers,
        deletion_timestamp=datetime.now(timezone.utc) if deleted else None,
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def monitor():
    return FakeMonitor()


@pytest.fixture
def credential():
    return OperatorCredential(api_key=TEST_API_KEY, tag=TEST_TAG)


@pytest.fixture
def operator_secret():
    """The secret found in the operator namespace."""
    return Secret(
        name="deadmanssnitch-api-key",
        namespace="deadmanssnitch-operator",
        data={API_SECRET_KEY: TEST_API_KEY, TAG_KEY: TEST_TAG},
    )

