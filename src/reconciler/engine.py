"""
Reconciliation Engine - Pure decision logic for Dead Man's Snitch monitoring.

Maps a ClusterDeployment and a snapshot of its external footprint to the
action that brings the footprint in line. Nothing here performs I/O, and
nothing is remembered between passes: PROVISIONING and TEARING_DOWN are
recomputed from (finalizer, footprint) every time.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from models import (
    FINALIZER,
    MANAGED_LABEL,
    NOALERTS_LABEL,
    ClusterDeployment,
    Snitch,
    SyncSet,
)


class Action(Enum):
    """What a reconciliation pass has to do."""

    NOOP = "noop"
    PROVISION = "provision"
    TEARDOWN = "teardown"


@dataclass
class Footprint:
    """External state owned on behalf of one ClusterDeployment."""

    has_finalizer: bool = False
    sync_set: Optional[SyncSet] = None
    snitch_url: Optional[str] = None
    snitches: List[Snitch] = field(default_factory=list)

    @property
    def exists(self) -> bool:
        return self.has_finalizer or self.sync_set is not None or bool(self.snitches)


@dataclass
class Decision:
    """Outcome of decide()."""

    action: Action
    reason: str
    check_in: Optional[Snitch] = None


def is_monitorable(cd: ClusterDeployment) -> bool:
    """
    Whether a cluster should have a snitch.

    The no-alerts label disables monitoring by its presence alone.
    """
    return (
        not cd.is_deleting
        and cd.installed
        and cd.labels.get(MANAGED_LABEL) == "true"
        and not cd.has_label(NOALERTS_LABEL)
    )


def needs_observation(cd: ClusterDeployment) -> bool:
    """False when the record alone proves there is nothing to do."""
    return is_monitorable(cd) or cd.has_finalizer(FINALIZER)


def _matching_snitch(footprint: Footprint) -> Optional[Snitch]:
    if footprint.snitch_url is None:
        return None
    for snitch in footprint.snitches:
        if snitch.check_in_url == footprint.snitch_url:
            return snitch
    return None


def decide(cd: ClusterDeployment, footprint: Footprint) -> Decision:
    """Compute the action for one reconciliation pass."""
    if not is_monitorable(cd):
        if footprint.exists:
            reason = "deletion requested" if cd.is_deleting else "not monitorable"
            return Decision(Action.TEARDOWN, reason)
        return Decision(Action.NOOP, "not monitorable, nothing to clean up")

    if not footprint.exists:
        return Decision(Action.PROVISION, "monitorable, no snitch yet")

    if not footprint.has_finalizer:
        return Decision(Action.PROVISION, "finalizer missing")
    if footprint.sync_set is None:
        return Decision(Action.PROVISION, "SyncSet missing")

    snitch = _matching_snitch(footprint)
    if snitch is None:
        return Decision(Action.PROVISION, "SyncSet does not match a live snitch")

    return Decision(
        Action.NOOP,
        "in sync",
        check_in=snitch if snitch.is_pending else None,
    )
