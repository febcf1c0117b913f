"""
Reconciler Base - Request/result types and the reconciler interface.

A reconciler is invoked at least once per relevant change to a
ClusterDeployment, with no ordering guarantee across clusters.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ReconcileRequest:
    """Identifies the ClusterDeployment to reconcile."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class ReconcileResult:
    """Result from a reconciler's reconcile() call."""

    success: bool = False
    message: str = ""
    requeue_after: Optional[int] = None
    error: Optional[Exception] = None
    action: Optional[str] = None

    @property
    def retryable(self) -> bool:
        """A failure the trigger source should requeue."""
        return not self.success and self.requeue_after is not None


class ReconcilerPlugin(ABC):
    """
    Abstract base class for reconcilers.

    Implementations must be safe to invoke again after a crash at any
    point, and must hold no state between invocations.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this reconciler."""
        pass

    @abstractmethod
    async def reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        """
        Reconcile a single ClusterDeployment.

        Args:
            request: Namespace and name of the ClusterDeployment.

        Returns:
            ReconcileResult indicating success/failure and whether to requeue.
        """
        pass
