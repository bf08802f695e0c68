"""
Cluster Client

Transport contract the distributor uses to push policy sets to clusters
and to poll their health. ``InMemoryClusterClient`` simulates a fleet for
tests, demos and dry runs.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional, Union

from pydantic import BaseModel, Field

from policymesh.exceptions import ClusterUnreachableError

from .registry import Cluster, ClusterHealth

logger = logging.getLogger(__name__)


class HealthReport(BaseModel):
    """What a cluster reports during a validation window."""

    cluster_id: str
    reachable: bool = True
    health: ClusterHealth = ClusterHealth.HEALTHY
    evaluations: int = Field(default=0, ge=0)
    errors: int = Field(default=0, ge=0)
    critical_violations: int = Field(default=0, ge=0, description="New critical violations")

    @property
    def failure_rate(self) -> float:
        """Fraction of evaluations that errored or produced new critical violations."""
        if not self.evaluations:
            return 0.0
        return min(1.0, (self.errors + self.critical_violations) / self.evaluations)

    @property
    def healthy(self) -> bool:
        return self.reachable and self.health in (ClusterHealth.HEALTHY, ClusterHealth.UNKNOWN)


class ClusterClient(ABC):
    """Applies policy sets to clusters and reports their health."""

    @abstractmethod
    async def apply(self, cluster: Cluster, versions: dict[str, int], set_id: str) -> None:
        """
        Make ``versions`` the policy set running on ``cluster``.

        Must be idempotent: re-applying the running set is a no-op.

        Raises:
            ClusterUnreachableError: If the cluster cannot be reached.
        """

    @abstractmethod
    async def health(self, cluster: Cluster) -> HealthReport:
        """Poll the cluster's current health and evaluation statistics."""


HealthSource = Union[HealthReport, Callable[[Optional[str]], HealthReport]]


class InMemoryClusterClient(ClusterClient):
    """
    Simulated fleet.

    Failures and health are scripted per cluster:
    - ``fail_applies(cluster_id, times)`` makes the next ``times`` applies
      raise ``ClusterUnreachableError`` (``None`` = forever).
    - ``set_health(cluster_id, report_or_factory)`` controls what polls
      return; a factory receives the cluster's running set id.
    """

    def __init__(self) -> None:
        self.running: dict[str, tuple[str, dict[str, int]]] = {}
        self.apply_calls: dict[str, int] = {}
        self.applied_sets: dict[str, list[str]] = {}
        self._failures: dict[str, Optional[int]] = {}
        self._health: dict[str, HealthSource] = {}

    def fail_applies(self, cluster_id: str, times: Optional[int] = None) -> None:
        self._failures[cluster_id] = times

    def set_health(self, cluster_id: str, source: HealthSource) -> None:
        self._health[cluster_id] = source

    def running_set(self, cluster_id: str) -> Optional[str]:
        entry = self.running.get(cluster_id)
        return entry[0] if entry else None

    async def apply(self, cluster: Cluster, versions: dict[str, int], set_id: str) -> None:
        self.apply_calls[cluster.id] = self.apply_calls.get(cluster.id, 0) + 1
        if cluster.id in self._failures:
            remaining = self._failures[cluster.id]
            if remaining is None or remaining > 0:
                if remaining is not None:
                    self._failures[cluster.id] = remaining - 1
                raise ClusterUnreachableError(cluster.id, f"connection to {cluster.endpoint} refused")
            del self._failures[cluster.id]

        if self.running_set(cluster.id) == set_id:
            return
        self.running[cluster.id] = (set_id, dict(versions))
        self.applied_sets.setdefault(cluster.id, []).append(set_id)
        logger.debug("Applied policy set %s to %s", set_id, cluster.id)

    async def health(self, cluster: Cluster) -> HealthReport:
        source = self._health.get(cluster.id)
        if source is None:
            return HealthReport(cluster_id=cluster.id)
        if isinstance(source, HealthReport):
            return source
        return source(self.running_set(cluster.id))
