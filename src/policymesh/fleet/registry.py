"""
Cluster Registry

Inventory of target clusters, the policy profile assigned to each, and the
policy-set version each one currently runs. Cluster entries are frozen and
replaced on every change, so readers always see a consistent entry.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from policymesh.exceptions import DistributionError, ValidationError

logger = logging.getLogger(__name__)


class ClusterHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"
    UNKNOWN = "unknown"


class ClusterStatus(str, Enum):
    READY = "ready"
    UPDATING = "updating"
    UPDATE_FAILED = "update-failed"


class PolicyProfile(BaseModel):
    """A named set of policies assigned to clusters."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    policy_ids: tuple[str, ...] = ()
    description: Optional[str] = None


class Cluster(BaseModel):
    """Entry in the cluster registry."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    endpoint: str = Field(..., description="Reachable endpoint reference")
    profile: Optional[str] = None
    labels: dict[str, str] = Field(default_factory=dict)

    # What is running on the cluster: policy id -> version
    applied_versions: dict[str, int] = Field(default_factory=dict)
    applied_set_id: Optional[str] = None

    health: ClusterHealth = ClusterHealth.UNKNOWN
    status: ClusterStatus = ClusterStatus.READY
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ClusterSelector(BaseModel):
    """Selects clusters by explicit id, label equality and/or profile."""

    model_config = ConfigDict(frozen=True)

    cluster_ids: tuple[str, ...] = ()
    labels: dict[str, str] = Field(default_factory=dict)
    profile: Optional[str] = None

    def matches(self, cluster: Cluster) -> bool:
        if self.cluster_ids and cluster.id not in self.cluster_ids:
            return False
        if self.profile is not None and cluster.profile != self.profile:
            return False
        return all(cluster.labels.get(k) == v for k, v in self.labels.items())


class ClusterRegistry:
    """
    Cluster Registry.

    Maintains every target cluster with its:
    - Endpoint and labels
    - Assigned policy profile
    - Applied policy versions, health and update status
    """

    def __init__(self) -> None:
        self._clusters: dict[str, Cluster] = {}
        self._profiles: dict[str, PolicyProfile] = {}
        self._lock = threading.Lock()

    # ── profiles ───────────────────────────────────────────────

    def register_profile(self, profile: PolicyProfile) -> None:
        """Add or replace a policy profile."""
        with self._lock:
            self._profiles[profile.name] = profile

    def get_profile(self, name: str) -> Optional[PolicyProfile]:
        return self._profiles.get(name)

    def policy_ids_for(self, cluster_id: str) -> Optional[list[str]]:
        """
        Policy ids in scope for a cluster.

        Returns None (every policy) for unknown clusters and clusters
        without a profile, so it can be used as an admission scope.
        """
        cluster = self._clusters.get(cluster_id)
        if cluster is None or cluster.profile is None:
            return None
        profile = self._profiles.get(cluster.profile)
        if profile is None:
            return None
        return list(profile.policy_ids)

    # ── clusters ───────────────────────────────────────────────

    def register(self, cluster: Cluster) -> None:
        """
        Register a new cluster.

        Raises:
            ValidationError: If the cluster is already registered or its
                profile is unknown.
        """
        with self._lock:
            if cluster.id in self._clusters:
                raise ValidationError(f"Cluster {cluster.id} is already registered")
            if cluster.profile is not None and cluster.profile not in self._profiles:
                raise ValidationError(f"Unknown policy profile '{cluster.profile}'")
            self._clusters[cluster.id] = cluster
        logger.info("Registered cluster %s (profile=%s)", cluster.id, cluster.profile)

    def deregister(self, cluster_id: str) -> bool:
        with self._lock:
            return self._clusters.pop(cluster_id, None) is not None

    def get(self, cluster_id: str) -> Optional[Cluster]:
        return self._clusters.get(cluster_id)

    def require(self, cluster_id: str) -> Cluster:
        cluster = self._clusters.get(cluster_id)
        if cluster is None:
            raise DistributionError(f"Unknown cluster '{cluster_id}'")
        return cluster

    def list_clusters(self, selector: Optional[ClusterSelector] = None) -> list[Cluster]:
        """Clusters matching ``selector`` (all when None), ordered by id."""
        clusters = sorted(self._clusters.values(), key=lambda c: c.id)
        if selector is None:
            return clusters
        return [c for c in clusters if selector.matches(c)]

    def assign_profile(self, cluster_id: str, profile: str) -> Cluster:
        if profile not in self._profiles:
            raise ValidationError(f"Unknown policy profile '{profile}'")
        return self._update(cluster_id, profile=profile)

    def record_applied(
        self,
        cluster_id: str,
        versions: dict[str, int],
        set_id: Optional[str],
    ) -> Cluster:
        """Record the policy versions now running on a cluster."""
        return self._update(
            cluster_id,
            applied_versions=dict(versions),
            applied_set_id=set_id,
            status=ClusterStatus.READY,
        )

    def set_health(self, cluster_id: str, health: ClusterHealth) -> Cluster:
        return self._update(cluster_id, health=health)

    def set_status(self, cluster_id: str, status: ClusterStatus) -> Cluster:
        return self._update(cluster_id, status=status)

    def count(self, status: Optional[ClusterStatus] = None) -> int:
        clusters: Iterable[Cluster] = self._clusters.values()
        if status is None:
            return len(self._clusters)
        return sum(1 for c in clusters if c.status == status)

    def _update(self, cluster_id: str, **changes) -> Cluster:
        with self._lock:
            cluster = self._clusters.get(cluster_id)
            if cluster is None:
                raise DistributionError(f"Unknown cluster '{cluster_id}'")
            updated = cluster.model_copy(
                update={**changes, "updated_at": datetime.now(timezone.utc)}
            )
            self._clusters[cluster_id] = updated
        return updated
