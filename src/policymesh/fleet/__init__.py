"""
Fleet Distribution

Cluster registry, cluster transport and staged policy rollouts with
automatic rollback.
"""

from .registry import (
    ClusterRegistry,
    Cluster,
    ClusterHealth,
    ClusterStatus,
    ClusterSelector,
    PolicyProfile,
)
from .client import ClusterClient, HealthReport, InMemoryClusterClient
from .rollout import (
    RolloutPlan,
    RolloutPhase,
    RolloutState,
    PhaseStatus,
    PolicySetChange,
    Baseline,
    Transition,
    policy_set_id,
)
from .distributor import PolicyDistributor

__all__ = [
    "ClusterRegistry",
    "Cluster",
    "ClusterHealth",
    "ClusterStatus",
    "ClusterSelector",
    "PolicyProfile",
    "ClusterClient",
    "HealthReport",
    "InMemoryClusterClient",
    "RolloutPlan",
    "RolloutPhase",
    "RolloutState",
    "PhaseStatus",
    "PolicySetChange",
    "Baseline",
    "Transition",
    "policy_set_id",
    "PolicyDistributor",
]
