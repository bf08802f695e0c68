# Copyright (c) PolicyMesh Contributors. All rights reserved.
# Licensed under the MIT License.
"""Centralized exception hierarchy for PolicyMesh.

All PolicyMesh exceptions inherit from PolicyMeshError, enabling
consistent error handling across the admission and distribution paths.
"""

from typing import Optional, Sequence


class PolicyMeshError(Exception):
    """Base exception for all PolicyMesh errors."""


class ValidationError(PolicyMeshError):
    """A policy, request or rollout plan is malformed.

    Raised before evaluation or publication; never silently ignored.
    """

    def __init__(self, message: str, errors: Optional[Sequence[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [])


class GovernanceError(PolicyMeshError):
    """Errors related to policy evaluation."""


class CycleError(GovernanceError):
    """The dependency graph of an evaluation set is not a DAG."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class RuleEvaluatorError(GovernanceError):
    """A policy's rule evaluator failed to run (as opposed to reporting violations)."""

    def __init__(self, policy_id: str, message: str):
        self.policy_id = policy_id
        super().__init__(f"Rule evaluator failed for policy '{policy_id}': {message}")


class PolicyNotFoundError(GovernanceError):
    """A policy or policy version is not known to the store."""


class DistributionError(PolicyMeshError):
    """Errors related to policy distribution across clusters."""


class ClusterUnreachableError(DistributionError):
    """A cluster could not be reached; transient and retried with backoff."""

    def __init__(self, cluster_id: str, message: str = "cluster unreachable"):
        self.cluster_id = cluster_id
        super().__init__(f"{cluster_id}: {message}")


class RolloutThresholdExceeded(DistributionError):
    """A rollout phase breached its failure threshold; triggers rollback."""

    def __init__(self, plan_id: str, observed: float, threshold: float, reason: str = ""):
        self.plan_id = plan_id
        self.observed = observed
        self.threshold = threshold
        self.reason = reason
        detail = f" ({reason})" if reason else ""
        super().__init__(
            f"Rollout {plan_id} failure rate {observed:.2%} exceeds threshold "
            f"{threshold:.2%}{detail}"
        )


class RolloutCancelledError(DistributionError):
    """A rollout was cancelled by an operator before it finished."""

    def __init__(self, plan_id: str, reason: str = "cancelled"):
        self.plan_id = plan_id
        self.reason = reason
        super().__init__(f"Rollout {plan_id} cancelled: {reason}")


class InvalidTransitionError(DistributionError):
    """A rollout state transition is not allowed from the current state."""


class StorageError(PolicyMeshError):
    """Errors related to durable audit or policy storage."""


__all__ = [
    "PolicyMeshError",
    "ValidationError",
    "GovernanceError",
    "CycleError",
    "RuleEvaluatorError",
    "PolicyNotFoundError",
    "DistributionError",
    "ClusterUnreachableError",
    "RolloutThresholdExceeded",
    "RolloutCancelledError",
    "InvalidTransitionError",
    "StorageError",
]
