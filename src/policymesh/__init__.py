"""
PolicyMesh - Policy Admission and Progressive Distribution

Governance · Distribution · Audit

PolicyMesh decides whether resource changes are admitted against a
versioned set of policies, and rolls policy changes out across a fleet of
clusters in canary, partial and full phases with automatic rollback.

Version: 0.1.0
"""

__version__ = "0.1.0"

# Admission governance
from .governance import (
    AdmissionEvaluator,
    AuditLog,
    AuditRecord,
    ConflictResolver,
    Decision,
    DependencyResolver,
    EnforcementAction,
    EvaluationCache,
    EvaluationContext,
    EvaluationResult,
    FailurePolicy,
    MatchPredicate,
    Policy,
    PolicyStore,
    PolicyVersion,
    ResourceDescriptor,
    Rule,
    RuleEvaluator,
    ConditionRuleEvaluator,
    Severity,
    load_policies,
)

# Fleet distribution
from .fleet import (
    Cluster,
    ClusterClient,
    ClusterRegistry,
    InMemoryClusterClient,
    PolicyDistributor,
    PolicyProfile,
    PolicySetChange,
    RolloutPlan,
    RolloutState,
)

from .config import PolicyMeshConfig
from .exceptions import (
    PolicyMeshError,
    ValidationError,
    CycleError,
    RuleEvaluatorError,
    ClusterUnreachableError,
    RolloutThresholdExceeded,
)

__all__ = [
    "__version__",
    "AdmissionEvaluator",
    "AuditLog",
    "AuditRecord",
    "ConflictResolver",
    "Decision",
    "DependencyResolver",
    "EnforcementAction",
    "EvaluationCache",
    "EvaluationContext",
    "EvaluationResult",
    "FailurePolicy",
    "MatchPredicate",
    "Policy",
    "PolicyStore",
    "PolicyVersion",
    "ResourceDescriptor",
    "Rule",
    "RuleEvaluator",
    "ConditionRuleEvaluator",
    "Severity",
    "load_policies",
    "Cluster",
    "ClusterClient",
    "ClusterRegistry",
    "InMemoryClusterClient",
    "PolicyDistributor",
    "PolicyProfile",
    "PolicySetChange",
    "RolloutPlan",
    "RolloutState",
    "PolicyMeshConfig",
    "PolicyMeshError",
    "ValidationError",
    "CycleError",
    "RuleEvaluatorError",
    "ClusterUnreachableError",
    "RolloutThresholdExceeded",
]
