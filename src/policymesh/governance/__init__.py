"""
Admission Governance

Versioned policy store, dependency-ordered evaluation with conflict
resolution, a fingerprint-keyed evaluation cache and a hash-chained
audit log.
"""

from .models import (
    Severity,
    FailurePolicy,
    EnforcementAction,
    Decision,
    LabelSelectorRequirement,
    MatchPredicate,
    Rule,
    Policy,
    PolicyVersion,
    ResourceDescriptor,
    EvaluationContext,
    Violation,
    PolicyWarning,
    Mutation,
    SupersededMutation,
    RuleOutcome,
    EvaluationResult,
    load_policies,
)
from .store import PolicyStore, PolicySnapshot, content_hash
from .resolver import DependencyResolver, find_cycle
from .matcher import PredicateMatcher, LabelSelectorMatcher
from .rule_evaluator import (
    RuleEvaluator,
    CallableRuleEvaluator,
    ConditionRuleEvaluator,
    ConditionRuleBody,
    Condition,
    ConditionOperator,
    Patch,
)
from .conflict import ConflictResolver
from .cache import EvaluationCache, CacheStats
from .audit import AuditLog, AuditRecord, AuditSink, JsonlAuditSink
from .admission import AdmissionEvaluator, compute_fingerprint

__all__ = [
    "Severity",
    "FailurePolicy",
    "EnforcementAction",
    "Decision",
    "LabelSelectorRequirement",
    "MatchPredicate",
    "Rule",
    "Policy",
    "PolicyVersion",
    "ResourceDescriptor",
    "EvaluationContext",
    "Violation",
    "PolicyWarning",
    "Mutation",
    "SupersededMutation",
    "RuleOutcome",
    "EvaluationResult",
    "load_policies",
    "PolicyStore",
    "PolicySnapshot",
    "content_hash",
    "DependencyResolver",
    "find_cycle",
    "PredicateMatcher",
    "LabelSelectorMatcher",
    "RuleEvaluator",
    "CallableRuleEvaluator",
    "ConditionRuleEvaluator",
    "ConditionRuleBody",
    "Condition",
    "ConditionOperator",
    "Patch",
    "ConflictResolver",
    "EvaluationCache",
    "CacheStats",
    "AuditLog",
    "AuditRecord",
    "AuditSink",
    "JsonlAuditSink",
    "AdmissionEvaluator",
    "compute_fingerprint",
]
