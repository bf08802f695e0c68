"""
Admission Evaluator

Decides whether an admission request is allowed, denied or mutated.

Order of work for one request:
1. Fingerprint the request together with the (policy id, version) pairs
   in scope for its cluster.
2. Serve from the evaluation cache when possible.
3. Select the policies whose match predicate selects the request.
4. Order them by dependency.
5. Run the rule evaluator for each, honouring each policy's failure policy.
6. Reconcile the findings with the conflict resolver, cache, audit.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from policymesh.config import PolicyMeshConfig
from policymesh.exceptions import CycleError, RuleEvaluatorError, ValidationError
from policymesh.observability.metrics import PolicyMetrics

from .audit import AuditLog
from .cache import EvaluationCache
from .conflict import ConflictResolver
from .matcher import DEFAULT_MATCHER, PredicateMatcher
from .models import (
    EnforcementAction,
    EvaluationContext,
    EvaluationResult,
    FailurePolicy,
    Mutation,
    Policy,
    PolicyWarning,
    RuleOutcome,
    Severity,
    Violation,
)
from .resolver import DependencyResolver
from .rule_evaluator import ConditionRuleEvaluator, RuleEvaluator
from .store import PolicySnapshot, PolicyStore

logger = logging.getLogger(__name__)

# Returns the policy ids in scope for a cluster, or None for every policy
PolicyScope = Callable[[str], Optional[Iterable[str]]]

RULE_EVALUATOR_ERROR = "rule-evaluator-error"
DEPENDENCY_CYCLE = "dependency-cycle"


def compute_fingerprint(context: EvaluationContext, policies: Iterable[Policy]) -> str:
    """
    Deterministic cache key for a request against a policy set.

    Covers the resource descriptor, operation and cluster, plus the id and
    version of every policy in scope. Request id, trace id and timestamp
    are excluded.
    """
    material = {
        "cluster": context.cluster_id,
        "operation": context.operation,
        "resource": context.resource.model_dump(mode="json"),
        "policies": sorted([p.id, p.version] for p in policies),
    }
    canonical = json.dumps(material, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


class AdmissionEvaluator:
    """
    Synchronous, thread-safe admission evaluation.

    Shared state is limited to the policy store's snapshot pointer and the
    copy-on-write evaluation cache, so concurrent evaluations never wait
    on each other.
    """

    def __init__(
        self,
        store: PolicyStore,
        rule_evaluator: Optional[RuleEvaluator] = None,
        *,
        cache: Optional[EvaluationCache] = None,
        audit: Optional[AuditLog] = None,
        metrics: Optional[PolicyMetrics] = None,
        matcher: Optional[PredicateMatcher] = None,
        resolver: Optional[DependencyResolver] = None,
        conflict_resolver: Optional[ConflictResolver] = None,
        scope: Optional[PolicyScope] = None,
        config: Optional[PolicyMeshConfig] = None,
    ) -> None:
        config = config or PolicyMeshConfig()
        self._store = store
        self._rule_evaluator = rule_evaluator or ConditionRuleEvaluator()
        self._cache = cache if cache is not None else EvaluationCache(
            ttl_seconds=config.cache_ttl_seconds,
            max_entries=config.cache_max_entries,
        )
        self._audit = audit
        self._metrics = metrics
        self._matcher = matcher or DEFAULT_MATCHER
        self._resolver = resolver or DependencyResolver()
        self._conflicts = conflict_resolver or ConflictResolver(config.deny_severity_threshold)
        self._scope = scope
        store.subscribe(self._cache.on_policy_version)

    @property
    def cache(self) -> EvaluationCache:
        return self._cache

    def evaluate(
        self,
        context: EvaluationContext | dict[str, Any],
        *,
        use_cache: bool = True,
    ) -> EvaluationResult:
        """
        Evaluate an admission request.

        Args:
            context: The request, or a mapping that validates as one.
            use_cache: Read and populate the evaluation cache.

        Raises:
            ValidationError: If the request is malformed.
        """
        started = time.perf_counter()
        context = self._validate(context)
        snapshot = self._store.snapshot()
        scoped = self._scoped_policies(snapshot, context.cluster_id)
        fingerprint = compute_fingerprint(context, scoped)

        generations = None
        if use_cache:
            cached = self._cache.get(fingerprint)
            if cached is not None:
                self._finish(context, cached, True, 0, started)
                return cached
            generations = self._cache.generations_for(p.id for p in scoped)

        result, invocations, cacheable = self._compute(context, scoped, fingerprint)

        if use_cache and cacheable:
            self._cache.put(fingerprint, result, generations=generations)
        self._finish(context, result, False, invocations, started)
        return result

    def evaluate_many(
        self,
        contexts: Iterable[EvaluationContext],
        max_workers: Optional[int] = None,
    ) -> list[EvaluationResult]:
        """Evaluate a batch concurrently, returning results in input order."""
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            return list(pool.map(self.evaluate, contexts))

    def fingerprint(self, context: EvaluationContext) -> str:
        """Fingerprint ``context`` against the current snapshot."""
        snapshot = self._store.snapshot()
        return compute_fingerprint(context, self._scoped_policies(snapshot, context.cluster_id))

    # ── internals ──────────────────────────────────────────────

    @staticmethod
    def _validate(context: EvaluationContext | dict[str, Any]) -> EvaluationContext:
        if isinstance(context, EvaluationContext):
            return context
        if not isinstance(context, dict):
            raise ValidationError(
                f"Expected an evaluation context, got {type(context).__name__}"
            )
        try:
            return EvaluationContext(**context)
        except PydanticValidationError as e:
            errors = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ]
            raise ValidationError("Malformed admission request", errors) from e

    def _scoped_policies(self, snapshot: PolicySnapshot, cluster_id: str) -> list[Policy]:
        ids = self._scope(cluster_id) if self._scope is not None else None
        if ids is None:
            return [snapshot.policies[pid] for pid in snapshot.policy_ids()]
        return [snapshot.policies[pid] for pid in sorted(set(ids)) if pid in snapshot.policies]

    def _compute(
        self,
        context: EvaluationContext,
        scoped: list[Policy],
        fingerprint: str,
    ) -> tuple[EvaluationResult, int, bool]:
        """Returns ``(result, rule evaluator invocations, cacheable)``."""
        applicable = [p for p in scoped if self._matcher.matches(p.match, context)]

        try:
            ordered = self._resolver.order(applicable)
        except CycleError as e:
            logger.error(
                "Denying request %s on cluster %s: %s",
                context.request_id, context.cluster_id, e,
            )
            if self._metrics is not None:
                self._metrics.record_dependency_cycle()
            violation = Violation(
                policy_id=e.cycle[0],
                rule_id=DEPENDENCY_CYCLE,
                severity=Severity.CRITICAL,
                message=str(e),
                enforcement_action=EnforcementAction.DENY,
            )
            result = self._conflicts.resolve(
                [violation], fingerprint=fingerprint, errors=[str(e)]
            )
            return result, 0, False

        violations: list[Violation] = []
        warnings: list[PolicyWarning] = []
        mutations: list[Mutation] = []
        errors: list[str] = []
        evaluated: list[str] = []
        invocations = 0
        degraded = False

        for policy in ordered:
            evaluated.append(policy.id)
            invocations += 1
            try:
                outcome = self._rule_evaluator.evaluate(policy, context)
            except Exception as e:
                # The evaluator failed to run; the policy's failure policy decides
                error = e if isinstance(e, RuleEvaluatorError) else RuleEvaluatorError(policy.id, str(e))
                degraded = True
                if self._metrics is not None:
                    self._metrics.record_rule_evaluator_failure(policy.id, policy.failure_policy.value)
                if policy.failure_policy == FailurePolicy.FAIL_OPEN:
                    logger.warning("Skipping fail-open policy %s: %s", policy.id, error)
                    warnings.append(PolicyWarning(
                        policy_id=policy.id,
                        rule_id=RULE_EVALUATOR_ERROR,
                        severity=policy.severity,
                        message=f"Policy skipped (fail-open): {error}",
                    ))
                    continue
                logger.warning("Fail-closed policy %s could not be evaluated: %s", policy.id, error)
                errors.append(str(error))
                outcome = RuleOutcome(violations=[Violation(
                    policy_id=policy.id,
                    rule_id=RULE_EVALUATOR_ERROR,
                    severity=Severity.CRITICAL,
                    message=f"Policy could not be evaluated (fail-closed): {error}",
                    enforcement_action=EnforcementAction.DENY,
                )])
                policy_violations = outcome.violations
            else:
                policy_violations = self._classify(policy, outcome, warnings, mutations)

            violations.extend(policy_violations)
            if self._stops_evaluation(policy, policy_violations):
                logger.debug(
                    "Terminal policy %s denied request %s; skipping remaining policies",
                    policy.id, context.request_id,
                )
                break

        result = self._conflicts.resolve(
            violations,
            warnings,
            mutations,
            fingerprint=fingerprint,
            evaluated_policies=evaluated,
            errors=errors,
        )
        # Results with evaluator failures are never cached
        return result, invocations, not degraded

    @staticmethod
    def _classify(
        policy: Policy,
        outcome: RuleOutcome,
        warnings: list[PolicyWarning],
        mutations: list[Mutation],
    ) -> list[Violation]:
        """Route a policy's outcome by its enforcement action; returns its violations."""
        warnings.extend(outcome.warnings)
        if policy.enforcement_action == EnforcementAction.MUTATE:
            mutations.extend(
                m if m.policy_severity == policy.severity
                else m.model_copy(update={"policy_severity": policy.severity})
                for m in outcome.mutations
            )
        elif outcome.mutations:
            logger.debug(
                "Ignoring %d mutation(s) from non-mutating policy %s",
                len(outcome.mutations), policy.id,
            )

        if policy.enforcement_action == EnforcementAction.DENY:
            return [
                v if v.enforcement_action == EnforcementAction.DENY
                else v.model_copy(update={"enforcement_action": EnforcementAction.DENY})
                for v in outcome.violations
            ]

        # warn and mutate policies never block: their violations are advisory
        warnings.extend(
            PolicyWarning(
                policy_id=v.policy_id,
                rule_id=v.rule_id,
                severity=v.severity,
                message=v.message,
            )
            for v in outcome.violations
        )
        return []

    @staticmethod
    def _stops_evaluation(policy: Policy, violations: list[Violation]) -> bool:
        if not policy.terminal or policy.enforcement_action != EnforcementAction.DENY:
            return False
        return any(v.severity.at_least(policy.severity) for v in violations)

    def _finish(
        self,
        context: EvaluationContext,
        result: EvaluationResult,
        cache_hit: bool,
        invocations: int,
        started: float,
    ) -> None:
        elapsed = time.perf_counter() - started
        if self._metrics is not None:
            self._metrics.record_evaluation(result.decision.value, cache_hit, elapsed)
        if self._audit is not None:
            self._audit.record_evaluation(
                context,
                result,
                cache_hit=cache_hit,
                rule_evaluations=invocations,
                duration_ms=elapsed * 1000,
            )
        logger.debug(
            "Request %s on %s: %s (cache_hit=%s, policies=%d, %.2fms)",
            context.request_id, context.cluster_id, result.decision.value,
            cache_hit, len(result.evaluated_policies), elapsed * 1000,
        )
