"""
Conflict Resolver

Reconciles the findings of several policies into one decision:

1. A ``deny`` violation at least as severe as the deny threshold
   (``high`` by default) overrides every warn/mutate outcome. The
   decision is ``deny`` and all mutations are superseded.
2. Mutations that target the same field path compete; the one from the
   most severe (lowest rank, i.e. most specific) policy wins, judged by
   the policy's severity rather than any rule-level override, ties broken
   by policy id, rule id, then content. Losers are recorded as superseded.
3. Otherwise the request is allowed, as ``allow-with-mutation`` when
   accepted mutations remain.

Resolution is a pure function of its inputs and its output is put in a
canonical order, so resolving an already-resolved result is a no-op.
"""

from __future__ import annotations

from typing import Iterable, Optional

from .models import (
    Decision,
    EnforcementAction,
    EvaluationResult,
    Mutation,
    PolicyWarning,
    Severity,
    SupersededMutation,
    Violation,
)


def _finding_key(item: Violation | PolicyWarning) -> tuple:
    return (item.severity.rank, item.policy_id, item.rule_id, item.message, item.model_dump_json())


def _mutation_key(m: Mutation) -> tuple:
    return ((m.policy_severity or m.severity).rank, m.policy_id, m.rule_id, m.model_dump_json())


def _dedupe(items: Iterable) -> list:
    unique = []
    for item in items:
        if item not in unique:
            unique.append(item)
    return unique


class ConflictResolver:
    """Pure, deterministic reconciliation of multi-policy outcomes."""

    def __init__(self, deny_threshold: Severity | str = Severity.HIGH) -> None:
        self.deny_threshold = Severity(deny_threshold)

    def is_blocking(self, violation: Violation) -> bool:
        """True if the violation alone is enough to deny the request."""
        return (
            violation.enforcement_action == EnforcementAction.DENY
            and violation.severity.at_least(self.deny_threshold)
        )

    def resolve(
        self,
        violations: Iterable[Violation] = (),
        warnings: Iterable[PolicyWarning] = (),
        mutations: Iterable[Mutation] = (),
        superseded: Iterable[SupersededMutation] = (),
        *,
        fingerprint: Optional[str] = None,
        evaluated_policies: Iterable[str] = (),
        errors: Iterable[str] = (),
    ) -> EvaluationResult:
        violations = sorted(_dedupe(violations), key=_finding_key)
        warnings = sorted(_dedupe(warnings), key=_finding_key)
        dropped = _dedupe(superseded)

        accepted: list[Mutation] = []
        denied = any(self.is_blocking(v) for v in violations)
        if denied:
            dropped.extend(
                SupersededMutation(mutation=m, reason="denied") for m in _dedupe(mutations)
            )
        else:
            by_path: dict[str, list[Mutation]] = {}
            for mutation in _dedupe(mutations):
                by_path.setdefault(mutation.path, []).append(mutation)
            for path in sorted(by_path):
                contenders = sorted(by_path[path], key=_mutation_key)
                winner = contenders[0]
                accepted.append(winner)
                dropped.extend(
                    SupersededMutation(
                        mutation=loser, reason="conflict", superseded_by=winner.policy_id
                    )
                    for loser in contenders[1:]
                )

        if denied:
            decision = Decision.DENY
        elif accepted:
            decision = Decision.ALLOW_WITH_MUTATION
        else:
            decision = Decision.ALLOW

        dropped = sorted(
            _dedupe(dropped),
            key=lambda s: (s.mutation.path, _mutation_key(s.mutation), s.reason),
        )
        return EvaluationResult(
            decision=decision,
            violations=tuple(violations),
            warnings=tuple(warnings),
            mutations=tuple(accepted),
            superseded=tuple(dropped),
            fingerprint=fingerprint,
            evaluated_policies=tuple(evaluated_policies),
            errors=tuple(errors),
        )

    def resolve_result(self, result: EvaluationResult) -> EvaluationResult:
        """Resolve an existing result again. Idempotent."""
        return self.resolve(
            result.violations,
            result.warnings,
            result.mutations,
            result.superseded,
            fingerprint=result.fingerprint,
            evaluated_policies=result.evaluated_policies,
            errors=result.errors,
        )
