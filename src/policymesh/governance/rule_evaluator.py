"""
Rule Evaluators

The admission engine treats rule bodies as opaque and hands each policy
to a ``RuleEvaluator``. Any implementation (embedded interpreter,
subprocess, remote service) can be plugged in; a failure to run must
surface as an exception, never as an empty outcome.

``ConditionRuleEvaluator`` is a small reference implementation whose rule
bodies look like::

    body:
      when:
        - field: object.spec.containers.*.securityContext.privileged
          operator: eq
          value: true
      patch:
        path: metadata.labels.team
        value: platform
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from policymesh.exceptions import RuleEvaluatorError

from .models import (
    EnforcementAction,
    EvaluationContext,
    Mutation,
    Policy,
    Rule,
    RuleOutcome,
    Violation,
)


class RuleEvaluator(ABC):
    """Capability that classifies a request against one policy's rules."""

    @abstractmethod
    def evaluate(self, policy: Policy, context: EvaluationContext) -> RuleOutcome:
        """
        Evaluate ``policy`` against ``context``.

        Raises:
            RuleEvaluatorError: If the evaluator cannot run. Any other
                exception is treated the same way by the admission path.
        """


class CallableRuleEvaluator(RuleEvaluator):
    """Adapts a plain function ``(policy, context) -> RuleOutcome``."""

    def __init__(self, func: Callable[[Policy, EvaluationContext], RuleOutcome]):
        self._func = func

    def evaluate(self, policy: Policy, context: EvaluationContext) -> RuleOutcome:
        return self._func(policy, context)


class ConditionOperator(str, Enum):
    """Supported condition operators."""

    eq = "eq"
    ne = "ne"
    gt = "gt"
    gte = "gte"
    lt = "lt"
    lte = "lte"
    in_ = "in"
    not_in = "not_in"
    matches = "matches"
    contains = "contains"
    exists = "exists"
    absent = "absent"


class Condition(BaseModel):
    """A single ``field operator value`` test over the request document."""

    field: str = Field(..., min_length=1, description="Dotted path; '*' fans out over lists")
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, document: dict) -> bool:
        candidates = resolve_field(document, self.field)
        if self.operator == ConditionOperator.absent:
            return not candidates
        if self.operator == ConditionOperator.exists:
            return bool(candidates)
        return any(self._apply(actual) for actual in candidates)

    def _apply(self, actual: Any) -> bool:
        op, expected = self.operator, self.value
        if actual is None:
            return False
        try:
            if op == ConditionOperator.eq:
                return actual == expected
            if op == ConditionOperator.ne:
                return actual != expected
            if op == ConditionOperator.gt:
                return actual > expected
            if op == ConditionOperator.gte:
                return actual >= expected
            if op == ConditionOperator.lt:
                return actual < expected
            if op == ConditionOperator.lte:
                return actual <= expected
            if op == ConditionOperator.in_:
                return actual in expected
            if op == ConditionOperator.not_in:
                return actual not in expected
            if op == ConditionOperator.matches:
                return bool(re.search(str(expected), str(actual)))
            if op == ConditionOperator.contains:
                return expected in actual
        except TypeError:
            return False
        return False


class Patch(BaseModel):
    path: str = Field(..., min_length=1)
    op: Literal["set", "remove"] = "set"
    value: Any = None


class ConditionRuleBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    when: list[Condition] = Field(default_factory=list, description="All must hold")
    any_of: list[Condition] = Field(
        default_factory=list, alias="any", description="At least one must hold"
    )
    patch: list[Patch] = Field(default_factory=list)
    message: Optional[str] = None

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> "ConditionRuleBody":
        data = dict(body)
        if isinstance(data.get("patch"), dict):
            data["patch"] = [data["patch"]]
        return cls(**data)

    def holds(self, document: dict) -> bool:
        if self.when and not all(c.evaluate(document) for c in self.when):
            return False
        if self.any_of and not any(c.evaluate(document) for c in self.any_of):
            return False
        return True


class ConditionRuleEvaluator(RuleEvaluator):
    """
    Evaluates ``when``/``any`` condition bodies.

    A matching rule yields a violation, or mutations when the rule has a
    ``patch`` and the policy's enforcement action is ``mutate``.
    """

    def evaluate(self, policy: Policy, context: EvaluationContext) -> RuleOutcome:
        document = context.as_document()
        outcome = RuleOutcome()
        for rule in policy.rules:
            body = self._parse(policy, rule)
            if not body.holds(document):
                continue
            severity = rule.severity or policy.severity
            if policy.enforcement_action == EnforcementAction.MUTATE and body.patch:
                for patch in body.patch:
                    outcome.mutations.append(Mutation(
                        policy_id=policy.id,
                        rule_id=rule.id,
                        severity=severity,
                        policy_severity=policy.severity,
                        path=patch.path,
                        op=patch.op,
                        value=patch.value,
                    ))
                continue
            outcome.violations.append(Violation(
                policy_id=policy.id,
                rule_id=rule.id,
                severity=severity,
                message=(
                    body.message
                    or rule.message
                    or rule.description
                    or f"Policy '{policy.name}' rule '{rule.id}' matched"
                ),
                enforcement_action=policy.enforcement_action,
            ))
        return outcome

    @staticmethod
    def _parse(policy: Policy, rule: Rule) -> ConditionRuleBody:
        try:
            return ConditionRuleBody.from_body(rule.body)
        except PydanticValidationError as e:
            raise RuleEvaluatorError(
                policy.id, f"rule '{rule.id}' has an invalid body: {e.error_count()} error(s)"
            ) from e


def resolve_field(document: Any, path: str) -> list[Any]:
    """
    Resolve a dotted path, returning every value it reaches.

    Numeric segments index into lists; ``*`` fans out over list items or
    mapping values. Missing segments yield no values.
    """
    current = [document]
    for part in path.split("."):
        nxt: list[Any] = []
        for value in current:
            if part == "*":
                if isinstance(value, list):
                    nxt.extend(value)
                elif isinstance(value, dict):
                    nxt.extend(value.values())
            elif isinstance(value, dict):
                if part in value:
                    nxt.append(value[part])
            elif isinstance(value, list) and part.isdigit():
                index = int(part)
                if index < len(value):
                    nxt.append(value[index])
        current = nxt
    return current
