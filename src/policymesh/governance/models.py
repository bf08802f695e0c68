"""
Admission Domain Models

Policies, versions, evaluation requests and results.
Published objects are frozen: updates always produce new instances.
"""

from __future__ import annotations

import copy
import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from policymesh.exceptions import ValidationError


class Severity(str, Enum):
    """Severity levels. Lower rank means more severe."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: "Severity") -> bool:
        """True if this severity is as severe as ``other`` or more."""
        return self.rank <= Severity(other).rank


_SEVERITY_RANK = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
    Severity.INFO: 4,
}


class FailurePolicy(str, Enum):
    FAIL_OPEN = "fail-open"
    FAIL_CLOSED = "fail-closed"


class EnforcementAction(str, Enum):
    DENY = "deny"
    WARN = "warn"
    MUTATE = "mutate"


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ALLOW_WITH_MUTATION = "allow-with-mutation"


# Policy documents: unknown keys are errors, camelCase and snake_case both accepted
_DOCUMENT_CONFIG = ConfigDict(
    frozen=True,
    extra="forbid",
    alias_generator=to_camel,
    populate_by_name=True,
)


class LabelSelectorRequirement(BaseModel):
    """A set-based label requirement (``In``, ``NotIn``, ``Exists``, ``DoesNotExist``)."""

    model_config = _DOCUMENT_CONFIG

    key: str
    operator: Literal["In", "NotIn", "Exists", "DoesNotExist"]
    values: tuple[str, ...] = ()

    @model_validator(mode="after")
    def _check_values(self) -> "LabelSelectorRequirement":
        if self.operator in ("In", "NotIn") and not self.values:
            raise ValueError(f"operator {self.operator} requires values")
        if self.operator in ("Exists", "DoesNotExist") and self.values:
            raise ValueError(f"operator {self.operator} takes no values")
        return self


class MatchPredicate(BaseModel):
    """
    Declares which resources a policy applies to.

    Empty fields match everything. See ``policymesh.governance.matcher``
    for the exact semantics.
    """

    model_config = _DOCUMENT_CONFIG

    kinds: tuple[str, ...] = Field(default=(), description="Resource kinds; '*' matches any")
    namespaces: tuple[str, ...] = Field(default=(), description="Namespace globs")
    clusters: tuple[str, ...] = Field(default=(), description="Cluster id globs")
    labels: dict[str, str] = Field(default_factory=dict, description="Equality selector")
    label_selector: tuple[LabelSelectorRequirement, ...] = Field(default=())
    operations: tuple[str, ...] = Field(default=(), description="CREATE, UPDATE, DELETE, CONNECT")


class Rule(BaseModel):
    """
    A single rule inside a policy.

    ``body`` is opaque to the engine and handed to the rule evaluator as-is.
    """

    model_config = _DOCUMENT_CONFIG

    id: str = Field(..., min_length=1)
    description: Optional[str] = None
    severity: Optional[Severity] = Field(None, description="Defaults to the policy's severity")
    message: Optional[str] = None
    body: dict[str, Any] = Field(default_factory=dict)


class Policy(BaseModel):
    """
    A governance policy document.

    Policies are immutable once published; the store assigns ``version``.
    """

    model_config = _DOCUMENT_CONFIG

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    category: str = Field(default="general")
    severity: Severity = Field(default=Severity.MEDIUM)

    rules: tuple[Rule, ...] = Field(default=())
    depends_on: tuple[str, ...] = Field(default=())

    failure_policy: FailurePolicy = Field(default=FailurePolicy.FAIL_CLOSED)
    enforcement_action: EnforcementAction = Field(default=EnforcementAction.DENY)
    match: MatchPredicate = Field(default_factory=MatchPredicate)

    # Stop evaluating lower-priority policies once this one denies
    terminal: bool = False

    version: int = Field(default=0, ge=0, description="Current version pointer")

    @field_validator("depends_on")
    @classmethod
    def _dedupe_dependencies(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(dict.fromkeys(value))

    @model_validator(mode="after")
    def _check_integrity(self) -> "Policy":
        if self.id in self.depends_on:
            raise ValueError(f"policy '{self.id}' cannot depend on itself")
        seen: set[str] = set()
        for rule in self.rules:
            if rule.id in seen:
                raise ValueError(f"duplicate rule id '{rule.id}'")
            seen.add(rule.id)
        return self

    def content(self) -> dict[str, Any]:
        """Version-independent content used for hashing."""
        return self.model_dump(mode="json", exclude={"version"})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Policy":
        """Build a policy from a definition document, raising ``ValidationError``."""
        if not isinstance(data, dict):
            raise ValidationError("Policy definition must be a mapping")
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            errors = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ]
            raise ValidationError(
                f"Invalid policy '{data.get('id', '<unknown>')}'", errors
            ) from e

    @classmethod
    def from_yaml(cls, yaml_content: str) -> "Policy":
        """Load a policy from YAML."""
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ValidationError(f"Malformed policy YAML: {e}") from e
        return cls.from_dict(data)

    @classmethod
    def from_json(cls, json_content: str) -> "Policy":
        """Load a policy from JSON."""
        try:
            data = json.loads(json_content)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Malformed policy JSON: {e}") from e
        return cls.from_dict(data)

    def to_yaml(self) -> str:
        """Export the policy as YAML."""
        return yaml.dump(self.model_dump(mode="json", exclude_none=True), sort_keys=False)


def load_policies(directory: str | Path) -> list[Policy]:
    """Load all YAML and JSON policy documents from a directory."""
    directory = Path(directory)
    policies: list[Policy] = []
    for path in sorted(directory.glob("*.yaml")) + sorted(directory.glob("*.yml")):
        with open(path, "r") as f:
            # A file may hold several documents separated by '---'
            for data in yaml.safe_load_all(f):
                if data:
                    policies.append(Policy.from_dict(data))
    for path in sorted(directory.glob("*.json")):
        policies.append(Policy.from_json(path.read_text()))
    return policies


class PolicyVersion(BaseModel):
    """A published version of a policy."""

    model_config = ConfigDict(frozen=True)

    policy_id: str
    version: int = Field(..., ge=1)
    content_hash: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    author: str = "system"
    predecessor: Optional[int] = None


class ResourceDescriptor(BaseModel):
    """The resource under admission. ``payload`` is opaque to the engine."""

    model_config = ConfigDict(frozen=True)

    kind: str = Field(..., min_length=1)
    name: Optional[str] = None
    namespace: Optional[str] = None
    labels: dict[str, str] = Field(default_factory=dict)
    payload: dict[str, Any] = Field(default_factory=dict)


class EvaluationContext(BaseModel):
    """An admission request. Immutable for the duration of an evaluation."""

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(default_factory=lambda: f"req_{uuid.uuid4().hex[:16]}")
    cluster_id: str = Field(..., min_length=1)
    resource: ResourceDescriptor
    operation: Literal["CREATE", "UPDATE", "DELETE", "CONNECT"] = "CREATE"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    trace_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    def as_document(self) -> dict[str, Any]:
        """Plain-dict view handed to condition-based rule evaluators."""
        return {
            "cluster": self.cluster_id,
            "operation": self.operation,
            "kind": self.resource.kind,
            "name": self.resource.name,
            "namespace": self.resource.namespace,
            "labels": dict(self.resource.labels),
            "object": self.resource.payload,
        }

    @classmethod
    def from_admission_request(cls, review: dict[str, Any], cluster_id: str) -> "EvaluationContext":
        """
        Build a context from an admission review document.

        Expects ``{"request": {"uid", "kind": {"kind"}, "operation",
        "namespace", "name", "object"}}``; labels are read from
        ``object.metadata.labels``, or ``oldObject`` when there is no
        ``object`` (DELETE).
        """
        request = review.get("request") if isinstance(review, dict) else None
        if not isinstance(request, dict):
            raise ValidationError("Admission review has no 'request' object")
        kind = request.get("kind")
        if isinstance(kind, dict):
            kind = kind.get("kind")
        obj = request.get("object")
        if obj is None:
            # DELETE reviews carry the resource only as oldObject
            obj = request.get("oldObject")
        obj = {} if obj is None else obj
        if not isinstance(obj, dict):
            raise ValidationError("Admission request object must be a mapping")
        metadata = obj.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValidationError("Admission request object metadata must be a mapping")
        data = {
            "cluster_id": cluster_id,
            "operation": request.get("operation", "CREATE"),
            "resource": {
                "kind": kind or "",
                "name": request.get("name") or metadata.get("name"),
                "namespace": request.get("namespace") or metadata.get("namespace"),
                "labels": metadata.get("labels") or {},
                "payload": obj,
            },
        }
        if request.get("uid"):
            data["request_id"] = request["uid"]
        if review.get("traceId"):
            data["trace_id"] = review["traceId"]
        try:
            return cls(**data)
        except PydanticValidationError as e:
            errors = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ]
            raise ValidationError("Malformed admission request", errors) from e


class Violation(BaseModel):
    """A rule a request breaks."""

    model_config = ConfigDict(frozen=True)

    policy_id: str
    rule_id: str
    severity: Severity
    message: str
    enforcement_action: EnforcementAction = EnforcementAction.DENY


class PolicyWarning(BaseModel):
    """An advisory finding that does not block the request."""

    model_config = ConfigDict(frozen=True)

    policy_id: str
    rule_id: str
    severity: Severity
    message: str


class Mutation(BaseModel):
    """A proposed change to a field of the admitted object."""

    model_config = ConfigDict(frozen=True)

    policy_id: str
    rule_id: str
    severity: Severity
    policy_severity: Optional[Severity] = Field(
        None, description="Severity of the owning policy; ranks competing mutations"
    )
    path: str = Field(..., min_length=1, description="Dotted path into the object")
    op: Literal["set", "remove"] = "set"
    value: Any = None


class SupersededMutation(BaseModel):
    """A mutation dropped during conflict resolution."""

    model_config = ConfigDict(frozen=True)

    mutation: Mutation
    reason: Literal["denied", "conflict"]
    superseded_by: Optional[str] = Field(None, description="Winning policy id for conflicts")


class RuleOutcome(BaseModel):
    """What a rule evaluator reports for one policy."""

    violations: list[Violation] = Field(default_factory=list)
    warnings: list[PolicyWarning] = Field(default_factory=list)
    mutations: list[Mutation] = Field(default_factory=list)


class EvaluationResult(BaseModel):
    """
    Final admission decision.

    Contains no wall-clock data so identical evaluations compare equal
    and serialize byte-for-byte identically.
    """

    model_config = ConfigDict(frozen=True)

    decision: Decision
    violations: tuple[Violation, ...] = ()
    warnings: tuple[PolicyWarning, ...] = ()
    mutations: tuple[Mutation, ...] = ()
    superseded: tuple[SupersededMutation, ...] = ()
    fingerprint: Optional[str] = None
    evaluated_policies: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()

    @property
    def allowed(self) -> bool:
        return self.decision != Decision.DENY

    def apply_mutations(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of ``payload`` with the accepted mutations applied."""
        patched = copy.deepcopy(payload)
        for mutation in self.mutations:
            _apply_path(patched, mutation.path.split("."), mutation.op, mutation.value)
        return patched

    def to_response(self) -> dict[str, Any]:
        """Serialize as an admission response body."""
        return {
            "allowed": self.allowed,
            "decision": self.decision.value,
            "violations": [v.model_dump(mode="json") for v in self.violations],
            "warnings": [w.model_dump(mode="json") for w in self.warnings],
            "mutations": [m.model_dump(mode="json") for m in self.mutations],
        }


def _apply_path(target: dict[str, Any], parts: list[str], op: str, value: Any) -> None:
    for part in parts[:-1]:
        nxt = target.get(part)
        if not isinstance(nxt, dict):
            if op == "remove":
                return
            nxt = {}
            target[part] = nxt
        target = nxt
    if op == "remove":
        target.pop(parts[-1], None)
    else:
        target[parts[-1]] = copy.deepcopy(value)
