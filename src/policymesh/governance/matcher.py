"""
Predicate Matching

Decides whether a policy's match predicate selects an admission request.
Matching is pure: it reads the predicate and the context, nothing else.

Semantics of ``LabelSelectorMatcher`` (the default):

- Every non-empty field of the predicate must match (logical AND).
  An empty field matches everything.
- ``kinds``: exact, case-sensitive comparison with the resource kind.
  The entry ``"*"`` matches any kind.
- ``namespaces``: shell-style globs (``fnmatch``) against the resource
  namespace. Cluster-scoped resources (no namespace) only match when
  ``namespaces`` is empty.
- ``clusters``: shell-style globs against the request's cluster id.
- ``operations``: case-insensitive membership of the request operation.
- ``labels``: every key must be present with exactly the given value.
- ``label_selector``: each requirement must hold.
  ``In``: key present and value in ``values``.
  ``NotIn``: key absent, or value not in ``values``.
  ``Exists``: key present. ``DoesNotExist``: key absent.
"""

from __future__ import annotations

import fnmatch
from abc import ABC, abstractmethod
from typing import Mapping

from .models import EvaluationContext, LabelSelectorRequirement, MatchPredicate


class PredicateMatcher(ABC):
    """Contract for pluggable predicate matchers."""

    @abstractmethod
    def matches(self, predicate: MatchPredicate, context: EvaluationContext) -> bool:
        """Return True if ``predicate`` selects the request in ``context``."""


class LabelSelectorMatcher(PredicateMatcher):
    """Equality plus set-based label selector matching."""

    def matches(self, predicate: MatchPredicate, context: EvaluationContext) -> bool:
        resource = context.resource

        if predicate.kinds and "*" not in predicate.kinds:
            if resource.kind not in predicate.kinds:
                return False

        if predicate.namespaces:
            if resource.namespace is None:
                return False
            if not any(fnmatch.fnmatchcase(resource.namespace, p) for p in predicate.namespaces):
                return False

        if predicate.clusters:
            if not any(fnmatch.fnmatchcase(context.cluster_id, p) for p in predicate.clusters):
                return False

        if predicate.operations:
            if context.operation.upper() not in {op.upper() for op in predicate.operations}:
                return False

        labels = resource.labels
        for key, value in predicate.labels.items():
            if labels.get(key) != value:
                return False

        return all(requirement_holds(req, labels) for req in predicate.label_selector)


def requirement_holds(req: LabelSelectorRequirement, labels: Mapping[str, str]) -> bool:
    """Evaluate one set-based label requirement."""
    present = req.key in labels
    if req.operator == "Exists":
        return present
    if req.operator == "DoesNotExist":
        return not present
    if req.operator == "In":
        return present and labels[req.key] in req.values
    if req.operator == "NotIn":
        return not present or labels[req.key] not in req.values
    return False


DEFAULT_MATCHER = LabelSelectorMatcher()
