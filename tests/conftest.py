"""Shared fixtures for the PolicyMesh test suite."""

import pytest

from policymesh.governance import (
    EvaluationContext,
    Policy,
    PolicyStore,
    ResourceDescriptor,
    Rule,
)


def kind_rule(rule_id="r1", kind="Pod", **kwargs):
    """A condition rule that matches every resource of ``kind``."""
    return Rule(
        id=rule_id,
        body={"when": [{"field": "kind", "operator": "eq", "value": kind}]},
        **kwargs,
    )


@pytest.fixture
def make_policy():
    """Factory for small policies with sensible defaults."""

    def _make(policy_id, *, rules=None, **kwargs):
        kwargs.setdefault("name", policy_id.replace("-", " ").title())
        return Policy(
            id=policy_id,
            rules=tuple(rules) if rules is not None else (kind_rule(),),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_context():
    """Factory for admission requests against a pod."""

    def _make(
        cluster_id="prod-eu-1",
        kind="Pod",
        namespace="payments",
        labels=None,
        payload=None,
        operation="CREATE",
        **kwargs,
    ):
        return EvaluationContext(
            cluster_id=cluster_id,
            operation=operation,
            resource=ResourceDescriptor(
                kind=kind,
                name="api-7f9c",
                namespace=namespace,
                labels=labels or {"app": "api"},
                payload=payload or {"spec": {"containers": [{"name": "api", "image": "api:1.4"}]}},
            ),
            **kwargs,
        )

    return _make


@pytest.fixture
def store():
    return PolicyStore()
