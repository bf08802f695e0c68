"""Tests for policy and evaluation models."""

import json

import pytest

from policymesh.exceptions import ValidationError
from policymesh.governance import (
    Decision,
    EnforcementAction,
    EvaluationContext,
    EvaluationResult,
    FailurePolicy,
    LabelSelectorRequirement,
    Mutation,
    Policy,
    Severity,
    load_policies,
)

POLICY_YAML = """
id: require-team-label
name: Require team label
severity: high
dependsOn: [base-metadata]
failurePolicy: fail-open
enforcementAction: deny
match:
  kinds: [Deployment, Pod]
  namespaces: ["prod-*"]
rules:
  - id: has-team
    message: every workload needs a team label
    body:
      when:
        - field: labels.team
          operator: absent
"""


class TestSeverity:
    def test_rank_order(self):
        ranks = [s.rank for s in (Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW, Severity.INFO)]
        assert ranks == sorted(ranks)

    def test_at_least(self):
        assert Severity.CRITICAL.at_least(Severity.HIGH)
        assert Severity.HIGH.at_least("high")
        assert not Severity.LOW.at_least(Severity.MEDIUM)


class TestPolicy:
    def test_from_yaml_accepts_camel_case(self):
        policy = Policy.from_yaml(POLICY_YAML)
        assert policy.id == "require-team-label"
        assert policy.severity == Severity.HIGH
        assert policy.depends_on == ("base-metadata",)
        assert policy.failure_policy == FailurePolicy.FAIL_OPEN
        assert policy.enforcement_action == EnforcementAction.DENY
        assert policy.match.namespaces == ("prod-*",)
        assert policy.rules[0].body["when"][0]["operator"] == "absent"
        assert policy.version == 0

    def test_defaults(self):
        policy = Policy(id="p", name="P")
        assert policy.failure_policy == FailurePolicy.FAIL_CLOSED
        assert policy.enforcement_action == EnforcementAction.DENY
        assert policy.severity == Severity.MEDIUM
        assert policy.terminal is False

    def test_policy_is_frozen(self):
        policy = Policy(id="p", name="P")
        with pytest.raises(Exception):
            policy.name = "changed"

    def test_duplicate_dependencies_are_collapsed(self):
        policy = Policy(id="p", name="P", depends_on=["a", "b", "a"])
        assert policy.depends_on == ("a", "b")

    def test_self_dependency_rejected(self):
        with pytest.raises(ValidationError):
            Policy.from_dict({"id": "p", "name": "P", "dependsOn": ["p"]})

    def test_duplicate_rule_ids_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            Policy.from_dict({
                "id": "p",
                "name": "P",
                "rules": [{"id": "r"}, {"id": "r"}],
            })
        assert exc_info.value.errors

    def test_unknown_severity_rejected(self):
        with pytest.raises(ValidationError):
            Policy.from_dict({"id": "p", "name": "P", "severity": "apocalyptic"})

    def test_malformed_yaml(self):
        with pytest.raises(ValidationError):
            Policy.from_yaml("id: [unclosed")

    def test_non_mapping_document(self):
        with pytest.raises(ValidationError):
            Policy.from_yaml("- just\n- a list\n")

    def test_from_json(self):
        policy = Policy.from_json(json.dumps({"id": "p", "name": "P", "severity": "low"}))
        assert policy.severity == Severity.LOW

    def test_yaml_round_trip(self):
        policy = Policy.from_yaml(POLICY_YAML)
        assert Policy.from_yaml(policy.to_yaml()) == policy

    def test_content_ignores_version(self):
        policy = Policy(id="p", name="P")
        assert policy.content() == policy.model_copy(update={"version": 7}).content()

    def test_nested_camel_case_keys(self):
        policy = Policy.from_yaml(
            "id: p\nname: P\n"
            "match:\n"
            "  kinds: [Pod]\n"
            "  labelSelector:\n"
            "    - {key: env, operator: In, values: [prod]}\n"
        )
        assert policy.match.label_selector == (
            LabelSelectorRequirement(key="env", operator="In", values=("prod",)),
        )

    def test_snake_case_keys_still_accepted(self):
        policy = Policy.from_dict({
            "id": "p",
            "name": "P",
            "failure_policy": "fail-open",
            "match": {"label_selector": [{"key": "env", "operator": "Exists"}]},
        })
        assert policy.failure_policy == FailurePolicy.FAIL_OPEN
        assert policy.match.label_selector[0].operator == "Exists"

    @pytest.mark.parametrize(
        "document",
        [
            {"id": "p", "name": "P", "seververity": "high"},
            {"id": "p", "name": "P", "match": {"labelSelectors": [{"key": "env", "operator": "Exists"}]}},
            {"id": "p", "name": "P", "rules": [{"id": "r", "bdy": {}}]},
            {"id": "p", "name": "P", "match": {"labelSelector": [{"key": "env", "op": "Exists"}]}},
        ],
    )
    def test_unknown_keys_rejected(self, document):
        with pytest.raises(ValidationError):
            Policy.from_dict(document)


class TestLabelSelectorRequirement:
    def test_in_requires_values(self):
        with pytest.raises(Exception):
            LabelSelectorRequirement(key="tier", operator="In")

    def test_exists_takes_no_values(self):
        with pytest.raises(Exception):
            LabelSelectorRequirement(key="tier", operator="Exists", values=("a",))


class TestLoadPolicies:
    def test_load_directory(self, tmp_path):
        (tmp_path / "team.yaml").write_text(POLICY_YAML)
        (tmp_path / "bundle.yml").write_text(
            "id: a\nname: A\n---\nid: b\nname: B\n"
        )
        (tmp_path / "c.json").write_text(json.dumps({"id": "c", "name": "C"}))
        (tmp_path / "README.md").write_text("not a policy")

        policies = load_policies(tmp_path)

        assert sorted(p.id for p in policies) == ["a", "b", "c", "require-team-label"]

    def test_invalid_document_raises(self, tmp_path):
        (tmp_path / "bad.yaml").write_text("name: missing id\n")
        with pytest.raises(ValidationError):
            load_policies(tmp_path)


class TestEvaluationContext:
    def test_as_document(self, make_context):
        context = make_context(labels={"app": "api", "team": "payments"})
        doc = context.as_document()
        assert doc["cluster"] == "prod-eu-1"
        assert doc["kind"] == "Pod"
        assert doc["labels"]["team"] == "payments"
        assert doc["object"]["spec"]["containers"][0]["image"] == "api:1.4"

    def test_from_admission_request(self):
        review = {
            "traceId": "trace-123",
            "request": {
                "uid": "705ab4f5-6393-11e8-b7cc-42010a800002",
                "kind": {"group": "apps", "version": "v1", "kind": "Deployment"},
                "operation": "UPDATE",
                "namespace": "payments",
                "name": "api",
                "object": {"metadata": {"name": "api", "labels": {"team": "payments"}}},
            },
        }
        context = EvaluationContext.from_admission_request(review, cluster_id="prod-eu-1")
        assert context.request_id == "705ab4f5-6393-11e8-b7cc-42010a800002"
        assert context.trace_id == "trace-123"
        assert context.operation == "UPDATE"
        assert context.resource.kind == "Deployment"
        assert context.resource.labels == {"team": "payments"}

    def test_from_admission_request_without_request(self):
        with pytest.raises(ValidationError):
            EvaluationContext.from_admission_request({}, cluster_id="c")

    def test_from_admission_request_without_kind(self):
        with pytest.raises(ValidationError):
            EvaluationContext.from_admission_request({"request": {"object": {}}}, cluster_id="c")

    def test_delete_review_reads_old_object(self):
        review = {
            "request": {
                "kind": {"kind": "Pod"},
                "operation": "DELETE",
                "namespace": "payments",
                "object": None,
                "oldObject": {"metadata": {"name": "api-7f9c", "labels": {"env": "prod"}}},
            },
        }
        context = EvaluationContext.from_admission_request(review, cluster_id="prod-eu-1")
        assert context.operation == "DELETE"
        assert context.resource.name == "api-7f9c"
        assert context.resource.labels == {"env": "prod"}

    @pytest.mark.parametrize(
        "request_body",
        [
            {"kind": {"kind": "Pod"}, "object": "not-a-mapping"},
            {"kind": {"kind": "Pod"}, "object": ["a", "list"]},
            {"kind": {"kind": "Pod"}, "object": {"metadata": "nope"}},
        ],
    )
    def test_non_mapping_object_rejected(self, request_body):
        with pytest.raises(ValidationError):
            EvaluationContext.from_admission_request({"request": request_body}, cluster_id="c")


class TestEvaluationResult:
    def test_apply_mutations_copies_payload(self):
        payload = {"metadata": {"labels": {"app": "api"}}, "spec": {"replicas": 1}}
        result = EvaluationResult(
            decision=Decision.ALLOW_WITH_MUTATION,
            mutations=(
                Mutation(policy_id="p", rule_id="r", severity=Severity.LOW,
                         path="metadata.labels.team", value="platform"),
                Mutation(policy_id="p", rule_id="r2", severity=Severity.LOW,
                         path="spec.replicas", op="remove"),
                Mutation(policy_id="p", rule_id="r3", severity=Severity.LOW,
                         path="spec.securityContext.runAsNonRoot", value=True),
            ),
        )

        patched = result.apply_mutations(payload)

        assert patched["metadata"]["labels"] == {"app": "api", "team": "platform"}
        assert "replicas" not in patched["spec"]
        assert patched["spec"]["securityContext"] == {"runAsNonRoot": True}
        assert payload == {"metadata": {"labels": {"app": "api"}}, "spec": {"replicas": 1}}

    def test_allowed(self):
        assert EvaluationResult(decision=Decision.ALLOW).allowed
        assert EvaluationResult(decision=Decision.ALLOW_WITH_MUTATION).allowed
        assert not EvaluationResult(decision=Decision.DENY).allowed

    def test_to_response(self):
        response = EvaluationResult(decision=Decision.DENY).to_response()
        assert response["allowed"] is False
        assert response["decision"] == "deny"
        assert response["violations"] == []
