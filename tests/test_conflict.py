"""Tests for conflict resolution."""

from hypothesis import given, settings
from hypothesis import strategies as st

from policymesh.governance import (
    ConflictResolver,
    Decision,
    EnforcementAction,
    Mutation,
    PolicyWarning,
    Severity,
    Violation,
)


def violation(pid, severity=Severity.HIGH, action=EnforcementAction.DENY, rule="r"):
    return Violation(
        policy_id=pid, rule_id=rule, severity=severity,
        message=f"{pid} says no", enforcement_action=action,
    )


def mutation(pid, path, value, severity=Severity.MEDIUM, rule="r"):
    return Mutation(policy_id=pid, rule_id=rule, severity=severity, path=path, value=value)


severities = st.sampled_from(list(Severity))
policy_ids = st.sampled_from(["alpha", "bravo", "charlie", "delta"])
paths = st.sampled_from(["metadata.labels.team", "spec.replicas", "spec.priority"])

violations = st.builds(
    violation,
    pid=policy_ids,
    severity=severities,
    action=st.sampled_from([EnforcementAction.DENY, EnforcementAction.WARN]),
    rule=st.sampled_from(["r1", "r2"]),
)
mutations = st.builds(
    mutation,
    pid=policy_ids,
    path=paths,
    value=st.integers(min_value=0, max_value=5),
    severity=severities,
    rule=st.sampled_from(["r1", "r2"]),
)
warnings = st.builds(
    PolicyWarning,
    policy_id=policy_ids,
    rule_id=st.just("w"),
    severity=severities,
    message=st.just("heads up"),
)


class TestConflictResolver:
    def test_no_findings_allows(self):
        result = ConflictResolver().resolve()
        assert result.decision == Decision.ALLOW
        assert result.allowed

    def test_blocking_violation_denies(self):
        result = ConflictResolver().resolve([violation("p", Severity.HIGH)])
        assert result.decision == Decision.DENY

    def test_violation_below_threshold_does_not_block(self):
        result = ConflictResolver().resolve([violation("p", Severity.MEDIUM)])
        assert result.decision == Decision.ALLOW
        assert len(result.violations) == 1

    def test_threshold_is_configurable(self):
        result = ConflictResolver(deny_threshold="medium").resolve([violation("p", Severity.MEDIUM)])
        assert result.decision == Decision.DENY

    def test_warn_violation_never_blocks(self):
        resolver = ConflictResolver()
        result = resolver.resolve([violation("p", Severity.CRITICAL, EnforcementAction.WARN)])
        assert result.decision == Decision.ALLOW

    def test_deny_supersedes_all_mutations(self):
        result = ConflictResolver().resolve(
            [violation("guard", Severity.CRITICAL)],
            mutations=[mutation("m1", "spec.replicas", 2), mutation("m2", "metadata.labels.a", "x")],
        )
        assert result.decision == Decision.DENY
        assert result.mutations == ()
        assert {s.reason for s in result.superseded} == {"denied"}
        assert len(result.superseded) == 2

    def test_most_severe_mutation_wins_path(self):
        result = ConflictResolver().resolve(mutations=[
            mutation("team-default", "metadata.labels.team", "unknown", Severity.LOW),
            mutation("team-platform", "metadata.labels.team", "platform", Severity.HIGH),
        ])
        assert result.decision == Decision.ALLOW_WITH_MUTATION
        assert [m.value for m in result.mutations] == ["platform"]
        assert len(result.superseded) == 1
        loser = result.superseded[0]
        assert loser.reason == "conflict"
        assert loser.superseded_by == "team-platform"
        assert loser.mutation.policy_id == "team-default"

    def test_equal_severity_tie_broken_by_policy_id(self):
        result = ConflictResolver().resolve(mutations=[
            mutation("zulu", "spec.replicas", 1),
            mutation("alpha", "spec.replicas", 9),
        ])
        assert result.mutations[0].policy_id == "alpha"

    def test_policy_severity_outranks_rule_override(self):
        result = ConflictResolver().resolve(mutations=[
            Mutation(policy_id="team-default", rule_id="r", severity=Severity.CRITICAL,
                     policy_severity=Severity.LOW, path="metadata.labels.team", value="unknown"),
            Mutation(policy_id="team-platform", rule_id="r", severity=Severity.MEDIUM,
                     policy_severity=Severity.HIGH, path="metadata.labels.team", value="platform"),
        ])
        assert [m.policy_id for m in result.mutations] == ["team-platform"]
        assert result.superseded[0].superseded_by == "team-platform"

    def test_distinct_paths_all_accepted(self):
        result = ConflictResolver().resolve(mutations=[
            mutation("a", "spec.replicas", 2),
            mutation("b", "metadata.labels.team", "x"),
        ])
        assert len(result.mutations) == 2
        assert result.superseded == ()

    def test_findings_deduplicated_and_ordered(self):
        v_low = violation("b", Severity.LOW)
        v_high = violation("a", Severity.HIGH)
        result = ConflictResolver().resolve([v_low, v_high, v_low])
        assert result.violations == (v_high, v_low)

    @given(
        vs=st.lists(violations, max_size=6),
        ws=st.lists(warnings, max_size=4),
        ms=st.lists(mutations, max_size=8),
    )
    @settings(max_examples=200)
    def test_resolution_is_idempotent(self, vs, ws, ms):
        resolver = ConflictResolver()
        once = resolver.resolve(vs, ws, ms, fingerprint="fp")
        assert resolver.resolve_result(once) == once

    @given(ms=st.lists(mutations, max_size=8))
    @settings(max_examples=150)
    def test_at_most_one_mutation_per_path(self, ms):
        result = ConflictResolver().resolve(mutations=ms)
        accepted_paths = [m.path for m in result.mutations]
        assert len(accepted_paths) == len(set(accepted_paths))
        assert len(result.mutations) + len(result.superseded) == len(set(ms))

    @given(vs=st.lists(violations, max_size=6), ms=st.lists(mutations, max_size=6))
    @settings(max_examples=100)
    def test_input_order_does_not_matter(self, vs, ms):
        resolver = ConflictResolver()
        assert resolver.resolve(vs, mutations=ms) == resolver.resolve(
            list(reversed(vs)), mutations=list(reversed(ms))
        )
