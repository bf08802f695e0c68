"""Tests for dependency ordering."""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from policymesh.exceptions import CycleError
from policymesh.governance import DependencyResolver, Policy, Severity, find_cycle


def policy(pid, depends_on=(), severity=Severity.MEDIUM):
    return Policy(id=pid, name=pid, depends_on=depends_on, severity=severity)


@st.composite
def acyclic_policy_sets(draw):
    """Random DAGs: a policy may only depend on policies earlier in a hidden order."""
    count = draw(st.integers(min_value=1, max_value=12))
    ids = [f"p{i:02d}" for i in range(count)]
    policies = []
    for index, pid in enumerate(ids):
        deps = draw(st.lists(st.sampled_from(ids[:index]), unique=True)) if index else []
        severity = draw(st.sampled_from(list(Severity)))
        policies.append(policy(pid, deps, severity))
    return draw(st.permutations(policies))


class TestDependencyResolver:
    def test_dependencies_first(self):
        ordered = DependencyResolver().order([
            policy("c", depends_on=["b"]),
            policy("b", depends_on=["a"]),
            policy("a"),
        ])
        assert [p.id for p in ordered] == ["a", "b", "c"]

    def test_independent_policies_most_severe_first(self):
        ordered = DependencyResolver().order([
            policy("z-low", severity=Severity.LOW),
            policy("m-critical", severity=Severity.CRITICAL),
            policy("a-low", severity=Severity.LOW),
        ])
        assert [p.id for p in ordered] == ["m-critical", "a-low", "z-low"]

    def test_dependency_beats_severity(self):
        ordered = DependencyResolver().order([
            policy("strict", depends_on=["base"], severity=Severity.CRITICAL),
            policy("base", severity=Severity.INFO),
        ])
        assert [p.id for p in ordered] == ["base", "strict"]

    def test_missing_dependency_is_ignored(self):
        ordered = DependencyResolver().order([policy("a", depends_on=["not-in-set"])])
        assert [p.id for p in ordered] == ["a"]

    def test_empty_set(self):
        assert DependencyResolver().order([]) == []

    def test_cycle_detected(self):
        with pytest.raises(CycleError) as exc_info:
            DependencyResolver().order([
                policy("a", depends_on=["b"]),
                policy("b", depends_on=["a"]),
                policy("c"),
            ])
        assert exc_info.value.cycle == ["a", "b", "a"]

    def test_cycle_reported_for_long_loop(self):
        with pytest.raises(CycleError) as exc_info:
            DependencyResolver().order([
                policy("a", depends_on=["b"]),
                policy("b", depends_on=["c"]),
                policy("c", depends_on=["a"]),
                policy("d", depends_on=["a"]),
            ])
        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}

    @given(policies=acyclic_policy_sets())
    @settings(max_examples=150)
    def test_every_policy_after_its_dependencies(self, policies):
        ordered = DependencyResolver().order(policies)
        position = {p.id: i for i, p in enumerate(ordered)}
        assert sorted(position) == sorted(p.id for p in policies)
        for p in policies:
            for dep in p.depends_on:
                assert position[dep] < position[p.id]

    @given(policies=acyclic_policy_sets())
    @settings(max_examples=100)
    def test_order_independent_of_input_order(self, policies):
        resolver = DependencyResolver()
        forward = [p.id for p in resolver.order(policies)]
        backward = [p.id for p in resolver.order(list(reversed(policies)))]
        assert forward == backward


class TestFindCycle:
    def test_no_cycle(self):
        assert find_cycle([policy("a"), policy("b", depends_on=["a"])]) is None

    def test_self_contained_cycle(self):
        assert find_cycle([policy("x", depends_on=["y"]), policy("y", depends_on=["x"])]) == ["x", "y", "x"]
