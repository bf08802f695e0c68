"""Tests for rollout plan models and the rollout state machine."""

import pytest

from policymesh.exceptions import InvalidTransitionError, ValidationError
from policymesh.fleet import (
    PolicySetChange,
    RolloutPhase,
    RolloutPlan,
    RolloutState,
    policy_set_id,
)


@pytest.fixture
def change():
    return PolicySetChange(versions={"no-privileged": 2, "pinned-images": 1}, author="alice")


class TestPolicySetChange:
    def test_set_id_is_content_addressed(self, change):
        same = PolicySetChange(versions={"pinned-images": 1, "no-privileged": 2})
        assert change.set_id == same.set_id
        assert change.set_id == policy_set_id({"no-privileged": 2, "pinned-images": 1})
        assert change.set_id != PolicySetChange(versions={"no-privileged": 3}).set_id

    def test_requires_versions(self):
        with pytest.raises(Exception):
            PolicySetChange(versions={})


class TestRolloutPlan:
    def test_default_plan(self, change):
        plan = RolloutPlan.default(change, validation_seconds=60)
        assert [p.percentage for p in plan.phases] == [10, 50, 100]
        assert [p.name for p in plan.phases] == ["canary", "partial", "full"]
        assert plan.state == RolloutState.PENDING
        assert plan.failure_threshold == 0.05

    def test_from_dict(self, change):
        plan = RolloutPlan.from_dict({
            "change": change.model_dump(),
            "failure_threshold": 0.1,
            "selector": {"labels": {"env": "prod"}},
            "phases": [
                {"percentage": 5, "validation_seconds": 600},
                {"name": "everyone", "percentage": 100, "validation_seconds": 300},
            ],
        })
        assert plan.selector.labels == {"env": "prod"}
        assert [p.name for p in plan.phases] == ["canary", "everyone"]

    @pytest.mark.parametrize(
        "phases",
        [
            [],
            [{"percentage": 50}, {"percentage": 10}],
            [{"percentage": 0}],
            [{"percentage": 120}],
            [{"percentage": 10, "validation_seconds": -1}],
        ],
    )
    def test_invalid_phases(self, change, phases):
        with pytest.raises(ValidationError):
            RolloutPlan.from_dict({"change": change.model_dump(), "phases": phases})

    @pytest.mark.parametrize("threshold", [-0.1, 1.5])
    def test_invalid_threshold(self, change, threshold):
        with pytest.raises(ValidationError):
            RolloutPlan.from_dict({
                "change": change.model_dump(),
                "phases": [{"percentage": 100}],
                "failure_threshold": threshold,
            })

    @pytest.mark.parametrize(
        "percentage,cohort,expected",
        [(10, 10, 1), (10, 3, 1), (50, 3, 2), (100, 7, 7), (1, 1000, 10), (10, 0, 0)],
    )
    def test_target_count(self, percentage, cohort, expected):
        assert RolloutPhase(percentage=percentage).target_count(cohort) == expected


class TestStateMachine:
    def test_forward_path(self, change):
        plan = RolloutPlan.default(change)
        assert plan.advance() is plan.phases[0]
        assert plan.state == RolloutState.CANARY
        plan.advance()
        assert plan.state == RolloutState.PARTIAL
        plan.advance()
        assert plan.state == RolloutState.FULL
        plan.transition(RolloutState.COMPLETED)

        assert plan.terminal and plan.succeeded
        assert [t.to_state for t in plan.history] == [
            RolloutState.CANARY, RolloutState.PARTIAL, RolloutState.FULL, RolloutState.COMPLETED,
        ]

    def test_several_partial_phases(self, change):
        plan = RolloutPlan(change=change, phases=[
            RolloutPhase(percentage=p) for p in (5, 25, 50, 100)
        ])
        states = []
        for _ in plan.phases:
            plan.advance()
            states.append(plan.state)
        assert states == [RolloutState.CANARY, RolloutState.PARTIAL, RolloutState.PARTIAL, RolloutState.FULL]

    def test_single_phase_plan_completes_from_canary(self, change):
        plan = RolloutPlan(change=change, phases=[RolloutPhase(percentage=100)])
        plan.advance()
        assert plan.state == RolloutState.CANARY
        plan.transition(RolloutState.COMPLETED)
        assert plan.succeeded

    def test_cannot_skip_to_completed(self, change):
        plan = RolloutPlan.default(change)
        with pytest.raises(InvalidTransitionError):
            plan.transition(RolloutState.COMPLETED)
        plan.advance()
        with pytest.raises(InvalidTransitionError):
            plan.transition(RolloutState.COMPLETED)

    def test_cannot_move_backwards(self, change):
        plan = RolloutPlan.default(change)
        plan.advance()
        plan.advance()
        with pytest.raises(InvalidTransitionError):
            plan.transition(RolloutState.CANARY)

    @pytest.mark.parametrize("advances", [0, 1, 2, 3])
    def test_rollback_from_any_non_terminal_state(self, change, advances):
        plan = RolloutPlan.default(change)
        for _ in range(advances):
            plan.advance()
        plan.transition(RolloutState.ROLLED_BACK, "canary failed")
        assert plan.terminal and not plan.succeeded

    def test_terminal_states_are_final(self, change):
        plan = RolloutPlan.default(change)
        plan.transition(RolloutState.FAILED)
        for state in RolloutState:
            assert not plan.can_transition(state)
        with pytest.raises(InvalidTransitionError):
            plan.advance()

    def test_no_phase_beyond_last(self, change):
        plan = RolloutPlan(change=change, phases=[RolloutPhase(percentage=100)])
        plan.advance()
        with pytest.raises(InvalidTransitionError):
            plan.advance()
