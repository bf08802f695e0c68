"""
Rollout Plans

A rollout plan propagates one policy-set change across the fleet in
ordered phases. The plan is an explicit state machine::

    Pending -> Canary -> Partial -> Full -> Completed
       \\________\\__________\\_______\\____-> Failed | RolledBack

Phase 0 is the canary, the last phase is ``Full`` and any phases in
between are ``Partial``. A plan only moves forward; the only way back is
a rollback, which ends the plan.
"""

from __future__ import annotations

import hashlib
import json
import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from policymesh.constants import (
    DEFAULT_PHASE_PERCENTAGES,
    DEFAULT_VALIDATION_SECONDS,
    FAILURE_THRESHOLD_DEFAULT,
)
from policymesh.exceptions import InvalidTransitionError, ValidationError

from .registry import ClusterSelector


class RolloutState(str, Enum):
    PENDING = "Pending"
    CANARY = "Canary"
    PARTIAL = "Partial"
    FULL = "Full"
    COMPLETED = "Completed"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"


TERMINAL_STATES = frozenset({RolloutState.COMPLETED, RolloutState.FAILED, RolloutState.ROLLED_BACK})
IN_PROGRESS_STATES = frozenset({RolloutState.CANARY, RolloutState.PARTIAL, RolloutState.FULL})

_ABORT = {RolloutState.FAILED, RolloutState.ROLLED_BACK}
ALLOWED_TRANSITIONS: dict[RolloutState, frozenset[RolloutState]] = {
    RolloutState.PENDING: frozenset({RolloutState.CANARY, *_ABORT}),
    RolloutState.CANARY: frozenset(
        {RolloutState.PARTIAL, RolloutState.FULL, RolloutState.COMPLETED, *_ABORT}
    ),
    RolloutState.PARTIAL: frozenset({RolloutState.PARTIAL, RolloutState.FULL, *_ABORT}),
    RolloutState.FULL: frozenset({RolloutState.COMPLETED, *_ABORT}),
    RolloutState.COMPLETED: frozenset(),
    RolloutState.FAILED: frozenset(),
    RolloutState.ROLLED_BACK: frozenset(),
}


class PhaseStatus(str, Enum):
    PENDING = "pending"
    APPLYING = "applying"
    VALIDATING = "validating"
    PASSED = "passed"
    FAILED = "failed"


def policy_set_id(versions: dict[str, int]) -> str:
    """Content address of a policy set (policy id -> version)."""
    canonical = json.dumps(sorted(versions.items()), separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()[:16]


class PolicySetChange(BaseModel):
    """The policy versions a rollout distributes."""

    change_id: str = Field(default_factory=lambda: f"change_{uuid.uuid4().hex[:12]}")
    versions: dict[str, int] = Field(..., min_length=1, description="policy id -> version")
    author: str = "system"
    description: Optional[str] = None

    @property
    def set_id(self) -> str:
        return policy_set_id(self.versions)


class RolloutPhase(BaseModel):
    """One stage of a rollout and its runtime status."""

    name: Optional[str] = None
    selector: ClusterSelector = Field(default_factory=ClusterSelector)
    percentage: float = Field(..., gt=0, le=100, description="Cumulative share of the cohort")
    validation_seconds: float = Field(default=DEFAULT_VALIDATION_SECONDS, ge=0)

    status: PhaseStatus = PhaseStatus.PENDING
    clusters: list[str] = Field(default_factory=list)
    failed_clusters: list[str] = Field(default_factory=list)
    observed_failure_rate: Optional[float] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def target_count(self, cohort_size: int) -> int:
        """Clusters this phase covers cumulatively; at least one when any exist."""
        if cohort_size == 0:
            return 0
        return max(1, min(cohort_size, math.ceil(cohort_size * self.percentage / 100)))


class Transition(BaseModel):
    from_state: RolloutState
    to_state: RolloutState
    phase: int
    reason: Optional[str] = None
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Baseline(BaseModel):
    """What a cluster ran before the plan touched it."""

    set_id: Optional[str] = None
    versions: dict[str, int] = Field(default_factory=dict)


class RolloutPlan(BaseModel):
    """
    A staged rollout of one policy-set change.

    ``failure_threshold`` is a fraction: the plan rolls back when the
    observed failure rate of a phase exceeds it.
    """

    plan_id: str = Field(default_factory=lambda: f"rollout_{uuid.uuid4().hex[:12]}")
    change: PolicySetChange
    phases: list[RolloutPhase] = Field(..., min_length=1)
    failure_threshold: float = Field(default=FAILURE_THRESHOLD_DEFAULT, ge=0, le=1)
    selector: ClusterSelector = Field(default_factory=ClusterSelector)
    trace_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    state: RolloutState = RolloutState.PENDING
    current_phase: int = -1
    baselines: dict[str, Baseline] = Field(default_factory=dict)
    touched: list[str] = Field(default_factory=list, description="Clusters updated, in order")
    history: list[Transition] = Field(default_factory=list)
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def _check_phases(self) -> "RolloutPlan":
        previous = 0.0
        for index, phase in enumerate(self.phases):
            if phase.percentage < previous:
                raise ValueError(
                    f"phase {index} percentage {phase.percentage} is below the previous phase"
                )
            previous = phase.percentage
            if phase.name is None:
                phase.name = self.stage_for(index).value.lower()
        return self

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RolloutPlan":
        """Build a plan from a definition document, raising ``ValidationError``."""
        try:
            return cls(**data)
        except PydanticValidationError as e:
            errors = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ]
            raise ValidationError("Invalid rollout plan", errors) from e

    @classmethod
    def default(
        cls,
        change: PolicySetChange,
        validation_seconds: float = DEFAULT_VALIDATION_SECONDS,
        failure_threshold: float = FAILURE_THRESHOLD_DEFAULT,
        percentages: tuple[float, ...] = DEFAULT_PHASE_PERCENTAGES,
        selector: Optional[ClusterSelector] = None,
    ) -> "RolloutPlan":
        """Canary / partial / full plan over the whole fleet."""
        return cls(
            change=change,
            phases=[
                RolloutPhase(percentage=p, validation_seconds=validation_seconds)
                for p in percentages
            ],
            failure_threshold=failure_threshold,
            selector=selector or ClusterSelector(),
        )

    # ── state machine ──────────────────────────────────────────

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def in_progress(self) -> bool:
        return self.state in IN_PROGRESS_STATES

    @property
    def validating(self) -> bool:
        phase = self.phase
        return phase is not None and phase.status == PhaseStatus.VALIDATING

    @property
    def succeeded(self) -> bool:
        return self.state == RolloutState.COMPLETED

    @property
    def phase(self) -> Optional[RolloutPhase]:
        if 0 <= self.current_phase < len(self.phases):
            return self.phases[self.current_phase]
        return None

    def stage_for(self, index: int) -> RolloutState:
        """The in-progress state a phase index runs under."""
        if index == 0:
            return RolloutState.CANARY
        if index == len(self.phases) - 1:
            return RolloutState.FULL
        return RolloutState.PARTIAL

    def can_transition(self, to_state: RolloutState) -> bool:
        if to_state == RolloutState.COMPLETED and self.current_phase != len(self.phases) - 1:
            return False
        return to_state in ALLOWED_TRANSITIONS[self.state]

    def transition(self, to_state: RolloutState, reason: Optional[str] = None) -> Transition:
        """
        Move to ``to_state``.

        Raises:
            InvalidTransitionError: If the move is not allowed.
        """
        if not self.can_transition(to_state):
            raise InvalidTransitionError(
                f"Rollout {self.plan_id}: cannot go from {self.state.value} to {to_state.value}"
            )
        record = Transition(
            from_state=self.state,
            to_state=to_state,
            phase=self.current_phase,
            reason=reason,
        )
        self.history.append(record)
        self.state = to_state
        return record

    def advance(self) -> RolloutPhase:
        """Enter the next phase, moving to its stage state."""
        index = self.current_phase + 1
        if index >= len(self.phases):
            raise InvalidTransitionError(f"Rollout {self.plan_id} has no phase {index}")
        self.transition(self.stage_for(index), reason=f"entering phase {index}")
        self.current_phase = index
        return self.phases[index]
