"""
Policy Distributor

Drives rollout plans across the fleet. Each plan runs phase by phase:
apply the policy set to the phase's clusters, then watch their health for
the phase's validation window. A breach of the plan's failure threshold,
or a cancellation, rolls every cluster the plan touched back to what it
ran before.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from policymesh.config import PolicyMeshConfig
from policymesh.exceptions import (
    ClusterUnreachableError,
    InvalidTransitionError,
    PolicyNotFoundError,
    RolloutCancelledError,
    RolloutThresholdExceeded,
    ValidationError,
)
from policymesh.governance.audit import AuditLog
from policymesh.governance.store import PolicyStore
from policymesh.observability.metrics import PolicyMetrics

from .client import ClusterClient, HealthReport
from .registry import Cluster, ClusterHealth, ClusterRegistry, ClusterStatus
from .rollout import (
    Baseline,
    PhaseStatus,
    PolicySetChange,
    RolloutPhase,
    RolloutPlan,
    RolloutState,
    policy_set_id,
)

logger = logging.getLogger(__name__)


@dataclass
class _PlanRuntime:
    cancel_requested: asyncio.Event = field(default_factory=asyncio.Event)
    finished: asyncio.Event = field(default_factory=asyncio.Event)
    cancel_reason: str = "cancelled"
    task: Optional[asyncio.Task] = None
    running: bool = False


class PolicyDistributor:
    """
    Progressive policy distribution.

    One asyncio task per plan; plans for different changes may run side by
    side, phases within a plan run strictly in sequence.
    """

    def __init__(
        self,
        registry: ClusterRegistry,
        client: ClusterClient,
        store: PolicyStore,
        *,
        audit: Optional[AuditLog] = None,
        metrics: Optional[PolicyMetrics] = None,
        config: Optional[PolicyMeshConfig] = None,
        poll_interval: Optional[float] = None,
    ) -> None:
        self._config = config or PolicyMeshConfig()
        self._registry = registry
        self._client = client
        self._store = store
        self._audit = audit
        self._metrics = metrics
        self._poll_interval = (
            poll_interval if poll_interval is not None
            else self._config.health_poll_interval_seconds
        )
        self._plans: dict[str, RolloutPlan] = {}
        self._runtime: dict[str, _PlanRuntime] = {}

    # ── plan lifecycle ─────────────────────────────────────────

    def create_plan(self, plan: RolloutPlan | PolicySetChange | dict[str, Any]) -> RolloutPlan:
        """
        Register a plan in ``Pending``.

        A bare ``PolicySetChange`` gets the default canary/partial/full plan.

        Raises:
            ValidationError: If the plan references unknown policy versions,
                matches no cluster, or reuses a plan id.
        """
        if isinstance(plan, PolicySetChange):
            plan = RolloutPlan.default(
                plan, failure_threshold=self._config.default_failure_threshold
            )
        elif isinstance(plan, dict):
            plan = RolloutPlan.from_dict(plan)

        if plan.plan_id in self._plans:
            raise ValidationError(f"Rollout plan {plan.plan_id} already exists")
        if plan.state != RolloutState.PENDING:
            raise ValidationError(f"Rollout plan {plan.plan_id} is not pending")

        errors = []
        for policy_id, version in sorted(plan.change.versions.items()):
            try:
                self._store.get(policy_id, version)
            except PolicyNotFoundError as e:
                errors.append(str(e))
        if not self._registry.list_clusters(plan.selector):
            errors.append("plan selector matches no registered cluster")
        if errors:
            raise ValidationError(f"Invalid rollout plan {plan.plan_id}", errors)

        self._plans[plan.plan_id] = plan
        self._runtime[plan.plan_id] = _PlanRuntime()
        self._record(plan, "created", {"phases": [p.percentage for p in plan.phases]})
        logger.info(
            "Created rollout %s for change %s (set %s, %d phases)",
            plan.plan_id, plan.change.change_id, plan.change.set_id, len(plan.phases),
        )
        return plan

    def get_plan(self, plan_id: str) -> RolloutPlan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise ValidationError(f"Unknown rollout plan '{plan_id}'")
        return plan

    def list_plans(self, state: Optional[RolloutState] = None) -> list[RolloutPlan]:
        plans = sorted(self._plans.values(), key=lambda p: p.created_at)
        if state is None:
            return plans
        return [p for p in plans if p.state == state]

    def start(self, plan_id: str) -> asyncio.Task:
        """Run a plan in its own supervisory task."""
        runtime = self._runtime_for(plan_id)
        if runtime.task is not None:
            raise InvalidTransitionError(f"Rollout {plan_id} has already been started")
        runtime.task = asyncio.create_task(self.run(plan_id), name=f"rollout-{plan_id}")
        return runtime.task

    async def wait(self, plan_id: str) -> RolloutPlan:
        """Wait for a started plan to reach a terminal state."""
        runtime = self._runtime_for(plan_id)
        if runtime.task is None:
            raise InvalidTransitionError(f"Rollout {plan_id} has not been started")
        return await runtime.task

    async def run(self, plan_id: str) -> RolloutPlan:
        """
        Drive a plan from ``Pending`` to a terminal state.

        Threshold breaches and cancellations end in a rollback and are
        reported through the plan's state, not raised.
        """
        plan = self.get_plan(plan_id)
        runtime = self._runtime_for(plan_id)
        if plan.state != RolloutState.PENDING or runtime.running:
            raise InvalidTransitionError(
                f"Rollout {plan_id} cannot run from state {plan.state.value}"
            )

        runtime.running = True
        self._update_active_gauge()
        try:
            for _ in range(len(plan.phases)):
                self._check_cancelled(plan, runtime)
                phase = plan.advance()
                self._record_transition(plan, plan.history[-1].reason)
                await self._run_phase(plan, phase, runtime)
            self._transition(plan, RolloutState.COMPLETED, "all phases passed")
            logger.info("Rollout %s completed on %d cluster(s)", plan_id, len(plan.touched))
        except RolloutThresholdExceeded as e:
            logger.error("Rollout %s: %s; rolling back", plan_id, e)
            await self._rollback(plan, str(e))
        except RolloutCancelledError as e:
            logger.warning("Rollout %s: %s; rolling back", plan_id, e)
            await self._rollback(plan, str(e))
        except Exception as e:
            logger.exception("Rollout %s aborted", plan_id)
            plan.failure_reason = str(e)
            if not plan.terminal:
                self._transition(plan, RolloutState.FAILED, f"aborted: {e}")
            raise
        finally:
            runtime.running = False
            runtime.finished.set()
            self._update_active_gauge()
        return plan

    async def cancel(self, plan_id: str, reason: str = "cancelled by operator") -> RolloutPlan:
        """
        Cancel a non-terminal plan, rolling back every cluster it touched.

        Raises:
            InvalidTransitionError: If the plan has already finished.
        """
        plan = self.get_plan(plan_id)
        runtime = self._runtime_for(plan_id)
        if plan.terminal:
            raise InvalidTransitionError(
                f"Rollout {plan_id} already finished as {plan.state.value}"
            )

        runtime.cancel_reason = reason
        runtime.cancel_requested.set()
        if runtime.running or (runtime.task is not None and not runtime.task.done()):
            await runtime.finished.wait()
        else:
            logger.warning("Rollout %s cancelled before it ran: %s", plan_id, reason)
            await self._rollback(plan, str(RolloutCancelledError(plan_id, reason)))
        return plan

    # ── phases ─────────────────────────────────────────────────

    def phase_clusters(self, plan: RolloutPlan, phase: RolloutPhase) -> list[Cluster]:
        """Clusters a phase covers, cumulatively, in id order."""
        cohort = [c for c in self._registry.list_clusters(plan.selector) if phase.selector.matches(c)]
        return cohort[: phase.target_count(len(cohort))]

    async def _run_phase(self, plan: RolloutPlan, phase: RolloutPhase, runtime: _PlanRuntime) -> None:
        phase.started_at = datetime.now(timezone.utc)
        targets = self.phase_clusters(plan, phase)
        phase.clusters = [c.id for c in targets]
        if not targets:
            logger.warning("Rollout %s phase %s selects no clusters", plan.plan_id, phase.name)

        phase.status = PhaseStatus.APPLYING
        pending = [c for c in targets if c.id not in plan.baselines]
        if pending:
            outcomes = await asyncio.gather(*(self._activate(plan, c) for c in pending))
            phase.failed_clusters = [c.id for c, ok in zip(pending, outcomes) if not ok]
            failed_fraction = len(phase.failed_clusters) / len(pending)
            if failed_fraction > plan.failure_threshold:
                phase.status = PhaseStatus.FAILED
                raise RolloutThresholdExceeded(
                    plan.plan_id, failed_fraction, plan.failure_threshold,
                    f"apply failed on {', '.join(phase.failed_clusters)}",
                )

        watched = [c.id for c in targets if c.id not in phase.failed_clusters]
        phase.status = PhaseStatus.VALIDATING
        self._record(plan, "validating", {
            "phase": plan.current_phase,
            "clusters": watched,
            "validation_seconds": phase.validation_seconds,
        })
        await self._validate(plan, phase, watched, runtime)
        phase.status = PhaseStatus.PASSED
        phase.completed_at = datetime.now(timezone.utc)
        self._record(plan, "phase-passed", {
            "phase": plan.current_phase,
            "observed_failure_rate": phase.observed_failure_rate,
        })

    async def _activate(self, plan: RolloutPlan, cluster: Cluster) -> bool:
        """Apply the plan's policy set to one cluster; False once retries run out."""
        change = plan.change
        plan.baselines[cluster.id] = Baseline(
            set_id=cluster.applied_set_id, versions=dict(cluster.applied_versions)
        )
        if cluster.applied_set_id == change.set_id:
            logger.debug("Cluster %s already runs set %s", cluster.id, change.set_id)
            plan.touched.append(cluster.id)
            return True

        self._registry.set_status(cluster.id, ClusterStatus.UPDATING)
        try:
            await self._apply(cluster, change.versions, change.set_id)
        except ClusterUnreachableError as e:
            logger.error("Giving up on cluster %s for rollout %s: %s", cluster.id, plan.plan_id, e)
            del plan.baselines[cluster.id]
            self._registry.set_status(cluster.id, ClusterStatus.UPDATE_FAILED)
            self._registry.set_health(cluster.id, ClusterHealth.UNREACHABLE)
            if self._metrics is not None:
                self._metrics.record_apply_failure(cluster.id)
            return False

        self._registry.record_applied(cluster.id, change.versions, change.set_id)
        plan.touched.append(cluster.id)
        return True

    async def _apply(self, cluster: Cluster, versions: dict[str, int], set_id: str) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.apply_max_attempts),
            wait=wait_exponential(
                multiplier=self._config.backoff_initial_seconds,
                max=self._config.backoff_max_seconds,
            ),
            retry=retry_if_exception_type(ClusterUnreachableError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                await self._client.apply(cluster, versions, set_id)

    async def _validate(
        self,
        plan: RolloutPlan,
        phase: RolloutPhase,
        cluster_ids: list[str],
        runtime: _PlanRuntime,
    ) -> None:
        """Poll health until the validation window closes or the threshold is breached."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + phase.validation_seconds
        while True:
            self._check_cancelled(plan, runtime)
            observed, reason = await self._observe(cluster_ids)
            phase.observed_failure_rate = max(phase.observed_failure_rate or 0.0, observed)
            if observed > plan.failure_threshold:
                phase.status = PhaseStatus.FAILED
                raise RolloutThresholdExceeded(plan.plan_id, observed, plan.failure_threshold, reason)

            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            try:
                await asyncio.wait_for(
                    runtime.cancel_requested.wait(), timeout=min(self._poll_interval, remaining)
                )
            except asyncio.TimeoutError:
                pass

    async def _observe(self, cluster_ids: list[str]) -> tuple[float, str]:
        """
        Poll every cluster once.

        Returns the worse of the aggregate error/critical-violation rate and
        the unhealthy-cluster fraction, with a short description.
        """
        if not cluster_ids:
            return 0.0, "no clusters"
        clusters = [self._registry.require(cid) for cid in cluster_ids]
        reports = await asyncio.gather(*(self._poll(c) for c in clusters))

        evaluations = sum(r.evaluations for r in reports)
        failures = sum(r.errors + r.critical_violations for r in reports)
        failure_rate = min(1.0, failures / evaluations) if evaluations else 0.0
        unhealthy = [r.cluster_id for r in reports if not r.healthy]
        unhealthy_fraction = len(unhealthy) / len(reports)

        for report in reports:
            health = report.health if report.reachable else ClusterHealth.UNREACHABLE
            self._registry.set_health(report.cluster_id, health)

        if unhealthy_fraction > failure_rate:
            return unhealthy_fraction, f"unhealthy clusters: {', '.join(unhealthy)}"
        return failure_rate, f"{failures} failing of {evaluations} evaluations"

    async def _poll(self, cluster: Cluster) -> HealthReport:
        try:
            return await self._client.health(cluster)
        except ClusterUnreachableError as e:
            logger.warning("Health poll failed for %s: %s", cluster.id, e)
            return HealthReport(cluster_id=cluster.id, reachable=False, health=ClusterHealth.UNREACHABLE)

    # ── rollback ───────────────────────────────────────────────

    async def _rollback(self, plan: RolloutPlan, reason: str) -> None:
        """Restore every touched cluster's baseline, newest first."""
        plan.failure_reason = plan.failure_reason or reason
        phase = plan.phase
        if phase is not None and phase.status != PhaseStatus.PASSED:
            phase.status = PhaseStatus.FAILED

        restored: list[str] = []
        failed: list[str] = []
        for cluster_id in reversed(plan.touched):
            cluster = self._registry.get(cluster_id)
            if cluster is None:
                logger.warning("Cluster %s left the registry during rollback", cluster_id)
                continue
            # Exactly what the cluster ran before; policies new to it are dropped
            baseline = plan.baselines[cluster_id]
            versions = dict(baseline.versions)
            set_id = baseline.set_id or policy_set_id(versions)
            try:
                await self._apply(cluster, versions, set_id)
            except ClusterUnreachableError as e:
                logger.error("Rollback of %s failed: %s", cluster_id, e)
                self._registry.set_status(cluster_id, ClusterStatus.UPDATE_FAILED)
                if self._metrics is not None:
                    self._metrics.record_apply_failure(cluster_id)
                failed.append(cluster_id)
            else:
                self._registry.record_applied(cluster_id, versions, set_id)
                restored.append(cluster_id)

        self._record(plan, "rollback", {
            "reason": reason,
            "restored": restored,
            "failed": failed,
        })
        if failed:
            self._transition(plan, RolloutState.FAILED, f"rollback incomplete: {', '.join(failed)}")
        else:
            self._transition(plan, RolloutState.ROLLED_BACK, reason)

    # ── bookkeeping ────────────────────────────────────────────

    def _runtime_for(self, plan_id: str) -> _PlanRuntime:
        self.get_plan(plan_id)
        return self._runtime[plan_id]

    @staticmethod
    def _check_cancelled(plan: RolloutPlan, runtime: _PlanRuntime) -> None:
        if runtime.cancel_requested.is_set():
            raise RolloutCancelledError(plan.plan_id, runtime.cancel_reason)

    def _transition(self, plan: RolloutPlan, state: RolloutState, reason: str) -> None:
        plan.transition(state, reason)
        self._record_transition(plan, reason)

    def _record_transition(self, plan: RolloutPlan, reason: Optional[str]) -> None:
        record = plan.history[-1]
        logger.info(
            "Rollout %s: %s -> %s (%s)",
            plan.plan_id, record.from_state.value, record.to_state.value, reason,
        )
        if self._metrics is not None:
            self._metrics.record_rollout_transition(record.to_state.value)
        self._record(plan, "transition", {
            "from": record.from_state.value,
            "phase": record.phase,
            "reason": reason,
        })

    def _record(self, plan: RolloutPlan, event: str, details: dict[str, Any]) -> None:
        if self._audit is None:
            return
        self._audit.record_rollout(
            plan.plan_id,
            plan.state.value,
            details={
                "event": event,
                "change_id": plan.change.change_id,
                "set_id": plan.change.set_id,
                **details,
            },
            trace_id=plan.trace_id,
        )

    def _update_active_gauge(self) -> None:
        if self._metrics is not None:
            self._metrics.set_active_rollouts(sum(1 for r in self._runtime.values() if r.running))
