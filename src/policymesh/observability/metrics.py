"""
Prometheus Metrics Integration.

Provides metrics collection and export for PolicyMesh.
"""

from typing import Optional

from policymesh.config import PolicyMeshConfig
from policymesh.constants import METRICS_PORT_DEFAULT

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)


class PolicyMetrics:
    """
    Prometheus metrics collector for PolicyMesh.

    Exposes metrics:
    - policymesh_evaluations_total{decision="...", cache="hit|miss"}
    - policymesh_evaluation_duration_seconds
    - policymesh_rule_evaluator_failures_total{policy_id="...", failure_policy="..."}
    - policymesh_dependency_cycles_total
    - policymesh_rollout_transitions_total{state="..."}
    - policymesh_cluster_apply_failures_total{cluster_id="..."}
    - policymesh_active_rollouts

    Args:
        prefix: Metric name prefix. Defaults to ``policymesh``.
        registry: Registry to register with. Defaults to a private registry
            so several collectors can coexist in one process.
    """

    def __init__(
        self,
        prefix: str = "policymesh",
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        self.evaluations_total = Counter(
            f"{prefix}_evaluations_total",
            "Admission evaluations by decision and cache outcome",
            ["decision", "cache"],
            registry=self.registry,
        )
        self.evaluation_duration = Histogram(
            f"{prefix}_evaluation_duration_seconds",
            "Admission evaluation latency in seconds",
            registry=self.registry,
        )
        self.rule_evaluator_failures = Counter(
            f"{prefix}_rule_evaluator_failures_total",
            "Rule evaluator failures by policy",
            ["policy_id", "failure_policy"],
            registry=self.registry,
        )
        self.dependency_cycles = Counter(
            f"{prefix}_dependency_cycles_total",
            "Requests denied because of a policy dependency cycle",
            registry=self.registry,
        )
        self.rollout_transitions = Counter(
            f"{prefix}_rollout_transitions_total",
            "Rollout plan state transitions",
            ["state"],
            registry=self.registry,
        )
        self.cluster_apply_failures = Counter(
            f"{prefix}_cluster_apply_failures_total",
            "Cluster policy-set applications that exhausted their retries",
            ["cluster_id"],
            registry=self.registry,
        )
        self.active_rollouts = Gauge(
            f"{prefix}_active_rollouts",
            "Rollout plans currently in progress",
            registry=self.registry,
        )

    def record_evaluation(self, decision: str, cache_hit: bool, duration_seconds: float) -> None:
        """Record an admission decision and its latency."""
        self.evaluations_total.labels(
            decision=decision,
            cache="hit" if cache_hit else "miss",
        ).inc()
        self.evaluation_duration.observe(duration_seconds)

    def record_rule_evaluator_failure(self, policy_id: str, failure_policy: str) -> None:
        self.rule_evaluator_failures.labels(
            policy_id=policy_id,
            failure_policy=failure_policy,
        ).inc()

    def record_dependency_cycle(self) -> None:
        self.dependency_cycles.inc()

    def record_rollout_transition(self, state: str) -> None:
        self.rollout_transitions.labels(state=state).inc()

    def record_apply_failure(self, cluster_id: str) -> None:
        self.cluster_apply_failures.labels(cluster_id=cluster_id).inc()

    def set_active_rollouts(self, count: int) -> None:
        self.active_rollouts.set(count)

    def sample(self, name: str, labels: Optional[dict[str, str]] = None) -> Optional[float]:
        """Read the current value of a sample from this collector's registry."""
        return self.registry.get_sample_value(name, labels or {})


# Global metrics collector instance
_metrics: Optional[PolicyMetrics] = None


def setup_metrics() -> PolicyMetrics:
    """Return the process-wide collector, registered with the default registry."""
    global _metrics

    if _metrics is None:
        _metrics = PolicyMetrics(registry=REGISTRY)

    return _metrics


def get_metrics() -> Optional[PolicyMetrics]:
    """Get the process-wide collector, if ``setup_metrics`` was called."""
    return _metrics


def start_metrics_server(
    port: Optional[int] = None,
    metrics: Optional[PolicyMetrics] = None,
    config: Optional[PolicyMeshConfig] = None,
) -> int:
    """Start the Prometheus metrics HTTP server.

    Args:
        port: Port to listen on; overrides ``config.metrics_port``.
        metrics: Collector whose registry is served (default: process-wide).
        config: Source of the port when none is given (default: 9090).

    Returns:
        The port the server listens on.
    """
    if port is None:
        port = config.metrics_port if config is not None else METRICS_PORT_DEFAULT
    registry = metrics.registry if metrics is not None else REGISTRY
    start_http_server(port, registry=registry)
    return port
