"""Shared defaults for PolicyMesh."""

# Evaluation cache
CACHE_TTL_SECONDS_DEFAULT = 300.0
CACHE_MAX_ENTRIES_DEFAULT = 10_000

# Conflict resolution: deny violations at least this severe block admission
DENY_SEVERITY_THRESHOLD_DEFAULT = "high"

# Cluster apply retries
APPLY_MAX_ATTEMPTS_DEFAULT = 3
BACKOFF_INITIAL_SECONDS_DEFAULT = 0.5
BACKOFF_MAX_SECONDS_DEFAULT = 8.0

# Rollouts
HEALTH_POLL_INTERVAL_SECONDS_DEFAULT = 5.0
FAILURE_THRESHOLD_DEFAULT = 0.05
DEFAULT_PHASE_PERCENTAGES = (10, 50, 100)
DEFAULT_VALIDATION_SECONDS = 300.0

# Audit
AUDIT_EVENT_EVALUATION = "evaluation"
AUDIT_EVENT_ROLLOUT = "rollout"

# Metrics
METRICS_PORT_DEFAULT = 9090
