"""Prometheus metrics for the retention engine, exposed on /metrics."""

from prometheus_client import Counter, Histogram

transition_tasks_total = Counter(
    "retention_transition_tasks_total",
    "Transition tasks finished by the queue",
    ["outcome"],  # completed|failed|skipped|interrupted
)

collaborator_call_seconds = Histogram(
    "retention_collaborator_call_seconds",
    "Duration of collaborator calls made by the transition queue",
    ["operation"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

rule_matches_total = Counter(
    "retention_rule_matches_total",
    "Rule matches that changed a document",
    ["kind"],  # classification|auto_archive
)

scheduled_transitions_total = Counter(
    "retention_scheduled_transitions_total",
    "Transition tasks created by the scheduler",
    ["target_phase"],
)
