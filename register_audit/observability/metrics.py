"""
Prometheus metrics for the register audit pipeline.
"""

from prometheus_client import Counter, Histogram, Gauge


# ── Runs ─────────────────────────────────────────────────────
uploads_total = Counter(
    "uploads_total",
    "Total source documents uploaded",
    ["content_type"],
)

runs_started_total = Counter(
    "runs_started_total",
    "Total runs admitted for execution",
    ["execution_mode"],
)

runs_finished_total = Counter(
    "runs_finished_total",
    "Total runs that settled in a terminal or suspended state",
    ["execution_mode", "status"],
)

run_duration_seconds = Histogram(
    "run_duration_seconds",
    "Time from admission to settlement",
    ["execution_mode"],
    buckets=[5, 15, 30, 60, 120, 300, 600, 1200],
)

active_runs = Gauge(
    "active_runs",
    "Runs currently executing in this process",
)

# ── Pipeline Stages ──────────────────────────────────────────
pipeline_stage_duration_seconds = Histogram(
    "pipeline_stage_duration_seconds",
    "Time per pipeline stage",
    ["stage"],
    buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 120],
)

fast_attempts_total = Counter(
    "fast_attempts_total",
    "FAST extraction attempts by outcome",
    ["outcome"],
)

validation_triggers_total = Counter(
    "validation_triggers_total",
    "Rule engine triggers emitted",
    ["rule_id", "severity"],
)

# ── Reasoning Collaborator ───────────────────────────────────
collaborator_calls_total = Counter(
    "collaborator_calls_total",
    "Reasoning collaborator calls",
    ["stage", "outcome"],
)

collaborator_latency_seconds = Histogram(
    "collaborator_latency_seconds",
    "Latency of reasoning collaborator calls",
    ["model"],
    buckets=[0.5, 1, 2, 5, 10, 30, 60, 120],
)

collaborator_retries_total = Counter(
    "collaborator_retries_total",
    "Retries of reasoning collaborator calls",
    ["model", "reason"],
)

# ── HITL ─────────────────────────────────────────────────────
hitl_packets_total = Counter(
    "hitl_packets_total",
    "HITL packets created",
    ["stage"],
)

hitl_queue_depth = Gauge(
    "hitl_queue_depth",
    "Current number of unresolved HITL packets",
)

# ── Session Lock ─────────────────────────────────────────────
session_lock_contention_total = Counter(
    "session_lock_contention_total",
    "Executions refused because another run holds the session lock",
)
