from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

NODE_EXECUTION_TOTAL = Counter(
    "ouroboros_node_execution_total",
    "Node executions grouped by kind and terminal status",
    labelnames=("kind", "status"),
)

NODE_EXECUTION_LATENCY_SECONDS = Histogram(
    "ouroboros_node_execution_latency_seconds",
    "Wall-clock latency of a node execution, gate wait included",
    labelnames=("kind",),
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600, float("inf")),
)

VALIDATION_REJECTIONS_TOTAL = Counter(
    "ouroboros_validation_rejections_total",
    "Generated outputs rejected by the red-flag validator",
    labelnames=("kind", "flag"),
)

QUOTA_BACKOFF_TOTAL = Counter(
    "ouroboros_quota_backoff_total",
    "Quota errors that triggered a backoff",
    labelnames=("kind",),
)

QUOTA_BACKOFF_SECONDS = Histogram(
    "ouroboros_quota_backoff_seconds",
    "Backoff durations applied after quota errors",
    buckets=(1, 3, 6, 12, 24, 30, 60, float("inf")),
)

RATE_LIMIT_WAIT_TOTAL = Counter(
    "ouroboros_rate_limit_wait_total",
    "Times a caller had to wait for a rate-limit window",
    labelnames=("window",),
)

GATE_IN_USE = Gauge(
    "ouroboros_gate_slots_in_use",
    "Concurrency gate slots currently held",
)

GATE_WAITERS = Gauge(
    "ouroboros_gate_waiters",
    "Callers queued on the concurrency gate",
)

CONSENSUS_DECISIONS_TOTAL = Counter(
    "ouroboros_consensus_decisions_total",
    "Consensus outcomes per decision",
    labelnames=("decision",),
)

JUDGE_PANEL_SIZE = Histogram(
    "ouroboros_judge_panel_size",
    "Number of judges that voted in a settled round",
    buckets=(1, 3, 5, 7, 9, 13),
)

GRAPH_EXPANSIONS_TOTAL = Counter(
    "ouroboros_graph_expansions_total",
    "Automatic graph expansions grouped by path",
    labelnames=("path",),
)

RUN_OUTCOMES_TOTAL = Counter(
    "ouroboros_run_outcomes_total",
    "Scheduler run terminations grouped by outcome",
    labelnames=("mode", "outcome"),
)

GRAPH_NODES = Gauge(
    "ouroboros_graph_nodes",
    "Nodes in the task graph grouped by status",
    labelnames=("status",),
)


def observe_node_execution(kind: str, status: str, duration_seconds: float) -> None:
    NODE_EXECUTION_TOTAL.labels(kind=kind, status=status).inc()
    NODE_EXECUTION_LATENCY_SECONDS.labels(kind=kind).observe(max(duration_seconds, 0.0))


def record_quota_backoff(kind: str, delay_seconds: float) -> None:
    QUOTA_BACKOFF_TOTAL.labels(kind=kind).inc()
    QUOTA_BACKOFF_SECONDS.observe(max(delay_seconds, 0.0))


def record_validation_rejection(kind: str, flags: list[str]) -> None:
    for flag in flags or ["unknown"]:
        VALIDATION_REJECTIONS_TOTAL.labels(kind=kind, flag=flag).inc()


def record_rate_limit_wait(window: str) -> None:
    RATE_LIMIT_WAIT_TOTAL.labels(window=window).inc()


def set_gate_occupancy(in_use: int, waiting: int) -> None:
    GATE_IN_USE.set(in_use)
    GATE_WAITERS.set(waiting)


def record_consensus_decision(decision: str, judges: int) -> None:
    CONSENSUS_DECISIONS_TOTAL.labels(decision=decision).inc()
    if judges:
        JUDGE_PANEL_SIZE.observe(judges)


def increment_graph_expansion(path: str) -> None:
    GRAPH_EXPANSIONS_TOTAL.labels(path=path).inc()


def record_run_outcome(mode: str, outcome: str) -> None:
    RUN_OUTCOMES_TOTAL.labels(mode=mode, outcome=outcome).inc()


def record_graph_size(counts: dict[str, int]) -> None:
    for status, count in counts.items():
        GRAPH_NODES.labels(status=status).set(count)
