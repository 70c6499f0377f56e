"""Prometheus metrics for loan lifecycle, repayments, rotations and event delivery"""

from prometheus_client import Counter, Histogram

# Loan metrics
loan_transition_counter = Counter(
    "chama_loan_transitions_total",
    "Loan status transitions",
    ["to_status"],
)

repayment_counter = Counter(
    "chama_repayments_total",
    "Applied repayments by size bucket",
    ["bucket"],  # <1k, 1k-10k, 10k-100k, 100k+ (major units)
)

repayment_amount_counter = Counter(
    "chama_repayment_cents_total",
    "Repaid cents by component",
    ["component"],  # penalty | interest | principal
)

penalty_accrual_counter = Counter(
    "chama_penalty_accruals_total",
    "Penalty charges created by the accrual job",
)

# Rotation metrics
payout_counter = Counter(
    "chama_payouts_total",
    "ROSCA payouts processed",
)

swap_counter = Counter(
    "chama_swaps_total",
    "Resolved swap requests",
    ["outcome"],  # approved | rejected
)

# Concurrency
conflict_counter = Counter(
    "chama_conflicts_total",
    "Concurrent-modification conflicts detected",
    ["operation"],
)

# Notifier metrics
webhook_latency_histogram = Histogram(
    "webhook_latency_seconds",
    "Event webhook response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

webhook_failure_counter = Counter(
    "webhook_failures_total",
    "Failed webhook deliveries",
)

# Scheduled jobs
job_failure_counter = Counter(
    "chama_job_failures_total",
    "Per-item failures inside scheduled jobs",
    ["job"],
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_loan_transition(to_status: str) -> None:
    loan_transition_counter.labels(to_status=to_status).inc()


def record_repayment(amount_cents: int, penalty_cents: int, interest_cents: int, principal_cents: int) -> None:
    """Record repayment size distribution and the component split"""
    if amount_cents < 100_000:
        bucket = "<1k"
    elif amount_cents < 1_000_000:
        bucket = "1k-10k"
    elif amount_cents < 10_000_000:
        bucket = "10k-100k"
    else:
        bucket = "100k+"
    repayment_counter.labels(bucket=bucket).inc()

    repayment_amount_counter.labels(component="penalty").inc(penalty_cents)
    repayment_amount_counter.labels(component="interest").inc(interest_cents)
    repayment_amount_counter.labels(component="principal").inc(principal_cents)
