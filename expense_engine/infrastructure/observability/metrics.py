"""Prometheus metrics for bill generation, ledger sync, rule hits and batch jobs"""

from prometheus_client import Counter, Histogram

# Generation metrics
instances_generated_counter = Counter(
    "expense_bill_instances_generated_total",
    "Bill instances created by the generator",
    ["frequency"],  # MONTHLY | QUARTERLY | ANNUAL
)

generation_errors_counter = Counter(
    "expense_generation_errors_total",
    "Definition/period items that failed during generation",
)

# Ledger metrics
transactions_ingested_counter = Counter(
    "expense_transactions_ingested_total",
    "New ledger transactions stored",
)

transactions_skipped_counter = Counter(
    "expense_transactions_auto_skipped_total",
    "Transactions resolved by a skip rule",
    ["rule_type"],
)

transactions_matched_counter = Counter(
    "expense_transactions_auto_matched_total",
    "Transactions attached to a bill instance",
)

ledger_fetch_failures_counter = Counter(
    "ledger_fetch_failures_total",
    "Failed ledger source calls",
)

# Consolidation metrics
consolidation_merges_counter = Counter(
    "expense_consolidation_merged_total",
    "Duplicate records merged",
    ["kind"],  # rule | bill
)

# Batch jobs
job_skipped_busy_counter = Counter(
    "expense_job_skipped_busy_total",
    "Triggers dropped because a pass was already running",
    ["job"],
)

job_duration_histogram = Histogram(
    "expense_job_duration_seconds",
    "Batch job duration",
    ["job", "status"],
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0],
)

# Notification metrics
webhook_latency_histogram = Histogram(
    "webhook_latency_seconds",
    "Notification webhook response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

webhook_failure_counter = Counter(
    "webhook_failures_total",
    "Failed webhook deliveries",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_rule_hit(rule_type) -> None:
    """Record an automatic skip, labelled by rule type"""
    label = getattr(rule_type, "value", rule_type)
    transactions_skipped_counter.labels(rule_type=label).inc()
