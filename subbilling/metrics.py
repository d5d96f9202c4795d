from prometheus_client import Counter, Histogram

# One increment per gateway call (a fallback charge counts twice)
CHARGE_ATTEMPTS = Counter(
    "subbilling_charge_attempts_total",
    "Gateway charge calls by payment method class and result",
    ["method", "outcome"],
)

# One increment per orchestrated subscription
CHARGE_OUTCOMES = Counter(
    "subbilling_charge_outcomes_total",
    "Charge orchestration outcomes",
    ["outcome"],
)

WEBHOOK_EVENTS = Counter(
    "subbilling_webhook_events_total",
    "Gateway webhook events by type and reconciliation result",
    ["event_type", "result"],
)

BILLING_RUN_SECONDS = Histogram(
    "subbilling_billing_run_seconds",
    "Wall time of a billing scheduler run",
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0),
)
