from prometheus_client import Counter, Gauge

# Business Metrics
orders_mutations_total = Counter(
    "orders_mutations_total",
    "Order mutations attempted through the event emitter",
    ["kind", "outcome"] # outcome: 'committed', 'rejected', 'conflict'
)

orders_version_conflicts_total = Counter(
    "orders_version_conflicts_total",
    "Optimistic version checks that failed on write"
)

orders_transitions_rejected_total = Counter(
    "orders_transitions_rejected_total",
    "Stage transitions refused by the transition engine",
    ["reason"] # Labels: error code, e.g. 'illegal_transition'
)

# Real-time layer
realtime_connections_active = Gauge(
    "realtime_connections_active",
    "Live authenticated real-time connections",
    ["role"]
)

realtime_deliveries_total = Counter(
    "realtime_deliveries_total",
    "Per-recipient frame deliveries",
    ["outcome"] # Labels: 'queued', 'dropped', 'failed'
)
