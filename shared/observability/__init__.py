from .setup import setup_observability
from .metrics import (
    orders_mutations_total,
    orders_version_conflicts_total,
    orders_transitions_rejected_total,
    realtime_connections_active,
    realtime_deliveries_total,
)
