"""Prometheus metrics for the application"""
from prometheus_client import REGISTRY, Counter


def _counter(name, documentation, labelnames=()):
    # Module may be re-imported by test runners; reuse the registered collector
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Inbound notifications by provider event name and terminal state
webhook_events_counter = _counter(
    'lnking_webhook_events_total',
    'Total number of inbound payment provider notifications',
    ['event', 'outcome']
)

# Analytics records and outbound merchant webhooks
downstream_dispatch_counter = _counter(
    'lnking_downstream_dispatch_total',
    'Total number of downstream dispatch attempts',
    ['kind', 'status']
)

entitlement_transitions_counter = _counter(
    'lnking_entitlement_transitions_total',
    'Total number of entitlement patches applied to workspaces',
    ['plan']
)
