"""
Prometheus metrics for the change stream watcher.
"""

from prometheus_client import Counter, Gauge, Histogram


cdc_events_processed = Counter(
    'mongocdc_events_total',
    'Total change events dispatched',
    ['collection', 'operation']
)

cdc_handler_failures = Counter(
    'mongocdc_handler_failures_total',
    'Handler or hook callbacks that raised',
    ['collection', 'stage']
)

cdc_feed_errors = Counter(
    'mongocdc_feed_errors_total',
    'Errors and unsolicited closes reported by the change stream',
    ['collection', 'error_type']
)

cdc_reconnect_attempts = Counter(
    'mongocdc_reconnect_attempts_total',
    'Change stream reopen attempts',
    ['collection', 'outcome']
)

cdc_watching = Gauge(
    'mongocdc_watching',
    'Whether the watcher currently holds an open change stream',
    ['collection']
)

cdc_dispatch_duration = Histogram(
    'mongocdc_dispatch_seconds',
    'Time to run hooks and handlers for one change',
    ['collection']
)
