"""
Prometheus metrics for the oplog tailer.
"""

from prometheus_client import Counter, Gauge

entries_dispatched_total = Counter(
    'mongotail_entries_dispatched_total',
    'Oplog entries delivered to a handler',
    ['label', 'operation']
)

entries_skipped_total = Counter(
    'mongotail_entries_skipped_total',
    'Oplog entries with an unrecognized operation kind',
    ['label', 'operation']
)

handler_errors_total = Counter(
    'mongotail_handler_errors_total',
    'Exceptions raised by handler callbacks',
    ['label', 'operation']
)

reconnects_total = Counter(
    'mongotail_reconnects_total',
    'Oplog cursor reconnect attempts',
    ['label', 'reason']
)

checkpoint_advances_total = Counter(
    'mongotail_checkpoint_advances_total',
    'Checkpoint advance attempts',
    ['label', 'status']
)

checkpoint_lag_seconds = Gauge(
    'mongotail_checkpoint_lag_seconds',
    'Wall-clock lag of the persisted checkpoint',
    ['label']
)

dispatch_queue_depth = Gauge(
    'mongotail_dispatch_queue_depth',
    'Entries fetched but not yet completed',
    ['label']
)
