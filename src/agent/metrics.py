"""
Prometheus metrics for monitoring the capture pipeline.
"""
from prometheus_client import Counter, Histogram, Gauge

# Cycle metrics
cycles_total = Counter(
    'agent_cycles_total',
    'Main capture cycles by outcome',
    ['outcome']
)

watchdog_runs_total = Counter(
    'agent_watchdog_runs_total',
    'Watchdog cycles by outcome',
    ['outcome']
)

cycle_duration_seconds = Histogram(
    'agent_cycle_duration_seconds',
    'Main capture cycle duration in seconds',
    buckets=(0.5, 1, 2, 5, 8, 12, 15, 20, 30)
)

# Acquisition metrics
gps_fixes_total = Counter(
    'agent_gps_fixes_total',
    'Location readings by acquisition tier',
    ['method']
)

connectivity_checks_total = Counter(
    'agent_connectivity_checks_total',
    'Connectivity probe results',
    ['result']
)

alerts_emitted_total = Counter(
    'agent_alerts_emitted_total',
    'Alerts enqueued by type',
    ['type']
)

# Delivery metrics
upload_attempts_total = Counter(
    'agent_upload_attempts_total',
    'Collector upload attempts',
    ['kind', 'status']
)

last_successful_send_timestamp = Gauge(
    'agent_last_successful_send_timestamp_seconds',
    'Unix time of the last confirmed location delivery'
)

# Queue metrics
queue_length = Gauge(
    'agent_queue_length',
    'Entries currently queued',
    ['queue']
)

queue_evictions_total = Counter(
    'agent_queue_evictions_total',
    'Entries dropped because a queue was at capacity',
    ['queue']
)
