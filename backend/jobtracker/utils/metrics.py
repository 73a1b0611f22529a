"""
Prometheus metrics definitions.
All metrics are registered here and can be imported by other modules.
"""
from prometheus_client import Counter, Histogram

# HTTP request metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'path', 'status']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'path'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Error metrics
errors_total = Counter(
    'errors_total',
    'Total errors',
    ['error_type']
)

# Blob storage metrics
# outcome: saved, degraded or failed
blob_operations_total = Counter(
    'blob_operations_total',
    'Total blob gateway operations',
    ['backend', 'operation', 'outcome']
)

blob_delete_failures_total = Counter(
    'blob_delete_failures_total',
    'Best-effort blob deletes that raised',
    ['backend']
)

# Attachment metrics
attachments_created_total = Counter(
    'attachments_created_total',
    'Total attachment rows created'
)

attachments_deleted_total = Counter(
    'attachments_deleted_total',
    'Total attachment rows deleted'
)
