"""
Prometheus metrics for restore slice staging.

Provides instrumentation for:
- Credential rotation and revocation
- Slice download outcomes, bytes and duration
- Storage request errors by category
"""

from prometheus_client import Counter, Histogram

# Credential lifecycle
credentials_refreshed_total = Counter(
    "restore_credentials_refreshed_total",
    "Number of times job credentials were installed or rotated in the storage client",
)

credentials_revoked_total = Counter(
    "restore_credentials_revoked_total",
    "Number of restore jobs whose installed credentials were revoked",
)

# Slice downloads
slice_downloads_total = Counter(
    "restore_slice_downloads_total",
    "Slice download attempts by outcome",
    ["status"],  # status: downloaded, skipped, failed
)

slice_download_bytes_total = Counter(
    "restore_slice_download_bytes_total",
    "Total bytes written to the staging directory",
)

slice_download_duration_seconds = Histogram(
    "restore_slice_download_duration_seconds",
    "Time spent streaming a slice object to local disk",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)

# Storage request errors
storage_request_errors_total = Counter(
    "restore_storage_request_errors_total",
    "Failed object storage requests by operation and error category",
    ["operation", "error_category"],  # operation: head_object, get_object
)
