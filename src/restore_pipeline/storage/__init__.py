"""
Object storage access for restore staging.

Components:
    - StorageClient: authenticate / revoke job credentials, check and
      download slice objects into the staging directory
    - Credentials / CredentialStore: per-job credentials with atomic upsert
    - ObjectStorageGateway protocol and the aioboto3 backed S3Gateway
    - DownloadOutcome: downloaded / skipped / failed result of one slice
"""

from restore_pipeline.storage.client import StorageClient
from restore_pipeline.storage.credentials import CredentialStore, Credentials
from restore_pipeline.storage.gateway import (
    ObjectMetadata,
    ObjectStorageGateway,
    S3Gateway,
    translate_storage_error,
)
from restore_pipeline.storage.streaming import (
    DownloadOutcome,
    DownloadStatus,
    write_rate_limited,
)

__all__ = [
    "StorageClient",
    "Credentials",
    "CredentialStore",
    "ObjectMetadata",
    "ObjectStorageGateway",
    "S3Gateway",
    "translate_storage_error",
    "DownloadOutcome",
    "DownloadStatus",
    "write_rate_limited",
]
