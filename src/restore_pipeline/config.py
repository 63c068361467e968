"""Storage client configuration from environment variables."""

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1MB


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass
class StorageClientConfig:
    """Object storage and download configuration for restore staging.

    Load from environment using StorageClientConfig.from_env().
    Timeouts are in seconds, rates in bytes per second.
    """

    # Connection
    endpoint_url: Optional[str] = None
    region: str = "us-east-1"
    max_pool_connections: int = 50
    connect_timeout_seconds: float = 5.0
    read_timeout_seconds: float = 60.0

    # Download
    download_rate_bytes_per_sec: float = -1  # non-positive = unlimited
    download_chunk_size: int = DEFAULT_CHUNK_SIZE

    def __post_init__(self) -> None:
        if self.download_chunk_size <= 0:
            raise ValueError(
                f"download_chunk_size must be positive, got {self.download_chunk_size}"
            )
        if self.max_pool_connections <= 0:
            raise ValueError(
                f"max_pool_connections must be positive, got {self.max_pool_connections}"
            )

    @property
    def rate_limited(self) -> bool:
        return self.download_rate_bytes_per_sec > 0

    @classmethod
    def from_env(cls) -> "StorageClientConfig":
        """Load configuration from environment variables.

        Optional environment variables (with defaults):
            RESTORE_S3_ENDPOINT_URL: unset (use the AWS endpoint for the region)
            RESTORE_S3_REGION: us-east-1 (default)
            RESTORE_S3_MAX_POOL_CONNECTIONS: 50 (default)
            RESTORE_S3_CONNECT_TIMEOUT_SECONDS: 5 (default)
            RESTORE_S3_READ_TIMEOUT_SECONDS: 60 (default)
            RESTORE_DOWNLOAD_RATE_BYTES_PER_SEC: -1 (default, unlimited)
            RESTORE_DOWNLOAD_CHUNK_SIZE: 1048576 (default)

        Raises:
            ValueError: If a numeric variable cannot be parsed or is out of range
        """
        return cls(
            endpoint_url=os.getenv("RESTORE_S3_ENDPOINT_URL") or None,
            region=os.getenv("RESTORE_S3_REGION", "us-east-1"),
            max_pool_connections=_int_env("RESTORE_S3_MAX_POOL_CONNECTIONS", 50),
            connect_timeout_seconds=_float_env("RESTORE_S3_CONNECT_TIMEOUT_SECONDS", 5.0),
            read_timeout_seconds=_float_env("RESTORE_S3_READ_TIMEOUT_SECONDS", 60.0),
            download_rate_bytes_per_sec=_float_env(
                "RESTORE_DOWNLOAD_RATE_BYTES_PER_SEC", -1
            ),
            download_chunk_size=_int_env("RESTORE_DOWNLOAD_CHUNK_SIZE", DEFAULT_CHUNK_SIZE),
        )
