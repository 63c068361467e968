"""
Rate-limited streaming of object bodies to local files.

The consumer loop pulls one chunk, pays the rate limiter for its length
and writes it before pulling the next, so a slow disk or a low rate slows
the network read instead of buffering the object in memory.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Optional

from core.errors import ErrorCategory, PipelineError, is_retryable_error
from core.resilience import RateLimiter

logger = logging.getLogger(__name__)


class DownloadStatus(str, Enum):
    DOWNLOADED = "downloaded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class DownloadOutcome:
    """
    Result of staging one slice.

    SKIPPED means the staged file already existed (or another download
    created it first) and nothing was transferred.
    """

    status: DownloadStatus
    file_path: Optional[Path] = None
    bytes_written: int = 0
    error_message: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    error: Optional[PipelineError] = None

    @property
    def success(self) -> bool:
        return self.status != DownloadStatus.FAILED

    @property
    def is_retryable(self) -> bool:
        return self.error is not None and is_retryable_error(self.error)

    @classmethod
    def downloaded(cls, file_path: Path, bytes_written: int) -> "DownloadOutcome":
        return cls(
            status=DownloadStatus.DOWNLOADED,
            file_path=file_path,
            bytes_written=bytes_written,
        )

    @classmethod
    def skipped(cls, file_path: Path) -> "DownloadOutcome":
        return cls(status=DownloadStatus.SKIPPED, file_path=file_path)

    @classmethod
    def failure(
        cls, error: PipelineError, file_path: Optional[Path] = None
    ) -> "DownloadOutcome":
        return cls(
            status=DownloadStatus.FAILED,
            file_path=file_path,
            error_message=str(error),
            error_category=error.category,
            error=error,
        )


def open_exclusive(path: Path) -> BinaryIO:
    """
    Open ``path`` for writing, failing if it already exists.

    Raises:
        FileExistsError: If another writer created the file first
    """
    return open(path, "xb")


async def write_rate_limited(
    chunks: AsyncIterator[bytes],
    fileobj: BinaryIO,
    rate_limiter: RateLimiter,
) -> int:
    """
    Copy ``chunks`` into ``fileobj``, acquiring one permit per byte.

    Args:
        chunks: Object body, in order
        fileobj: Open binary file
        rate_limiter: Shared limiter; acquire happens before each write

    Returns:
        Number of bytes written
    """
    bytes_written = 0
    async for chunk in chunks:
        if not chunk:
            continue
        await rate_limiter.acquire(len(chunk))
        await asyncio.to_thread(fileobj.write, chunk)
        bytes_written += len(chunk)
    return bytes_written


def quote_if_needed(etag: str) -> str:
    """ETags travel quoted in If-Match headers."""
    if len(etag) >= 2 and etag.startswith('"') and etag.endswith('"'):
        return etag
    return f'"{etag}"'
