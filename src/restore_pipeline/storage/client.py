"""
Storage client for restore slice staging.

Holds the active read credentials of every restore job and uses them to
check and download slice objects into the local staging directory.

Every network call performs exactly one attempt. Failures are logged here,
with the job id, slice key and masked credentials, and then propagated as
PipelineError subclasses; retry policy belongs to the range scheduler.
"""

import asyncio
import contextlib
import functools
import logging
import time
from pathlib import Path
from typing import BinaryIO, List, NoReturn, Optional
from uuid import UUID

from core.errors import (
    CredentialsNotFoundError,
    PipelineError,
    StorageError,
    wrap_exception,
)
from core.logging import log_context, log_exception, log_with_context
from core.resilience import RateLimiter
from restore_pipeline.config import DEFAULT_CHUNK_SIZE, StorageClientConfig
from restore_pipeline.metrics import (
    credentials_refreshed_total,
    credentials_revoked_total,
    slice_download_bytes_total,
    slice_download_duration_seconds,
    slice_downloads_total,
    storage_request_errors_total,
)
from restore_pipeline.models import RestoreJob, RestoreRange
from restore_pipeline.storage.credentials import CredentialStore, Credentials
from restore_pipeline.storage.gateway import (
    ObjectMetadata,
    ObjectStorageGateway,
    S3Gateway,
)
from restore_pipeline.storage.streaming import (
    DownloadOutcome,
    DownloadStatus,
    open_exclusive,
    quote_if_needed,
    write_rate_limited,
)

logger = logging.getLogger(__name__)


class StorageClient:
    """
    Credential-aware, rate-limited client for staging restore slices.

    Usage:
        client = StorageClient.from_config(StorageClientConfig.from_env())
        client.authenticate(job)
        await client.object_exists(restore_range)
        path = await client.download_object_if_absent(restore_range)
        client.revoke_credentials(job.job_id)
        await client.close()

    One rate limiter is shared by all downloads of this client, so the
    configured rate bounds the aggregate throughput across jobs.
    """

    def __init__(
        self,
        gateway: ObjectStorageGateway,
        rate_limiter: Optional[RateLimiter] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self._gateway = gateway
        self._rate_limiter = rate_limiter or RateLimiter.unlimited()
        self._chunk_size = chunk_size
        self._credentials: CredentialStore[Credentials] = CredentialStore()
        self._closed = False

    @classmethod
    def from_config(cls, config: StorageClientConfig) -> "StorageClient":
        """Build a client backed by S3Gateway with the configured rate limit."""
        return cls(
            gateway=S3Gateway.from_config(config),
            rate_limiter=(
                RateLimiter(config.download_rate_bytes_per_sec)
                if config.rate_limited
                else RateLimiter.unlimited()
            ),
            chunk_size=config.download_chunk_size,
        )

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    def credentials_for(self, job_id: UUID) -> Optional[Credentials]:
        """Currently installed credentials of a job, if any."""
        return self._credentials.get(job_id)

    # =========================================================================
    # Credentials lifecycle
    # =========================================================================

    def authenticate(self, restore_job: RestoreJob) -> "StorageClient":
        """
        Install or rotate the read credentials of a job.

        Unchanged credentials leave the installed entry untouched. Changed
        credentials are initialized and replace the entry atomically.

        Returns:
            self, for chaining

        Raises:
            RestoreJobFatalError: If the job has no secrets
        """
        candidate = Credentials(restore_job)
        replaced: List[Credentials] = []

        def upsert(job_id: UUID, current: Optional[Credentials]) -> Credentials:
            if candidate.matches(current):
                return current
            if current is not None:
                replaced.append(current)
            return candidate.init(self._gateway.create_provider)

        installed = self._credentials.compute(restore_job.job_id, upsert)

        if installed is candidate:
            for previous in replaced:
                self._gateway.release_provider(previous.provider)
            credentials_refreshed_total.inc()
            log_with_context(
                logger,
                logging.INFO,
                "Credentials are updated in the storage client",
                job_id=str(restore_job.job_id),
                credentials=candidate.masked(),
            )
        return self

    def revoke_credentials(self, job_id: UUID) -> None:
        """
        Forget the credentials of a job. Unknown job ids are a no-op.

        Requests already running with the revoked credentials are not
        cancelled.
        """
        removed = self._credentials.remove(job_id)
        if removed is not None:
            self._gateway.release_provider(removed.provider)
            credentials_revoked_total.inc()
        log_with_context(
            logger,
            logging.INFO,
            "Revoke credentials for job",
            job_id=str(job_id),
            credentials=removed.masked() if removed else None,
        )

    # =========================================================================
    # Object operations
    # =========================================================================

    async def object_exists(self, restore_range: RestoreRange) -> ObjectMetadata:
        """
        Check that the slice object exists and matches its checksum.

        Raises:
            CredentialsNotFoundError: If the job has no active credentials
            ChecksumMismatchError: If the remote ETag differs
            PipelineError: For any other storage failure
        """
        credentials = self._resolve_credentials(restore_range, "head_object")
        try:
            return await self._gateway.head_object(
                restore_range.slice_bucket,
                restore_range.slice_key,
                credentials.provider,
                if_match=quote_if_needed(restore_range.slice_checksum),
            )
        except Exception as exc:
            self._fail(exc, "head_object", restore_range, credentials)

    async def download_object_if_absent(self, restore_range: RestoreRange) -> Path:
        """
        Download the slice object to its staged path unless it is already there.

        An existing file is returned as is, without comparing it to the
        remote object. A partial file left by a failed download stays on disk.

        Returns:
            Path of the staged file

        Raises:
            CredentialsNotFoundError: If the job has no active credentials
            PipelineError: For storage or local filesystem failures
        """
        outcome = await self._download(restore_range)
        return outcome.file_path

    async def download_slice(self, restore_range: RestoreRange) -> DownloadOutcome:
        """
        Same as download_object_if_absent, reporting failures as an outcome.

        Failures are still logged before being returned.
        """
        try:
            return await self._download(restore_range)
        except PipelineError as e:
            return DownloadOutcome.failure(e, file_path=restore_range.staged_object_path)

    async def close(self) -> None:
        """Release the gateway. Idempotent; failures are logged."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._gateway.close()
        except Exception as e:
            log_exception(
                logger,
                e,
                "Error closing object storage gateway",
                level=logging.WARNING,
                operation="close",
            )

    # =========================================================================
    # Internals
    # =========================================================================

    def _resolve_credentials(
        self, restore_range: RestoreRange, operation: str
    ) -> Credentials:
        credentials = self._credentials.get(restore_range.job_id)
        if credentials is None:
            error = CredentialsNotFoundError(restore_range.job_id)
            log_with_context(
                logger,
                logging.WARNING,
                str(error),
                job_id=str(restore_range.job_id),
                slice_key=restore_range.slice_key,
                operation=operation,
                error_category=error.category.value,
            )
            raise error
        return credentials

    async def _download(self, restore_range: RestoreRange) -> DownloadOutcome:
        with log_context(
            job_id=str(restore_range.job_id),
            slice_key=restore_range.slice_key,
            stage="download",
        ):
            try:
                outcome = await self._stage_slice(restore_range)
            except PipelineError:
                slice_downloads_total.labels(status=DownloadStatus.FAILED.value).inc()
                raise
        slice_downloads_total.labels(status=outcome.status.value).inc()
        return outcome

    async def _stage_slice(self, restore_range: RestoreRange) -> DownloadOutcome:
        credentials = self._resolve_credentials(restore_range, "get_object")
        path = restore_range.staged_object_path

        if await asyncio.to_thread(path.exists):
            self._log_skipped(restore_range)
            return DownloadOutcome.skipped(path)

        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            # Opening the file below reports the actual problem
            log_exception(
                logger,
                e,
                "Error creating staging directory",
                level=logging.WARNING,
                include_traceback=False,
                job_id=str(restore_range.job_id),
                destination=str(path.parent),
            )

        try:
            fileobj = await self._open_staged_file(path)
        except FileExistsError:
            self._log_skipped(restore_range)
            return DownloadOutcome.skipped(path)
        except OSError as exc:
            self._fail(exc, "get_object", restore_range, credentials)

        log_with_context(
            logger,
            logging.INFO,
            "Downloading object",
            job_id=str(restore_range.job_id),
            bucket=restore_range.slice_bucket,
            slice_key=restore_range.slice_key,
            destination=str(path),
        )

        start_time = time.perf_counter()
        try:
            chunks = self._gateway.get_object(
                restore_range.slice_bucket,
                restore_range.slice_key,
                credentials.provider,
                chunk_size=self._chunk_size,
            )
            async with contextlib.aclosing(chunks):
                bytes_written = await write_rate_limited(
                    chunks, fileobj, self._rate_limiter
                )
        except Exception as exc:
            self._fail(exc, "get_object", restore_range, credentials)
        finally:
            await self._close_file(fileobj, path)

        duration = time.perf_counter() - start_time
        slice_download_bytes_total.inc(bytes_written)
        slice_download_duration_seconds.observe(duration)
        log_with_context(
            logger,
            logging.INFO,
            "Object downloaded",
            job_id=str(restore_range.job_id),
            slice_key=restore_range.slice_key,
            destination=str(path),
            bytes_written=bytes_written,
            duration_ms=round(duration * 1000, 2),
        )
        return DownloadOutcome.downloaded(path, bytes_written)

    async def _open_staged_file(self, path: Path) -> BinaryIO:
        """
        Exclusively create the staged file in a worker thread.

        A cancelled caller does not stop the thread, which may still create
        the file; it is then closed and removed so that a later attempt does
        not skip an empty file as already downloaded.
        """
        opening = asyncio.ensure_future(asyncio.to_thread(open_exclusive, path))
        try:
            return await asyncio.shield(opening)
        except asyncio.CancelledError:
            opening.add_done_callback(functools.partial(_discard_unused_file, path))
            raise

    async def _close_file(self, fileobj: BinaryIO, path: Path) -> None:
        try:
            await asyncio.to_thread(fileobj.close)
        except OSError as e:
            log_exception(
                logger,
                e,
                "Error closing staged file",
                level=logging.WARNING,
                include_traceback=False,
                destination=str(path),
            )

    def _log_skipped(self, restore_range: RestoreRange) -> None:
        log_with_context(
            logger,
            logging.INFO,
            "Skipping download, file already exists",
            job_id=str(restore_range.job_id),
            slice_key=restore_range.slice_key,
            destination=str(restore_range.staged_object_path),
        )

    def _fail(
        self,
        exc: Exception,
        operation: str,
        restore_range: RestoreRange,
        credentials: Credentials,
    ) -> NoReturn:
        """Classify, log and raise a failed storage operation."""
        masked = credentials.masked()
        error = wrap_exception(
            exc,
            default_class=StorageError,
            context={
                "job_id": str(restore_range.job_id),
                "slice_key": restore_range.slice_key,
                "access_key_id": masked["access_key_id"],
            },
        )
        storage_request_errors_total.labels(
            operation=operation, error_category=error.category.value
        ).inc()
        log_exception(
            logger,
            error,
            f"{operation} failed for restore range",
            job_id=str(restore_range.job_id),
            bucket=restore_range.slice_bucket,
            slice_key=restore_range.slice_key,
            operation=operation,
            credentials=masked,
        )
        if error is exc:
            raise error
        raise error from exc


def _discard_unused_file(path: Path, opening: "asyncio.Future[BinaryIO]") -> None:
    """Close and remove a staged file whose download was cancelled before it began."""
    if opening.cancelled() or opening.exception() is not None:
        return
    try:
        opening.result().close()
        path.unlink(missing_ok=True)
    except OSError as e:
        log_exception(
            logger,
            e,
            "Error removing staged file of a cancelled download",
            level=logging.WARNING,
            include_traceback=False,
            destination=str(path),
        )
