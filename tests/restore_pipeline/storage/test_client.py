"""
Tests for StorageClient.

Test coverage:
- Credential lifecycle (idempotent authenticate, rotation, revocation)
- Existence checks with If-Match checksums
- Idempotent, exclusive-create downloads and the skip paths
- Backpressure through the shared rate limiter
- Failure logging, classification and partial files
- download_slice outcomes, metrics and close()
"""

import asyncio
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from prometheus_client import REGISTRY

from core.errors import (
    ChecksumMismatchError,
    ConnectionError,
    CredentialsNotFoundError,
    ErrorCategory,
    RestoreJobFatalError,
    StagingError,
    StorageError,
)
from core.resilience import RateLimiter
from restore_pipeline.config import StorageClientConfig
from restore_pipeline.models import RestoreJob
from restore_pipeline.storage import client as client_module
from restore_pipeline.storage.client import StorageClient
from restore_pipeline.storage.gateway import S3Gateway
from restore_pipeline.storage.streaming import DownloadStatus, open_exclusive

BODY = bytes(range(256)) * 40  # 10240 bytes


@pytest.fixture
def client(gateway):
    return StorageClient(gateway, chunk_size=1024)


@pytest.fixture
def stored_object(gateway):
    gateway.put("b", "k", BODY, etag="abc123")
    return BODY


class TestAuthenticate:
    def test_returns_client_for_chaining(self, client, job):
        assert client.authenticate(job) is client

    def test_unchanged_credentials_installed_once(self, client, gateway, job, job_factory):
        client.authenticate(job)
        installed = client.credentials_for(job.job_id)

        client.authenticate(job)
        client.authenticate(job_factory())  # fresh snapshot, same material

        assert len(gateway.providers_created) == 1
        assert client.credentials_for(job.job_id) is installed

    def test_logs_only_real_updates(self, client, job, caplog):
        caplog.set_level(logging.INFO)

        client.authenticate(job)
        client.authenticate(job)

        updates = [
            r for r in caplog.records
            if r.getMessage() == "Credentials are updated in the storage client"
        ]
        assert len(updates) == 1
        assert updates[0].credentials["access_key_id"] == "****0001"
        assert "sk" not in str(updates[0].credentials.values())

    def test_rotation_replaces_entry(self, client, gateway, job, job_factory):
        client.authenticate(job)
        first = client.credentials_for(job.job_id)

        rotated = job_factory(token="tok-2")
        client.authenticate(rotated)

        second = client.credentials_for(job.job_id)
        assert second is not first
        assert second.read_credentials == rotated.secrets.read_credentials
        assert len(gateway.providers_created) == 2

    def test_rotation_releases_previous_provider(self, client, gateway, job, job_factory):
        client.authenticate(job)
        first = client.credentials_for(job.job_id)

        client.authenticate(job)
        assert gateway.providers_released == []

        client.authenticate(job_factory(token="tok-2"))

        assert gateway.providers_released == [first.provider]

    def test_missing_secrets_fatal_before_store(self, client, gateway):
        job = RestoreJob(job_id=uuid4())

        with pytest.raises(RestoreJobFatalError):
            client.authenticate(job)

        assert client.credentials_for(job.job_id) is None
        assert gateway.providers_created == []

    def test_concurrent_authenticate_installs_once(self, client, gateway, job_factory):
        jobs = [job_factory() for _ in range(50)]

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(client.authenticate, jobs))

        assert len(gateway.providers_created) == 1

    def test_jobs_are_independent(self, client, gateway, job, job_factory):
        other = job_factory(job_id=uuid4(), access_key_id="AKIAOTHERJOBKEY00002")

        client.authenticate(job).authenticate(other)
        client.revoke_credentials(other.job_id)

        assert client.credentials_for(job.job_id) is not None
        assert client.credentials_for(other.job_id) is None


class TestRevokeCredentials:
    @pytest.mark.asyncio
    async def test_revoked_job_fails_without_network(
        self, client, gateway, job, make_range, stored_object
    ):
        client.authenticate(job)
        client.revoke_credentials(job.job_id)
        restore_range = make_range()

        with pytest.raises(CredentialsNotFoundError) as exc_info:
            await client.object_exists(restore_range)
        assert exc_info.value.job_id == job.job_id

        with pytest.raises(CredentialsNotFoundError):
            await client.download_object_if_absent(restore_range)

        assert gateway.head_calls == []
        assert gateway.get_calls == []
        assert not restore_range.staged_object_path.exists()

    def test_idempotent(self, client, job):
        client.authenticate(job)

        client.revoke_credentials(job.job_id)
        client.revoke_credentials(job.job_id)
        client.revoke_credentials(uuid4())

        assert client.credentials_for(job.job_id) is None

    def test_releases_provider_of_removed_entry(self, client, gateway, job):
        client.authenticate(job)
        installed = client.credentials_for(job.job_id)

        client.revoke_credentials(job.job_id)
        client.revoke_credentials(job.job_id)

        assert gateway.providers_released == [installed.provider]

    def test_metric_counts_only_removed_entries(self, client, job):
        def revoked():
            return REGISTRY.get_sample_value("restore_credentials_revoked_total") or 0.0

        client.authenticate(job)
        before = revoked()

        client.revoke_credentials(job.job_id)
        client.revoke_credentials(job.job_id)
        client.revoke_credentials(uuid4())

        assert revoked() == before + 1

    @pytest.mark.asyncio
    async def test_never_authenticated_job(self, client, gateway, make_range):
        with pytest.raises(CredentialsNotFoundError, match="might already have failed"):
            await client.object_exists(make_range(job_id=uuid4()))
        assert gateway.head_calls == []

    @pytest.mark.asyncio
    async def test_reauthenticate_after_revoke_picks_up_new_credentials(
        self, client, gateway, job, job_factory, make_range, stored_object
    ):
        client.authenticate(job)
        client.revoke_credentials(job.job_id)
        client.authenticate(job_factory(token="tok-2"))

        await client.download_object_if_absent(make_range())

        used = gateway.get_calls[-1].provider.read_credentials
        assert used.session_token.get_secret_value() == "tok-2"


class TestObjectExists:
    @pytest.mark.asyncio
    async def test_head_with_quoted_checksum(self, client, gateway, job, make_range, stored_object):
        client.authenticate(job)

        metadata = await client.object_exists(make_range(checksum="abc123"))

        assert metadata.etag == '"abc123"'
        assert metadata.content_length == len(BODY)
        head = gateway.head_calls[-1]
        assert (head.bucket, head.key, head.if_match) == ("b", "k", '"abc123"')
        assert head.provider is client.credentials_for(job.job_id).provider

    @pytest.mark.asyncio
    async def test_already_quoted_checksum_unchanged(
        self, client, gateway, job, make_range, stored_object
    ):
        client.authenticate(job)

        await client.object_exists(make_range(checksum='"abc123"'))

        assert gateway.head_calls[-1].if_match == '"abc123"'

    @pytest.mark.asyncio
    async def test_checksum_mismatch_logged_with_masked_credentials(
        self, client, job, make_range, stored_object, caplog
    ):
        client.authenticate(job)
        installed = client.credentials_for(job.job_id)

        with pytest.raises(ChecksumMismatchError) as exc_info:
            await client.object_exists(make_range(checksum="other"))

        assert exc_info.value.context["access_key_id"] == "****0001"
        assert exc_info.value.context["slice_key"] == "k"
        record = next(r for r in caplog.records if r.levelno == logging.ERROR)
        assert record.operation == "head_object"
        assert record.credentials["access_key_id"] == "****0001"
        assert record.job_id == str(job.job_id)
        # The credentials object is not touched by failures
        assert client.credentials_for(job.job_id) is installed

    @pytest.mark.asyncio
    async def test_unclassified_gateway_error_wrapped(self, client, gateway, job, make_range):
        client.authenticate(job)
        gateway.head_error = RuntimeError("gateway exploded")

        with pytest.raises(StorageError) as exc_info:
            await client.object_exists(make_range())

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert exc_info.value.cause is exc_info.value.__cause__


class TestDownloadObjectIfAbsent:
    @pytest.mark.asyncio
    async def test_downloads_full_body(self, client, gateway, job, make_range, stored_object):
        client.authenticate(job)
        restore_range = make_range()

        path = await client.download_object_if_absent(restore_range)

        assert path == restore_range.staged_object_path
        assert path.read_bytes() == BODY
        assert gateway.get_calls[-1].chunk_size == 1024

    @pytest.mark.asyncio
    async def test_existing_file_returned_without_get(
        self, client, gateway, job, make_range, stored_object
    ):
        client.authenticate(job)
        restore_range = make_range()
        path = restore_range.staged_object_path
        path.parent.mkdir(parents=True)
        path.write_bytes(BODY)

        result = await client.download_object_if_absent(restore_range)

        assert result == path
        assert gateway.get_calls == []

    @pytest.mark.asyncio
    async def test_existing_file_is_not_compared_to_remote(
        self, client, gateway, job, make_range, stored_object
    ):
        # Known limitation: a stale local file with the same name is trusted
        client.authenticate(job)
        restore_range = make_range()
        path = restore_range.staged_object_path
        path.parent.mkdir(parents=True)
        path.write_bytes(b"stale content from an earlier object")

        result = await client.download_object_if_absent(restore_range)

        assert result.read_bytes() == b"stale content from an earlier object"
        assert gateway.head_calls == []
        assert gateway.get_calls == []

    @pytest.mark.asyncio
    async def test_file_created_between_check_and_open_is_skipped(
        self, client, gateway, job, make_range, stored_object
    ):
        client.authenticate(job)
        restore_range = make_range()

        def racing_open(path):
            path.write_bytes(b"written by another actor")
            return open_exclusive(path)

        with patch.object(client_module, "open_exclusive", side_effect=racing_open):
            outcome = await client.download_slice(restore_range)

        assert outcome.status == DownloadStatus.SKIPPED
        assert outcome.file_path == restore_range.staged_object_path
        assert restore_range.staged_object_path.read_bytes() == b"written by another actor"
        assert gateway.get_calls == []

    @pytest.mark.asyncio
    async def test_concurrent_downloads_of_same_range(
        self, client, gateway, job, make_range, stored_object
    ):
        client.authenticate(job)
        restore_range = make_range()

        outcomes = await asyncio.gather(
            client.download_slice(restore_range), client.download_slice(restore_range)
        )

        statuses = sorted(o.status.value for o in outcomes)
        assert statuses == ["downloaded", "skipped"]
        assert len(gateway.get_calls) == 1
        assert restore_range.staged_object_path.read_bytes() == BODY

    @pytest.mark.asyncio
    async def test_stream_failure_leaves_partial_file(
        self, client, gateway, job, make_range, stored_object, caplog
    ):
        client.authenticate(job)
        gateway.get_error = ConnectionError("connection reset by peer")
        gateway.fail_after_chunks = 2
        restore_range = make_range()

        with pytest.raises(ConnectionError) as exc_info:
            await client.download_object_if_absent(restore_range)

        assert exc_info.value is gateway.get_error
        assert exc_info.value.context["job_id"] == str(job.job_id)
        assert restore_range.staged_object_path.read_bytes() == BODY[:2048]
        assert any(
            r.getMessage() == "get_object failed for restore range" for r in caplog.records
        )

    @pytest.mark.asyncio
    async def test_partial_file_is_skipped_on_next_attempt(
        self, client, gateway, job, make_range, stored_object
    ):
        client.authenticate(job)
        gateway.get_error = ConnectionError("connection reset by peer")
        gateway.fail_after_chunks = 1
        restore_range = make_range()
        with pytest.raises(ConnectionError):
            await client.download_object_if_absent(restore_range)

        gateway.get_error = None
        gateway.fail_after_chunks = None
        outcome = await client.download_slice(restore_range)

        assert outcome.status == DownloadStatus.SKIPPED
        assert restore_range.staged_object_path.read_bytes() == BODY[:1024]

    @pytest.mark.asyncio
    async def test_cancel_while_creating_file_removes_it(
        self, client, gateway, job, make_range, stored_object
    ):
        client.authenticate(job)
        restore_range = make_range()
        path = restore_range.staged_object_path
        entered = threading.Event()
        release = threading.Event()
        created = threading.Event()

        def slow_open(target):
            entered.set()
            release.wait(timeout=5)
            fileobj = open_exclusive(target)
            created.set()
            return fileobj

        with patch.object(client_module, "open_exclusive", side_effect=slow_open):
            task = asyncio.create_task(client.download_object_if_absent(restore_range))
            while not entered.is_set():
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            release.set()
            while not created.is_set():
                await asyncio.sleep(0.01)
            for _ in range(200):
                if not path.exists():
                    break
                await asyncio.sleep(0.01)

        assert not path.exists()
        assert gateway.get_calls == []

        # Next attempt downloads instead of skipping an empty file
        assert (await client.download_object_if_absent(restore_range)).read_bytes() == BODY

    @pytest.mark.asyncio
    async def test_mkdir_failure_logged_then_open_fails(
        self, client, gateway, job, make_range, staging_dir, stored_object, caplog
    ):
        client.authenticate(job)
        restore_range = make_range()
        # A regular file where the job directory should be
        staging_dir.mkdir()
        restore_range.staged_object_path.parent.write_bytes(b"")

        with pytest.raises(StagingError) as exc_info:
            await client.download_object_if_absent(restore_range)

        assert exc_info.value.is_retryable is True
        assert isinstance(exc_info.value.__cause__, OSError)
        assert any(
            r.getMessage() == "Error creating staging directory"
            and r.levelno == logging.WARNING
            for r in caplog.records
        )
        assert gateway.get_calls == []

    @pytest.mark.asyncio
    async def test_close_failure_is_logged_not_raised(
        self, client, gateway, job, make_range, stored_object, caplog
    ):
        client.authenticate(job)
        restore_range = make_range()

        def open_with_failing_close(path):
            fileobj = open_exclusive(path)
            real_close = fileobj.close

            class Wrapper:
                def write(self, data):
                    return fileobj.write(data)

                def close(self):
                    real_close()
                    raise OSError("close failed")

            return Wrapper()

        with patch.object(client_module, "open_exclusive", side_effect=open_with_failing_close):
            path = await client.download_object_if_absent(restore_range)

        assert path.read_bytes() == BODY
        assert any(r.getMessage() == "Error closing staged file" for r in caplog.records)


class TestBackpressure:
    @pytest.mark.asyncio
    async def test_limiter_paid_for_every_byte(self, gateway, job, make_range, stored_object, fake_clock):
        rate = 4096
        limiter = RateLimiter(rate, clock=fake_clock, sleep=fake_clock.sleep)
        client = StorageClient(gateway, rate_limiter=limiter, chunk_size=1000)
        client.authenticate(job)

        await client.download_object_if_absent(make_range())

        assert len(fake_clock.sleeps) == 11  # ceil(10240 / 1000) chunks
        assert sum(fake_clock.sleeps) >= len(BODY) / rate - 1e-9

    @pytest.mark.asyncio
    async def test_download_takes_at_least_size_over_rate(
        self, gateway, job, make_range, stored_object
    ):
        rate = 40960  # BODY takes 0.25s
        client = StorageClient(gateway, rate_limiter=RateLimiter(rate), chunk_size=2048)
        client.authenticate(job)

        started = time.monotonic()
        await client.download_object_if_absent(make_range())
        elapsed = time.monotonic() - started

        assert elapsed >= len(BODY) / rate - 0.02

    @pytest.mark.asyncio
    async def test_limiter_shared_across_jobs(self, gateway, job, job_factory, make_range):
        # Frozen clock: every wait is the time until its reservation ends
        sleep = AsyncMock()
        limiter = RateLimiter(1024, clock=lambda: 0.0, sleep=sleep)
        client = StorageClient(gateway, rate_limiter=limiter, chunk_size=1024)
        other = job_factory(job_id=uuid4(), access_key_id="AKIAOTHERJOBKEY00002")
        client.authenticate(job).authenticate(other)
        gateway.put("b", "k1", b"a" * 2048)
        gateway.put("b", "k2", b"b" * 2048)

        await asyncio.gather(
            client.download_object_if_absent(make_range("R1", key="k1")),
            client.download_object_if_absent(make_range("R2", job_id=other.job_id, key="k2")),
        )

        waits = sorted(c.args[0] for c in sleep.await_args_list)
        assert waits == pytest.approx([1.0, 2.0, 3.0, 4.0])


class TestDownloadSlice:
    @pytest.mark.asyncio
    async def test_downloaded_outcome(self, client, job, make_range, stored_object):
        client.authenticate(job)

        outcome = await client.download_slice(make_range())

        assert outcome.status == DownloadStatus.DOWNLOADED
        assert outcome.bytes_written == len(BODY)

    @pytest.mark.asyncio
    async def test_missing_credentials_outcome(self, client, make_range):
        outcome = await client.download_slice(make_range(job_id=uuid4()))

        assert outcome.status == DownloadStatus.FAILED
        assert isinstance(outcome.error, CredentialsNotFoundError)
        assert outcome.error_category == ErrorCategory.PERMANENT
        assert outcome.is_retryable is False

    @pytest.mark.asyncio
    async def test_transient_failure_outcome(self, client, gateway, job, make_range, stored_object):
        client.authenticate(job)
        gateway.get_error = ConnectionError("connection refused")

        outcome = await client.download_slice(make_range())

        assert outcome.status == DownloadStatus.FAILED
        assert outcome.error_category == ErrorCategory.TRANSIENT
        assert outcome.is_retryable is True

    @pytest.mark.asyncio
    async def test_metrics(self, client, job, make_range, stored_object):
        def sample(status):
            return REGISTRY.get_sample_value(
                "restore_slice_downloads_total", {"status": status}
            ) or 0.0

        bytes_before = REGISTRY.get_sample_value("restore_slice_download_bytes_total") or 0.0
        downloaded, skipped = sample("downloaded"), sample("skipped")
        client.authenticate(job)

        await client.download_slice(make_range())
        await client.download_slice(make_range())

        assert sample("downloaded") == downloaded + 1
        assert sample("skipped") == skipped + 1
        assert REGISTRY.get_sample_value("restore_slice_download_bytes_total") == (
            bytes_before + len(BODY)
        )


class TestClose:
    @pytest.mark.asyncio
    async def test_idempotent(self, client, gateway):
        await client.close()
        await client.close()

        assert gateway.close_count == 1

    @pytest.mark.asyncio
    async def test_failure_logged_not_raised(self, gateway, caplog):
        gateway.close = AsyncMock(side_effect=RuntimeError("pool already gone"))
        client = StorageClient(gateway)

        await client.close()

        assert any(
            r.getMessage() == "Error closing object storage gateway" for r in caplog.records
        )


class TestFromConfig:
    def test_wires_gateway_and_limiter(self):
        config = StorageClientConfig(
            endpoint_url="http://localhost:9000",
            download_rate_bytes_per_sec=2048,
            download_chunk_size=4096,
        )

        client = StorageClient.from_config(config)

        assert isinstance(client._gateway, S3Gateway)
        assert client._gateway.endpoint_url == "http://localhost:9000"
        assert client.rate_limiter.rate == 2048
        assert client._chunk_size == 4096

    def test_unlimited_by_default(self):
        client = StorageClient.from_config(StorageClientConfig())
        assert client.rate_limiter.is_unlimited is True

    def test_rejects_bad_chunk_size(self, gateway):
        with pytest.raises(ValueError, match="chunk_size"):
            StorageClient(gateway, chunk_size=0)


@pytest.mark.asyncio
async def test_restore_scenario(gateway, job_factory, make_range):
    """Authenticate J1, check and stage R1, revoke J1, then R2 is refused."""
    gateway.put("b", "k", BODY, etag="abc123")
    gateway.put("b", "k2", b"second slice", etag="def456")
    client = StorageClient(gateway)
    j1 = job_factory(access_key_id="ak-for-j1", token="tok")
    r1 = make_range("R1", job_id=j1.job_id, bucket="b", key="k", checksum="abc123")
    r2 = make_range("R2", job_id=j1.job_id, bucket="b", key="k2", checksum="def456")

    client.authenticate(j1)
    metadata = await client.object_exists(r1)
    path = await client.download_object_if_absent(r1)

    assert gateway.head_calls[-1].if_match == '"abc123"'
    assert metadata.etag == '"abc123"'
    assert path.name == "R1.zip"
    assert path.parent.name == str(j1.job_id)
    assert path.read_bytes() == BODY

    client.revoke_credentials(j1.job_id)

    with pytest.raises(CredentialsNotFoundError):
        await client.download_object_if_absent(r2)
    assert not r2.staged_object_path.exists()
    assert len(gateway.get_calls) == 1
