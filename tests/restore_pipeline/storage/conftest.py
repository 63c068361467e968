"""Fixtures for storage client tests: an in-memory object store gateway."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from uuid import UUID

import pytest

from core.errors import ChecksumMismatchError, NotFoundError
from restore_pipeline.models import (
    RestoreJob,
    RestoreJobSecrets,
    RestoreRange,
    StorageCredentials,
)
from restore_pipeline.storage.gateway import ObjectMetadata

J1 = UUID("0f0e0d0c-0b0a-4908-8706-050403020100")


@dataclass
class FakeProvider:
    read_credentials: StorageCredentials


@dataclass
class Call:
    bucket: str
    key: str
    provider: FakeProvider
    if_match: Optional[str] = None
    chunk_size: Optional[int] = None


@dataclass
class FakeGateway:
    """
    In-memory stand-in for S3.

    Objects are stored as (body, etag). Errors can be injected before the
    first chunk (``get_error``) or after ``fail_after_chunks`` chunks.
    """

    objects: Dict[Tuple[str, str], Tuple[bytes, str]] = field(default_factory=dict)
    providers_created: List[FakeProvider] = field(default_factory=list)
    providers_released: List[FakeProvider] = field(default_factory=list)
    head_calls: List[Call] = field(default_factory=list)
    get_calls: List[Call] = field(default_factory=list)
    head_error: Optional[Exception] = None
    get_error: Optional[Exception] = None
    fail_after_chunks: Optional[int] = None
    close_count: int = 0

    def put(self, bucket: str, key: str, body: bytes, etag: str = "abc123") -> None:
        self.objects[(bucket, key)] = (body, etag)

    def create_provider(self, read_credentials: StorageCredentials) -> FakeProvider:
        provider = FakeProvider(read_credentials)
        self.providers_created.append(provider)
        return provider

    async def head_object(self, bucket, key, provider, if_match=None):
        self.head_calls.append(Call(bucket, key, provider, if_match=if_match))
        if self.head_error is not None:
            raise self.head_error
        if (bucket, key) not in self.objects:
            raise NotFoundError(f"s3://{bucket}/{key} not found")
        body, etag = self.objects[(bucket, key)]
        if if_match is not None and if_match != f'"{etag}"':
            raise ChecksumMismatchError(f"ETag of s3://{bucket}/{key} does not match")
        return ObjectMetadata(etag=f'"{etag}"', content_length=len(body))

    async def get_object(self, bucket, key, provider, chunk_size=1024):
        self.get_calls.append(Call(bucket, key, provider, chunk_size=chunk_size))
        if self.get_error is not None and self.fail_after_chunks is None:
            raise self.get_error
        if (bucket, key) not in self.objects:
            raise NotFoundError(f"s3://{bucket}/{key} not found")
        body, _ = self.objects[(bucket, key)]
        for index, offset in enumerate(range(0, len(body), chunk_size)):
            if self.fail_after_chunks is not None and index == self.fail_after_chunks:
                raise self.get_error
            yield body[offset : offset + chunk_size]

    def release_provider(self, provider: FakeProvider) -> None:
        self.providers_released.append(provider)

    async def close(self) -> None:
        self.close_count += 1


def make_job(job_id: UUID = J1, access_key_id: str = "AKIAJ1READKEY0000001", token: str = "tok"):
    return RestoreJob(
        job_id=job_id,
        secrets=RestoreJobSecrets(
            read_credentials=StorageCredentials(
                access_key_id=access_key_id,
                secret_access_key="sk",
                session_token=token,
            )
        ),
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def staging_dir(tmp_path):
    return tmp_path / "staging"


@pytest.fixture
def job():
    return make_job()


@pytest.fixture
def make_range(staging_dir):
    def _make_range(
        slice_id: str = "R1",
        job_id: UUID = J1,
        bucket: str = "b",
        key: str = "k",
        checksum: str = "abc123",
    ) -> RestoreRange:
        return RestoreRange.for_slice(
            staging_dir,
            job_id,
            slice_id,
            slice_bucket=bucket,
            slice_key=key,
            slice_checksum=checksum,
        )

    return _make_range


@pytest.fixture
def job_factory():
    return make_job
