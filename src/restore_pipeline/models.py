"""
Restore job value contracts.

Pydantic models for the snapshots handed to the storage client by the job
persistence layer. All models are frozen: callers pass a fresh snapshot per
call instead of mutating a shared instance.
"""

from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from core.security import mask_credentials


class StorageCredentials(BaseModel):
    """Credentials for an S3-compatible storage service.

    Equality compares every field, including the secret values, so two
    snapshots with rotated material are never equal.

    Attributes:
        access_key_id: Access key id
        secret_access_key: Secret access key (masked in repr)
        session_token: Optional session token for temporary credentials
        region: Optional region the bucket lives in
    """

    model_config = ConfigDict(frozen=True)

    access_key_id: str = Field(..., min_length=1)
    secret_access_key: SecretStr
    session_token: Optional[SecretStr] = None
    region: Optional[str] = None

    def masked(self) -> Dict[str, Any]:
        """Log-safe representation."""
        return mask_credentials(
            self.access_key_id,
            has_secret=bool(self.secret_access_key.get_secret_value()),
            has_session_token=self.session_token is not None,
            region=self.region,
        )


class RestoreJobSecrets(BaseModel):
    """Secrets provisioned for a restore job.

    Only ``read_credentials`` is used to stage slices; ``write_credentials``
    belong to the uploader that produced the slices.
    """

    model_config = ConfigDict(frozen=True)

    read_credentials: StorageCredentials
    write_credentials: Optional[StorageCredentials] = None


class RestoreJobStatus(str, Enum):
    """Lifecycle state of a restore job, owned by the job manager."""

    CREATED = "CREATED"
    STAGE_READY = "STAGE_READY"
    STAGED = "STAGED"
    IMPORT_READY = "IMPORT_READY"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"

    @property
    def is_final(self) -> bool:
        """Final jobs must have their credentials revoked."""
        return self in (
            RestoreJobStatus.SUCCEEDED,
            RestoreJobStatus.FAILED,
            RestoreJobStatus.ABORTED,
        )


class RestoreJob(BaseModel):
    """Snapshot of one logical restore operation.

    A job whose ``secrets`` are missing can never be authenticated.

    Example:
        >>> job = RestoreJob(
        ...     job_id=uuid4(),
        ...     secrets=RestoreJobSecrets(
        ...         read_credentials=StorageCredentials(
        ...             access_key_id="ak", secret_access_key="sk", session_token="tok"
        ...         )
        ...     ),
        ... )
    """

    model_config = ConfigDict(frozen=True)

    job_id: UUID
    secrets: Optional[RestoreJobSecrets] = None
    status: RestoreJobStatus = RestoreJobStatus.CREATED
    keyspace: Optional[str] = None
    table_name: Optional[str] = None


class RestoreRange(BaseModel):
    """A slice of a restore job, backed by one remote object.

    Credentials are looked up by ``job_id`` on every call rather than being
    captured here, so a rotation is observed by later downloads.

    Attributes:
        job_id: Owning restore job
        slice_id: Slice identifier, unique within the job
        slice_bucket: Bucket holding the slice object
        slice_key: Object key of the slice
        slice_checksum: Remote integrity tag (ETag) of the object
        slice_compressed_size: Optional object size in bytes
        staged_object_path: Local destination, unique per (job, slice)
    """

    model_config = ConfigDict(frozen=True)

    job_id: UUID
    slice_id: str = Field(..., min_length=1)
    slice_bucket: str = Field(..., min_length=1)
    slice_key: str = Field(..., min_length=1)
    slice_checksum: str = Field(..., min_length=1)
    slice_compressed_size: Optional[int] = Field(default=None, ge=0)
    staged_object_path: Path

    @field_validator("slice_id", "slice_bucket", "slice_key", "slice_checksum")
    @classmethod
    def validate_non_empty_strings(cls, v: str, info) -> str:
        """Ensure string fields are not whitespace-only."""
        if not v.strip():
            raise ValueError(f"{info.field_name} cannot be empty or whitespace")
        return v

    @staticmethod
    def staged_path_for(
        staging_root: Union[str, Path], job_id: UUID, slice_id: str
    ) -> Path:
        """Deterministic staging path for a (job, slice) pair."""
        return Path(staging_root) / str(job_id) / f"{slice_id}.zip"

    @classmethod
    def for_slice(
        cls,
        staging_root: Union[str, Path],
        job_id: UUID,
        slice_id: str,
        **fields: Any,
    ) -> "RestoreRange":
        """Build a range whose staged path derives from the job and slice ids."""
        return cls(
            job_id=job_id,
            slice_id=slice_id,
            staged_object_path=cls.staged_path_for(staging_root, job_id, slice_id),
            **fields,
        )
