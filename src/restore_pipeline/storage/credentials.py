"""
Per-job credentials held by the storage client.

Credentials are built from a RestoreJob snapshot, initialized once (deriving
the provider the gateway signs requests with) and then never mutated. A
rotation replaces the whole entry in the CredentialStore.
"""

import threading
from typing import Any, Callable, Dict, Generic, Optional, TypeVar
from uuid import UUID

from core.errors import RestoreJobFatalError
from restore_pipeline.models import RestoreJob, StorageCredentials

V = TypeVar("V")

ProviderFactory = Callable[[StorageCredentials], Any]


class Credentials:
    """
    Read credentials of one restore job plus the derived provider.

    Equality is defined over ``read_credentials`` only, so rotation
    detection compares raw material and ignores the provider.
    """

    __slots__ = ("job_id", "read_credentials", "_provider", "_initialized")

    def __init__(self, restore_job: RestoreJob):
        """
        Raises:
            RestoreJobFatalError: If the job has no secrets
        """
        if restore_job.secrets is None:
            raise RestoreJobFatalError(
                f"Restore job is missing credentials. JobId: {restore_job.job_id}",
                context={"job_id": str(restore_job.job_id)},
            )
        self.job_id: UUID = restore_job.job_id
        self.read_credentials: StorageCredentials = restore_job.secrets.read_credentials
        self._provider: Any = None
        self._initialized = False

    def init(self, provider_factory: ProviderFactory) -> "Credentials":
        """Derive the provider. Only the first call has an effect."""
        if not self._initialized:
            self._provider = provider_factory(self.read_credentials)
            self._initialized = True
        return self

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def provider(self) -> Any:
        if not self._initialized:
            raise RuntimeError(f"Credentials for job {self.job_id} used before init()")
        return self._provider

    def matches(self, other: Optional["Credentials"]) -> bool:
        if other is None:
            return False
        return self is other or self.read_credentials == other.read_credentials

    def masked(self) -> Dict[str, Any]:
        return self.read_credentials.masked()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Credentials):
            return NotImplemented
        return self.matches(other)

    def __hash__(self) -> int:
        return hash(self.read_credentials)

    def __repr__(self) -> str:
        return f"Credentials(job_id={self.job_id}, read_credentials={self.masked()})"


class CredentialStore(Generic[V]):
    """
    Mapping from job id to the single active value for that job.

    All read-modify-write goes through compute(), which runs the remapping
    function under the store lock. Values are fully built by the remapping
    function before they become visible to get().
    """

    def __init__(self) -> None:
        self._entries: Dict[UUID, V] = {}
        self._lock = threading.Lock()

    def compute(
        self, job_id: UUID, remapping: Callable[[UUID, Optional[V]], Optional[V]]
    ) -> Optional[V]:
        """
        Atomically replace the entry for ``job_id`` with ``remapping(job_id, current)``.

        Returning None removes the entry. If the remapping function raises,
        the store is left unchanged and the exception propagates.
        """
        with self._lock:
            current = self._entries.get(job_id)
            updated = remapping(job_id, current)
            if updated is None:
                self._entries.pop(job_id, None)
            else:
                self._entries[job_id] = updated
            return updated

    def get(self, job_id: UUID) -> Optional[V]:
        with self._lock:
            return self._entries.get(job_id)

    def remove(self, job_id: UUID) -> Optional[V]:
        """Remove and return the entry, or None if there was none."""
        with self._lock:
            return self._entries.pop(job_id, None)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
