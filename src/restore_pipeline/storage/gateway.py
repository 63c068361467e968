"""
Object storage gateway.

The boundary to the S3 SDK: existence checks (HEAD with If-Match) and
streamed downloads (GET), signed with a per-job credentials provider.
SDK exceptions are translated into the core.errors hierarchy here so the
rest of the pipeline only deals with classified errors.
"""

import asyncio
import contextlib
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Protocol

import aioboto3
import aiohttp
from aiobotocore.config import AioConfig
from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, HTTPClientError
from botocore.exceptions import ConnectionError as BotoConnectionError
from botocore.exceptions import ReadTimeoutError

from core.errors import (
    AuthError,
    ChecksumMismatchError,
    ConfigurationError,
    ConnectionError,
    ErrorCategory,
    ForbiddenError,
    NotFoundError,
    PermanentError,
    PipelineError,
    ServiceUnavailableError,
    StorageError,
    ThrottlingError,
    TimeoutError,
    TokenExpiredError,
    classify_exception,
    classify_http_status,
    wrap_exception,
)
from core.logging import log_exception, log_with_context
from restore_pipeline.config import DEFAULT_CHUNK_SIZE, StorageClientConfig
from restore_pipeline.models import StorageCredentials

logger = logging.getLogger(__name__)

EXPIRED_TOKEN_CODES = {"ExpiredToken", "ExpiredTokenException", "TokenRefreshRequired"}
UNAUTHORIZED_CODES = {
    "InvalidAccessKeyId",
    "InvalidToken",
    "SignatureDoesNotMatch",
    "UnrecognizedClientException",
}
THROTTLING_CODES = {"SlowDown", "Throttling", "ThrottlingException", "RequestLimitExceeded"}
NOT_FOUND_CODES = {"NoSuchKey", "NoSuchBucket", "NotFound", "404"}


@dataclass(frozen=True)
class ObjectMetadata:
    """Result of an existence check."""

    etag: Optional[str] = None
    content_length: Optional[int] = None
    last_modified: Optional[datetime] = None

    @classmethod
    def from_response(cls, response: Mapping[str, Any]) -> "ObjectMetadata":
        return cls(
            etag=response.get("ETag"),
            content_length=response.get("ContentLength"),
            last_modified=response.get("LastModified"),
        )


class ObjectStorageGateway(Protocol):
    """Operations the storage client needs from an object store."""

    def create_provider(self, read_credentials: StorageCredentials) -> Any:
        """Derive the credentials provider used to sign requests."""
        ...

    async def head_object(
        self, bucket: str, key: str, provider: Any, if_match: Optional[str] = None
    ) -> ObjectMetadata:
        ...

    def get_object(
        self, bucket: str, key: str, provider: Any, chunk_size: int = DEFAULT_CHUNK_SIZE
    ) -> AsyncIterator[bytes]:
        """Stream the object body as byte chunks, in order."""
        ...

    def release_provider(self, provider: Any) -> None:
        """The provider was replaced or revoked; free what it holds once idle."""
        ...

    async def close(self) -> None:
        ...


def translate_storage_error(
    exc: BaseException, operation: str, bucket: str, key: str
) -> PipelineError:
    """
    Map an SDK/transport exception to the pipeline error hierarchy.

    Args:
        exc: Exception raised by the SDK or the HTTP layer
        operation: SDK operation name (head_object, get_object)
        bucket: Bucket of the request
        key: Object key of the request

    Returns:
        Classified PipelineError with the original exception as cause
    """
    context = {"operation": operation, "bucket": bucket, "key": key}

    if not isinstance(exc, ClientError):
        return _translate_transport_error(exc, context)

    error = exc.response.get("Error", {})
    code = str(error.get("Code", ""))
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    if status is None and code.isdigit():
        status = int(code)
    context.update(error_code=code, http_status=status)
    message = f"{operation} failed for s3://{bucket}/{key}: {code or status}"

    if status == 412 or code == "PreconditionFailed":
        return ChecksumMismatchError(
            f"{operation} precondition failed for s3://{bucket}/{key}: checksum does not match",
            cause=exc,
            context=context,
        )
    if code in EXPIRED_TOKEN_CODES:
        return TokenExpiredError(message, cause=exc, context=context)
    if code in UNAUTHORIZED_CODES:
        return AuthError(message, cause=exc, context=context)
    if code in THROTTLING_CODES or status == 429:
        return ThrottlingError(message, cause=exc, context=context)

    category = classify_http_status(status) if status else classify_exception(exc)
    if category == ErrorCategory.AUTH:
        return AuthError(message, cause=exc, context=context)
    if category == ErrorCategory.TRANSIENT:
        return ServiceUnavailableError(message, cause=exc, context=context)
    if category == ErrorCategory.PERMANENT:
        if status == 404 or code in NOT_FOUND_CODES:
            return NotFoundError(message, cause=exc, context=context)
        if status == 403:
            return ForbiddenError(message, cause=exc, context=context)
        return PermanentError(message, cause=exc, context=context)
    return StorageError(message, cause=exc, context=context)


# botocore timeouts are OSError subclasses; wrap_exception would report them as local I/O
TIMEOUT_ERRORS = (ReadTimeoutError, ConnectTimeoutError, asyncio.TimeoutError)
TRANSPORT_ERRORS = (BotoConnectionError, HTTPClientError, aiohttp.ClientError)


def _translate_transport_error(exc: BaseException, context: dict) -> PipelineError:
    message = str(exc) or type(exc).__name__
    if isinstance(exc, TIMEOUT_ERRORS):
        return TimeoutError(message, cause=exc, context=context)
    if isinstance(exc, TRANSPORT_ERRORS):
        return ConnectionError(message, cause=exc, context=context)
    return wrap_exception(exc, default_class=StorageError, context=context)


# Errors raised by the SDK or the HTTP layer underneath it
SDK_ERRORS = (ClientError, BotoCoreError, aiohttp.ClientError, asyncio.TimeoutError)


class _PooledClient:
    """An open S3 client shared by every request signed by one provider."""

    def __init__(self, provider: Any):
        self.provider = provider
        self.client: Any = None
        self.in_flight = 0
        self._open_lock = asyncio.Lock()

    async def open(self, client_factory: Callable[[Any], Any]) -> Any:
        async with self._open_lock:
            if self.client is None:
                self.client = await client_factory(self.provider).__aenter__()
        return self.client

    async def close(self) -> None:
        client, self.client = self.client, None
        if client is not None:
            await client.__aexit__(None, None, None)


class S3Gateway:
    """
    S3-compatible gateway built on aioboto3.

    Each provider is an aioboto3 Session bound to one job's credentials. The
    first request signed by a provider opens an S3 client from its session;
    later requests reuse that client and its connection pool. A released
    provider's client is closed once its in-flight requests finish, and
    close() shuts down every client still open.

    SDK retries are disabled: a call is exactly one attempt and retry policy
    belongs to the caller.
    """

    def __init__(
        self,
        endpoint_url: Optional[str] = None,
        region: str = "us-east-1",
        max_pool_connections: int = 50,
        connect_timeout_seconds: float = 5.0,
        read_timeout_seconds: float = 60.0,
    ):
        self.endpoint_url = endpoint_url
        self.region = region
        self._boto_config = AioConfig(
            max_pool_connections=max_pool_connections,
            connect_timeout=connect_timeout_seconds,
            read_timeout=read_timeout_seconds,
            retries={"max_attempts": 1, "mode": "standard"},
        )
        # Keyed by the provider object itself
        self._clients: Dict[Any, _PooledClient] = {}
        self._released: "weakref.WeakSet[Any]" = weakref.WeakSet()
        self._idle_released: List[_PooledClient] = []
        self._closed = False

    @classmethod
    def from_config(cls, config: StorageClientConfig) -> "S3Gateway":
        return cls(
            endpoint_url=config.endpoint_url,
            region=config.region,
            max_pool_connections=config.max_pool_connections,
            connect_timeout_seconds=config.connect_timeout_seconds,
            read_timeout_seconds=config.read_timeout_seconds,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def open_clients(self) -> int:
        """Number of S3 clients currently open."""
        pooled = list(self._clients.values()) + self._idle_released
        return sum(1 for p in pooled if p.client is not None)

    def create_provider(self, read_credentials: StorageCredentials) -> aioboto3.Session:
        session_token = read_credentials.session_token
        return aioboto3.Session(
            aws_access_key_id=read_credentials.access_key_id,
            aws_secret_access_key=read_credentials.secret_access_key.get_secret_value(),
            aws_session_token=session_token.get_secret_value() if session_token else None,
            region_name=read_credentials.region or self.region,
        )

    def release_provider(self, provider: aioboto3.Session) -> None:
        """
        Stop reusing the client of a replaced or revoked provider.

        Requests already running on it finish normally; the client is closed
        by the last of them, or by the next request on this gateway if none
        is running.
        """
        self._released.add(provider)
        pooled = self._clients.get(provider)
        if pooled is not None and pooled.in_flight == 0:
            del self._clients[provider]
            self._idle_released.append(pooled)

    def _open_client(self, provider: aioboto3.Session):
        return provider.client(
            "s3", endpoint_url=self.endpoint_url, config=self._boto_config
        )

    @contextlib.asynccontextmanager
    async def _client(self, provider: aioboto3.Session):
        if self._closed:
            raise ConfigurationError("S3 gateway is closed")
        await self._close_idle_released()

        pooled = self._clients.get(provider)
        if pooled is None:
            pooled = self._clients[provider] = _PooledClient(provider)
        pooled.in_flight += 1
        try:
            yield await pooled.open(self._open_client)
        finally:
            pooled.in_flight -= 1
            if pooled.in_flight == 0 and provider in self._released:
                if self._clients.get(provider) is pooled:
                    del self._clients[provider]
                await self._close_pooled(pooled)

    async def head_object(
        self,
        bucket: str,
        key: str,
        provider: aioboto3.Session,
        if_match: Optional[str] = None,
    ) -> ObjectMetadata:
        """
        HEAD an object, optionally constrained by an If-Match ETag.

        Raises:
            ChecksumMismatchError: If the ETag does not match (412)
            PipelineError: For any other classified failure
        """
        params = {"Bucket": bucket, "Key": key}
        if if_match:
            params["IfMatch"] = if_match

        try:
            async with self._client(provider) as s3:
                response = await s3.head_object(**params)
        except SDK_ERRORS as exc:
            raise translate_storage_error(exc, "head_object", bucket, key) from exc

        return ObjectMetadata.from_response(response)

    async def get_object(
        self,
        bucket: str,
        key: str,
        provider: aioboto3.Session,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> AsyncIterator[bytes]:
        """
        GET an object and yield its body in chunks of at most ``chunk_size``.

        The response body is released when the iterator finishes or is closed.
        """
        try:
            async with self._client(provider) as s3:
                response = await s3.get_object(Bucket=bucket, Key=key)
                async with response["Body"] as stream:
                    while True:
                        chunk = await stream.read(chunk_size)
                        if not chunk:
                            break
                        yield chunk
        except SDK_ERRORS as exc:
            raise translate_storage_error(exc, "get_object", bucket, key) from exc

    async def _close_idle_released(self) -> None:
        while self._idle_released:
            await self._close_pooled(self._idle_released.pop())

    async def _close_pooled(self, pooled: _PooledClient) -> None:
        try:
            await pooled.close()
        except Exception as e:
            log_exception(
                logger,
                e,
                "Error closing S3 client",
                level=logging.WARNING,
                include_traceback=False,
                operation="close",
            )

    async def close(self) -> None:
        """Close every open client and stop accepting requests. Idempotent."""
        if self._closed:
            return
        self._closed = True
        pooled = list(self._clients.values()) + self._idle_released
        self._clients.clear()
        self._idle_released = []
        for entry in pooled:
            await self._close_pooled(entry)
        log_with_context(
            logger,
            logging.INFO,
            "S3 gateway closed",
            operation="close",
            clients_closed=len(pooled),
        )
