"""
AWS adapters — SQS queues and S3 blob containers, using aioboto3.

Install extras: pip install "overflowq[s3]"

SQS
---
Bodies are sent base64-encoded (SQS bodies are text), so the 256 KiB message
limit gives a direct-send threshold of 196 605 payload bytes. Pop receipts
are SQS receipt handles. SQS has no equivalent for peeking, stored access
policies, shared access signatures, per-message time-to-live or body updates;
those calls raise UnsupportedOperationError. Queue metadata maps to queue tags.

S3
--
A blob container is a key prefix ("<container>/<blob name>") inside one
bucket. create_if_not_exists() creates the bucket if needed and blocks all
public access on it. S3 DeleteObject succeeds for missing keys, so delete()
never raises BlobNotFoundError.
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from overflowq.domain.errors import (
    BlobNotFoundError,
    MessageNotFoundError,
    OverflowQError,
    QueueNotFoundError,
    StorageError,
    UnsupportedOperationError,
)
from overflowq.domain.models import AccessPolicy, MessageReceipt, RawMessage

if TYPE_CHECKING:
    from aioboto3 import Session as AioBoto3Session

SQS_MAX_MESSAGE_SIZE = 256 * 1024
SQS_MAX_BATCH_SIZE = 10
SQS_MAX_DELAY = timedelta(minutes=15)

_QUEUE_MISSING_CODES = ("AWS.SimpleQueueService.NonExistentQueue", "QueueDoesNotExist")
_RECEIPT_CODES = ("ReceiptHandleIsInvalid", "InvalidParameterValue")
_BUCKET_MISSING_CODES = ("NoSuchBucket", "404", "NotFound")
_BUCKET_OWNED_CODES = ("BucketAlreadyOwnedByYou",)


@dataclasses.dataclass
class _AwsClientConfig:
    """Session and client settings shared by the SQS and S3 adapters."""

    session: AioBoto3Session | None = None
    region_name: str | None = None
    endpoint_url: str | None = None

    def _get_session(self) -> AioBoto3Session:
        if self.session is not None:
            return self.session
        try:
            import aioboto3  # type: ignore[import-untyped]
        except ImportError as exc:
            raise ImportError(
                "AWS adapters require aioboto3. Install with: pip install 'overflowq[s3]'"
            ) from exc
        self.session = aioboto3.Session()
        return self.session  # type: ignore[return-value]

    def _client_kwargs(self) -> dict[str, str]:
        """Build kwargs forwarded to the boto client constructor."""
        kwargs: dict[str, str] = {}
        if self.region_name:
            kwargs["region_name"] = self.region_name
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url
        return kwargs

    def _client(self, service: str) -> Any:
        return self._get_session().client(service, **self._client_kwargs())  # type: ignore[attr-defined]


def _aws_error_code(exc: Exception) -> str:
    """Extract the error code from a botocore ClientError, or return ''."""
    try:
        response = getattr(exc, "response", None)
        if isinstance(response, dict):
            error = response.get("Error", {})
            if isinstance(error, dict):
                code = error.get("Code", "")
                return str(code) if code else ""
    except Exception:  # noqa: BLE001
        pass
    return ""


def _seconds(value: timedelta | None) -> int | None:
    return None if value is None else int(value.total_seconds())


def _from_millis(value: str | None) -> datetime | None:
    return None if value is None else datetime.fromtimestamp(int(value) / 1000, UTC)


def _decode_body(body: str) -> bytes:
    """Bodies written by this adapter are base64; anything else is taken as text."""
    try:
        return base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError):
        return body.encode("utf-8")


@dataclasses.dataclass(kw_only=True)
class SQSQueueClient(_AwsClientConfig):
    """
    AWS SQS queue adapter.

    Parameters
    ----------
    name         : SQS queue name
    session      : aioboto3.Session — created lazily from env vars if omitted
    region_name  : AWS region passed to the SQS client
    endpoint_url : custom endpoint (e.g. LocalStack, ElasticMQ)
    """

    name: str
    max_message_size: int = SQS_MAX_MESSAGE_SIZE
    max_batch_size: int = SQS_MAX_BATCH_SIZE

    _queue_url: str | None = dataclasses.field(default=None, init=False, repr=False)

    def _storage_error(
        self, operation: str, exc: Exception, message_id: str | None = None
    ) -> OverflowQError:
        code = _aws_error_code(exc)
        if code in _QUEUE_MISSING_CODES:
            self._queue_url = None
            return QueueNotFoundError(self.name, exc)
        if message_id is not None and code in _RECEIPT_CODES:
            return MessageNotFoundError(message_id, exc)
        return StorageError(f"SQS {operation} failed", exc)

    async def _url(self, sqs: Any) -> str:
        if self._queue_url is None:
            response = await sqs.get_queue_url(QueueName=self.name)
            self._queue_url = str(response["QueueUrl"])
        return self._queue_url

    async def _call(
        self, operation: str, message_id: str | None = None, **kwargs: Any
    ) -> dict[str, Any]:
        """Run one SQS API call against this queue's URL."""
        try:
            async with self._client("sqs") as sqs:
                return await getattr(sqs, operation)(QueueUrl=await self._url(sqs), **kwargs)
        except OverflowQError:
            raise
        except Exception as exc:
            raise self._storage_error(operation, exc, message_id) from exc

    # ------------------------------------------------------------------ #
    # Queue lifecycle                                                      #
    # ------------------------------------------------------------------ #

    async def create(self, **options: Any) -> None:
        try:
            async with self._client("sqs") as sqs:
                response = await sqs.create_queue(QueueName=self.name, **options)
                self._queue_url = str(response["QueueUrl"])
        except Exception as exc:
            raise StorageError("SQS create_queue failed", exc) from exc

    async def create_if_not_exists(self, **options: Any) -> bool:
        if await self.exists():
            return False
        await self.create(**options)
        return True

    async def exists(self, **options: Any) -> bool:
        try:
            await self._call("get_queue_attributes", AttributeNames=["QueueArn"])
        except QueueNotFoundError:
            return False
        return True

    async def delete_if_exists(self, **options: Any) -> bool:
        try:
            await self._call("delete_queue")
        except QueueNotFoundError:
            return False
        self._queue_url = None
        return True

    async def clear(self, **options: Any) -> None:
        await self._call("purge_queue")

    async def get_metadata(self, **options: Any) -> dict[str, str]:
        response = await self._call("list_queue_tags")
        return dict(response.get("Tags", {}))

    async def set_metadata(self, metadata: dict[str, str], **options: Any) -> None:
        current = await self.get_metadata()
        stale = [key for key in current if key not in metadata]
        if stale:
            await self._call("untag_queue", TagKeys=stale)
        if metadata:
            await self._call("tag_queue", Tags=dict(metadata))

    async def get_access_policy(self, **options: Any) -> dict[str, AccessPolicy]:
        raise UnsupportedOperationError("SQS queues have no stored access policies")

    async def set_access_policy(
        self, policies: dict[str, AccessPolicy], **options: Any
    ) -> None:
        raise UnsupportedOperationError("SQS queues have no stored access policies")

    # ------------------------------------------------------------------ #
    # Messages                                                             #
    # ------------------------------------------------------------------ #

    async def send_message(
        self,
        content: bytes,
        *,
        time_to_live: timedelta | None = None,
        visibility_delay: timedelta | None = None,
        **options: Any,
    ) -> None:
        if time_to_live is not None:
            raise UnsupportedOperationError(
                "SQS sets message retention per queue, not per message"
            )
        kwargs: dict[str, Any] = {
            "MessageBody": base64.b64encode(content).decode("ascii"),
            **options,
        }
        if visibility_delay is not None:
            kwargs["DelaySeconds"] = _seconds(min(visibility_delay, SQS_MAX_DELAY))
        await self._call("send_message", **kwargs)

    async def receive_message(
        self,
        *,
        visibility_timeout: timedelta | None = None,
        **options: Any,
    ) -> RawMessage | None:
        messages = await self.receive_messages(
            1, visibility_timeout=visibility_timeout, **options
        )
        return messages[0] if messages else None

    async def receive_messages(
        self,
        count: int,
        *,
        visibility_timeout: timedelta | None = None,
        **options: Any,
    ) -> list[RawMessage]:
        kwargs: dict[str, Any] = {
            "MaxNumberOfMessages": count,
            "AttributeNames": ["All"],
            **options,
        }
        if visibility_timeout is not None:
            kwargs["VisibilityTimeout"] = _seconds(visibility_timeout)
        received_at = datetime.now(UTC)
        response = await self._call("receive_message", **kwargs)
        return [
            self._to_raw(message, received_at, visibility_timeout)
            for message in response.get("Messages", [])
        ]

    async def peek_message(self, **options: Any) -> RawMessage | None:
        raise UnsupportedOperationError("SQS cannot peek at messages")

    async def peek_messages(self, count: int, **options: Any) -> list[RawMessage]:
        raise UnsupportedOperationError("SQS cannot peek at messages")

    async def update_message(
        self,
        message_id: str,
        pop_receipt: str,
        *,
        visibility_timeout: timedelta,
        content: bytes | None = None,
        **options: Any,
    ) -> MessageReceipt:
        if content is not None:
            raise UnsupportedOperationError("SQS messages cannot be rewritten in place")
        await self._call(
            "change_message_visibility",
            message_id,
            ReceiptHandle=pop_receipt,
            VisibilityTimeout=_seconds(visibility_timeout),
            **options,
        )
        return MessageReceipt(
            id=message_id,
            pop_receipt=pop_receipt,
            next_visible_time=datetime.now(UTC) + visibility_timeout,
        )

    async def delete_message(
        self, message_id: str, pop_receipt: str, **options: Any
    ) -> None:
        await self._call("delete_message", message_id, ReceiptHandle=pop_receipt, **options)

    def generate_shared_access_signature(
        self,
        *,
        permission: str | None = None,
        expiry: datetime | None = None,
        start: datetime | None = None,
        policy_id: str | None = None,
    ) -> str:
        raise UnsupportedOperationError("SQS has no shared access signatures")

    async def close(self) -> None:
        pass

    @staticmethod
    def _to_raw(
        message: dict[str, Any],
        received_at: datetime,
        visibility_timeout: timedelta | None,
    ) -> RawMessage:
        attributes = message.get("Attributes", {})
        return RawMessage(
            id=message["MessageId"],
            pop_receipt=message["ReceiptHandle"],
            dequeue_count=int(attributes.get("ApproximateReceiveCount", 0)),
            insertion_time=_from_millis(attributes.get("SentTimestamp")),
            next_visible_time=(
                received_at + visibility_timeout if visibility_timeout is not None else None
            ),
            content=_decode_body(message.get("Body", "")),
        )


@dataclasses.dataclass(kw_only=True)
class S3BlobContainer(_AwsClientConfig):
    """
    Blob container stored under a key prefix of an S3 bucket.

    Parameters
    ----------
    name   : container name, used as the key prefix
    bucket : S3 bucket name
    """

    name: str
    bucket: str

    def _key(self, blob_name: str) -> str:
        return f"{self.name}/{blob_name}"

    async def create_if_not_exists(self) -> bool:
        """
        Ensure the bucket exists with all public access blocked.

        The public access block is applied on every call, so a bucket created
        elsewhere is locked down too. Returns False if the bucket existed.
        """
        try:
            async with self._client("s3") as s3:
                created = await self._create_bucket(s3)
                await s3.put_public_access_block(
                    Bucket=self.bucket,
                    PublicAccessBlockConfiguration={
                        "BlockPublicAcls": True,
                        "IgnorePublicAcls": True,
                        "BlockPublicPolicy": True,
                        "RestrictPublicBuckets": True,
                    },
                )
                return created
        except Exception as exc:
            raise StorageError(f"S3 create bucket {self.bucket!r} failed", exc) from exc

    async def _create_bucket(self, s3: Any) -> bool:
        try:
            await s3.head_bucket(Bucket=self.bucket)
            return False
        except Exception as exc:
            if _aws_error_code(exc) not in _BUCKET_MISSING_CODES:
                raise
        create_kwargs: dict[str, Any] = {"Bucket": self.bucket}
        if self.region_name and self.region_name != "us-east-1":
            create_kwargs["CreateBucketConfiguration"] = {
                "LocationConstraint": self.region_name
            }
        try:
            await s3.create_bucket(**create_kwargs)
        except Exception as exc:
            if _aws_error_code(exc) in _BUCKET_OWNED_CODES:
                return False
            raise
        return True

    async def upload(self, blob_name: str, data: bytes) -> None:
        try:
            async with self._client("s3") as s3:
                await s3.put_object(
                    Bucket=self.bucket,
                    Key=self._key(blob_name),
                    Body=data,
                    ContentType="application/octet-stream",
                )
        except Exception as exc:
            raise StorageError(f"S3 upload of {blob_name!r} failed", exc) from exc

    async def download(self, blob_name: str) -> bytes:
        try:
            async with self._client("s3") as s3:
                response = await s3.get_object(Bucket=self.bucket, Key=self._key(blob_name))
                content: bytes = await response["Body"].read()
                return content
        except Exception as exc:
            if _aws_error_code(exc) in ("NoSuchKey", "404"):
                raise BlobNotFoundError(blob_name, exc) from exc
            raise StorageError(f"S3 download of {blob_name!r} failed", exc) from exc

    async def delete(self, blob_name: str) -> None:
        try:
            async with self._client("s3") as s3:
                await s3.delete_object(Bucket=self.bucket, Key=self._key(blob_name))
        except Exception as exc:
            raise StorageError(f"S3 delete of {blob_name!r} failed", exc) from exc

    async def close(self) -> None:
        pass


@dataclasses.dataclass(kw_only=True)
class AwsStorageAccount(_AwsClientConfig):
    """
    SQS queues plus S3 blob containers sharing one session.

    Parameters
    ----------
    bucket : S3 bucket holding every blob container of this account
    """

    bucket: str

    def queue_client(self, queue_name: str) -> SQSQueueClient:
        return SQSQueueClient(
            session=self.session,
            region_name=self.region_name,
            endpoint_url=self.endpoint_url,
            name=queue_name,
        )

    def blob_container(self, container_name: str) -> S3BlobContainer:
        return S3BlobContainer(
            session=self.session,
            region_name=self.region_name,
            endpoint_url=self.endpoint_url,
            name=container_name,
            bucket=self.bucket,
        )
