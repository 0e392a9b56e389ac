"""
Storage ports — the queue service and blob store overflowq is layered on.

Any object satisfying these structural Protocols can act as a backend.
No base class or registration is required — Python's structural subtyping
(duck typing + Protocol) is sufficient.

Message body contract
---------------------
Queue ports carry opaque bytes. Backends whose wire format is text encode the
body as base64, so a body of n bytes costs 4 * ceil(n / 3) bytes against
max_message_size. The overflow threshold in core/codec.py is derived from
that expansion.

Error contract
--------------
Adapters raise StorageError (or one of its not-found subclasses) for any
backend failure, with the failing operation named in the message. Operations
a backend cannot express raise UnsupportedOperationError.

Keyword options
---------------
Every async method accepts **options, forwarded unchanged to the backend SDK
call (e.g. Azure's timeout=). Adapters that have no use for them ignore them.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Protocol, runtime_checkable

from overflowq.domain.models import AccessPolicy, MessageReceipt, RawMessage


@runtime_checkable
class QueueClientPort(Protocol):
    """
    A handle on one named queue.

    Implementing adapters (built-in):
      - InMemoryQueue   — asyncio.Lock-based, for testing
      - AzureQueueClient — Azure Storage queues (azure-storage-queue)
      - SQSQueueClient  — AWS SQS (aioboto3)

    Attributes
    ----------
    name             : queue name
    max_message_size : largest encoded message body the service accepts, in bytes
    max_batch_size   : largest count accepted by receive_messages / peek_messages
    """

    name: str
    max_message_size: int
    max_batch_size: int

    async def create(self, **options: Any) -> None: ...

    async def create_if_not_exists(self, **options: Any) -> bool:
        """Create the queue. Returns False if it already existed."""
        ...

    async def exists(self, **options: Any) -> bool: ...

    async def delete_if_exists(self, **options: Any) -> bool:
        """Delete the queue. Returns False if it did not exist."""
        ...

    async def clear(self, **options: Any) -> None: ...

    async def get_metadata(self, **options: Any) -> dict[str, str]: ...

    async def set_metadata(self, metadata: dict[str, str], **options: Any) -> None: ...

    async def get_access_policy(self, **options: Any) -> dict[str, AccessPolicy]: ...

    async def set_access_policy(
        self, policies: dict[str, AccessPolicy], **options: Any
    ) -> None: ...

    async def send_message(
        self,
        content: bytes,
        *,
        time_to_live: timedelta | None = None,
        visibility_delay: timedelta | None = None,
        **options: Any,
    ) -> None:
        """
        Enqueue one message.

        Raises
        ------
        MessageTooLargeError if the encoded body exceeds max_message_size
        StorageError         for any other failure
        """
        ...

    async def receive_message(
        self,
        *,
        visibility_timeout: timedelta | None = None,
        **options: Any,
    ) -> RawMessage | None:
        """Dequeue one message, or return None when none is visible."""
        ...

    async def receive_messages(
        self,
        count: int,
        *,
        visibility_timeout: timedelta | None = None,
        **options: Any,
    ) -> list[RawMessage]: ...

    async def peek_message(self, **options: Any) -> RawMessage | None: ...

    async def peek_messages(self, count: int, **options: Any) -> list[RawMessage]: ...

    async def update_message(
        self,
        message_id: str,
        pop_receipt: str,
        *,
        visibility_timeout: timedelta,
        content: bytes | None = None,
        **options: Any,
    ) -> MessageReceipt:
        """
        Change a message's visibility (and optionally its body).

        The pop receipt passed in is invalidated; use the returned one.
        """
        ...

    async def delete_message(
        self, message_id: str, pop_receipt: str, **options: Any
    ) -> None:
        """
        Raises
        ------
        MessageNotFoundError if the message is gone or pop_receipt is stale
        """
        ...

    def generate_shared_access_signature(
        self,
        *,
        permission: str | None = None,
        expiry: datetime | None = None,
        start: datetime | None = None,
        policy_id: str | None = None,
    ) -> str: ...

    async def close(self) -> None: ...


@runtime_checkable
class BlobContainerPort(Protocol):
    """
    A handle on one named blob container.

    Implementing adapters (built-in):
      - InMemoryBlobContainer
      - AzureBlobContainer — Azure Blob Storage (azure-storage-blob)
      - S3BlobContainer    — key prefix inside an S3 bucket (aioboto3)
      - GCSBlobContainer   — key prefix inside a GCS bucket (google-cloud-storage)
    """

    name: str

    async def create_if_not_exists(self) -> bool:
        """
        Create the container with no public read access.

        Returns False if it already existed; that is not an error.
        """
        ...

    async def upload(self, blob_name: str, data: bytes) -> None:
        """Write (or overwrite) a blob."""
        ...

    async def download(self, blob_name: str) -> bytes:
        """
        Raises
        ------
        BlobNotFoundError if the blob does not exist
        """
        ...

    async def delete(self, blob_name: str) -> None:
        """
        Raises
        ------
        BlobNotFoundError if the backend reports the blob missing
        """
        ...

    async def close(self) -> None: ...


@runtime_checkable
class StorageAccountPort(Protocol):
    """
    Factory for queue and blob handles on one storage account.

    Neither method may perform network I/O: handles are cheap references and
    the QueueManager creates them during argument validation.
    """

    def queue_client(self, queue_name: str) -> QueueClientPort: ...

    def blob_container(self, container_name: str) -> BlobContainerPort: ...
