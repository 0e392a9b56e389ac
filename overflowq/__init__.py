"""
overflowq — cloud queues that accept messages larger than the service allows.

Queue services cap message size (64 KiB on Azure Storage queues, 256 KiB on
SQS). QueueManager serializes each payload and, when the result is too large
to enqueue, uploads it to a dedicated private blob container and enqueues a
small envelope that points at the blob instead. Receivers get the original
payload back either way; deleting the message also deletes its blob.

Quick start
-----------
    import asyncio
    from overflowq import InMemoryStorageAccount, QueueManager

    async def main():
        account = InMemoryStorageAccount()

        async with QueueManager("orders", account) as qm:
            await qm.send({"order": 1, "lines": ["x" * 100_000]})   # offloaded

            message = await qm.receive()
            print(message.content["order"], message.is_large_message)
            await qm.delete(message)

    asyncio.run(main())

Storage adapters
----------------
Built-in adapters (no extra deps):
  - InMemoryStorageAccount   — for tests and examples
  - CompositeStorageAccount  — any queue backend + any blob backend

Optional adapters (install extras):
  - AzureStorageAccount  (pip install "overflowq[azure]")
  - AwsStorageAccount    (pip install "overflowq[s3]")   — SQS + S3
  - GCSBlobContainer     (pip install "overflowq[gcs]")  — blobs only

Architecture
------------
Follows the Ports & Adapters pattern:
  domain/   — pure value types (Envelope, RawMessage, QueueMessage) and errors
  ports/    — Protocol interfaces (QueueClientPort, BlobContainerPort,
              StorageAccountPort, SerializerPort)
  core/     — business logic (QueueManager, envelope codec, JsonSerializer)
  adapters/ — concrete storage implementations
"""
from __future__ import annotations

from overflowq.adapters.storage.composite import CompositeStorageAccount
from overflowq.adapters.storage.memory import (
    InMemoryBlobContainer,
    InMemoryQueue,
    InMemoryStorageAccount,
)
from overflowq.core.manager import OVERSIZED_CONTAINER_NAME, QueueManager
from overflowq.core.serializer import JsonSerializer
from overflowq.domain.errors import (
    BatchReceiveError,
    BlobNotFoundError,
    InvalidArgumentError,
    MessageNotFoundError,
    MessageTooLargeError,
    OffloadedPayloadError,
    OverflowQError,
    QueueNotFoundError,
    SerializationError,
    StorageError,
    UnsupportedOperationError,
)
from overflowq.domain.models import (
    AccessPolicy,
    Envelope,
    MessageReceipt,
    QueueMessage,
    RawMessage,
)
from overflowq.ports.serializer import SerializerPort
from overflowq.ports.storage import (
    BlobContainerPort,
    QueueClientPort,
    StorageAccountPort,
)

__all__ = [
    # Domain models
    "AccessPolicy",
    "Envelope",
    "MessageReceipt",
    "QueueMessage",
    "RawMessage",
    # Errors
    "OverflowQError",
    "InvalidArgumentError",
    "SerializationError",
    "OffloadedPayloadError",
    "UnsupportedOperationError",
    "MessageTooLargeError",
    "BatchReceiveError",
    "StorageError",
    "QueueNotFoundError",
    "MessageNotFoundError",
    "BlobNotFoundError",
    # Ports (for typing custom adapters)
    "BlobContainerPort",
    "QueueClientPort",
    "SerializerPort",
    "StorageAccountPort",
    # High-level API
    "OVERSIZED_CONTAINER_NAME",
    "JsonSerializer",
    "QueueManager",
    # Built-in storage adapters
    "CompositeStorageAccount",
    "InMemoryBlobContainer",
    "InMemoryQueue",
    "InMemoryStorageAccount",
]
