"""
QueueManager — a queue that accepts payloads larger than the queue service allows.

Send
----
  serialize → size check → direct enqueue
                         → (too large) blob upload + envelope enqueue

Receive
-------
  dequeue → decode body → payload as-is
                        → (envelope) blob download → deserialize → message
                          tagged with large_content_blob_name

Delete
------
  (tagged) blob delete → queue message delete

Usage
-----
    from overflowq import InMemoryStorageAccount, QueueManager

    async with QueueManager("orders", InMemoryStorageAccount()) as qm:
        await qm.send({"id": 1, "lines": [...]})
        message = await qm.receive()
        if message is not None:
            handle(message.content)
            await qm.delete(message)

Initialization
--------------
The manager is not usable until the queue and the blob container exist.
`await QueueManager.create(...)` and `async with QueueManager(...)` both run
the two create-if-not-exists calls concurrently before returning.

Failure handling
----------------
No retries happen here; retry policy belongs to the backend SDKs.

  - envelope enqueue fails after the blob upload → the blob is deleted again
    and the original error re-raised (a failed cleanup is logged)
  - cancellation performs no cleanup
  - receive_many decodes the whole batch; messages that fail to unwrap are
    reported together in BatchReceiveError, which also carries the rest
  - on delete, a blob that is already gone is not an error; any other blob
    failure is raised only after the queue message has been deleted
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from datetime import datetime, timedelta
from types import TracebackType
from typing import Any

from overflowq.core import codec
from overflowq.core.codec import Payload
from overflowq.core.serializer import JsonSerializer
from overflowq.domain.errors import (
    BatchReceiveError,
    BlobNotFoundError,
    InvalidArgumentError,
    OffloadedPayloadError,
    OverflowQError,
    SerializationError,
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

logger = logging.getLogger(__name__)

OVERSIZED_CONTAINER_NAME = "oversizedqueuemessages"


@dataclasses.dataclass
class QueueManager:
    """
    Parameters
    ----------
    queue_name     : name of the queue; must be non-blank
    account        : any StorageAccountPort implementation
    serializer     : converts payloads to bytes (default: JsonSerializer())
    container_name : blob container for offloaded payloads
    """

    queue_name: str
    account: StorageAccountPort
    serializer: SerializerPort = dataclasses.field(default_factory=JsonSerializer)
    container_name: str = OVERSIZED_CONTAINER_NAME

    _queue: QueueClientPort = dataclasses.field(init=False, repr=False)
    _container: BlobContainerPort = dataclasses.field(init=False, repr=False)
    _max_payload_size: int = dataclasses.field(init=False, repr=False)
    _ready: bool = dataclasses.field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.queue_name, str) or not self.queue_name.strip():
            raise InvalidArgumentError("queue_name", "must be a non-empty string")
        if self.account is None:
            raise InvalidArgumentError("account", "must not be None")
        self._queue = self.account.queue_client(self.queue_name)
        self._container = self.account.blob_container(self.container_name)
        self._max_payload_size = codec.max_payload_size(self._queue.max_message_size)

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    @classmethod
    async def create(
        cls,
        queue_name: str,
        account: StorageAccountPort,
        serializer: SerializerPort | None = None,
        container_name: str = OVERSIZED_CONTAINER_NAME,
    ) -> "QueueManager":
        """Validate arguments, ensure queue and container exist, return a ready manager."""
        manager = cls(
            queue_name=queue_name,
            account=account,
            serializer=serializer if serializer is not None else JsonSerializer(),
            container_name=container_name,
        )
        await manager.initialize()
        return manager

    async def initialize(self) -> None:
        """Create the queue and the blob container if they do not exist yet."""
        queue_created, container_created = await asyncio.gather(
            self._queue.create_if_not_exists(),
            self._container.create_if_not_exists(),
        )
        if queue_created:
            logger.info("Created queue %s", self.queue_name)
        if container_created:
            logger.info("Created blob container %s", self.container_name)
        self._ready = True

    async def close(self) -> None:
        """Release the queue and blob handles."""
        self._ready = False
        await asyncio.gather(self._queue.close(), self._container.close())

    async def __aenter__(self) -> "QueueManager":
        await self.initialize()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def max_payload_size(self) -> int:
        """Largest serialized payload sent without offloading, in bytes."""
        return self._max_payload_size

    # ------------------------------------------------------------------ #
    # Overflow protocol                                                    #
    # ------------------------------------------------------------------ #

    async def send(
        self,
        payload: Any,
        *,
        time_to_live: timedelta | None = None,
        visibility_delay: timedelta | None = None,
        **options: Any,
    ) -> None:
        """Serialize and enqueue `payload`, offloading it to blob storage if too large."""
        self._ensure_ready()
        data = self.serializer.dumps(payload)

        if len(data) <= self._max_payload_size:
            logger.debug("Sending %d-byte payload to %s", len(data), self.queue_name)
            await self._queue.send_message(
                data,
                time_to_live=time_to_live,
                visibility_delay=visibility_delay,
                **options,
            )
            return

        blob_name = codec.new_blob_name()
        logger.debug(
            "Offloading %d-byte payload to %s/%s",
            len(data),
            self.container_name,
            blob_name,
        )
        await self._container.upload(blob_name, data)
        try:
            await self._queue.send_message(
                codec.encode_envelope(Envelope.new(blob_name)),
                time_to_live=time_to_live,
                visibility_delay=visibility_delay,
                **options,
            )
        except Exception:
            await self._discard_orphan(blob_name)
            raise

    async def receive(
        self,
        *,
        visibility_timeout: timedelta | None = None,
        **options: Any,
    ) -> QueueMessage | None:
        """
        Dequeue one message and decode it. Returns None if the queue is empty.

        A body the serializer cannot decode is delivered as text. An
        offloaded payload whose blob is missing raises BlobNotFoundError; one
        whose blob cannot be decoded raises OffloadedPayloadError.
        """
        self._ensure_ready()
        raw = await self._queue.receive_message(
            visibility_timeout=visibility_timeout, **options
        )
        if raw is None:
            return None
        return await self._unwrap(raw)

    async def receive_many(
        self,
        count: int,
        *,
        visibility_timeout: timedelta | None = None,
        **options: Any,
    ) -> list[QueueMessage]:
        """
        Dequeue up to `count` messages and decode each as receive() does.

        If some messages fail to unwrap, BatchReceiveError is raised after
        the whole batch has been processed; it carries the messages that did
        decode so they are not lost until their visibility timeout.
        """
        self._ensure_ready()
        self._check_batch_count(count)
        raws = await self._queue.receive_messages(
            count, visibility_timeout=visibility_timeout, **options
        )
        results = await asyncio.gather(
            *(self._unwrap(raw) for raw in raws), return_exceptions=True
        )

        messages: list[QueueMessage] = []
        failures: list[tuple[RawMessage, Exception]] = []
        for raw, result in zip(raws, results):
            if isinstance(result, OverflowQError):
                logger.warning("Could not unwrap message %s: %s", raw.id, result)
                failures.append((raw, result))
            elif isinstance(result, BaseException):
                raise result
            else:
                messages.append(result)
        if failures:
            raise BatchReceiveError(messages, failures)
        return messages

    async def delete(self, message: QueueMessage, **options: Any) -> None:
        """Delete a received message and, if it was offloaded, its blob."""
        self._ensure_ready()
        if message.pop_receipt is None:
            raise InvalidArgumentError("message", "has no pop receipt")

        blob_error: OverflowQError | None = None
        if message.large_content_blob_name is not None:
            try:
                await self._container.delete(message.large_content_blob_name)
            except BlobNotFoundError:
                logger.debug(
                    "Blob %s already deleted", message.large_content_blob_name
                )
            except OverflowQError as exc:
                logger.warning(
                    "Could not delete blob %s for message %s: %s",
                    message.large_content_blob_name,
                    message.id,
                    exc,
                )
                blob_error = exc

        await self._queue.delete_message(message.id, message.pop_receipt, **options)
        if blob_error is not None:
            raise blob_error

    # ------------------------------------------------------------------ #
    # Pass-through operations                                              #
    # ------------------------------------------------------------------ #

    async def exists(self, **options: Any) -> bool:
        return await self._queue.exists(**options)

    async def create_queue(self, **options: Any) -> None:
        await self._queue.create(**options)

    async def create_queue_if_not_exists(self, **options: Any) -> bool:
        return await self._queue.create_if_not_exists(**options)

    async def delete_queue_if_exists(self, **options: Any) -> bool:
        return await self._queue.delete_if_exists(**options)

    async def clear(self, **options: Any) -> None:
        await self._queue.clear(**options)

    async def get_metadata(self, **options: Any) -> dict[str, str]:
        return await self._queue.get_metadata(**options)

    async def set_metadata(self, metadata: dict[str, str], **options: Any) -> None:
        await self._queue.set_metadata(metadata, **options)

    async def get_access_policy(self, **options: Any) -> dict[str, AccessPolicy]:
        return await self._queue.get_access_policy(**options)

    async def set_access_policy(
        self, policies: dict[str, AccessPolicy], **options: Any
    ) -> None:
        await self._queue.set_access_policy(policies, **options)

    async def peek_message(self, **options: Any) -> RawMessage | None:
        return await self._queue.peek_message(**options)

    async def peek_messages(self, count: int, **options: Any) -> list[RawMessage]:
        self._check_batch_count(count)
        return await self._queue.peek_messages(count, **options)

    async def get_messages(
        self,
        count: int,
        *,
        visibility_timeout: timedelta | None = None,
        **options: Any,
    ) -> list[RawMessage]:
        """Dequeue up to `count` raw messages without decoding them."""
        self._check_batch_count(count)
        return await self._queue.receive_messages(
            count, visibility_timeout=visibility_timeout, **options
        )

    async def update_message(
        self,
        message_id: str,
        pop_receipt: str,
        *,
        visibility_timeout: timedelta,
        content: bytes | None = None,
        **options: Any,
    ) -> MessageReceipt:
        return await self._queue.update_message(
            message_id,
            pop_receipt,
            visibility_timeout=visibility_timeout,
            content=content,
            **options,
        )

    def generate_shared_access_signature(
        self,
        *,
        permission: str | None = None,
        expiry: datetime | None = None,
        start: datetime | None = None,
        policy_id: str | None = None,
    ) -> str:
        return self._queue.generate_shared_access_signature(
            permission=permission, expiry=expiry, start=start, policy_id=policy_id
        )

    # ------------------------------------------------------------------ #
    # Internal helpers                                                     #
    # ------------------------------------------------------------------ #

    def _ensure_ready(self) -> None:
        if not self._ready:
            raise OverflowQError(
                "QueueManager is not initialized; use QueueManager.create() "
                "or 'async with QueueManager(...)'"
            )

    def _check_batch_count(self, count: int) -> None:
        limit = self._queue.max_batch_size
        if count < 1:
            raise InvalidArgumentError("count", "must be greater than zero")
        if count > limit:
            raise InvalidArgumentError("count", f"must be less than or equal to {limit}")

    async def _unwrap(self, raw: RawMessage) -> QueueMessage:
        match codec.decode_body(raw.content, self.serializer):
            case Envelope(blob_name=blob_name):
                data = await self._container.download(blob_name)
                try:
                    content = self.serializer.loads(data)
                except SerializationError as exc:
                    raise OffloadedPayloadError(blob_name, exc) from exc
                return QueueMessage.from_raw(
                    raw, content, large_content_blob_name=blob_name
                )
            case Payload(value=content):
                return QueueMessage.from_raw(raw, content)

    async def _discard_orphan(self, blob_name: str) -> None:
        """Best-effort removal of a blob whose envelope was never enqueued."""
        try:
            await self._container.delete(blob_name)
        except OverflowQError as exc:
            logger.warning("Orphaned blob %s/%s: %s", self.container_name, blob_name, exc)
