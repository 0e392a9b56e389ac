"""
In-memory queue, blob container and storage account for testing and development.

The queue faithfully simulates the semantics of a cloud queue service:
  - visibility timeouts: a received message is hidden until next_visible_time
  - pop receipts: a fresh receipt per receive/update; stale receipts are rejected
  - dequeue counts, insertion and expiration times (time-to-live)
  - base64 size accounting against max_message_size

Every handle uses an asyncio.Lock to serialize access. The clock is
injectable so tests can advance time without sleeping.

Zero external dependencies. Safe for multiple concurrent coroutines in a
single event loop. NOT safe across processes or threads.
"""

from __future__ import annotations

import asyncio
import dataclasses
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from overflowq.domain.errors import (
    BlobNotFoundError,
    InvalidArgumentError,
    MessageNotFoundError,
    MessageTooLargeError,
    QueueNotFoundError,
    StorageError,
    UnsupportedOperationError,
)
from overflowq.domain.models import AccessPolicy, MessageReceipt, RawMessage

DEFAULT_MAX_MESSAGE_SIZE = 64 * 1024
DEFAULT_MAX_BATCH_SIZE = 32
DEFAULT_TIME_TO_LIVE = timedelta(days=7)
DEFAULT_VISIBILITY_TIMEOUT = timedelta(seconds=30)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _encoded_size(content: bytes) -> int:
    """Length of the base64 encoding of `content`."""
    return (len(content) + 2) // 3 * 4


@dataclasses.dataclass
class _StoredMessage:
    id: str
    content: bytes
    insertion_time: datetime
    expiration_time: datetime
    next_visible_time: datetime
    pop_receipt: str | None = None
    dequeue_count: int = 0

    def to_raw(self, *, peek: bool = False) -> RawMessage:
        return RawMessage(
            id=self.id,
            pop_receipt=None if peek else self.pop_receipt,
            dequeue_count=self.dequeue_count,
            insertion_time=self.insertion_time,
            expiration_time=self.expiration_time,
            next_visible_time=self.next_visible_time,
            content=self.content,
        )


@dataclasses.dataclass
class InMemoryQueue:
    """
    In-process queue.

    Parameters
    ----------
    name             : queue name
    max_message_size : limit on the base64-encoded body, in bytes
    max_batch_size   : limit on receive_messages / peek_messages counts
    clock            : returns the current UTC time
    """

    name: str
    max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE
    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE
    clock: Clock = _utcnow

    def __post_init__(self) -> None:
        self._exists: bool = False
        self._messages: list[_StoredMessage] = []
        self._metadata: dict[str, str] = {}
        self._policies: dict[str, AccessPolicy] = {}
        self._lock: asyncio.Lock = asyncio.Lock()

    # ------------------------------------------------------------------ #
    # Queue lifecycle                                                      #
    # ------------------------------------------------------------------ #

    async def create(self, **options: Any) -> None:
        """Create the queue. Idempotent, like the service call it models."""
        async with self._lock:
            self._exists = True

    async def create_if_not_exists(self, **options: Any) -> bool:
        async with self._lock:
            if self._exists:
                return False
            self._exists = True
            return True

    async def exists(self, **options: Any) -> bool:
        async with self._lock:
            return self._exists

    async def delete_if_exists(self, **options: Any) -> bool:
        async with self._lock:
            if not self._exists:
                return False
            self._exists = False
            self._messages.clear()
            self._metadata.clear()
            self._policies.clear()
            return True

    async def clear(self, **options: Any) -> None:
        async with self._lock:
            self._require_exists()
            self._messages.clear()

    async def get_metadata(self, **options: Any) -> dict[str, str]:
        async with self._lock:
            self._require_exists()
            return dict(self._metadata)

    async def set_metadata(self, metadata: dict[str, str], **options: Any) -> None:
        async with self._lock:
            self._require_exists()
            self._metadata = dict(metadata)

    async def get_access_policy(self, **options: Any) -> dict[str, AccessPolicy]:
        async with self._lock:
            self._require_exists()
            return dict(self._policies)

    async def set_access_policy(
        self, policies: dict[str, AccessPolicy], **options: Any
    ) -> None:
        async with self._lock:
            self._require_exists()
            self._policies = dict(policies)

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
        size = _encoded_size(content)
        if size > self.max_message_size:
            raise MessageTooLargeError(size, self.max_message_size)
        ttl = DEFAULT_TIME_TO_LIVE if time_to_live is None else time_to_live
        async with self._lock:
            self._require_exists()
            now = self.clock()
            self._messages.append(
                _StoredMessage(
                    id=str(uuid.uuid4()),
                    content=content,
                    insertion_time=now,
                    expiration_time=now + ttl,
                    next_visible_time=now + (visibility_delay or timedelta(0)),
                )
            )

    async def receive_message(
        self,
        *,
        visibility_timeout: timedelta | None = None,
        **options: Any,
    ) -> RawMessage | None:
        messages = await self.receive_messages(
            1, visibility_timeout=visibility_timeout
        )
        return messages[0] if messages else None

    async def receive_messages(
        self,
        count: int,
        *,
        visibility_timeout: timedelta | None = None,
        **options: Any,
    ) -> list[RawMessage]:
        timeout = (
            DEFAULT_VISIBILITY_TIMEOUT if visibility_timeout is None else visibility_timeout
        )
        async with self._lock:
            self._require_exists()
            now = self.clock()
            received: list[RawMessage] = []
            for message in self._visible(now)[:count]:
                message.pop_receipt = uuid.uuid4().hex
                message.dequeue_count += 1
                message.next_visible_time = now + timeout
                received.append(message.to_raw())
            return received

    async def peek_message(self, **options: Any) -> RawMessage | None:
        messages = await self.peek_messages(1)
        return messages[0] if messages else None

    async def peek_messages(self, count: int, **options: Any) -> list[RawMessage]:
        async with self._lock:
            self._require_exists()
            return [m.to_raw(peek=True) for m in self._visible(self.clock())[:count]]

    async def update_message(
        self,
        message_id: str,
        pop_receipt: str,
        *,
        visibility_timeout: timedelta,
        content: bytes | None = None,
        **options: Any,
    ) -> MessageReceipt:
        if content is not None and _encoded_size(content) > self.max_message_size:
            raise MessageTooLargeError(_encoded_size(content), self.max_message_size)
        async with self._lock:
            self._require_exists()
            message = self._find(message_id, pop_receipt)
            message.pop_receipt = uuid.uuid4().hex
            message.next_visible_time = self.clock() + visibility_timeout
            if content is not None:
                message.content = content
            return MessageReceipt(
                id=message.id,
                pop_receipt=message.pop_receipt,
                next_visible_time=message.next_visible_time,
            )

    async def delete_message(
        self, message_id: str, pop_receipt: str, **options: Any
    ) -> None:
        async with self._lock:
            self._require_exists()
            self._messages.remove(self._find(message_id, pop_receipt))

    def generate_shared_access_signature(
        self,
        *,
        permission: str | None = None,
        expiry: datetime | None = None,
        start: datetime | None = None,
        policy_id: str | None = None,
    ) -> str:
        raise UnsupportedOperationError(
            "In-memory queues do not issue shared access signatures"
        )

    async def close(self) -> None:
        pass

    # ------------------------------------------------------------------ #
    # Internal helpers (caller holds the lock)                             #
    # ------------------------------------------------------------------ #

    def _require_exists(self) -> None:
        if not self._exists:
            raise QueueNotFoundError(self.name)

    def _visible(self, now: datetime) -> list[_StoredMessage]:
        """Drop expired messages, return the visible ones in insertion order."""
        self._messages = [m for m in self._messages if m.expiration_time > now]
        return [m for m in self._messages if m.next_visible_time <= now]

    def _find(self, message_id: str, pop_receipt: str) -> _StoredMessage:
        now = self.clock()
        for message in self._messages:
            if (
                message.id == message_id
                and message.pop_receipt == pop_receipt
                and message.expiration_time > now
            ):
                return message
        raise MessageNotFoundError(message_id)


@dataclasses.dataclass
class InMemoryBlobContainer:
    """In-process blob container. Containers have no notion of public access."""

    name: str

    def __post_init__(self) -> None:
        self._exists: bool = False
        self._blobs: dict[str, bytes] = {}
        self._lock: asyncio.Lock = asyncio.Lock()

    async def create_if_not_exists(self) -> bool:
        async with self._lock:
            if self._exists:
                return False
            self._exists = True
            return True

    async def upload(self, blob_name: str, data: bytes) -> None:
        async with self._lock:
            self._require_exists()
            self._blobs[blob_name] = bytes(data)

    async def download(self, blob_name: str) -> bytes:
        async with self._lock:
            self._require_exists()
            try:
                return self._blobs[blob_name]
            except KeyError as exc:
                raise BlobNotFoundError(blob_name, exc) from exc

    async def delete(self, blob_name: str) -> None:
        async with self._lock:
            self._require_exists()
            try:
                del self._blobs[blob_name]
            except KeyError as exc:
                raise BlobNotFoundError(blob_name, exc) from exc

    async def close(self) -> None:
        pass

    def blob_names(self) -> list[str]:
        """Names of all stored blobs, sorted (oldest first for overflowq names)."""
        return sorted(self._blobs)

    def _require_exists(self) -> None:
        if not self._exists:
            raise StorageError(f"Blob container {self.name!r} does not exist")


@dataclasses.dataclass
class InMemoryStorageAccount:
    """
    Hands out one shared InMemoryQueue / InMemoryBlobContainer per name, so
    several managers on the same account see the same data.
    """

    max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE
    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE
    clock: Clock = _utcnow

    def __post_init__(self) -> None:
        if self.max_message_size < 5:
            raise InvalidArgumentError("max_message_size", "must be at least 5 bytes")
        self._queues: dict[str, InMemoryQueue] = {}
        self._containers: dict[str, InMemoryBlobContainer] = {}

    def queue_client(self, queue_name: str) -> InMemoryQueue:
        if queue_name not in self._queues:
            self._queues[queue_name] = InMemoryQueue(
                name=queue_name,
                max_message_size=self.max_message_size,
                max_batch_size=self.max_batch_size,
                clock=self.clock,
            )
        return self._queues[queue_name]

    def blob_container(self, container_name: str) -> InMemoryBlobContainer:
        if container_name not in self._containers:
            self._containers[container_name] = InMemoryBlobContainer(name=container_name)
        return self._containers[container_name]
