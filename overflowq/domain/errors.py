"""
Exception hierarchy for overflowq.

OverflowQError
├── InvalidArgumentError      — rejected argument, raised before any I/O
├── SerializationError        — the byte serializer could not (de)serialize
├── OffloadedPayloadError     — an offloaded payload's blob could not be decoded
├── UnsupportedOperationError — the backend has no equivalent for the call
├── MessageTooLargeError      — message body exceeds the queue's size limit
├── BatchReceiveError         — some messages of a batch could not be unwrapped
└── StorageError              — underlying I/O failure (wraps original exception)
    ├── QueueNotFoundError    — the queue does not exist
    ├── MessageNotFoundError  — message id unknown or pop receipt mismatch
    └── BlobNotFoundError     — blob absent from its container
"""

from __future__ import annotations

from typing import Any


class OverflowQError(Exception):
    """Base class for all overflowq exceptions."""


class InvalidArgumentError(OverflowQError, ValueError):
    """Raised synchronously when an argument is rejected, before any network call."""

    def __init__(self, argument: str, reason: str) -> None:
        self.argument = argument
        self.reason = reason
        super().__init__(f"{argument}: {reason}")


class SerializationError(OverflowQError):
    """Raised by a serializer when a value cannot be converted to or from bytes."""


class OffloadedPayloadError(OverflowQError):
    """
    Raised when an envelope was recognised but the blob it points to does not
    hold a payload the serializer can decode.

    There is no plain-text fallback for offloaded content: this indicates
    corruption or an overwritten blob.
    """

    def __init__(self, blob_name: str, cause: Exception) -> None:
        self.blob_name = blob_name
        self.cause = cause
        super().__init__(f"Offloaded payload in blob {blob_name!r} is unreadable: {cause}")


class UnsupportedOperationError(OverflowQError):
    """Raised when a storage backend has no equivalent for the requested operation."""


class MessageTooLargeError(OverflowQError):
    """Raised by a queue adapter when an encoded message body exceeds its limit."""

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"Encoded message is {size} bytes, limit is {limit}")


class StorageError(OverflowQError):
    """
    Wraps an underlying I/O failure from a storage adapter.

    Attributes
    ----------
    cause : Exception | None
        The original exception from the storage backend.
    """

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.cause = cause
        super().__init__(f"{message}: {cause}" if cause is not None else message)


class QueueNotFoundError(StorageError):
    """Raised when an operation targets a queue that does not exist."""

    def __init__(self, queue_name: str, cause: Exception | None = None) -> None:
        self.queue_name = queue_name
        super().__init__(f"Queue {queue_name!r} not found", cause)


class MessageNotFoundError(StorageError):
    """Raised when a message id is unknown or its pop receipt no longer matches."""

    def __init__(self, message_id: str, cause: Exception | None = None) -> None:
        self.message_id = message_id
        super().__init__(
            f"Message {message_id!r} not found or pop receipt mismatch", cause
        )


class BlobNotFoundError(StorageError):
    """Raised when a blob is absent from its container."""

    def __init__(self, blob_name: str, cause: Exception | None = None) -> None:
        self.blob_name = blob_name
        super().__init__(f"Blob {blob_name!r} not found", cause)


class BatchReceiveError(OverflowQError):
    """
    Raised by receive_many() when some messages of a batch could not be unwrapped.

    The batch has already been dequeued, so the messages that did decode are
    handed back rather than withheld until their visibility timeout.

    Attributes
    ----------
    messages : list[QueueMessage]
        Successfully decoded messages, in queue order. They can be processed
        and deleted as usual.
    failures : list[tuple[RawMessage, OverflowQError]]
        Each message that failed, with the error raised while unwrapping it.
    """

    def __init__(self, messages: list[Any], failures: list[tuple[Any, Exception]]) -> None:
        self.messages = messages
        self.failures = failures
        super().__init__(
            f"{len(failures)} of {len(messages) + len(failures)} messages could not "
            f"be unwrapped: {failures[0][1]}"
        )
