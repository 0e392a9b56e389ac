"""
Domain models for overflowq — backed by Pydantic v2.

Pydantic handles:
  - JSON encoding / decoding of the envelope (via codec.py)
  - marker-field validation that distinguishes an envelope from a payload
  - datetime parsing for message metadata

All models are frozen (immutable). A QueueMessage is built fresh on every
receive and never cached.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

ENVELOPE_KIND = "overflowq.envelope"


class Envelope(BaseModel):
    """
    Pointer record enqueued in place of an oversized payload.

    kind      — fixed marker; a body only decodes as an Envelope if it carries it
    blob_name — name of the blob holding the real serialized payload
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["overflowq.envelope"]
    blob_name: str

    @classmethod
    def new(cls, blob_name: str) -> "Envelope":
        """Factory — stamps the marker field."""
        return cls(kind=ENVELOPE_KIND, blob_name=blob_name)


class RawMessage(BaseModel):
    """
    A message exactly as the queue service returned it.

    pop_receipt is None for peeked messages, which cannot be deleted or updated.
    Timestamps are None where the backend does not report them.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    pop_receipt: str | None = None
    dequeue_count: int = 0
    insertion_time: datetime | None = None
    expiration_time: datetime | None = None
    next_visible_time: datetime | None = None
    content: bytes = b""

    @property
    def as_text(self) -> str:
        """The body as UTF-8 text; undecodable bytes become U+FFFD."""
        return self.content.decode("utf-8", errors="replace")


class QueueMessage(BaseModel):
    """
    A received message with its decoded application payload.

    content                 — the decoded payload (or raw text, see QueueManager.receive)
    large_content_blob_name — set iff the payload was offloaded to blob storage
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str
    pop_receipt: str | None
    dequeue_count: int = 0
    insertion_time: datetime | None = None
    expiration_time: datetime | None = None
    next_visible_time: datetime | None = None
    content: Any = None
    large_content_blob_name: str | None = None

    @property
    def is_large_message(self) -> bool:
        return self.large_content_blob_name is not None

    @classmethod
    def from_raw(
        cls,
        raw: RawMessage,
        content: Any,
        large_content_blob_name: str | None = None,
    ) -> "QueueMessage":
        """Combine a RawMessage's metadata with its decoded content."""
        return cls(
            id=raw.id,
            pop_receipt=raw.pop_receipt,
            dequeue_count=raw.dequeue_count,
            insertion_time=raw.insertion_time,
            expiration_time=raw.expiration_time,
            next_visible_time=raw.next_visible_time,
            content=content,
            large_content_blob_name=large_content_blob_name,
        )


class MessageReceipt(BaseModel):
    """Outcome of an update: the pop receipt to use from now on."""

    model_config = ConfigDict(frozen=True)

    id: str
    pop_receipt: str
    next_visible_time: datetime | None = None


class AccessPolicy(BaseModel):
    """A stored access policy on a queue (signed identifier)."""

    model_config = ConfigDict(frozen=True)

    permission: str | None = None
    start: datetime | None = None
    expiry: datetime | None = None
