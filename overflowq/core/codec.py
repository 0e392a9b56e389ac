"""
Codec — the envelope wire format and the overflow threshold.

Wire format of an envelope body (produced by model_dump_json):
--------------------------------------------------------------
{"kind":"overflowq.envelope","blob_name":"2024-01-01-00-00-00-000000-9f1c..."}

Every other body is whatever the application serializer produced.

Decoding is tagged, not type-sniffed: decode_body() first validates the body
against the Envelope model (marker field required, no extra keys) and only
then hands it to the serializer. The result is either an Envelope or a
Payload, so callers can dispatch with a match statement.

Threshold
---------
Queue services that carry text store the body as base64, which costs 4 output
bytes per 3 input bytes. max_payload_size() is the largest byte length whose
encoding still fits in max_message_size - 1 bytes.
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from overflowq.domain.errors import SerializationError
from overflowq.domain.models import Envelope
from overflowq.ports.serializer import SerializerPort

logger = logging.getLogger(__name__)

_BLOB_TIMESTAMP_FORMAT = "%Y-%m-%d-%H-%M-%S-%f"


@dataclasses.dataclass(frozen=True)
class Payload:
    """
    A decoded, non-envelope message body.

    is_text is True when the serializer rejected the body and `value` is the
    body decoded as UTF-8 text instead.
    """

    value: Any
    is_text: bool = False


def max_payload_size(max_message_size: int) -> int:
    """Largest serialized payload, in bytes, that may be enqueued directly."""
    return (max_message_size - 1) // 4 * 3


def new_blob_name(now: datetime | None = None) -> str:
    """Unique blob name, prefixed with a UTC timestamp so names sort by age."""
    stamp = (now or datetime.now(UTC)).strftime(_BLOB_TIMESTAMP_FORMAT)
    return f"{stamp}-{uuid.uuid4().hex}"


def encode_envelope(envelope: Envelope) -> bytes:
    """Serialize an Envelope to compact UTF-8 JSON bytes."""
    return envelope.model_dump_json().encode("utf-8")


def decode_envelope(data: bytes) -> Envelope | None:
    """Return the Envelope encoded in `data`, or None if `data` is not one."""
    try:
        return Envelope.model_validate_json(data)
    except ValidationError:
        return None


def decode_body(data: bytes, serializer: SerializerPort) -> Envelope | Payload:
    """
    Classify and decode a raw queue message body.

    Never raises: a body the serializer rejects is returned as text.
    """
    envelope = decode_envelope(data)
    if envelope is not None:
        logger.debug("Message body is an envelope for blob %s", envelope.blob_name)
        return envelope
    try:
        return Payload(serializer.loads(data))
    except SerializationError as exc:
        logger.debug("Delivering message body as text: %s", exc)
        return Payload(data.decode("utf-8", errors="replace"), is_text=True)
