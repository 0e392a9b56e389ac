"""
SerializerPort — converts application payloads to and from bytes.

The QueueManager treats the serializer as opaque. The only contract it relies
on is the error type: loads() must raise SerializationError for malformed
input, which is what triggers the plain-text fallback on receive.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class SerializerPort(Protocol):
    def dumps(self, value: Any) -> bytes:
        """Raises SerializationError if value cannot be serialized."""
        ...

    def loads(self, data: bytes) -> Any:
        """Raises SerializationError if data is not a valid serialized payload."""
        ...
