"""
JsonSerializer — the default byte serializer, built on a Pydantic TypeAdapter.

Pydantic handles:
  - any JSON-compatible value when payload_type is Any (the default)
  - typed payloads: pass a model or type and loads() validates into it
  - bytes, datetimes, enums and nested models in JSON mode

Example
-------
    class Order(BaseModel):
        id: int
        lines: list[str]

    serializer = JsonSerializer(Order)
    data = serializer.dumps(Order(id=1, lines=["a"]))
    order = serializer.loads(data)          # -> Order
"""

from __future__ import annotations

from typing import Any

from pydantic import TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError

from overflowq.domain.errors import SerializationError


class JsonSerializer:
    """UTF-8 JSON serializer for values of `payload_type`."""

    def __init__(self, payload_type: Any = Any) -> None:
        self.payload_type = payload_type
        self._adapter: TypeAdapter[Any] = TypeAdapter(payload_type)

    def __repr__(self) -> str:
        return f"JsonSerializer({self.payload_type!r})"

    def dumps(self, value: Any) -> bytes:
        try:
            return self._adapter.dump_json(value)
        except PydanticSerializationError as exc:
            raise SerializationError(f"Cannot serialize {type(value).__name__}: {exc}") from exc

    def loads(self, data: bytes) -> Any:
        try:
            return self._adapter.validate_json(data)
        except ValidationError as exc:
            raise SerializationError(
                f"Not a valid {self._type_name()} payload: {exc.error_count()} error(s)"
            ) from exc

    def _type_name(self) -> str:
        return getattr(self.payload_type, "__name__", repr(self.payload_type))
