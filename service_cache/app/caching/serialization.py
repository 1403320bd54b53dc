"""
Versioned payload codecs for cached values.
"""

import json
from dataclasses import dataclass
from typing import Any, Generic, Optional, Type, TypeVar

from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from shared.errors import SerializationError


T = TypeVar("T")


@dataclass
class CachedEntry(Generic[T]):
    """A decoded value and the epoch time it was written, when known."""
    value: T
    written_at: Optional[float] = None


class CacheCodec(Generic[T]):
    """Encode values as ``{"v": version, "ts": written_at, "data": ...}``.

    Bumping ``schema_version`` turns every payload written by an older build
    into a miss instead of a silently mis-shaped value. ``ts`` is optional on
    decode.
    """

    def __init__(self, type_: Any = Any, schema_version: int = 1):
        self.type_ = type_
        self.schema_version = schema_version
        self._adapter: TypeAdapter = TypeAdapter(type_)

    def encode(self, value: T, written_at: Optional[float] = None) -> str:
        try:
            data = self._adapter.dump_python(value, mode="json", by_alias=True)
            envelope = {"v": self.schema_version, "data": data}
            if written_at is not None:
                envelope["ts"] = written_at
            return json.dumps(envelope, separators=(",", ":"))
        except (TypeError, ValueError, PydanticValidationError) as exc:
            raise SerializationError(f"Cannot encode cache value: {exc}") from exc

    def decode(self, payload: str) -> T:
        return self.decode_entry(payload).value

    def decode_entry(self, payload: str) -> CachedEntry[T]:
        try:
            envelope = json.loads(payload)
        except (TypeError, json.JSONDecodeError) as exc:
            raise SerializationError("Cached payload is not valid JSON") from exc

        if not isinstance(envelope, dict) or "data" not in envelope:
            raise SerializationError("Cached payload has no envelope")

        version = envelope.get("v")
        if version != self.schema_version:
            raise SerializationError(
                "Cached payload schema version mismatch",
                {"expected": self.schema_version, "found": version}
            )

        written_at = envelope.get("ts")
        if not isinstance(written_at, (int, float)) or isinstance(written_at, bool):
            written_at = None

        try:
            value = self._adapter.validate_python(envelope["data"])
        except PydanticValidationError as exc:
            raise SerializationError(
                "Cached payload failed validation",
                {"errors": exc.error_count()}
            ) from exc
        return CachedEntry(value, written_at)


def codec_for(type_: Optional[Type[T]] = None, schema_version: int = 1) -> CacheCodec:
    """Build a codec; untyped namespaces accept any JSON value."""
    return CacheCodec(type_ if type_ is not None else Any, schema_version)
