"""
Value codecs for the cache.

A codec turns a Python value into the text stored in Redis and back. Failures
raise ``CodecError`` so callers using ``CacheService.lookup`` see a typed
``DECODE_ERROR``/``ENCODE_ERROR`` outcome instead of a silent fallback.
"""

import json
from typing import Any, Generic, Protocol, Type, TypeVar, runtime_checkable

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from shared.errors import CodecError

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


@runtime_checkable
class Codec(Protocol[T]):
    """Encode values to store text and decode them back."""

    def encode(self, value: T) -> str:
        ...

    def decode(self, raw: str) -> T:
        ...


class JsonCodec:
    """Default codec.

    Strings are stored as-is, everything else as JSON. Decoding tries JSON first
    and hands back the raw text when it does not parse, so most plain strings
    written by ``set`` come back unchanged.

    Strings that happen to be valid JSON do not survive the round trip: ``"123"``
    reads back as ``123``, ``"true"`` as ``True``, ``'"quoted"'`` as ``"quoted"``
    and ``"null"`` as ``None``, which ``with_cache`` treats as a miss. Use
    ``StrictJsonCodec`` or ``ModelCodec`` when values must keep their type.
    """

    def encode(self, value: Any) -> str:
        if isinstance(value, str):
            return value
        try:
            return json.dumps(value, separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            raise CodecError(f"Value is not JSON serializable: {exc}", {"type": type(value).__name__}) from exc

    def decode(self, raw: Any) -> Any:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            return raw


class StrictJsonCodec:
    """JSON in both directions; text that is not JSON is a decode error."""

    def encode(self, value: Any) -> str:
        try:
            return json.dumps(value, separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            raise CodecError(f"Value is not JSON serializable: {exc}", {"type": type(value).__name__}) from exc

    def decode(self, raw: Any) -> Any:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise CodecError(f"Cached payload is not valid JSON: {exc}") from exc


class ModelCodec(Generic[M]):
    """Codec bound to a pydantic model; decoding validates the payload."""

    def __init__(self, model: Type[M]):
        self.model = model

    def encode(self, value: M) -> str:
        if not isinstance(value, self.model):
            raise CodecError(
                f"Expected {self.model.__name__}, got {type(value).__name__}",
                {"model": self.model.__name__},
            )
        return value.model_dump_json()

    def decode(self, raw: Any) -> M:
        try:
            return self.model.model_validate_json(raw)
        except PydanticValidationError as exc:
            raise CodecError(
                f"Cached payload does not match {self.model.__name__}",
                {"model": self.model.__name__, "errors": exc.error_count()},
            ) from exc


DEFAULT_CODEC = JsonCodec()
