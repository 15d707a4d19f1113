"""Tagged registry used to move handles between processes.

A registry maps a stable string tag to a transformer that knows how to turn
a live handle into a JSON-safe payload and back. Providers register their
transformers when constructed, so every provider must exist before the
first ``deserialize`` call. Both ends must point at the same physical
backend for a transported handle to mean anything.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Protocol, Union

from pydantic import ValidationError

from distsync.core.errors import SerializationError
from distsync.core.models import SerializedEnvelope


class HandleTransformer(Protocol):
    @property
    def tag(self) -> str:
        ...

    def is_applicable(self, value: Any) -> bool:
        ...

    def serialize(self, value: Any) -> Dict[str, Any]:
        ...

    def deserialize(self, payload: Dict[str, Any]) -> Any:
        ...


class SerdeRegistry:
    def __init__(self) -> None:
        self._transformers: Dict[str, HandleTransformer] = {}

    def register(self, transformer: HandleTransformer) -> None:
        existing = self._transformers.get(transformer.tag)
        if existing is transformer:
            return
        if existing is not None:
            # Two providers with the same kind, adapter type and namespace
            # collide; a serde_tag_prefix on one of them separates them.
            raise SerializationError(
                f"Serde tag {transformer.tag!r} is already registered; "
                "configure a distinct serde_tag_prefix on the provider"
            )
        self._transformers[transformer.tag] = transformer

    def tags(self) -> List[str]:
        return sorted(self._transformers)

    def serialize(self, value: Any) -> str:
        for tag, transformer in self._transformers.items():
            if transformer.is_applicable(value):
                envelope = SerializedEnvelope(tag=tag, payload=transformer.serialize(value))
                return envelope.model_dump_json()
        raise SerializationError(f"No transformer registered for {type(value).__name__}")

    def deserialize(self, data: Union[str, bytes]) -> Any:
        try:
            envelope = SerializedEnvelope.model_validate_json(data)
        except ValidationError as exc:
            raise SerializationError(f"Malformed serialized handle: {exc}") from exc
        transformer = self._transformers.get(envelope.tag)
        if transformer is None:
            raise SerializationError(f"Unknown serde tag {envelope.tag!r}")
        try:
            return transformer.deserialize(envelope.payload)
        except ValidationError as exc:
            raise SerializationError(f"Invalid payload for tag {envelope.tag!r}: {exc}") from exc


def as_registries(serde: Union[None, SerdeRegistry, Iterable[SerdeRegistry]]) -> List[SerdeRegistry]:
    if serde is None:
        return []
    if isinstance(serde, SerdeRegistry):
        return [serde]
    return list(serde)
