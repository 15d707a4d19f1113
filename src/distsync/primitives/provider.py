"""Factories that bind adapters, defaults, namespace and events to handles."""

from __future__ import annotations

import abc
import datetime as dt
import uuid
from typing import Any, AsyncIterator, Callable, Dict, Generic, Iterable, Optional, Type, TypeVar, Union

from pydantic import BaseModel

from distsync.adapters.database import (
    resolve_lock_adapter,
    resolve_semaphore_adapter,
    resolve_shared_lock_adapter,
)
from distsync.core.errors import CoordinationError, SerializationError
from distsync.core.locks import (
    DatabaseLockStore,
    DatabaseSemaphoreStore,
    DatabaseSharedLockStore,
    LockAdapter,
    SemaphoreAdapter,
    SharedLockAdapter,
)
from distsync.core.message_bus import EventDispatcher, EventTypes, Publisher
from distsync.core.models import EventEnvelope, SerializedLock, SerializedSemaphore, SerializedSharedLock
from distsync.core.namespace import Namespace
from distsync.core.serde import SerdeRegistry, as_registries
from distsync.primitives.base import BaseHandle, HandleContext
from distsync.primitives.lock import Lock
from distsync.primitives.semaphore import Semaphore
from distsync.primitives.shared_lock import SharedLock
from distsync.utils.clock import TtlLike, as_optional_timedelta, as_timedelta, ttl_to_millis
from distsync.utils.logging import get_logger


A = TypeVar("A")
H = TypeVar("H", bound=BaseHandle)

DEFAULT_TTL = dt.timedelta(minutes=5)
DEFAULT_BLOCKING_TIME = dt.timedelta(minutes=1)
DEFAULT_BLOCKING_INTERVAL = dt.timedelta(seconds=1)
DEFAULT_REFRESH_TTL = dt.timedelta(minutes=5)

# Marks a ``create`` argument as "inherit from the provider"; ``None`` is a real ttl.
UNSET: Any = object()

SerdeArg = Union[None, SerdeRegistry, Iterable[SerdeRegistry]]


def new_id() -> str:
    return uuid.uuid4().hex


def _ttl_from_millis(value: Optional[int]) -> Optional[dt.timedelta]:
    return None if value is None else dt.timedelta(milliseconds=value)


class _ProviderTransformer:
    """Serde transformer for the handles of exactly one provider."""

    def __init__(self, provider: "_BaseProvider[Any, Any]") -> None:
        self._provider = provider

    @property
    def tag(self) -> str:
        return self._provider.serde_tag

    def is_applicable(self, value: Any) -> bool:
        return isinstance(value, self._provider.handle_type) and value.context is self._provider.context

    def serialize(self, value: Any) -> Dict[str, Any]:
        return self._provider._to_serialized(value).model_dump(mode="json")

    def deserialize(self, payload: Dict[str, Any]) -> Any:
        model = self._provider.serialized_model.model_validate(payload)
        if model.namespace != str(self._provider.namespace):
            raise SerializationError(
                f"Handle from namespace {model.namespace!r} cannot be bound to {str(self._provider.namespace)!r}"
            )
        return self._provider._from_serialized(model)


class _BaseProvider(abc.ABC, Generic[A, H]):
    kind: str
    default_namespace: str
    handle_type: Type[H]
    serialized_model: Type[SerializedLock]

    def __init__(
        self,
        adapter: A,
        *,
        namespace: Union[None, str, Namespace] = None,
        default_ttl: Optional[TtlLike] = DEFAULT_TTL,
        default_blocking_time: TtlLike = DEFAULT_BLOCKING_TIME,
        default_blocking_interval: TtlLike = DEFAULT_BLOCKING_INTERVAL,
        default_refresh_ttl: TtlLike = DEFAULT_REFRESH_TTL,
        create_id: Callable[[], str] = new_id,
        message_bus: Optional[Publisher] = None,
        serde: SerdeArg = None,
        serde_tag_prefix: Optional[str] = None,
    ) -> None:
        if isinstance(namespace, Namespace):
            self._namespace = namespace
        else:
            self._namespace = Namespace(namespace or self.default_namespace)
        self._default_ttl = as_optional_timedelta(default_ttl)
        self._create_id = create_id
        self._message_bus = message_bus
        self._dispatcher = EventDispatcher(message_bus)
        self._context: HandleContext[A] = HandleContext(
            adapter=adapter,
            namespace=self._namespace,
            dispatcher=self._dispatcher,
            default_blocking_time=as_timedelta(default_blocking_time),
            default_blocking_interval=as_timedelta(default_blocking_interval),
            default_refresh_ttl=as_timedelta(default_refresh_ttl),
        )
        parts = [self.kind, type(adapter).__name__, self._namespace.root]
        if serde_tag_prefix:
            parts.insert(0, serde_tag_prefix)
        self._serde_tag = "/".join(parts)
        self.logger = get_logger(type(self).__name__)

        transformer = _ProviderTransformer(self)
        for registry in as_registries(serde):
            registry.register(transformer)

    @property
    def adapter(self) -> A:
        return self._context.adapter

    @property
    def namespace(self) -> Namespace:
        return self._namespace

    @property
    def context(self) -> HandleContext[A]:
        return self._context

    @property
    def default_ttl(self) -> Optional[dt.timedelta]:
        return self._default_ttl

    @property
    def serde_tag(self) -> str:
        return self._serde_tag

    @property
    def message_bus(self) -> Optional[Publisher]:
        return self._message_bus

    def _resolve(self, ttl: Any, handle_id: Optional[str]) -> tuple:
        resolved_ttl = self._default_ttl if ttl is UNSET else as_optional_timedelta(ttl)
        return resolved_ttl, handle_id or self._create_id()

    async def subscribe(self, event_types: EventTypes, **kwargs: Any) -> AsyncIterator[EventEnvelope]:
        """Yield events emitted by handles of this provider's namespace."""
        if self._message_bus is None:
            raise CoordinationError(f"{type(self).__name__} was created without a message bus")
        namespace = str(self._namespace)
        async for envelope in self._message_bus.subscribe(event_types, **kwargs):  # type: ignore[attr-defined]
            if envelope.payload.get("namespace") == namespace:
                yield envelope

    async def drain_events(self) -> None:
        await self._dispatcher.drain()

    @abc.abstractmethod
    def _to_serialized(self, handle: H) -> BaseModel:  # pragma: no cover - interface
        raise NotImplementedError

    @abc.abstractmethod
    def _from_serialized(self, model: Any) -> H:  # pragma: no cover - interface
        raise NotImplementedError


class LockProvider(_BaseProvider[LockAdapter, Lock]):
    kind = "lock"
    default_namespace = "@lock"
    handle_type = Lock
    serialized_model = SerializedLock

    def __init__(self, adapter: Union[LockAdapter, DatabaseLockStore], **kwargs: Any) -> None:
        super().__init__(resolve_lock_adapter(adapter), **kwargs)

    def create(self, key: str, *, ttl: Optional[TtlLike] = UNSET, lock_id: Optional[str] = None) -> Lock:
        resolved_ttl, handle_id = self._resolve(ttl, lock_id)
        return Lock(self._context, key, handle_id, resolved_ttl)

    def _to_serialized(self, handle: Lock) -> SerializedLock:
        return SerializedLock(
            key=handle.key, id=handle.id, ttl_ms=ttl_to_millis(handle.ttl), namespace=str(self._namespace)
        )

    def _from_serialized(self, model: SerializedLock) -> Lock:
        return self.create(model.key, ttl=_ttl_from_millis(model.ttl_ms), lock_id=model.id)


class SemaphoreProvider(_BaseProvider[SemaphoreAdapter, Semaphore]):
    kind = "semaphore"
    default_namespace = "@semaphore"
    handle_type = Semaphore
    serialized_model = SerializedSemaphore

    def __init__(self, adapter: Union[SemaphoreAdapter, DatabaseSemaphoreStore], **kwargs: Any) -> None:
        super().__init__(resolve_semaphore_adapter(adapter), **kwargs)

    def create(
        self, key: str, *, limit: int, ttl: Optional[TtlLike] = UNSET, slot_id: Optional[str] = None
    ) -> Semaphore:
        resolved_ttl, handle_id = self._resolve(ttl, slot_id)
        return Semaphore(self._context, key, handle_id, resolved_ttl, limit)

    def _to_serialized(self, handle: Semaphore) -> SerializedSemaphore:
        return SerializedSemaphore(
            key=handle.key,
            id=handle.id,
            ttl_ms=ttl_to_millis(handle.ttl),
            namespace=str(self._namespace),
            limit=handle.limit,
        )

    def _from_serialized(self, model: SerializedSemaphore) -> Semaphore:
        return self.create(model.key, limit=model.limit, ttl=_ttl_from_millis(model.ttl_ms), slot_id=model.id)


class SharedLockProvider(_BaseProvider[SharedLockAdapter, SharedLock]):
    kind = "shared-lock"
    default_namespace = "@shared-lock"
    handle_type = SharedLock
    serialized_model = SerializedSharedLock

    def __init__(self, adapter: Union[SharedLockAdapter, DatabaseSharedLockStore], **kwargs: Any) -> None:
        super().__init__(resolve_shared_lock_adapter(adapter), **kwargs)

    def create(
        self, key: str, *, limit: int, ttl: Optional[TtlLike] = UNSET, lock_id: Optional[str] = None
    ) -> SharedLock:
        resolved_ttl, handle_id = self._resolve(ttl, lock_id)
        return SharedLock(self._context, key, handle_id, resolved_ttl, limit)

    def _to_serialized(self, handle: SharedLock) -> SerializedSharedLock:
        return SerializedSharedLock(
            key=handle.key,
            id=handle.id,
            ttl_ms=ttl_to_millis(handle.ttl),
            namespace=str(self._namespace),
            limit=handle.limit,
        )

    def _from_serialized(self, model: SerializedSharedLock) -> SharedLock:
        return self.create(model.key, limit=model.limit, ttl=_ttl_from_millis(model.ttl_ms), lock_id=model.id)
