"""Named adapters behind one entry point, one provider per adapter name."""

from __future__ import annotations

from typing import Any, Dict, Generic, Iterable, Mapping, Optional, Type, TypeVar

from distsync.core.errors import DefaultAdapterNotDefinedError, UnregisteredAdapterError
from distsync.primitives.provider import LockProvider, SemaphoreProvider, SharedLockProvider, _BaseProvider
from distsync.utils.logging import get_logger


P = TypeVar("P", bound=_BaseProvider)


class _BaseProviderFactory(Generic[P]):
    """Maps adapter names to providers that share one set of provider settings.

    ``provider_kwargs`` (namespace, defaults, message bus, serde, ...) are
    passed to every provider the factory builds. Providers are built on first
    ``use`` of a name and cached, so a serde registry sees each tag once. Serde
    tags are derived from the adapter class, so two adapters of the same class
    cannot both be used with one serde registry.
    """

    provider_type: Type[P]

    def __init__(
        self,
        adapters: Mapping[str, Any],
        *,
        default_adapter: Optional[str] = None,
        **provider_kwargs: Any,
    ) -> None:
        self._adapters: Dict[str, Any] = dict(adapters)
        self._default_adapter = default_adapter
        self._provider_kwargs = provider_kwargs
        self._providers: Dict[str, P] = {}
        self.logger = get_logger(type(self).__name__)

    @property
    def adapter_names(self) -> Iterable[str]:
        return tuple(self._adapters)

    @property
    def default_adapter(self) -> Optional[str]:
        return self._default_adapter

    def __contains__(self, name: object) -> bool:
        return name in self._adapters

    def register(self, name: str, adapter: Any) -> None:
        """Add an adapter under a new name; names cannot be rebound."""
        if name in self._adapters:
            raise ValueError(f"Adapter {name!r} is already registered on {type(self).__name__}")
        self._adapters[name] = adapter

    def use(self, name: Optional[str] = None) -> P:
        """Return the provider for ``name``, or for the default adapter when omitted."""
        if name is None:
            name = self._default_adapter
            if name is None:
                raise DefaultAdapterNotDefinedError(f"{type(self).__name__} has no default adapter")
        provider = self._providers.get(name)
        if provider is not None:
            return provider
        if name not in self._adapters:
            raise UnregisteredAdapterError(f"Adapter {name!r} is not registered on {type(self).__name__}")
        provider = self.provider_type(self._adapters[name], **self._provider_kwargs)
        self._providers[name] = provider
        self.logger.debug("Created %s for adapter %s", self.provider_type.__name__, name)
        return provider

    async def drain_events(self) -> None:
        for provider in self._providers.values():
            await provider.drain_events()


class LockProviderFactory(_BaseProviderFactory[LockProvider]):
    provider_type = LockProvider


class SemaphoreProviderFactory(_BaseProviderFactory[SemaphoreProvider]):
    provider_type = SemaphoreProvider


class SharedLockProviderFactory(_BaseProviderFactory[SharedLockProvider]):
    provider_type = SharedLockProvider
