"""
Provider registry.

Maps provider ids to adapter factories and owns the loaded ProviderHandles:
lazily created on first use, cached for the lifetime of the registry, and
explicitly evictable.
"""

import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from ..locks import KeyedLock
from ..recovery.errors import ProviderNotFoundError
from .base import ProviderAdapter, ProviderInfo


logger = logging.getLogger(__name__)


ProviderFactory = Callable[[], Union[ProviderAdapter, Awaitable[ProviderAdapter]]]


@dataclass
class ProviderHandle:
    """A loaded, ready-to-use adapter instance."""

    provider_id: str
    adapter: ProviderAdapter
    info: ProviderInfo
    loaded_at: float


class ProviderRegistry:
    """Lazily loads and caches provider adapters by id."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._factories: Dict[str, ProviderFactory] = {}
        self._handles: Dict[str, ProviderHandle] = {}
        self._loading = KeyedLock()

    def register(
        self,
        provider_id: str,
        factory: ProviderFactory,
        replace: bool = False,
    ) -> None:
        """
        Register a factory for a provider id.

        Args:
            provider_id: Routing key used by connect()
            factory: Callable returning an adapter (sync or async)
            replace: Allow overriding an existing registration (evicts the loaded handle)
        """
        if provider_id in self._factories and not replace:
            raise ValueError(f"Provider {provider_id} is already registered")
        self._factories[provider_id] = factory
        self._handles.pop(provider_id, None)

    def register_adapter(self, adapter: ProviderAdapter, replace: bool = False) -> None:
        """Register an already constructed adapter under its own provider id."""
        self.register(adapter.provider_id, lambda: adapter, replace=replace)

    def unregister(self, provider_id: str) -> None:
        self._factories.pop(provider_id, None)
        self._handles.pop(provider_id, None)

    def available(self) -> List[str]:
        return sorted(self._factories)

    def is_registered(self, provider_id: str) -> bool:
        return provider_id in self._factories

    async def load(self, provider_id: str) -> ProviderHandle:
        """Return the cached handle, creating it on first use."""
        handle = self._handles.get(provider_id)
        if handle is not None:
            return handle

        factory = self._factories.get(provider_id)
        if factory is None:
            raise ProviderNotFoundError(f"Unknown provider: {provider_id}")

        # Concurrent loads of the same provider share one instance
        async with self._loading.hold(provider_id):
            handle = self._handles.get(provider_id)
            if handle is not None:
                return handle

            adapter = factory()
            if inspect.isawaitable(adapter):
                adapter = await adapter

            handle = ProviderHandle(
                provider_id=provider_id,
                adapter=adapter,
                info=adapter.info(),
                loaded_at=self._clock(),
            )
            self._handles[provider_id] = handle
            logger.info(f"Loaded provider {provider_id} ({handle.info.name})")
            return handle

    async def get_adapter(self, provider_id: str) -> ProviderAdapter:
        return (await self.load(provider_id)).adapter

    async def is_installed(self, provider_id: str) -> bool:
        adapter = await self.get_adapter(provider_id)
        return await adapter.is_installed()

    async def preload(self, provider_ids: Iterable[str]) -> Dict[str, bool]:
        """Load several providers ahead of time; failures are logged, not raised."""
        results: Dict[str, bool] = {}
        for provider_id in provider_ids:
            try:
                await self.load(provider_id)
                results[provider_id] = True
            except Exception as e:
                logger.warning(f"Failed to preload provider {provider_id}: {e}")
                results[provider_id] = False
        return results

    def evict(self, provider_id: str) -> bool:
        return self._handles.pop(provider_id, None) is not None

    def clear(self) -> None:
        self._handles.clear()

    def loaded(self) -> List[str]:
        return sorted(self._handles)

    def get_cache_stats(self) -> Dict[str, Any]:
        return {"cached": len(self._handles), "providers": self.loaded()}
