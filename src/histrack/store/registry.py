"""
Backend registry for histrack stores.

Backends are registered under a name ("sqlite") together with a factory.
open_store() resolves the name and builds the store, so adding a backend
never touches call sites.

Usage:
    from histrack.store.registry import open_store

    with open_store("sqlite", "~/.histrack/commands.db") as store:
        store.get_directories_with_history()
"""

import os
from collections.abc import Callable, Iterator
from pathlib import Path

from histrack.errors import ConstructionError
from histrack.store.base import StorageEngine
from histrack.store.retry import RetryPolicy

StoreFactory = Callable[[str | Path, RetryPolicy], StorageEngine]


class StorageRegistry:
    """
    Registry mapping backend names to store factories.

    Attributes:
        _factories: Internal mapping of backend names to factories
    """

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._factories: dict[str, StoreFactory] = {}

    def register(self, name: str, factory: StoreFactory) -> None:
        """
        Register a backend factory.

        Re-registering a name replaces the previous factory.

        Raises:
            ValueError: If name is empty or factory is None
        """
        if not name:
            msg = "Backend must have a non-empty name"
            raise ValueError(msg)
        if factory is None:
            msg = "Cannot register None as a backend factory"
            raise ValueError(msg)
        self._factories[name.lower()] = factory

    def get(self, name: str) -> StoreFactory:
        """
        Look up a backend factory by name.

        Raises:
            ConstructionError: If no backend with that name is registered
        """
        factory = self._factories.get((name or "").lower())
        if factory is None:
            available = ", ".join(self.list_backends()) or "none"
            raise ConstructionError(
                kind=name,
                reason=f"unsupported storage backend (available: {available})",
                suggestion="Set storage_kind to one of the registered backends",
            )
        return factory

    def has(self, name: str) -> bool:
        """Check if a backend is registered."""
        return (name or "").lower() in self._factories

    def unregister(self, name: str) -> bool:
        """Remove a backend; return True if it was registered."""
        return self._factories.pop(name.lower(), None) is not None

    def list_backends(self) -> list[str]:
        """List registered backend names in sorted order."""
        return sorted(self._factories)

    def __len__(self) -> int:
        return len(self._factories)

    def __iter__(self) -> Iterator[str]:
        return iter(self.list_backends())

    def __contains__(self, name: str) -> bool:
        return self.has(name)

    def __repr__(self) -> str:
        return f"<StorageRegistry: [{', '.join(self.list_backends())}]>"


# Global default registry; built-in backends are added by histrack.store
default_registry = StorageRegistry()


def register_backend(name: str, factory: StoreFactory) -> None:
    """Register a backend in the default registry."""
    default_registry.register(name, factory)


def open_store(
    kind: str,
    path: str | os.PathLike[str],
    *,
    retry: RetryPolicy | None = None,
    registry: StorageRegistry | None = None,
) -> StorageEngine:
    """
    Construct a store for the given backend and path.

    The store is returned uninitialized; call initialize() or use it as a
    context manager.

    Args:
        kind: Backend name, e.g. "sqlite"
        path: Location of the store file
        retry: Contention retry policy (defaults to RetryPolicy())
        registry: Registry to resolve kind in (defaults to default_registry)

    Raises:
        ConstructionError: If the backend is unknown or the path unusable
    """
    factory = (registry or default_registry).get(kind)
    return factory(path, retry or RetryPolicy())
