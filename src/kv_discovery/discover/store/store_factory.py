import inspect
import logging
from typing import Any

from kv_discovery.discover.store.kv_store import KVStore, StoreOptions
from kv_discovery.exceptions import ConnectionInitError, UnsupportedBackendError

logger = logging.getLogger(__name__)


def kv_store(name: str):
    """Decorator to register a store implementation."""

    def decorator(cls: Any):
        if name:
            KVStoreFactory.register_store(name, cls)
            logger.debug(f"registered kv store: {name}")
        else:
            logger.warning("No store name specified. Skipping registration.")
        return cls

    return decorator


class KVStoreFactory:
    """Factory class for creating KVStore instances."""

    store_classes: dict[str, Any] = {}

    @classmethod
    def from_kv_store(
        cls,
        backend: str,
        endpoints: list[str],
        options: StoreOptions | None = None,
        **kwargs: Any,
    ) -> KVStore:
        """Creates a KVStore connected to ``endpoints``.

        Args:
            backend: The name the store was registered under.
            endpoints: Ordered backend addresses.
            options: Connection options.
        Returns:
            A new KVStore instance.
        Raises:
            ConnectionInitError: if the backend is unknown or cannot be created.
        """
        store_class = cls.store_classes.get(backend)
        if not store_class:
            raise UnsupportedBackendError(message=f"Store backend '{backend}' not found")
        if not endpoints or not any(endpoints):
            raise ConnectionInitError(message="At least one store endpoint is required")

        sig = inspect.signature(store_class.__init__)
        valid_kwargs = {k: v for k, v in kwargs.items() if k in sig.parameters}
        try:
            return store_class(list(endpoints), options, **valid_kwargs)
        except ConnectionInitError:
            raise
        except Exception as exc:
            raise ConnectionInitError(cause=exc) from exc

    @classmethod
    def register_store(cls, name: str, store_class) -> None:
        """Registers a KVStore class with the factory."""
        cls.store_classes[name] = store_class

    @classmethod
    def list_stores(cls) -> list[str]:
        """Lists the names of all registered stores."""
        return sorted(cls.store_classes)
