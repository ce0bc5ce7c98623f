"""Storage layer: the durable repository catalog."""

from superclone.storage.base import (
    UNCHANGED,
    CatalogStore,
    RepositoryFilter,
    StorageConfig,
    StorageError,
    StorageUnavailable,
    UnknownRepositoryError,
)


def create_catalog_store(config: StorageConfig) -> CatalogStore:
    """Factory function to create catalog stores based on configuration.

    Args:
        config: Storage configuration with store_type

    Returns:
        Uninitialized catalog store; call initialize() before use

    Raises:
        ValueError: If store_type is unknown

    Example:
        config = StorageConfig(
            store_type="sqlite",
            connection_string="sqlite:///~/.super-clone/repositories.db",
        )
        store = create_catalog_store(config)
        await store.initialize()
    """
    store_type = config.store_type.lower()

    if store_type == "sqlite":
        from superclone.storage.sqlite import SQLiteCatalogStore

        return SQLiteCatalogStore(config)

    elif store_type == "memory":
        from superclone.storage.memory import InMemoryCatalogStore

        return InMemoryCatalogStore(config)

    else:
        raise ValueError(
            f"Unknown catalog store type: '{store_type}'. Supported types: sqlite, memory"
        )


__all__ = [
    "UNCHANGED",
    "CatalogStore",
    "RepositoryFilter",
    "StorageConfig",
    "StorageError",
    "StorageUnavailable",
    "UnknownRepositoryError",
    "create_catalog_store",
]
