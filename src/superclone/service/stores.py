"""Store and client initialization service.

Provides helper functions that turn configuration into ready-to-use
components.
"""

from typing import Optional

import httpx

from superclone.config.schema import AppConfig
from superclone.entities import Provider
from superclone.providers import ProviderClient, ProviderConfig, create_provider_client
from superclone.storage import CatalogStore, StorageConfig, create_catalog_store


def catalog_config_for(config: AppConfig) -> StorageConfig:
    """Translate the [catalog] section into a StorageConfig."""
    return StorageConfig(
        store_type=config.catalog.store_type.value,
        connection_string=config.catalog.connection_string,
        extra_params=config.catalog.extra_params,
    )


async def initialize_catalog(config: AppConfig) -> CatalogStore:
    """Create and initialize the catalog store.

    Args:
        config: Application configuration

    Returns:
        Initialized catalog store; the caller must close() it

    Raises:
        StorageUnavailable: If the database cannot be opened
    """
    store = create_catalog_store(catalog_config_for(config))
    await store.initialize()
    return store


def provider_config_for(config: AppConfig, provider: Provider) -> ProviderConfig:
    """Build the client configuration of one provider."""
    if provider is Provider.GITHUB:
        return ProviderConfig(
            provider_type=provider.value,
            token=config.github.token,
            base_url=config.github.api_url,
            timeout_s=config.sync.timeout_s,
        )
    return ProviderConfig(
        provider_type=provider.value,
        token=config.gitlab.token,
        base_url=config.gitlab.base_url,
        timeout_s=config.sync.timeout_s,
    )


def open_provider_client(
    config: AppConfig,
    provider: Provider,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ProviderClient:
    """Create the API client of one provider; close it with aclose()."""
    return create_provider_client(provider_config_for(config, provider), http_client=http_client)
