"""Service layer - wiring configuration to components.

This module contains helpers that build ready-to-use components:
- initialize_catalog: Catalog store initialization helper
- open_provider_client: Provider API client construction
"""

from superclone.service.stores import (
    catalog_config_for,
    initialize_catalog,
    open_provider_client,
    provider_config_for,
)

__all__ = [
    "catalog_config_for",
    "initialize_catalog",
    "open_provider_client",
    "provider_config_for",
]
