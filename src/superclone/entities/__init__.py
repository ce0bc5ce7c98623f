"""Entities - Domain models for the repository catalog.

This module contains pure domain entities without business logic:
- RepositoryDescriptor: Remote metadata returned by a provider page
- Repository: A catalog row with its last observed clone state
- RepositoryIdentity: The (provider, owner, name) catalog key
"""

from superclone.entities.repository import (
    CloneState,
    OwnerKind,
    Provider,
    Repository,
    RepositoryDescriptor,
    RepositoryIdentity,
    Transport,
    Visibility,
    utcnow,
)

__all__ = [
    "CloneState",
    "OwnerKind",
    "Provider",
    "Repository",
    "RepositoryDescriptor",
    "RepositoryIdentity",
    "Transport",
    "Visibility",
    "utcnow",
]
