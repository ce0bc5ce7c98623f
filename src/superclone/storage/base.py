"""Abstract base class for catalog storage backends.

Why this exists:
- Keeps the reconciler independent from the persistence substrate
- Enables testing with the in-memory implementation
- Pins down the upsert/update contract every backend must honour

How to extend:
1. Subclass CatalogStore
2. Implement all abstract methods
3. Register in create_catalog_store()
4. Add optional dependencies to pyproject.toml
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from pydantic import BaseModel, model_validator

from superclone.entities import (
    CloneState,
    Provider,
    Repository,
    RepositoryDescriptor,
    RepositoryIdentity,
)

# Sentinel for "leave local_path unchanged" in update_clone_state
UNCHANGED: Any = object()


class StorageConfig(BaseModel):
    """Base configuration for catalog stores."""

    store_type: str
    connection_string: Optional[str] = None
    extra_params: dict[str, Any] = {}


class RepositoryFilter(BaseModel):
    """Selection criteria for CatalogStore.list().

    ``cloned_only`` and ``not_cloned_only`` are mutually exclusive; ``state``
    selects one exact clone state.
    """

    provider: Optional[Provider] = None
    owner: Optional[str] = None
    cloned_only: bool = False
    not_cloned_only: bool = False
    state: Optional[CloneState] = None

    @model_validator(mode="after")
    def exclusive_flags(self) -> "RepositoryFilter":
        if self.cloned_only and self.not_cloned_only:
            raise ValueError("cloned_only and not_cloned_only are mutually exclusive")
        return self

    def matches(self, repository: Repository) -> bool:
        """Return True if the repository satisfies every criterion."""
        if self.provider is not None and repository.provider != self.provider:
            return False
        if self.owner is not None and repository.owner != self.owner:
            return False
        if self.cloned_only and repository.clone_state != CloneState.CLONED:
            return False
        if self.not_cloned_only and repository.clone_state == CloneState.CLONED:
            return False
        if self.state is not None and repository.clone_state != self.state:
            return False
        return True


class CatalogStore(ABC):
    """Abstract interface for the durable repository catalog.

    Implementations must guarantee:
    - At most one row per (provider, owner, name)
    - upsert() preserves clone-state fields of an existing row
    - upsert() and update_clone_state() are atomic per row
    - Any substrate failure surfaces as StorageUnavailable
    """

    def __init__(self, config: StorageConfig) -> None:
        """Initialize storage with configuration."""
        self.config = config

    @abstractmethod
    async def initialize(self) -> None:
        """Open the substrate and create tables if needed."""
        pass

    @abstractmethod
    async def upsert(self, descriptor: RepositoryDescriptor) -> Repository:
        """Insert a new repository or refresh an existing one.

        Args:
            descriptor: Remote metadata from a provider page

        Returns:
            The stored repository after the merge

        Raises:
            StorageUnavailable: If the substrate cannot be reached
        """
        pass

    @abstractmethod
    async def get(self, identity: RepositoryIdentity) -> Optional[Repository]:
        """Retrieve a repository by identity.

        Returns:
            Repository if found, None otherwise
        """
        pass

    @abstractmethod
    async def list(self, filter: Optional[RepositoryFilter] = None) -> list[Repository]:
        """List repositories matching a filter.

        Args:
            filter: Selection criteria; None lists everything

        Returns:
            Repositories ordered by provider, owner and name
        """
        pass

    @abstractmethod
    async def update_clone_state(
        self,
        identity: RepositoryIdentity,
        state: CloneState,
        error: Optional[str] = None,
        local_path: Optional[str] = UNCHANGED,
    ) -> None:
        """Record the outcome of a clone/pull attempt.

        Sets the state and error and stamps last_synced_at with the current
        time. local_path is only written when passed explicitly.

        Raises:
            UnknownRepositoryError: If no row has this identity
            StorageUnavailable: If the substrate cannot be reached
        """
        pass

    @abstractmethod
    async def delete(self, identity: RepositoryIdentity) -> bool:
        """Delete a repository row.

        Returns:
            True if deleted, False if not found
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close connections and cleanup resources."""
        pass

    async def count(self, filter: Optional[RepositoryFilter] = None) -> int:
        """Return the number of repositories matching a filter."""
        return len(await self.list(filter))

    async def __aenter__(self) -> "CatalogStore":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


class StorageError(Exception):
    """Base exception for storage errors."""

    def __init__(
        self,
        message: str,
        storage_type: str,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.storage_type = storage_type
        self.original_error = original_error
        super().__init__(self.message)


class StorageUnavailable(StorageError):
    """The persistence substrate cannot be used; fatal for the caller."""


class UnknownRepositoryError(StorageError):
    """An update targeted an identity that is not in the catalog."""

    def __init__(self, identity: RepositoryIdentity, storage_type: str):
        self.identity = identity
        super().__init__(f"Repository not in catalog: {identity}", storage_type=storage_type)
