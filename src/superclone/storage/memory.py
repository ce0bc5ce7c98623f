"""In-memory catalog store for testing and development.

Keeps all rows in a dict keyed by identity. Nothing survives the process.
"""

from typing import Optional

from superclone.entities import (
    CloneState,
    Repository,
    RepositoryDescriptor,
    RepositoryIdentity,
    utcnow,
)
from superclone.storage.base import (
    UNCHANGED,
    CatalogStore,
    RepositoryFilter,
    StorageConfig,
    StorageUnavailable,
    UnknownRepositoryError,
)


class InMemoryCatalogStore(CatalogStore):
    """Dict-backed catalog store.

    Every mutation is a single synchronous dict operation, so it is atomic
    with respect to other coroutines on the same event loop.
    """

    def __init__(self, config: Optional[StorageConfig] = None) -> None:
        super().__init__(config or StorageConfig(store_type="memory"))
        self.rows: dict[RepositoryIdentity, Repository] = {}
        self._open = False

    async def initialize(self) -> None:
        self._open = True

    def _ensure_open(self) -> None:
        if not self._open:
            raise StorageUnavailable("Catalog not initialized", storage_type="memory")

    async def upsert(self, descriptor: RepositoryDescriptor) -> Repository:
        self._ensure_open()
        identity = descriptor.identity
        existing = self.rows.get(identity)
        if existing is None:
            repository = Repository.from_descriptor(descriptor)
        else:
            repository = existing.merged_with(descriptor)
        self.rows[identity] = repository
        return repository.model_copy()

    async def get(self, identity: RepositoryIdentity) -> Optional[Repository]:
        self._ensure_open()
        repository = self.rows.get(identity)
        return repository.model_copy() if repository else None

    async def update_clone_state(
        self,
        identity: RepositoryIdentity,
        state: CloneState,
        error: Optional[str] = None,
        local_path: Optional[str] = UNCHANGED,
    ) -> None:
        self._ensure_open()
        existing = self.rows.get(identity)
        if existing is None:
            raise UnknownRepositoryError(identity, storage_type="memory")

        now = utcnow()
        update = {
            "clone_state": state,
            "last_error": error,
            "last_synced_at": now,
            "updated_at": now,
        }
        if local_path is not UNCHANGED:
            update["local_path"] = local_path
        self.rows[identity] = existing.model_copy(update=update)

    async def delete(self, identity: RepositoryIdentity) -> bool:
        self._ensure_open()
        return self.rows.pop(identity, None) is not None

    async def close(self) -> None:
        self._open = False

    async def list(self, filter: Optional[RepositoryFilter] = None) -> list[Repository]:
        self._ensure_open()
        selected = [
            repo.model_copy()
            for repo in self.rows.values()
            if filter is None or filter.matches(repo)
        ]
        selected.sort(key=lambda r: (r.provider.value, r.owner.lower(), r.name.lower()))
        return selected
