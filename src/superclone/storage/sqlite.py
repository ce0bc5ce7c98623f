"""SQLite catalog store.

Persists the repository catalog in a single SQLite file using aiosqlite.
The connection runs in autocommit mode; every mutation is one statement, so
it is atomic on its own.
"""

import asyncio
import os
import weakref
from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

import aiosqlite

from superclone.entities import (
    CloneState,
    Provider,
    Repository,
    RepositoryDescriptor,
    RepositoryIdentity,
    Visibility,
    utcnow,
)
from superclone.observability.logging import get_logger
from superclone.storage.base import (
    UNCHANGED,
    CatalogStore,
    RepositoryFilter,
    StorageConfig,
    StorageUnavailable,
    UnknownRepositoryError,
)

logger = get_logger(__name__)

_COLUMNS = (
    "id, provider, owner, name, clone_url_https, clone_url_ssh, default_branch, "
    "visibility, description, archived, clone_state, local_path, last_synced_at, "
    "last_error, discovered_at, updated_at"
)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteCatalogStore(CatalogStore):
    """SQLite catalog store implementation.

    Rows are keyed by a UUID and unique on (provider, owner, name). A
    rediscovery updates only the remote attributes of an existing row.
    """

    def __init__(self, config: StorageConfig) -> None:
        super().__init__(config)
        conn_str = config.connection_string
        if conn_str is None:
            db_dir = os.path.expanduser("~/.super-clone")
            os.makedirs(db_dir, exist_ok=True)
            self.db_path = os.path.join(db_dir, "repositories.db")
        elif conn_str.startswith("sqlite:///"):
            self.db_path = os.path.expanduser(conn_str.replace("sqlite:///", "", 1))
        else:
            self.db_path = os.path.expanduser(conn_str)

        self.connection: Optional[aiosqlite.Connection] = None
        # Entries vanish once no coroutine holds or awaits the lock
        self._locks: weakref.WeakValueDictionary[RepositoryIdentity, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, identity: RepositoryIdentity) -> asyncio.Lock:
        lock = self._locks.get(identity)
        if lock is None:
            lock = self._locks[identity] = asyncio.Lock()
        return lock

    def _require_connection(self) -> aiosqlite.Connection:
        if not self.connection:
            raise StorageUnavailable("Database not initialized", storage_type="sqlite")
        return self.connection

    async def initialize(self) -> None:
        """Open the database and create the repositories table."""
        try:
            if self.db_path != ":memory:":
                parent = os.path.dirname(os.path.abspath(self.db_path))
                os.makedirs(parent, exist_ok=True)

            self.connection = await aiosqlite.connect(self.db_path, isolation_level=None)
            self.connection.row_factory = aiosqlite.Row

            await self.connection.execute("""
                CREATE TABLE IF NOT EXISTS repositories (
                    id TEXT PRIMARY KEY,
                    provider TEXT NOT NULL,
                    owner TEXT NOT NULL,
                    name TEXT NOT NULL,
                    clone_url_https TEXT NOT NULL,
                    clone_url_ssh TEXT NOT NULL,
                    default_branch TEXT,
                    visibility TEXT NOT NULL,
                    description TEXT,
                    archived INTEGER NOT NULL DEFAULT 0,
                    clone_state TEXT NOT NULL,
                    local_path TEXT,
                    last_synced_at TEXT,
                    last_error TEXT,
                    discovered_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (provider, owner, name)
                )
            """)
            await self.connection.execute(
                "CREATE INDEX IF NOT EXISTS idx_repositories_owner "
                "ON repositories(provider, owner)"
            )
            await self.connection.execute(
                "CREATE INDEX IF NOT EXISTS idx_repositories_state "
                "ON repositories(clone_state)"
            )
            logger.debug("sqlite_catalog_initialized", path=self.db_path)

        except (aiosqlite.Error, OSError) as e:
            raise StorageUnavailable(
                f"Failed to initialize SQLite catalog: {e}",
                storage_type="sqlite",
                original_error=e,
            )

    async def upsert(self, descriptor: RepositoryDescriptor) -> Repository:
        """Insert a descriptor or refresh the remote attributes of its row."""
        connection = self._require_connection()
        identity = descriptor.identity
        now = utcnow().isoformat()

        async with self._lock_for(identity):
            try:
                await connection.execute(
                    """
                    INSERT INTO repositories (
                        id, provider, owner, name, clone_url_https, clone_url_ssh,
                        default_branch, visibility, description, archived,
                        clone_state, discovered_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (provider, owner, name) DO UPDATE SET
                        clone_url_https = excluded.clone_url_https,
                        clone_url_ssh = excluded.clone_url_ssh,
                        default_branch = excluded.default_branch,
                        visibility = excluded.visibility,
                        description = excluded.description,
                        archived = excluded.archived,
                        updated_at = excluded.updated_at
                    """,
                    (
                        str(uuid4()),
                        descriptor.provider.value,
                        descriptor.owner,
                        descriptor.name,
                        descriptor.clone_url_https,
                        descriptor.clone_url_ssh,
                        descriptor.default_branch,
                        descriptor.visibility.value,
                        descriptor.description,
                        int(descriptor.archived),
                        CloneState.NOT_CLONED.value,
                        now,
                        now,
                    ),
                )
                stored = await self._fetch_one(connection, identity)
            except aiosqlite.Error as e:
                raise StorageUnavailable(
                    f"Failed to upsert repository {identity}: {e}",
                    storage_type="sqlite",
                    original_error=e,
                )

        if stored is None:
            raise StorageUnavailable(
                f"Repository {identity} vanished after upsert", storage_type="sqlite"
            )
        return stored

    async def get(self, identity: RepositoryIdentity) -> Optional[Repository]:
        """Retrieve a repository by identity."""
        connection = self._require_connection()
        try:
            return await self._fetch_one(connection, identity)
        except aiosqlite.Error as e:
            raise StorageUnavailable(
                f"Failed to get repository {identity}: {e}",
                storage_type="sqlite",
                original_error=e,
            )

    async def update_clone_state(
        self,
        identity: RepositoryIdentity,
        state: CloneState,
        error: Optional[str] = None,
        local_path: Optional[str] = UNCHANGED,
    ) -> None:
        """Record a clone/pull outcome on an existing row."""
        connection = self._require_connection()
        now = utcnow().isoformat()

        assignments = "clone_state = ?, last_error = ?, last_synced_at = ?, updated_at = ?"
        params: list[Any] = [state.value, error, now, now]
        if local_path is not UNCHANGED:
            assignments += ", local_path = ?"
            params.append(local_path)
        params.extend([identity.provider.value, identity.owner, identity.name])

        async with self._lock_for(identity):
            try:
                cursor = await connection.execute(
                    f"UPDATE repositories SET {assignments} "
                    "WHERE provider = ? AND owner = ? AND name = ?",
                    params,
                )
                updated = cursor.rowcount
            except aiosqlite.Error as e:
                raise StorageUnavailable(
                    f"Failed to update clone state of {identity}: {e}",
                    storage_type="sqlite",
                    original_error=e,
                )

        if updated == 0:
            raise UnknownRepositoryError(identity, storage_type="sqlite")

    async def delete(self, identity: RepositoryIdentity) -> bool:
        """Delete a repository row."""
        connection = self._require_connection()
        async with self._lock_for(identity):
            try:
                cursor = await connection.execute(
                    "DELETE FROM repositories WHERE provider = ? AND owner = ? AND name = ?",
                    (identity.provider.value, identity.owner, identity.name),
                )
                deleted = cursor.rowcount > 0
            except aiosqlite.Error as e:
                raise StorageUnavailable(
                    f"Failed to delete repository {identity}: {e}",
                    storage_type="sqlite",
                    original_error=e,
                )
        return deleted

    async def close(self) -> None:
        """Close the database connection."""
        if self.connection:
            await self.connection.close()
            self.connection = None

    async def _fetch_one(
        self, connection: aiosqlite.Connection, identity: RepositoryIdentity
    ) -> Optional[Repository]:
        cursor = await connection.execute(
            f"SELECT {_COLUMNS} FROM repositories "
            "WHERE provider = ? AND owner = ? AND name = ?",
            (identity.provider.value, identity.owner, identity.name),
        )
        row = await cursor.fetchone()
        return self._row_to_repository(row) if row else None

    @staticmethod
    def _row_to_repository(row: aiosqlite.Row) -> Repository:
        return Repository(
            id=UUID(row["id"]),
            provider=Provider(row["provider"]),
            owner=row["owner"],
            name=row["name"],
            clone_url_https=row["clone_url_https"],
            clone_url_ssh=row["clone_url_ssh"],
            default_branch=row["default_branch"],
            visibility=Visibility(row["visibility"]),
            description=row["description"],
            archived=bool(row["archived"]),
            clone_state=CloneState(row["clone_state"]),
            local_path=row["local_path"],
            last_synced_at=_parse_dt(row["last_synced_at"]),
            last_error=row["last_error"],
            discovered_at=_parse_dt(row["discovered_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    async def list(self, filter: Optional[RepositoryFilter] = None) -> list[Repository]:
        """List repositories matching a filter, ordered by provider, owner, name."""
        connection = self._require_connection()
        filter = filter or RepositoryFilter()

        clauses = []
        params: list[Any] = []
        if filter.provider is not None:
            clauses.append("provider = ?")
            params.append(filter.provider.value)
        if filter.owner is not None:
            clauses.append("owner = ?")
            params.append(filter.owner)
        if filter.cloned_only:
            clauses.append("clone_state = ?")
            params.append(CloneState.CLONED.value)
        if filter.not_cloned_only:
            clauses.append("clone_state != ?")
            params.append(CloneState.CLONED.value)
        if filter.state is not None:
            clauses.append("clone_state = ?")
            params.append(filter.state.value)

        query = f"SELECT {_COLUMNS} FROM repositories"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY provider, owner COLLATE NOCASE, name COLLATE NOCASE"

        try:
            cursor = await connection.execute(query, params)
            rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StorageUnavailable(
                f"Failed to list repositories: {e}",
                storage_type="sqlite",
                original_error=e,
            )
        return [self._row_to_repository(row) for row in rows]
