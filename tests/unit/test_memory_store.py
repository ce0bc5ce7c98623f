"""Unit tests for the in-memory catalog store."""

import asyncio

import pytest

from superclone.entities import CloneState, Provider, RepositoryIdentity
from superclone.storage import create_catalog_store
from superclone.storage.base import (
    RepositoryFilter,
    StorageConfig,
    StorageUnavailable,
    UnknownRepositoryError,
)
from superclone.storage.memory import InMemoryCatalogStore


@pytest.mark.asyncio
class TestInMemoryCatalogStore:
    """Test InMemoryCatalogStore functionality."""

    @pytest.fixture
    async def store(self):
        """Create an InMemoryCatalogStore instance for testing."""
        store = InMemoryCatalogStore(StorageConfig(store_type="memory"))
        await store.initialize()
        yield store
        await store.close()

    async def test_upsert_then_refresh(self, store, make_descriptor):
        """Test insert and refresh of the same identity."""
        first = await store.upsert(make_descriptor())
        await store.update_clone_state(first.identity, CloneState.CLONED, local_path="/w")
        second = await store.upsert(make_descriptor(default_branch="trunk"))

        assert second.id == first.id
        assert second.default_branch == "trunk"
        assert second.clone_state == CloneState.CLONED
        assert second.local_path == "/w"
        assert await store.count() == 1

    async def test_returned_rows_are_copies(self, store, make_descriptor):
        """Test that callers cannot mutate stored rows."""
        repo = await store.upsert(make_descriptor())
        repo.clone_state = CloneState.ERROR

        stored = await store.get(repo.identity)
        assert stored.clone_state == CloneState.NOT_CLONED

    async def test_update_unknown_identity_fails(self, store):
        """Test that updating a missing row raises."""
        with pytest.raises(UnknownRepositoryError):
            await store.update_clone_state(
                RepositoryIdentity(Provider.GITLAB, "g", "p"), CloneState.ERROR, error="x"
            )

    async def test_list_with_state_filter(self, store, make_descriptor):
        """Test filtering by exact clone state."""
        a = await store.upsert(make_descriptor(name="a"))
        await store.upsert(make_descriptor(name="b"))
        await store.update_clone_state(a.identity, CloneState.ERROR, error="auth")

        errors = await store.list(RepositoryFilter(state=CloneState.ERROR))
        assert [r.name for r in errors] == ["a"]
        assert errors[0].last_error == "auth"

    async def test_concurrent_updates_last_writer_wins(self, store, make_descriptor):
        """Test that concurrent same-identity writes leave one consistent row."""
        repo = await store.upsert(make_descriptor())

        await asyncio.gather(
            store.update_clone_state(repo.identity, CloneState.ERROR, error="first"),
            store.update_clone_state(repo.identity, CloneState.CLONED),
        )

        stored = await store.get(repo.identity)
        assert stored.clone_state == CloneState.CLONED
        assert stored.last_error is None

    async def test_closed_store_is_unavailable(self, store):
        """Test that a closed store raises StorageUnavailable."""
        await store.close()

        with pytest.raises(StorageUnavailable):
            await store.list()


def test_factory_creates_memory_store():
    """Test the catalog store factory."""
    store = create_catalog_store(StorageConfig(store_type="memory"))
    assert isinstance(store, InMemoryCatalogStore)
