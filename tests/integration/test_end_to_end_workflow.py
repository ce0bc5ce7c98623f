"""End-to-end tests: discovery into SQLite, then real git clone/pull."""

import shutil

import httpx
import pytest

from superclone.config.schema import AppConfig, CatalogConfig, RetryConfig, SyncConfig
from superclone.core.operator import GitOperator
from superclone.entities import CloneState, OwnerKind, Provider, RepositoryIdentity
from superclone.pipelines.reconciler import OperationState, Reconciler, SyncState
from superclone.service.stores import initialize_catalog, open_provider_client
from superclone.storage import RepositoryFilter

pytestmark = pytest.mark.skipif(
    shutil.which("git") is None, reason="git executable not available"
)


def acme(name: str) -> RepositoryIdentity:
    return RepositoryIdentity(Provider.GITHUB, "acme", name)


@pytest.mark.asyncio
class TestEndToEndWorkflow:
    """Test complete discover, clone, pull and delete workflows."""

    @pytest.fixture
    def remotes(self, git_remote):
        """Three local bare repositories standing in for acme's GitHub repos."""
        return {name: git_remote(name) for name in ("api", "web", "infra")}

    @pytest.fixture
    def http_client(self, remotes):
        """GitHub API double listing the local remotes on two pages."""
        names = list(remotes)

        def repo_json(name: str) -> dict:
            return {
                "name": name,
                "owner": {"login": "acme"},
                "clone_url": remotes[name].url,
                "ssh_url": remotes[name].url,
                "default_branch": "main",
                "private": False,
            }

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/orgs/acme/repos"
            if request.url.params["page"] == "1":
                link = '<https://api.github.com/orgs/acme/repos?page=2>; rel="next"'
                return httpx.Response(
                    200, json=[repo_json(n) for n in names[:2]], headers={"Link": link}
                )
            return httpx.Response(200, json=[repo_json(n) for n in names[2:]])

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    @pytest.fixture
    def config(self, tmp_path):
        return AppConfig(
            catalog=CatalogConfig(
                store_type="sqlite", connection_string=f"sqlite:///{tmp_path}/catalog.db"
            ),
            sync=SyncConfig(
                clone_path=tmp_path / "src",
                concurrency=2,
                retry=RetryConfig(max_attempts=2, base_delay=0.0),
            ),
        )

    @pytest.fixture
    async def store(self, config):
        store = await initialize_catalog(config)
        yield store
        await store.close()

    @pytest.fixture
    def reconciler(self, config, store):
        return Reconciler.from_config(config, store, GitOperator(timeout_s=60))

    async def test_discover_clone_pull(self, config, store, reconciler, remotes, http_client):
        """Test the full lifecycle against real working copies."""
        client = open_provider_client(config, Provider.GITHUB, http_client=http_client)
        session = await reconciler.sync(client, "acme", OwnerKind.ORGANIZATION)

        assert session.state is SyncState.DONE
        assert session.pages_fetched == 2
        assert await store.count(RepositoryFilter(not_cloned_only=True)) == 3

        cloned = await reconciler.clone_all()
        assert cloned.succeeded == 3
        for row in await store.list():
            assert row.clone_state is CloneState.CLONED
            assert row.local_path == str(config.sync.clone_path / "github" / "acme" / row.name)

        remotes["web"].commit("CHANGELOG.md", "1.1.0\n")
        remotes["web"].push()
        pulled = await reconciler.pull_all()

        actions = {o.identity.name: o.action for o in pulled.outcomes}
        assert actions == {"api": "up_to_date", "infra": "up_to_date", "web": "pulled"}
        web_path = config.sync.clone_path / "github" / "acme" / "web"
        assert (web_path / "CHANGELOG.md").read_text() == "1.1.0\n"

    async def test_rediscovery_keeps_clone_state(self, config, store, reconciler, http_client):
        client = open_provider_client(config, Provider.GITHUB, http_client=http_client)
        await reconciler.sync(client, "acme", OwnerKind.ORGANIZATION)
        await reconciler.clone_one(acme("api"))

        second = await reconciler.sync(client, "acme", OwnerKind.ORGANIZATION)

        assert second.created == 0
        assert second.refreshed == 3
        assert (await store.get(acme("api"))).clone_state is CloneState.CLONED

    async def test_local_changes_isolated(self, config, store, reconciler, remotes, http_client):
        """Test that one dirty working copy does not affect the others."""
        client = open_provider_client(config, Provider.GITHUB, http_client=http_client)
        await reconciler.sync(client, "acme", OwnerKind.ORGANIZATION)
        await reconciler.clone_all()
        dirty = config.sync.clone_path / "github" / "acme" / "infra" / "README.md"
        dirty.write_text("work in progress\n")

        summary = await reconciler.pull_all()

        states = {o.identity.name: o.state for o in summary.outcomes}
        assert states["infra"] is OperationState.FAILED
        assert states["api"] is OperationState.SUCCEEDED
        assert states["web"] is OperationState.SUCCEEDED
        infra = await store.get(acme("infra"))
        assert infra.clone_state is CloneState.ERROR
        assert "uncommitted changes" in infra.last_error
        assert dirty.read_text() == "work in progress\n"

    async def test_pull_before_clone_and_delete(self, config, store, reconciler, http_client):
        client = open_provider_client(config, Provider.GITHUB, http_client=http_client)
        await reconciler.sync(client, "acme", OwnerKind.ORGANIZATION)

        not_cloned = await reconciler.pull_one(acme("web"))
        assert not_cloned.error_type == "NotCloned"

        outcome = await reconciler.clone_one(acme("web"))
        assert outcome.path.is_dir()

        assert await reconciler.delete(acme("web")) is True
        assert not outcome.path.exists()
        assert await store.get(acme("web")) is None
        assert await store.count() == 2
