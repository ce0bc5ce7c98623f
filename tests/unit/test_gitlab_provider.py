"""Unit tests for the GitLab provider client."""

import httpx
import pytest

from superclone.entities import OwnerKind, Provider, Transport, Visibility
from superclone.providers import ProviderConfig, create_provider_client
from superclone.providers.base import (
    AuthenticationError,
    NotFound,
    RateLimited,
    TransientNetworkError,
)
from superclone.providers.gitlab import GitLabClient


def project_json(namespace: str, path: str, visibility: str = "public") -> dict:
    return {
        "path": path,
        "name": path.title(),
        "namespace": {"full_path": namespace},
        "http_url_to_repo": f"https://gitlab.com/{namespace}/{path}.git",
        "ssh_url_to_repo": f"git@gitlab.com:{namespace}/{path}.git",
        "default_branch": "main",
        "visibility": visibility,
        "description": "A project",
        "archived": False,
    }


def make_client(handler, token: str | None = "glpat-test", **config) -> GitLabClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GitLabClient(
        ProviderConfig(provider_type="gitlab", token=token, **config), http_client=http_client
    )


@pytest.mark.asyncio
class TestGitLabFetchPage:
    """Test GitLabClient.fetch_page."""

    async def test_group_page_includes_subgroups(self):
        """Test the group request and subgroup owners."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json=[
                    project_json("acme", "widgets"),
                    project_json("acme/platform", "infra", visibility="internal"),
                ],
                headers={"X-Next-Page": "2"},
            )

        client = make_client(handler)
        page = await client.fetch_page("acme", OwnerKind.ORGANIZATION)

        request = requests[0]
        assert request.url.path == "/api/v4/groups/acme/projects"
        assert request.url.params["include_subgroups"] == "true"
        assert request.url.params["page"] == "1"
        assert request.headers["PRIVATE-TOKEN"] == "glpat-test"

        assert [d.owner for d in page.descriptors] == ["acme", "acme/platform"]
        assert page.descriptors[0].provider == Provider.GITLAB
        assert page.descriptors[0].name == "widgets"
        assert page.descriptors[0].visibility == Visibility.PUBLIC
        assert page.descriptors[1].visibility == Visibility.PRIVATE
        assert page.next_cursor == "2"

    async def test_nested_group_is_url_encoded(self):
        """Test that a subgroup path is sent as one encoded segment."""
        raw_paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            raw_paths.append(request.url.raw_path.decode())
            return httpx.Response(200, json=[], headers={"X-Next-Page": ""})

        client = make_client(handler)
        page = await client.fetch_page("acme/platform", OwnerKind.ORGANIZATION)

        assert raw_paths[0].startswith("/api/v4/groups/acme%2Fplatform/projects")
        assert page.is_last

    async def test_user_page_on_self_hosted(self):
        """Test a user listing against a self-hosted base URL."""
        urls = []

        def handler(request: httpx.Request) -> httpx.Response:
            urls.append(request.url)
            return httpx.Response(200, json=[project_json("alice", "dotfiles")])

        client = make_client(handler, base_url="https://git.example.org/")
        page = await client.fetch_page("alice", OwnerKind.USER, cursor="4")

        assert urls[0].host == "git.example.org"
        assert urls[0].path == "/api/v4/users/alice/projects"
        assert urls[0].params["page"] == "4"
        assert "include_subgroups" not in urls[0].params
        assert page.cursor == "4"
        assert page.is_last

    async def test_list_repositories_follows_next_page(self):
        """Test lazy iteration driven by X-Next-Page."""

        def handler(request: httpx.Request) -> httpx.Response:
            page = int(request.url.params["page"])
            headers = {"X-Next-Page": str(page + 1)} if page < 2 else {}
            return httpx.Response(200, json=[project_json("acme", f"p{page}")], headers=headers)

        client = make_client(handler)
        names = [d.name async for d in client.list_repositories("acme", OwnerKind.ORGANIZATION)]

        assert names == ["p1", "p2"]

    @pytest.mark.parametrize(
        "status,error",
        [
            (401, AuthenticationError),
            (403, AuthenticationError),
            (404, NotFound),
            (502, TransientNetworkError),
            (429, RateLimited),
        ],
    )
    async def test_status_classification(self, status, error):
        """Test mapping of HTTP failures onto the error taxonomy."""
        client = make_client(lambda request: httpx.Response(status, json={}))

        with pytest.raises(error):
            await client.fetch_page("acme", OwnerKind.ORGANIZATION)

    async def test_rate_limit_retry_after(self):
        """Test that Retry-After is carried on the error."""
        client = make_client(lambda request: httpx.Response(429, headers={"Retry-After": "12"}))

        with pytest.raises(RateLimited) as exc_info:
            await client.fetch_page("acme", OwnerKind.USER)
        assert exc_info.value.retry_after == 12.0

    async def test_timeout_is_transient(self):
        """Test that a read timeout is transient."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        client = make_client(handler)

        with pytest.raises(TransientNetworkError, match="Timed out"):
            await client.fetch_page("acme", OwnerKind.USER)

    async def test_object_instead_of_array_is_transient(self):
        """Test that a non-list body is transient."""
        client = make_client(lambda request: httpx.Response(200, json={"message": "?"}))

        with pytest.raises(TransientNetworkError, match="Expected a JSON array"):
            await client.fetch_page("acme", OwnerKind.USER)


@pytest.mark.asyncio
class TestGitLabAccount:
    """Test authenticated-user and group listing."""

    async def test_get_authenticated_user(self):
        """Test resolving the token owner."""
        client = make_client(lambda request: httpx.Response(200, json={"username": "alice"}))

        assert await client.get_authenticated_user() == "alice"

    async def test_authenticated_user_requires_token(self):
        """Test that a missing token fails before any request."""
        client = make_client(lambda request: httpx.Response(500), token=None)

        with pytest.raises(AuthenticationError):
            await client.get_authenticated_user()

    async def test_list_organizations(self):
        """Test listing member groups across pages."""
        seen_levels = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen_levels.append(request.url.params["min_access_level"])
            if request.url.params["page"] == "1":
                return httpx.Response(
                    200, json=[{"full_path": "acme"}], headers={"X-Next-Page": "2"}
                )
            return httpx.Response(200, json=[{"full_path": "acme/platform"}])

        client = make_client(handler)

        assert await client.list_organizations() == ["acme", "acme/platform"]
        assert seen_levels == ["10", "10"]


def test_clone_urls():
    """Test clone URL construction for a self-hosted instance."""
    client = make_client(lambda request: httpx.Response(200), base_url="https://git.example.org")

    assert (
        client.get_clone_url("acme/platform", "infra", Transport.HTTPS)
        == "https://git.example.org/acme/platform/infra.git"
    )
    assert (
        client.get_clone_url("acme/platform", "infra", Transport.SSH)
        == "git@git.example.org:acme/platform/infra.git"
    )


def test_factory_creates_gitlab_client():
    """Test create_provider_client for gitlab."""
    client = create_provider_client(ProviderConfig(provider_type="gitlab"))

    assert isinstance(client, GitLabClient)
    assert client.api_url == "https://gitlab.com/api/v4"
