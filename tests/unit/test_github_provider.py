"""Unit tests for the GitHub provider client."""

import time

import httpx
import pytest

from superclone.entities import OwnerKind, Provider, Transport, Visibility
from superclone.providers import ProviderConfig, create_provider_client
from superclone.providers.base import (
    AuthenticationError,
    NotFound,
    ProviderError,
    RateLimited,
    TransientNetworkError,
)
from superclone.providers.github import GitHubClient


def repo_json(owner: str, name: str, private: bool = False) -> dict:
    return {
        "name": name,
        "full_name": f"{owner}/{name}",
        "owner": {"login": owner},
        "clone_url": f"https://github.com/{owner}/{name}.git",
        "ssh_url": f"git@github.com:{owner}/{name}.git",
        "default_branch": "main",
        "private": private,
        "description": None,
        "archived": False,
    }


def link_next(path: str, page: int) -> dict:
    return {"Link": f'<https://api.github.com{path}?per_page=100&page={page}>; rel="next"'}


def make_client(handler, token: str | None = "ghp_test", **config) -> GitHubClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GitHubClient(
        ProviderConfig(provider_type="github", token=token, **config), http_client=http_client
    )


@pytest.mark.asyncio
class TestGitHubFetchPage:
    """Test GitHubClient.fetch_page."""

    async def test_first_user_page(self):
        """Test the request shape and parsing of a user page."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json=[repo_json("octocat", "hello"), repo_json("octocat", "secret", private=True)],
                headers=link_next("/users/octocat/repos", 2),
            )

        client = make_client(handler)
        page = await client.fetch_page("octocat", OwnerKind.USER)

        request = requests[0]
        assert request.url.path == "/users/octocat/repos"
        assert request.url.params["per_page"] == "100"
        assert request.url.params["page"] == "1"
        assert request.headers["Authorization"] == "Bearer ghp_test"
        assert request.headers["Accept"] == "application/vnd.github+json"
        assert request.headers["User-Agent"] == "super-clone/0.1.0"

        assert [d.name for d in page.descriptors] == ["hello", "secret"]
        first = page.descriptors[0]
        assert first.provider == Provider.GITHUB
        assert first.owner == "octocat"
        assert first.clone_url_https == "https://github.com/octocat/hello.git"
        assert first.clone_url_ssh == "git@github.com:octocat/hello.git"
        assert page.descriptors[1].visibility == Visibility.PRIVATE
        assert page.next_cursor == "2"
        assert not page.is_last

    async def test_organization_page_with_cursor(self):
        """Test the org endpoint and a final page."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["page"] = request.url.params["page"]
            return httpx.Response(200, json=[repo_json("acme", "widgets")])

        client = make_client(handler)
        page = await client.fetch_page("acme", OwnerKind.ORGANIZATION, cursor="3")

        assert seen == {"path": "/orgs/acme/repos", "page": "3"}
        assert page.cursor == "3"
        assert page.next_cursor is None
        assert page.is_last

    async def test_without_token_sends_no_authorization(self):
        """Test anonymous listing of public repositories."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=[])

        client = make_client(handler, token=None)
        page = await client.fetch_page("octocat", OwnerKind.USER)

        assert page.descriptors == []
        assert "Authorization" not in requests[0].headers

    async def test_list_repositories_follows_pages(self):
        """Test lazy iteration over every page."""

        def handler(request: httpx.Request) -> httpx.Response:
            page = int(request.url.params["page"])
            headers = link_next("/orgs/acme/repos", page + 1) if page < 3 else {}
            return httpx.Response(200, json=[repo_json("acme", f"r{page}")], headers=headers)

        client = make_client(handler)
        names = [d.name async for d in client.list_repositories("acme", OwnerKind.ORGANIZATION)]

        assert names == ["r1", "r2", "r3"]

    @pytest.mark.parametrize(
        "status,headers,error",
        [
            (401, {}, AuthenticationError),
            (403, {}, AuthenticationError),
            (404, {}, NotFound),
            (500, {}, TransientNetworkError),
            (503, {}, TransientNetworkError),
            (422, {}, ProviderError),
            (429, {}, RateLimited),
            (403, {"X-RateLimit-Remaining": "0"}, RateLimited),
        ],
    )
    async def test_status_classification(self, status, headers, error):
        """Test mapping of HTTP failures onto the error taxonomy."""
        client = make_client(lambda request: httpx.Response(status, json={}, headers=headers))

        with pytest.raises(error) as exc_info:
            await client.fetch_page("acme", OwnerKind.ORGANIZATION)
        assert exc_info.value.status_code == status
        assert exc_info.value.provider == "github"

    async def test_unclassified_status_is_plain_provider_error(self):
        """Test that a 422 is not mistaken for a retryable error."""
        client = make_client(lambda request: httpx.Response(422, json={"message": "bad"}))

        with pytest.raises(ProviderError) as exc_info:
            await client.fetch_page("acme", OwnerKind.USER)
        assert type(exc_info.value) is ProviderError

    async def test_rate_limit_retry_after(self):
        """Test that Retry-After is carried on the error."""
        client = make_client(
            lambda request: httpx.Response(429, headers={"Retry-After": "30"})
        )

        with pytest.raises(RateLimited) as exc_info:
            await client.fetch_page("acme", OwnerKind.USER)
        assert exc_info.value.retry_after == 30.0

    async def test_rate_limit_reset_header(self):
        """Test that X-RateLimit-Reset is converted to a delay."""
        reset = str(int(time.time()) + 60)
        client = make_client(
            lambda request: httpx.Response(
                403, headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": reset}
            )
        )

        with pytest.raises(RateLimited) as exc_info:
            await client.fetch_page("acme", OwnerKind.USER)
        assert 50 <= exc_info.value.retry_after <= 61

    async def test_connection_error_is_transient(self):
        """Test that transport failures are transient."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)

        with pytest.raises(TransientNetworkError) as exc_info:
            await client.fetch_page("acme", OwnerKind.USER)
        assert isinstance(exc_info.value.original_error, httpx.ConnectError)

    async def test_malformed_json_is_transient(self):
        """Test that an unreadable body is transient."""
        client = make_client(lambda request: httpx.Response(200, content=b"<html>"))

        with pytest.raises(TransientNetworkError, match="Malformed JSON"):
            await client.fetch_page("acme", OwnerKind.USER)

    async def test_unexpected_payload_is_transient(self):
        """Test that items missing required keys are transient."""
        client = make_client(lambda request: httpx.Response(200, json=[{"name": "x"}]))

        with pytest.raises(TransientNetworkError, match="Unexpected repository payload"):
            await client.fetch_page("acme", OwnerKind.USER)


@pytest.mark.asyncio
class TestGitHubAccount:
    """Test authenticated-user and organization listing."""

    async def test_get_authenticated_user(self):
        """Test resolving the token owner."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/user"
            return httpx.Response(200, json={"login": "octocat"})

        client = make_client(handler)
        assert await client.get_authenticated_user() == "octocat"

    async def test_authenticated_user_requires_token(self):
        """Test that no request is made without a token."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"login": "x"})

        client = make_client(handler, token="  ")

        with pytest.raises(AuthenticationError, match="token required"):
            await client.get_authenticated_user()
        assert calls == []

    async def test_list_organizations_paginates(self):
        """Test listing organizations across pages."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/user/orgs"
            page = int(request.url.params["page"])
            if page == 1:
                return httpx.Response(
                    200, json=[{"login": "acme"}], headers=link_next("/user/orgs", 2)
                )
            return httpx.Response(200, json=[{"login": "globex"}])

        client = make_client(handler)
        assert await client.list_organizations() == ["acme", "globex"]


def test_clone_urls():
    """Test clone URL construction for github.com."""
    client = make_client(lambda request: httpx.Response(200))

    assert client.get_clone_url("acme", "widgets", Transport.HTTPS) == "https://github.com/acme/widgets.git"
    assert client.get_clone_url("acme", "widgets", Transport.SSH) == "git@github.com:acme/widgets.git"


def test_enterprise_clone_host():
    """Test that an Enterprise API URL maps to its web host."""
    client = make_client(
        lambda request: httpx.Response(200), base_url="https://ghe.example.com/api/v3"
    )

    assert client.api_url == "https://ghe.example.com/api/v3"
    assert client.get_clone_url("acme", "w", Transport.SSH) == "git@ghe.example.com:acme/w.git"


@pytest.mark.asyncio
async def test_aclose_leaves_injected_client_open():
    """Test that an injected HTTP client is owned by the caller."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    client = GitHubClient(ProviderConfig(provider_type="github"), http_client=http_client)

    await client.aclose()

    assert not http_client.is_closed
    await http_client.aclose()


def test_factory_selects_provider():
    """Test create_provider_client."""
    assert isinstance(create_provider_client(ProviderConfig(provider_type="GitHub")), GitHubClient)
    with pytest.raises(ValueError, match="Unknown provider type"):
        create_provider_client(ProviderConfig(provider_type="bitbucket"))
