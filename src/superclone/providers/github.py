"""GitHub REST v3 provider client.

Lists repositories of users and organizations with page-number pagination
driven by the ``Link: rel="next"`` header.
"""

from typing import Any, Optional

import httpx
from pydantic import ValidationError

from superclone.entities import (
    OwnerKind,
    Provider,
    RepositoryDescriptor,
    Transport,
    Visibility,
)
from superclone.providers.base import (
    PER_PAGE,
    ProviderClient,
    ProviderConfig,
    RepositoryPage,
    TransientNetworkError,
    parse_retry_after,
    seconds_until,
)

DEFAULT_API_URL = "https://api.github.com"


class GitHubClient(ProviderClient):
    """GitHub implementation of ProviderClient.

    A token is optional for listing public repositories; it is required for
    get_authenticated_user() and list_organizations().
    """

    provider = Provider.GITHUB

    def __init__(
        self,
        config: ProviderConfig,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(config, http_client=http_client)
        self.api_url = (config.base_url or DEFAULT_API_URL).rstrip("/")

        host = httpx.URL(self.api_url).host
        # GitHub Enterprise serves the API under /api/v3 on the web host
        self.web_host = host[len("api."):] if host.startswith("api.") else host

    def _default_headers(self) -> dict[str, str]:
        headers = {
            "User-Agent": self.config.user_agent,
            "Accept": "application/vnd.github+json",
        }
        if self.has_token:
            headers["Authorization"] = f"Bearer {self.config.token.strip()}"
        return headers

    def _rate_limit_delay(self, response: httpx.Response) -> Optional[float]:
        if response.status_code not in (403, 429):
            return None
        retry_after = response.headers.get("Retry-After")
        remaining = response.headers.get("X-RateLimit-Remaining")
        if remaining != "0" and retry_after is None:
            # A 403 without rate limit headers is a permission problem
            return 0.0 if response.status_code == 429 else None
        delay = parse_retry_after(retry_after)
        if delay is None:
            delay = seconds_until(response.headers.get("X-RateLimit-Reset"))
        return delay or 0.0

    @staticmethod
    def _next_page(response: httpx.Response, current: int) -> Optional[str]:
        link = response.links.get("next")
        if not link:
            return None
        page = httpx.URL(link["url"]).params.get("page")
        return page or str(current + 1)

    def _to_descriptor(self, item: dict[str, Any]) -> RepositoryDescriptor:
        return RepositoryDescriptor(
            provider=Provider.GITHUB,
            owner=item["owner"]["login"],
            name=item["name"],
            clone_url_https=item["clone_url"],
            clone_url_ssh=item["ssh_url"],
            default_branch=item.get("default_branch"),
            visibility=Visibility.PRIVATE if item.get("private") else Visibility.PUBLIC,
            description=item.get("description"),
            archived=bool(item.get("archived", False)),
        )

    async def fetch_page(
        self, owner: str, kind: OwnerKind, cursor: Optional[str] = None
    ) -> RepositoryPage:
        """Fetch one page of /users/{owner}/repos or /orgs/{owner}/repos."""
        segment = "orgs" if kind is OwnerKind.ORGANIZATION else "users"
        page = int(cursor) if cursor else 1
        subject = f"{kind.value} '{owner}' repositories page {page}"

        response = await self._get(
            f"{self.api_url}/{segment}/{owner}/repos",
            params={"per_page": PER_PAGE, "page": page},
            subject=subject,
        )
        items = self._json_list(response, subject)
        try:
            descriptors = [self._to_descriptor(item) for item in items]
        except (KeyError, TypeError, ValidationError) as e:
            raise TransientNetworkError(
                f"Unexpected repository payload in {subject}: {e}",
                provider=self.provider.value,
                original_error=e,
            )

        return RepositoryPage(
            descriptors=descriptors,
            cursor=cursor,
            next_cursor=self._next_page(response, page),
        )

    def get_clone_url(self, owner: str, name: str, transport: Transport) -> str:
        if transport is Transport.SSH:
            return f"git@{self.web_host}:{owner}/{name}.git"
        return f"https://{self.web_host}/{owner}/{name}.git"

    async def get_authenticated_user(self) -> str:
        self._require_token("get_authenticated_user")
        response = await self._get(f"{self.api_url}/user", subject="authenticated user")
        payload = self._json_object(response, "authenticated user")
        login = payload.get("login")
        if not isinstance(login, str) or not login:
            raise TransientNetworkError(
                "Authenticated user response has no login", provider=self.provider.value
            )
        return login

    async def list_organizations(self) -> list[str]:
        self._require_token("list_organizations")
        organizations: list[str] = []
        page = 1
        while True:
            subject = f"organizations page {page}"
            response = await self._get(
                f"{self.api_url}/user/orgs",
                params={"per_page": PER_PAGE, "page": page},
                subject=subject,
            )
            organizations.extend(
                item["login"]
                for item in self._json_list(response, subject)
                if isinstance(item, dict) and item.get("login")
            )
            next_page = self._next_page(response, page)
            if next_page is None:
                return organizations
            page = int(next_page)
