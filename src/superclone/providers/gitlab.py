"""GitLab REST v4 provider client.

Works against gitlab.com and self-hosted instances. Pagination follows the
``X-Next-Page`` header; group listings include subgroups, so the owner of a
descriptor is the project's full namespace path.
"""

from typing import Any, Optional
from urllib.parse import quote

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

DEFAULT_BASE_URL = "https://gitlab.com"

# min_access_level=10 is "Guest": every group the token is a member of
_MEMBER_ACCESS_LEVEL = 10


class GitLabClient(ProviderClient):
    """GitLab implementation of ProviderClient."""

    provider = Provider.GITLAB

    def __init__(
        self,
        config: ProviderConfig,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(config, http_client=http_client)
        self.base_url = (config.base_url or DEFAULT_BASE_URL).rstrip("/")
        self.api_url = f"{self.base_url}/api/v4"
        self.web_host = httpx.URL(self.base_url).host

    def _default_headers(self) -> dict[str, str]:
        headers = {"User-Agent": self.config.user_agent}
        if self.has_token:
            headers["PRIVATE-TOKEN"] = self.config.token.strip()
        return headers

    def _rate_limit_delay(self, response: httpx.Response) -> Optional[float]:
        if response.status_code != 429:
            return None
        delay = parse_retry_after(response.headers.get("Retry-After"))
        if delay is None:
            delay = seconds_until(response.headers.get("RateLimit-Reset"))
        return delay or 0.0

    @staticmethod
    def _next_page(response: httpx.Response) -> Optional[str]:
        return response.headers.get("X-Next-Page", "").strip() or None

    def _to_descriptor(self, item: dict[str, Any]) -> RepositoryDescriptor:
        # "internal" projects are not anonymously readable
        visibility = (
            Visibility.PUBLIC if item.get("visibility") == "public" else Visibility.PRIVATE
        )
        return RepositoryDescriptor(
            provider=Provider.GITLAB,
            owner=item["namespace"]["full_path"],
            name=item["path"],
            clone_url_https=item["http_url_to_repo"],
            clone_url_ssh=item["ssh_url_to_repo"],
            default_branch=item.get("default_branch"),
            visibility=visibility,
            description=item.get("description"),
            archived=bool(item.get("archived", False)),
        )

    async def fetch_page(
        self, owner: str, kind: OwnerKind, cursor: Optional[str] = None
    ) -> RepositoryPage:
        """Fetch one page of a user's or group's projects."""
        encoded = quote(owner, safe="")
        params: dict[str, Any] = {"per_page": PER_PAGE, "page": cursor or "1"}
        if kind is OwnerKind.ORGANIZATION:
            url = f"{self.api_url}/groups/{encoded}/projects"
            params["include_subgroups"] = "true"
        else:
            url = f"{self.api_url}/users/{encoded}/projects"
        subject = f"{kind.value} '{owner}' projects page {params['page']}"

        response = await self._get(url, params=params, subject=subject)
        items = self._json_list(response, subject)
        try:
            descriptors = [self._to_descriptor(item) for item in items]
        except (KeyError, TypeError, ValidationError) as e:
            raise TransientNetworkError(
                f"Unexpected project payload in {subject}: {e}",
                provider=self.provider.value,
                original_error=e,
            )

        return RepositoryPage(
            descriptors=descriptors,
            cursor=cursor,
            next_cursor=self._next_page(response),
        )

    def get_clone_url(self, owner: str, name: str, transport: Transport) -> str:
        if transport is Transport.SSH:
            return f"git@{self.web_host}:{owner}/{name}.git"
        return f"{self.base_url}/{owner}/{name}.git"

    async def get_authenticated_user(self) -> str:
        self._require_token("get_authenticated_user")
        response = await self._get(f"{self.api_url}/user", subject="authenticated user")
        payload = self._json_object(response, "authenticated user")
        username = payload.get("username")
        if not isinstance(username, str) or not username:
            raise TransientNetworkError(
                "Authenticated user response has no username", provider=self.provider.value
            )
        return username

    async def list_organizations(self) -> list[str]:
        self._require_token("list_organizations")
        groups: list[str] = []
        page: Optional[str] = "1"
        while page is not None:
            subject = f"groups page {page}"
            response = await self._get(
                f"{self.api_url}/groups",
                params={
                    "per_page": PER_PAGE,
                    "page": page,
                    "min_access_level": _MEMBER_ACCESS_LEVEL,
                },
                subject=subject,
            )
            groups.extend(
                item["full_path"]
                for item in self._json_list(response, subject)
                if isinstance(item, dict) and item.get("full_path")
            )
            page = self._next_page(response)
        return groups
