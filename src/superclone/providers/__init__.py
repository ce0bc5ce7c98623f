"""Provider clients: GitHub and GitLab repository listings."""

from typing import Optional

import httpx

from superclone.providers.base import (
    AuthenticationError,
    NotFound,
    ProviderClient,
    ProviderConfig,
    ProviderError,
    RateLimited,
    RepositoryPage,
    TransientNetworkError,
)


def create_provider_client(
    config: ProviderConfig,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ProviderClient:
    """Factory function to create provider clients based on configuration.

    Args:
        config: Provider configuration with provider_type
        http_client: Optional shared client; the caller keeps ownership

    Returns:
        Provider client; close it with aclose()

    Raises:
        ValueError: If provider_type is unknown

    Example:
        config = ProviderConfig(provider_type="github", token="ghp_...")
        client = create_provider_client(config)
        page = await client.fetch_page("octocat", OwnerKind.USER)
    """
    provider_type = config.provider_type.lower()

    if provider_type == "github":
        from superclone.providers.github import GitHubClient

        return GitHubClient(config, http_client=http_client)

    elif provider_type == "gitlab":
        from superclone.providers.gitlab import GitLabClient

        return GitLabClient(config, http_client=http_client)

    else:
        raise ValueError(
            f"Unknown provider type: '{provider_type}'. Supported types: github, gitlab"
        )


__all__ = [
    "AuthenticationError",
    "NotFound",
    "ProviderClient",
    "ProviderConfig",
    "ProviderError",
    "RateLimited",
    "RepositoryPage",
    "TransientNetworkError",
    "create_provider_client",
]
