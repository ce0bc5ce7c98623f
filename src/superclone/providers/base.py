"""Abstract base class for repository hosting providers.

Why this exists:
- Lets the reconciler enumerate GitHub and GitLab through one contract
- Enables testing with httpx.MockTransport instead of live APIs
- Maps every HTTP failure onto a small, stable error taxonomy

How to extend:
1. Subclass ProviderClient
2. Implement the abstract methods
3. Register in create_provider_client()
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Any, AsyncIterator, Optional

import httpx
from pydantic import BaseModel

from superclone.entities import (
    OwnerKind,
    Provider,
    RepositoryDescriptor,
    Transport,
)
from superclone.observability.logging import get_logger

logger = get_logger(__name__)

USER_AGENT = "super-clone/0.1.0"
PER_PAGE = 100


class ProviderConfig(BaseModel):
    """Base configuration for all provider clients."""

    provider_type: str
    token: Optional[str] = None
    base_url: Optional[str] = None
    timeout_s: float = 30.0
    user_agent: str = USER_AGENT
    extra_params: dict[str, Any] = {}


@dataclass(frozen=True)
class RepositoryPage:
    """One page of a repository listing.

    Attributes:
        descriptors: Repositories on this page, in provider order
        cursor: Cursor that produced this page (None for the first page)
        next_cursor: Opaque cursor of the following page, None when exhausted
    """

    descriptors: list[RepositoryDescriptor] = field(default_factory=list)
    cursor: Optional[str] = None
    next_cursor: Optional[str] = None

    @property
    def is_last(self) -> bool:
        return self.next_cursor is None


class ProviderError(Exception):
    """Base exception for provider errors."""

    def __init__(
        self,
        message: str,
        provider: str,
        original_error: Optional[Exception] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.provider = provider
        self.original_error = original_error
        self.status_code = status_code
        super().__init__(self.message)


class AuthenticationError(ProviderError):
    """Credentials are missing, invalid, or lack permission."""


class NotFound(ProviderError):
    """The requested owner does not exist or is not visible."""


class TransientNetworkError(ProviderError):
    """Connection failure, timeout, 5xx, or unreadable response body."""


class RateLimited(ProviderError):
    """The provider asked us to slow down.

    ``retry_after`` is the number of seconds to wait, when known.
    """

    def __init__(
        self,
        message: str,
        provider: str,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, provider, status_code=status_code)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        moment = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, moment.timestamp() - time.time())


def seconds_until(epoch: Optional[str]) -> Optional[float]:
    """Seconds from now until a Unix timestamp header value."""
    if not epoch:
        return None
    try:
        return max(0.0, float(epoch) - time.time())
    except ValueError:
        return None


class ProviderClient(ABC):
    """Abstract interface for provider API clients.

    Implementations must:
    - Issue exactly one HTTP request per fetch_page() call (no internal retry)
    - Translate failures into the ProviderError taxonomy
    - Release owned HTTP resources in aclose()
    """

    provider: Provider

    def __init__(
        self,
        config: ProviderConfig,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config
        self._headers = self._default_headers()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=config.timeout_s)

    @property
    def has_token(self) -> bool:
        return bool(self.config.token and self.config.token.strip())

    @abstractmethod
    def _default_headers(self) -> dict[str, str]:
        """Headers sent with every request (auth, user agent, accept)."""
        pass

    @abstractmethod
    async def fetch_page(
        self, owner: str, kind: OwnerKind, cursor: Optional[str] = None
    ) -> RepositoryPage:
        """Fetch one page of an owner's repositories.

        Args:
            owner: User login or organization/group path
            kind: Whether the owner is a user or an organization
            cursor: Cursor returned by the previous page, None for the first

        Raises:
            AuthenticationError, NotFound, RateLimited, TransientNetworkError
        """
        pass

    @abstractmethod
    def get_clone_url(self, owner: str, name: str, transport: Transport) -> str:
        """Return the clone URL of a repository for a transport."""
        pass

    @abstractmethod
    async def get_authenticated_user(self) -> str:
        """Return the login of the token owner.

        Raises:
            AuthenticationError: If no token is configured or it is rejected
        """
        pass

    @abstractmethod
    async def list_organizations(self) -> list[str]:
        """Return organizations/groups visible to the token."""
        pass

    async def list_repositories(
        self, owner: str, kind: OwnerKind
    ) -> AsyncIterator[RepositoryDescriptor]:
        """Yield every repository of an owner, fetching pages lazily."""
        cursor: Optional[str] = None
        while True:
            page = await self.fetch_page(owner, kind, cursor)
            for descriptor in page.descriptors:
                yield descriptor
            if page.is_last:
                return
            cursor = page.next_cursor

    async def aclose(self) -> None:
        """Close any owned HTTP resources."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ProviderClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _require_token(self, operation: str) -> None:
        if not self.has_token:
            raise AuthenticationError(
                f"{self.provider.value} token required for {operation}",
                provider=self.provider.value,
            )

    def _rate_limit_delay(self, response: httpx.Response) -> Optional[float]:
        """Seconds to wait if the response is a rate limit, else None.

        A rate-limited response with no usable hint yields 0.0.
        """
        if response.status_code == 429:
            return parse_retry_after(response.headers.get("Retry-After")) or 0.0
        return None

    async def _get(
        self, url: str, params: Optional[dict[str, Any]] = None, *, subject: str
    ) -> httpx.Response:
        """Issue one GET request and classify the outcome.

        Args:
            url: Absolute request URL
            params: Query parameters
            subject: What is being fetched, used in error messages

        Returns:
            A successful response
        """
        name = self.provider.value
        try:
            response = await self._client.get(url, params=params, headers=self._headers)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(
                f"Timed out fetching {subject}", provider=name, original_error=e
            )
        except httpx.TransportError as e:
            raise TransientNetworkError(
                f"Network error fetching {subject}: {e}", provider=name, original_error=e
            )

        status = response.status_code
        if status < 400:
            return response

        delay = self._rate_limit_delay(response)
        if delay is not None:
            logger.warning("provider_rate_limited", provider=name, subject=subject, retry_after=delay)
            raise RateLimited(
                f"{name} rate limit reached fetching {subject}",
                provider=name,
                retry_after=delay,
                status_code=status,
            )
        if status in (401, 403):
            raise AuthenticationError(
                f"{name} rejected credentials for {subject} (HTTP {status})",
                provider=name,
                status_code=status,
            )
        if status == 404:
            raise NotFound(f"{subject} not found on {name}", provider=name, status_code=404)
        if status >= 500:
            raise TransientNetworkError(
                f"{name} server error {status} fetching {subject}",
                provider=name,
                status_code=status,
            )
        raise ProviderError(
            f"{name} API error {status} fetching {subject}: {response.text[:200]}",
            provider=name,
            status_code=status,
        )

    def _json_list(self, response: httpx.Response, subject: str) -> list[dict[str, Any]]:
        """Decode a JSON array body, treating garbage as a transient failure."""
        try:
            payload = response.json()
        except ValueError as e:
            raise TransientNetworkError(
                f"Malformed JSON in {subject} response",
                provider=self.provider.value,
                original_error=e,
            )
        if not isinstance(payload, list):
            raise TransientNetworkError(
                f"Expected a JSON array for {subject}, got {type(payload).__name__}",
                provider=self.provider.value,
            )
        return payload

    def _json_object(self, response: httpx.Response, subject: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise TransientNetworkError(
                f"Malformed JSON in {subject} response",
                provider=self.provider.value,
                original_error=e,
            )
        if not isinstance(payload, dict):
            raise TransientNetworkError(
                f"Expected a JSON object for {subject}, got {type(payload).__name__}",
                provider=self.provider.value,
            )
        return payload
