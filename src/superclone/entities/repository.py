"""Repository entities - remote descriptors and catalog rows."""

from datetime import datetime, timezone
from enum import Enum
from typing import NamedTuple, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class Provider(str, Enum):
    """Supported repository hosting providers."""

    GITHUB = "github"
    GITLAB = "gitlab"

    @classmethod
    def parse(cls, value: "str | Provider") -> "Provider":
        """Parse a provider name case-insensitively.

        Raises:
            ValueError: If the name is not a known provider
        """
        if isinstance(value, Provider):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError:
            supported = ", ".join(p.value for p in cls)
            raise ValueError(f"Invalid provider: '{value}'. Supported: {supported}") from None


class OwnerKind(str, Enum):
    """How an owner is enumerated on the provider."""

    USER = "user"
    ORGANIZATION = "organization"


class Transport(str, Enum):
    """Clone transport."""

    SSH = "ssh"
    HTTPS = "https"


class Visibility(str, Enum):
    """Remote repository visibility."""

    PUBLIC = "public"
    PRIVATE = "private"


class CloneState(str, Enum):
    """Last observed state of the local working copy."""

    NOT_CLONED = "not_cloned"
    CLONED = "cloned"
    ERROR = "error"


class RepositoryIdentity(NamedTuple):
    """Catalog key of a repository: (provider, owner, name)."""

    provider: Provider
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def __str__(self) -> str:
        return f"{self.provider.value}:{self.full_name}"

    @classmethod
    def parse(
        cls, text: str, default_provider: Optional[Provider] = None
    ) -> "RepositoryIdentity":
        """Build an identity from ``provider:owner/name`` or ``owner/name``.

        The owner may contain slashes (GitLab subgroups); the name is the last
        path segment.

        Raises:
            ValueError: If the text is malformed or no provider is available
        """
        raw = text.strip()
        provider = default_provider
        if ":" in raw:
            prefix, raw = raw.split(":", 1)
            provider = Provider.parse(prefix)
        if provider is None:
            raise ValueError(f"No provider given for '{text}'")

        owner, sep, name = raw.strip("/").rpartition("/")
        if not sep or not owner or not name:
            raise ValueError(f"Expected 'owner/name', got '{text}'")
        return cls(provider, owner, name)


class RepositoryDescriptor(BaseModel):
    """Remote repository metadata as returned by a provider page."""

    model_config = ConfigDict(frozen=True)

    provider: Provider
    owner: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    clone_url_https: str
    clone_url_ssh: str
    default_branch: Optional[str] = None
    visibility: Visibility = Visibility.PUBLIC
    description: Optional[str] = None
    archived: bool = False

    @property
    def identity(self) -> RepositoryIdentity:
        return RepositoryIdentity(self.provider, self.owner, self.name)

    @property
    def full_name(self) -> str:
        return self.identity.full_name


class Repository(BaseModel):
    """A repository known to the catalog.

    Identity fields never change after the row is created. Remote attributes
    are refreshed on every rediscovery; the clone fields are only touched by
    clone/pull attempts.
    """

    id: UUID = Field(default_factory=uuid4)
    provider: Provider
    owner: str
    name: str
    clone_url_https: str
    clone_url_ssh: str
    default_branch: Optional[str] = None
    visibility: Visibility = Visibility.PUBLIC
    description: Optional[str] = None
    archived: bool = False

    clone_state: CloneState = CloneState.NOT_CLONED
    local_path: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    last_error: Optional[str] = None

    discovered_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("owner", "name")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Repository owner and name cannot be empty")
        return v

    @property
    def identity(self) -> RepositoryIdentity:
        return RepositoryIdentity(self.provider, self.owner, self.name)

    @property
    def full_name(self) -> str:
        return self.identity.full_name

    @property
    def is_private(self) -> bool:
        return self.visibility is Visibility.PRIVATE

    def clone_url(self, transport: Transport) -> str:
        """Return the clone URL for the given transport."""
        return self.clone_url_ssh if transport is Transport.SSH else self.clone_url_https

    @classmethod
    def from_descriptor(cls, descriptor: RepositoryDescriptor) -> "Repository":
        """Create a fresh, not-yet-cloned catalog row for a descriptor."""
        now = utcnow()
        return cls(**descriptor.model_dump(), discovered_at=now, updated_at=now)

    def merged_with(self, descriptor: RepositoryDescriptor) -> "Repository":
        """Return a copy refreshed from a rediscovered descriptor.

        Identity and clone-state fields are preserved.
        """
        refreshed = descriptor.model_dump(
            exclude={"provider", "owner", "name"},
        )
        return self.model_copy(update={**refreshed, "updated_at": utcnow()})
