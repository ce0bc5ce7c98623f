"""Configuration schema using Pydantic.

Why this exists:
- Type-safe configuration with validation
- Environment variable support (SUPERCLONE_ prefix)
- One place for provider tokens, catalog location and sync tuning

How to extend:
1. Add new fields to existing config classes
2. Create new config classes for new components
3. Document the new keys in super-clone.example.toml
"""

from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from superclone.entities import Transport

DEFAULT_HOME = Path.home() / ".super-clone"


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class CatalogStoreType(str, Enum):
    """Supported catalog stores."""

    SQLITE = "sqlite"
    MEMORY = "memory"


class GitHubConfig(BaseModel):
    """GitHub provider configuration."""

    token: Optional[str] = None
    api_url: str = "https://api.github.com"


class GitLabConfig(BaseModel):
    """GitLab provider configuration."""

    token: Optional[str] = None
    base_url: str = "https://gitlab.com"


class CatalogConfig(BaseModel):
    """Catalog store configuration."""

    store_type: CatalogStoreType = CatalogStoreType.SQLITE
    connection_string: str = f"sqlite:///{DEFAULT_HOME / 'repositories.db'}"
    extra_params: dict[str, Any] = Field(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        """Expand ~ in connection string."""
        if self.connection_string and "~" in self.connection_string:
            self.connection_string = self.connection_string.replace(
                "~", str(Path.home())
            )


class RetryConfig(BaseModel):
    """Retry policy for provider pages and network clone/pull failures."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=60.0, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)


class SyncConfig(BaseModel):
    """Discovery and clone/pull settings."""

    clone_path: Path = Field(default=Path.home() / "repositories")
    transport: Transport = Transport.HTTPS
    concurrency: int = Field(default=4, gt=0, description="Max concurrent git operations")
    timeout_s: float = Field(default=30.0, gt=0, description="HTTP timeout for provider calls")
    retry: RetryConfig = Field(default_factory=RetryConfig)

    def model_post_init(self, __context: Any) -> None:
        """Expand ~ in paths."""
        self.clone_path = self.clone_path.expanduser()


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = LogLevel.WARNING
    json_logs: bool = False
    log_dir: Path = Field(default=DEFAULT_HOME / "logs")
    enable_file: bool = False
    max_days: int = Field(default=30, gt=0)

    @model_validator(mode="after")
    def expand_log_dir(self) -> "LoggingConfig":
        self.log_dir = self.log_dir.expanduser()
        return self


class AppConfig(BaseSettings):
    """Main application configuration.

    Loads from:
    1. Config file (TOML)
    2. Environment variables (prefixed with SUPERCLONE_)
    3. .env file
    """

    model_config = SettingsConfigDict(
        env_prefix="SUPERCLONE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    app_name: str = "super-clone"

    github: GitHubConfig = Field(default_factory=GitHubConfig)
    gitlab: GitLabConfig = Field(default_factory=GitLabConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        """Environment variables win over values read from the config file."""
        return env_settings, init_settings, dotenv_settings, file_secret_settings
