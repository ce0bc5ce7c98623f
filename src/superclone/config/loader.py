"""Configuration loading from files and environment.

Supports:
- TOML config files
- Environment variables (SUPERCLONE_* prefix)
- .env files
- The conventional GITHUB_TOKEN / GITLAB_TOKEN variables
"""

import os
import re
import tomllib
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from superclone.config.schema import AppConfig
from superclone.observability.logging import get_logger

logger = get_logger(__name__)

TOKEN_ENV_VARS = {
    "github": "GITHUB_TOKEN",
    "gitlab": "GITLAB_TOKEN",
}


# ${NAME} or ${NAME:-default}
_ENV_REFERENCE = re.compile(r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>[^}]*))?\}")


def _expand(text: str) -> str:
    def resolve(match: re.Match) -> str:
        name, default = match.group("name"), match.group("default")
        value = os.environ.get(name)
        if value is not None:
            return value
        if default is not None:
            return default
        logger.warning("env_var_not_found", var_name=name, left_as="literal")
        return match.group(0)

    return _ENV_REFERENCE.sub(resolve, text)


def _substitute_env_vars(obj: Any) -> Any:
    """Expand ``${VAR}`` and ``${VAR:-default}`` in every string of a TOML tree.

    Unset variables without a default are left as written.
    """
    if isinstance(obj, str):
        return _expand(obj)
    if isinstance(obj, dict):
        return {key: _substitute_env_vars(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]
    return obj


def _apply_token_fallbacks(config: AppConfig) -> None:
    """Fill missing provider tokens from GITHUB_TOKEN / GITLAB_TOKEN."""
    for section_name, env_var in TOKEN_ENV_VARS.items():
        section = getattr(config, section_name)
        if section.token:
            continue
        value = os.getenv(env_var, "").strip()
        if value:
            section.token = value
            logger.debug("token_from_environment", provider=section_name, env_var=env_var)


def _read_config_file(path: Path) -> dict[str, Any]:
    """Parse a TOML config file with env references expanded; {} if absent.

    Raises:
        ValueError: If the file is not valid TOML
    """
    if not path.exists():
        logger.debug("config_file_absent", path=str(path))
        return {}
    with open(path, "rb") as f:
        data = tomllib.load(f)
    logger.info("loaded_config_file", path=str(path))
    return _substitute_env_vars(data)


def load_config(
    config_path: Optional[Path] = None,
    env_file: Optional[Path] = None,
    overrides: Optional[dict[str, Any]] = None,
) -> AppConfig:
    """Load application configuration.

    Priority (highest to lowest):
    1. Explicit overrides (command-line flags)
    2. Environment variables
    3. Config file
    4. Defaults

    Args:
        config_path: Path to TOML config file
        env_file: Path to .env file
        overrides: Nested mapping merged over the file data, e.g.
            ``{"sync": {"concurrency": 8}}``

    Returns:
        Loaded and validated configuration
    """
    if env_file and env_file.exists():
        load_dotenv(env_file)
        logger.info("loaded_env_file", path=str(env_file))

    file_data = _read_config_file(config_path) if config_path else {}
    config = AppConfig(**file_data)

    if overrides:
        config = _apply_overrides(config, overrides)

    _apply_token_fallbacks(config)

    logger.info(
        "config_loaded",
        catalog=config.catalog.store_type,
        clone_path=str(config.sync.clone_path),
        concurrency=config.sync.concurrency,
        github_token=bool(config.github.token),
        gitlab_token=bool(config.gitlab.token),
    )
    return config


def _apply_overrides(config: AppConfig, overrides: dict[str, Any]) -> AppConfig:
    """Merge non-None overrides section by section.

    Each section is revalidated on its own model so environment variables
    cannot shadow an explicit override.
    """
    updates: dict[str, Any] = {}
    for section_name, values in overrides.items():
        if not isinstance(values, dict):
            if values is not None:
                updates[section_name] = values
            continue
        changed = {k: v for k, v in values.items() if v is not None}
        if not changed:
            continue
        section = getattr(config, section_name)
        updates[section_name] = type(section).model_validate(
            {**section.model_dump(), **changed}
        )
    return config.model_copy(update=updates) if updates else config


def get_default_config_path() -> Path:
    """Get the default config file path.

    Searches in order:
    1. ./super-clone.toml
    2. ~/.super-clone/config.toml
    """
    search_paths = [
        Path.cwd() / "super-clone.toml",
        Path.home() / ".super-clone" / "config.toml",
    ]

    for path in search_paths:
        if path.exists():
            return path

    return search_paths[0]
