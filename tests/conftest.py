"""Shared fixtures for unit and integration tests."""

import os
import subprocess
from pathlib import Path

import pytest

from superclone.entities import Provider, RepositoryDescriptor, Visibility


def _make_descriptor(
    owner: str = "acme",
    name: str = "widgets",
    provider: Provider = Provider.GITHUB,
    **overrides,
) -> RepositoryDescriptor:
    host = "github.com" if provider is Provider.GITHUB else "gitlab.com"
    data = {
        "provider": provider,
        "owner": owner,
        "name": name,
        "clone_url_https": f"https://{host}/{owner}/{name}.git",
        "clone_url_ssh": f"git@{host}:{owner}/{name}.git",
        "default_branch": "main",
        "visibility": Visibility.PUBLIC,
    }
    data.update(overrides)
    return RepositoryDescriptor(**data)


@pytest.fixture
def make_descriptor():
    """Factory for repository descriptors with sensible defaults."""
    return _make_descriptor


@pytest.fixture
def no_sleep():
    """Awaitable sleep replacement that records requested delays."""
    delays: list[float] = []

    async def sleep(delay: float) -> None:
        delays.append(delay)

    sleep.delays = delays
    return sleep

_GIT_ENV = {
    "GIT_AUTHOR_NAME": "Test Author",
    "GIT_AUTHOR_EMAIL": "author@example.com",
    "GIT_COMMITTER_NAME": "Test Author",
    "GIT_COMMITTER_EMAIL": "author@example.com",
}


def run_git(*args: str, cwd: Path | None = None) -> str:
    """Run git synchronously for fixture setup and return stdout."""
    result = subprocess.run(
        ["git", "-c", "commit.gpgsign=false", *args],
        cwd=cwd,
        env={**os.environ, **_GIT_ENV},
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


class GitRemote:
    """A local bare repository with a scratch clone used to publish commits."""

    def __init__(self, root: Path, name: str):
        self.work = root / f"{name}-work"
        self.bare = root / f"{name}.git"
        run_git("init", str(self.work))
        self.commit("README.md", f"# {name}\n")
        run_git("clone", "--bare", str(self.work), str(self.bare))
        run_git("remote", "add", "origin", str(self.bare), cwd=self.work)

    @property
    def url(self) -> str:
        return str(self.bare)

    def commit(self, filename: str, content: str) -> None:
        (self.work / filename).write_text(content)
        run_git("add", filename, cwd=self.work)
        run_git("commit", "-m", f"Update {filename}", cwd=self.work)

    def push(self) -> None:
        run_git("push", "origin", "HEAD", cwd=self.work)


@pytest.fixture
def git_remote(tmp_path):
    """Factory creating local bare repositories under tmp_path/remotes."""
    root = tmp_path / "remotes"
    root.mkdir()

    def factory(name: str = "widgets") -> GitRemote:
        return GitRemote(root, name)

    return factory
