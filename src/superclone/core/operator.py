"""Repository operator - clone and pull through the git executable.

Git is treated as an opaque external tool: every operation is one or more
``git`` subprocess invocations whose exit code and stderr are classified into
the OperatorError taxonomy.

Layout of the working-copy tree::

    <destination_root>/<provider>/<owner>/<name>

GitLab owners with subgroups become nested directories.
"""

import asyncio
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from superclone.entities import Repository, RepositoryIdentity, Transport
from superclone.observability.logging import get_logger

logger = get_logger(__name__)

_AUTH_MARKERS = (
    "authentication failed",
    "could not read username",
    "could not read password",
    "terminal prompts disabled",
    "permission denied (publickey",
    "invalid username or password",
    "http basic: access denied",
    "repository not found",
    "host key verification failed",
    "returned error: 401",
    "returned error: 403",
)

_NETWORK_MARKERS = (
    "could not resolve host",
    "couldn't resolve host",
    "temporary failure in name resolution",
    "connection timed out",
    "operation timed out",
    "connection refused",
    "connection reset",
    "network is unreachable",
    "failed to connect",
    "early eof",
    "the remote end hung up unexpectedly",
    "rpc failed",
    "returned error: 5",
)

_CONFLICT_MARKERS = (
    "not possible to fast-forward",
    "diverging branches",
    "would be overwritten",
    "unmerged files",
    "needs merge",
    "your local changes",
)


class OperatorError(Exception):
    """Base exception for repository operator errors."""

    def __init__(
        self,
        message: str,
        identity: Optional[RepositoryIdentity] = None,
        original_error: Optional[Exception] = None,
        stderr: Optional[str] = None,
    ):
        self.message = message
        self.identity = identity
        self.original_error = original_error
        self.stderr = stderr
        super().__init__(self.message)


class AuthenticationFailed(OperatorError):
    """The remote rejected or never received credentials."""


class NetworkFailure(OperatorError):
    """The remote could not be reached; safe to retry."""


class LocalConflict(OperatorError):
    """The local working copy prevents the operation."""


class NotCloned(OperatorError):
    """Pull was requested for a repository with no working copy."""


class ExternalToolError(OperatorError):
    """git failed for a reason we do not classify, or is missing."""

    def __init__(
        self,
        message: str,
        identity: Optional[RepositoryIdentity] = None,
        original_error: Optional[Exception] = None,
        stderr: Optional[str] = None,
        returncode: Optional[int] = None,
    ):
        self.returncode = returncode
        super().__init__(message, identity, original_error, stderr)


@dataclass(frozen=True)
class GitResult:
    """Raw outcome of one git invocation."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True)
class OperationResult:
    """Successful outcome of a clone or pull.

    Attributes:
        identity: Repository the operation ran against
        action: One of "cloned", "already_present", "pulled", "up_to_date"
        path: Working copy location
        output: git output worth showing to a user
    """

    identity: RepositoryIdentity
    action: str
    path: Path
    output: str = ""


def _normalize_url(url: str) -> str:
    url = url.strip().rstrip("/")
    return url[: -len(".git")] if url.endswith(".git") else url


def classify_git_failure(
    result: GitResult,
    operation: str,
    identity: Optional[RepositoryIdentity] = None,
) -> OperatorError:
    """Map a failed git invocation to an OperatorError using its stderr."""
    stderr = result.stderr.strip()
    lowered = stderr.lower()

    if any(marker in lowered for marker in _AUTH_MARKERS):
        cls: type[OperatorError] = AuthenticationFailed
    elif any(marker in lowered for marker in _NETWORK_MARKERS):
        cls = NetworkFailure
    elif any(marker in lowered for marker in _CONFLICT_MARKERS):
        cls = LocalConflict
    else:
        return ExternalToolError(
            f"git {operation} failed (exit {result.returncode}): {stderr}",
            identity=identity,
            stderr=stderr,
            returncode=result.returncode,
        )
    return cls(f"git {operation} failed: {stderr}", identity=identity, stderr=stderr)


class GitOperator:
    """Clone and pull repositories with the git command-line tool.

    Operations on distinct identities touch disjoint directories and may run
    concurrently.
    """

    def __init__(self, git_executable: str = "git", timeout_s: Optional[float] = None) -> None:
        """Initialize the operator.

        Args:
            git_executable: Name or path of the git binary
            timeout_s: Per-invocation limit; None waits indefinitely
        """
        self.git_executable = git_executable
        self.timeout_s = timeout_s

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
        return env

    async def _run(self, args: list[str], cwd: Optional[Path] = None) -> GitResult:
        """Execute a git command and capture its output.

        Raises:
            ExternalToolError: If the git executable cannot be started
            NetworkFailure: If the invocation exceeds timeout_s
        """
        try:
            process = await asyncio.create_subprocess_exec(
                self.git_executable,
                *args,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                env=self._env(),
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ExternalToolError(
                f"Cannot execute '{self.git_executable}': {e}", original_error=e
            )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), self.timeout_s)
        except asyncio.TimeoutError as e:
            if process.returncode is None:
                process.kill()
            await process.wait()
            raise NetworkFailure(
                f"git {args[0] if args else ''} timed out after {self.timeout_s}s",
                original_error=e,
            )
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
            raise

        return GitResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    def path_for(self, repository: Repository, destination_root: Path) -> Path:
        """Return the working-copy path of a repository.

        Raises:
            LocalConflict: If an identity segment would escape destination_root
        """
        segments = [repository.provider.value, *repository.owner.split("/"), repository.name]
        for segment in segments:
            if segment in ("", ".", "..") or "\\" in segment or os.sep in segment:
                raise LocalConflict(
                    f"Unsafe path segment {segment!r} in {repository.identity}",
                    identity=repository.identity,
                )
        return Path(destination_root).expanduser().joinpath(*segments)

    def is_working_copy(self, path: Path) -> bool:
        return (path / ".git").exists()

    async def origin_url(self, path: Path) -> Optional[str]:
        """Return the configured origin URL of a working copy, if any."""
        result = await self._run(["config", "--get", "remote.origin.url"], cwd=path)
        return result.stdout.strip() if result.ok and result.stdout.strip() else None

    async def _ensure_same_repository(self, repository: Repository, path: Path) -> None:
        origin = await self.origin_url(path)
        if origin is None:
            return
        expected = {
            _normalize_url(repository.clone_url_https),
            _normalize_url(repository.clone_url_ssh),
        }
        if _normalize_url(origin) not in expected:
            raise LocalConflict(
                f"{path} holds a different repository (origin {origin})",
                identity=repository.identity,
            )

    async def clone(
        self,
        repository: Repository,
        destination_root: Path,
        transport: Transport = Transport.HTTPS,
    ) -> OperationResult:
        """Clone a repository, or confirm an existing matching working copy.

        Raises:
            LocalConflict: If the path is a non-git directory or another repository
            AuthenticationFailed, NetworkFailure, ExternalToolError
        """
        identity = repository.identity
        path = self.path_for(repository, destination_root)

        if self.is_working_copy(path):
            await self._ensure_same_repository(repository, path)
            logger.debug("clone_already_present", repository=str(identity), path=str(path))
            return OperationResult(identity, "already_present", path)

        try:
            if path.exists() and (not path.is_dir() or any(path.iterdir())):
                raise LocalConflict(
                    f"Path exists but is not a git repository: {path}",
                    identity=identity,
                )
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LocalConflict(
                f"Cannot prepare {path}: {e}", identity=identity, original_error=e
            )
        url = repository.clone_url(transport)
        logger.info("clone_started", repository=str(identity), transport=transport.value)

        result = await self._run(["clone", "--", url, str(path)])
        if not result.ok:
            raise classify_git_failure(result, "clone", identity)

        logger.info("clone_completed", repository=str(identity), path=str(path))
        return OperationResult(identity, "cloned", path, result.stderr.strip())

    async def pull(self, repository: Repository, destination_root: Path) -> OperationResult:
        """Fast-forward an existing working copy from its upstream.

        Raises:
            NotCloned: If no working copy exists
            LocalConflict: If tracked files are modified or history diverged
            AuthenticationFailed, NetworkFailure, ExternalToolError
        """
        identity = repository.identity
        path = self.path_for(repository, destination_root)

        if not self.is_working_copy(path):
            raise NotCloned(f"No working copy at {path}", identity=identity)
        await self._ensure_same_repository(repository, path)

        status = await self._run(["status", "--porcelain", "--untracked-files=no"], cwd=path)
        if not status.ok:
            raise classify_git_failure(status, "status", identity)
        if status.stdout.strip():
            raise LocalConflict(
                f"Working copy has uncommitted changes: {path}", identity=identity
            )

        logger.info("pull_started", repository=str(identity))
        result = await self._run(["pull", "--ff-only"], cwd=path)
        if not result.ok:
            raise classify_git_failure(result, "pull", identity)

        output = result.stdout.strip()
        action = "up_to_date" if "up to date" in output.lower() else "pulled"
        logger.info("pull_completed", repository=str(identity), action=action)
        return OperationResult(identity, action, path, output)

    async def remove_working_copy(self, repository: Repository, destination_root: Path) -> bool:
        """Delete a repository's working copy and any emptied parent directories.

        Returns:
            True if a working copy was removed, False if none existed

        Raises:
            LocalConflict: If the path is not a git working copy or its origin
                is another repository
        """
        root = Path(destination_root).expanduser()
        path = self.path_for(repository, root)
        if not path.exists():
            return False
        if not self.is_working_copy(path):
            raise LocalConflict(
                f"Refusing to remove non-git directory: {path}",
                identity=repository.identity,
            )
        await self._ensure_same_repository(repository, path)

        await asyncio.to_thread(shutil.rmtree, path)
        parent = path.parent
        while parent != root and parent.is_relative_to(root):
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent
        logger.info("working_copy_removed", repository=str(repository.identity), path=str(path))
        return True

    async def check_git_installed(self) -> str:
        """Return the git version string.

        Raises:
            ExternalToolError: If git is missing or broken
        """
        result = await self._run(["--version"])
        if not result.ok:
            raise ExternalToolError(
                "git is not installed or not in PATH",
                stderr=result.stderr,
                returncode=result.returncode,
            )
        return result.stdout.strip()
