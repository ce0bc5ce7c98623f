"""Command-line interface for super-clone.

Commands:
- discover-user / discover-org: Sync one owner's repositories into the catalog
- discover-mine / discover-all-orgs: Sync the token owner or all their organizations
- clone-all / pull-all: Bulk clone or pull catalog repositories
- clone / pull: Clone or pull a single repository
- list: Show catalog rows and their clone state
- delete: Remove a working copy and its catalog row
- info: Show configuration, git version and catalog counts
"""

import asyncio
import signal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from superclone.config.loader import get_default_config_path, load_config
from superclone.config.schema import AppConfig
from superclone.core.operator import GitOperator, OperatorError
from superclone.entities import (
    CloneState,
    OwnerKind,
    Provider,
    RepositoryIdentity,
    Transport,
)
from superclone.observability.logging import configure_from_config, get_logger
from superclone.pipelines.reconciler import (
    BulkSummary,
    OperationInFlightError,
    Reconciler,
    RepositoryOutcome,
    SyncFailedError,
    SyncSession,
    SyncState,
)
from superclone.service.stores import initialize_catalog, open_provider_client
from superclone.storage import CatalogStore, RepositoryFilter, StorageError

app = typer.Typer(
    name="super-clone",
    help="Discover, clone and keep in sync every repository of a user or organization",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

ConfigOption = typer.Option(None, "--config", "-c", help="Config file path")
DatabaseOption = typer.Option(None, "--database", help="SQLite catalog file")
ClonePathOption = typer.Option(None, "--clone-path", "-p", help="Root directory for working copies")
SshOption = typer.Option(False, "--ssh", help="Clone over SSH instead of HTTPS")
GitHubTokenOption = typer.Option(None, "--github-token", help="GitHub access token")
GitLabTokenOption = typer.Option(None, "--gitlab-token", help="GitLab access token")
ProviderOption = typer.Option(Provider.GITHUB, "--provider", case_sensitive=False, help="Hosting provider")
ProviderFilterOption = typer.Option(None, "--provider", case_sensitive=False, help="Only this provider")
OwnerFilterOption = typer.Option(None, "--owner", help="Only this owner")
ConcurrencyOption = typer.Option(None, "--concurrency", "-j", min=1, help="Parallel git operations")

_STATE_STYLES = {
    CloneState.CLONED: "green",
    CloneState.NOT_CLONED: "yellow",
    CloneState.ERROR: "red",
}


def _load_config(
    config_file: Optional[Path],
    database: Optional[Path] = None,
    clone_path: Optional[Path] = None,
    ssh: bool = False,
    github_token: Optional[str] = None,
    gitlab_token: Optional[str] = None,
    concurrency: Optional[int] = None,
) -> AppConfig:
    """Load configuration, apply command-line overrides and setup logging."""
    if config_file is None:
        config_file = get_default_config_path()

    overrides = {
        "github": {"token": github_token},
        "gitlab": {"token": gitlab_token},
        "sync": {
            "clone_path": clone_path,
            "transport": Transport.SSH if ssh else None,
            "concurrency": concurrency,
        },
    }
    if database is not None:
        overrides["catalog"] = {
            "store_type": "sqlite",
            "connection_string": f"sqlite:///{database.expanduser()}",
        }

    try:
        config = load_config(config_file, env_file=Path.cwd() / ".env", overrides=overrides)
    except ValueError as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        raise typer.Exit(1)

    configure_from_config(config.logging)
    return config


async def _open_catalog(config: AppConfig) -> CatalogStore:
    try:
        return await initialize_catalog(config)
    except StorageError as e:
        console.print(f"[red]Error opening catalog: {e.message}[/red]")
        raise typer.Exit(1)


def _parse_identity(full_name: str, provider: Provider) -> RepositoryIdentity:
    try:
        return RepositoryIdentity.parse(full_name, default_provider=provider)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _print_session(session: SyncSession) -> None:
    label = f"{session.provider.value}:{session.owner}"
    if session.partial:
        console.print(
            f"[yellow]![/yellow] {label}: {session.items_upserted} repositories "
            f"({session.created} new, {session.refreshed} updated), incomplete"
        )
        for error in session.errors:
            console.print(f"  [yellow]{error}[/yellow]")
    elif session.state is SyncState.FAILED:
        console.print(f"[red]✗[/red] {label}: {'; '.join(session.errors)}")
    else:
        console.print(
            f"[green]✓[/green] {label}: {session.items_upserted} repositories "
            f"({session.created} new, {session.refreshed} updated)"
        )


def _print_summary(summary: BulkSummary) -> None:
    table = Table(title=f"{summary.operation.capitalize()} summary")
    table.add_column("Succeeded", style="green")
    table.add_column("Failed", style="red")
    table.add_column("Skipped", style="yellow")
    table.add_column("Cancelled", style="dim")
    table.add_row(
        str(summary.succeeded),
        str(summary.failed),
        str(summary.skipped),
        str(summary.cancelled),
    )
    console.print(table)

    for outcome in summary.failures:
        console.print(f"[red]✗[/red] {outcome.identity}: [dim]{outcome.error_type}[/dim] {outcome.error}")


def _print_outcome(outcome: RepositoryOutcome) -> None:
    if outcome.succeeded:
        console.print(f"[green]✓[/green] {outcome.identity}: {outcome.action} at {outcome.path}")
    else:
        console.print(f"[red]✗[/red] {outcome.identity}: [dim]{outcome.error_type}[/dim] {outcome.error}")


def _install_cancel_handler(cancel_event: asyncio.Event) -> bool:
    """Make the first Ctrl-C stop dispatching instead of killing git mid-write."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError) as e:
        logger.debug("cancel_handler_unavailable", error=str(e))
        return False
    return True


# Discovery


async def _discover_async(
    config: AppConfig, provider: Provider, owner: Optional[str], kind: Optional[OwnerKind]
) -> None:
    """Shared implementation of the discover-* commands.

    ``owner`` None means "the token owner" for kind USER and "every visible
    organization" for kind None.
    """
    store = await _open_catalog(config)
    client = open_provider_client(config, provider)
    reconciler = Reconciler.from_config(config, store, GitOperator())

    try:
        with console.status(f"Discovering repositories on {provider.value}..."):
            if kind is None:
                sessions = await reconciler.sync_all_organizations(client)
            elif owner is None:
                sessions = [await reconciler.sync_authenticated_user(client)]
            else:
                sessions = [await reconciler.sync(client, owner, kind)]

        if not sessions:
            console.print("[yellow]No organizations found[/yellow]")
        for session in sessions:
            _print_session(session)

        if any(session.state is SyncState.FAILED for session in sessions):
            raise typer.Exit(1)

    except SyncFailedError as e:
        console.print(f"[red]Discovery failed: {e.cause}[/red]")
        raise typer.Exit(1)
    except StorageError as e:
        console.print(f"[red]Catalog error: {e.message}[/red]")
        raise typer.Exit(1)
    finally:
        await client.aclose()
        await store.close()


@app.command("discover-user")
def discover_user(
    owner: str = typer.Argument(..., help="User login"),
    provider: Provider = ProviderOption,
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
    github_token: Optional[str] = GitHubTokenOption,
    gitlab_token: Optional[str] = GitLabTokenOption,
):
    """Discover all repositories of a user."""
    config = _load_config(config_file, database, github_token=github_token, gitlab_token=gitlab_token)
    asyncio.run(_discover_async(config, provider, owner, OwnerKind.USER))


@app.command("discover-org")
def discover_org(
    owner: str = typer.Argument(..., help="Organization or group path"),
    provider: Provider = ProviderOption,
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
    github_token: Optional[str] = GitHubTokenOption,
    gitlab_token: Optional[str] = GitLabTokenOption,
):
    """Discover all repositories of an organization or group."""
    config = _load_config(config_file, database, github_token=github_token, gitlab_token=gitlab_token)
    asyncio.run(_discover_async(config, provider, owner, OwnerKind.ORGANIZATION))


@app.command("discover-mine")
def discover_mine(
    provider: Provider = ProviderOption,
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
    github_token: Optional[str] = GitHubTokenOption,
    gitlab_token: Optional[str] = GitLabTokenOption,
):
    """Discover the repositories of the token owner (token required)."""
    config = _load_config(config_file, database, github_token=github_token, gitlab_token=gitlab_token)
    asyncio.run(_discover_async(config, provider, None, OwnerKind.USER))


@app.command("discover-all-orgs")
def discover_all_orgs(
    provider: Provider = ProviderOption,
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
    github_token: Optional[str] = GitHubTokenOption,
    gitlab_token: Optional[str] = GitLabTokenOption,
):
    """Discover every organization visible to the token (token required)."""
    config = _load_config(config_file, database, github_token=github_token, gitlab_token=gitlab_token)
    asyncio.run(_discover_async(config, provider, None, None))


# Clone / pull


async def _bulk_async(
    config: AppConfig,
    operation: str,
    provider: Optional[Provider],
    owner: Optional[str],
) -> None:
    """Shared implementation of clone-all and pull-all."""
    store = await _open_catalog(config)
    reconciler = Reconciler.from_config(config, store, GitOperator())
    cancel_event = asyncio.Event()
    handler_installed = _install_cancel_handler(cancel_event)

    if operation == "clone":
        repo_filter = RepositoryFilter(provider=provider, owner=owner, not_cloned_only=True)
    else:
        repo_filter = RepositoryFilter(provider=provider, owner=owner, cloned_only=True)

    try:
        total = await store.count(repo_filter)
        if total == 0:
            console.print(f"[yellow]Nothing to {operation}[/yellow]")
            return

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
        ) as progress:
            task = progress.add_task(f"{operation.capitalize()} {total} repositories", total=total)

            def advance(outcome: RepositoryOutcome) -> None:
                progress.advance(task)

            if operation == "clone":
                summary = await reconciler.clone_all(
                    repo_filter, cancel_event=cancel_event, on_outcome=advance
                )
            else:
                summary = await reconciler.pull_all(
                    repo_filter, cancel_event=cancel_event, on_outcome=advance
                )

        _print_summary(summary)
        if summary.failed:
            raise typer.Exit(1)

    except StorageError as e:
        console.print(f"[red]Catalog error: {e.message}[/red]")
        raise typer.Exit(1)
    finally:
        if handler_installed:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)
        await store.close()


@app.command("clone-all")
def clone_all(
    provider: Optional[Provider] = ProviderFilterOption,
    owner: Optional[str] = OwnerFilterOption,
    concurrency: Optional[int] = ConcurrencyOption,
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
    clone_path: Optional[Path] = ClonePathOption,
    ssh: bool = SshOption,
):
    """Clone every repository in the catalog that is not cloned yet."""
    config = _load_config(config_file, database, clone_path, ssh, concurrency=concurrency)
    asyncio.run(_bulk_async(config, "clone", provider, owner))


@app.command("pull-all")
def pull_all(
    provider: Optional[Provider] = ProviderFilterOption,
    owner: Optional[str] = OwnerFilterOption,
    concurrency: Optional[int] = ConcurrencyOption,
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
    clone_path: Optional[Path] = ClonePathOption,
):
    """Pull every cloned repository in the catalog."""
    config = _load_config(config_file, database, clone_path, concurrency=concurrency)
    asyncio.run(_bulk_async(config, "pull", provider, owner))


async def _single_async(config: AppConfig, operation: str, identity: RepositoryIdentity) -> None:
    """Shared implementation of clone and pull."""
    store = await _open_catalog(config)
    reconciler = Reconciler.from_config(config, store, GitOperator())

    try:
        if operation == "clone":
            outcome = await reconciler.clone_one(identity)
        else:
            outcome = await reconciler.pull_one(identity)
        _print_outcome(outcome)
        if not outcome.succeeded:
            raise typer.Exit(1)

    except OperationInFlightError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)
    except StorageError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)
    finally:
        await store.close()


@app.command("clone")
def clone(
    full_name: str = typer.Argument(..., help="owner/name or provider:owner/name"),
    provider: Provider = ProviderOption,
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
    clone_path: Optional[Path] = ClonePathOption,
    ssh: bool = SshOption,
):
    """Clone one repository from the catalog."""
    config = _load_config(config_file, database, clone_path, ssh)
    asyncio.run(_single_async(config, "clone", _parse_identity(full_name, provider)))


@app.command("pull")
def pull(
    full_name: str = typer.Argument(..., help="owner/name or provider:owner/name"),
    provider: Provider = ProviderOption,
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
    clone_path: Optional[Path] = ClonePathOption,
):
    """Pull one repository from the catalog."""
    config = _load_config(config_file, database, clone_path)
    asyncio.run(_single_async(config, "pull", _parse_identity(full_name, provider)))


# Catalog


async def _list_async(config: AppConfig, repo_filter: RepositoryFilter) -> None:
    """Async implementation of list command."""
    store = await _open_catalog(config)
    try:
        repositories = await store.list(repo_filter)
    except StorageError as e:
        console.print(f"[red]Error listing repositories: {e.message}[/red]")
        raise typer.Exit(1)
    finally:
        await store.close()

    if not repositories:
        console.print("[yellow]No repositories found[/yellow]")
        return

    table = Table(title=f"Repositories ({len(repositories)})")
    table.add_column("Provider", style="dim")
    table.add_column("Repository", style="cyan")
    table.add_column("Visibility")
    table.add_column("State")
    table.add_column("Last Synced", style="dim")
    table.add_column("Last Error", style="red")

    for repo in repositories:
        style = _STATE_STYLES[repo.clone_state]
        table.add_row(
            repo.provider.value,
            repo.full_name,
            repo.visibility.value,
            f"[{style}]{repo.clone_state.value}[/{style}]",
            repo.last_synced_at.strftime("%Y-%m-%d %H:%M") if repo.last_synced_at else "-",
            repo.last_error or "",
        )

    console.print(table)


@app.command("list")
def list_repositories(
    provider: Optional[Provider] = ProviderFilterOption,
    owner: Optional[str] = OwnerFilterOption,
    cloned: Optional[bool] = typer.Option(
        None, "--cloned/--not-cloned", help="Only cloned or only not-cloned repositories"
    ),
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
):
    """List repositories in the catalog."""
    config = _load_config(config_file, database)
    repo_filter = RepositoryFilter(
        provider=provider,
        owner=owner,
        cloned_only=cloned is True,
        not_cloned_only=cloned is False,
    )
    asyncio.run(_list_async(config, repo_filter))


async def _delete_async(config: AppConfig, identity: RepositoryIdentity, keep_files: bool) -> None:
    """Async implementation of delete command."""
    store = await _open_catalog(config)
    reconciler = Reconciler.from_config(config, store, GitOperator())

    try:
        deleted = await reconciler.delete(identity, remove_working_copy=not keep_files)
        if not deleted:
            console.print(f"[red]Repository '{identity}' not found[/red]")
            raise typer.Exit(1)
        console.print(f"[green]✓[/green] Deleted repository: {identity}")

    except (OperationInFlightError, OperatorError) as e:
        console.print(f"[red]Error deleting repository: {e.message}[/red]")
        raise typer.Exit(1)
    except StorageError as e:
        console.print(f"[red]Catalog error: {e.message}[/red]")
        raise typer.Exit(1)
    finally:
        await store.close()


@app.command("delete")
def delete(
    full_name: str = typer.Argument(..., help="owner/name or provider:owner/name"),
    provider: Provider = ProviderOption,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
    keep_files: bool = typer.Option(False, "--keep-files", help="Keep the working copy on disk"),
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
    clone_path: Optional[Path] = ClonePathOption,
):
    """Delete a repository from the catalog and remove its working copy."""
    identity = _parse_identity(full_name, provider)
    config = _load_config(config_file, database, clone_path)

    if not yes:
        typer.confirm(
            f"Are you sure you want to delete '{identity}' and its working copy?",
            abort=True,
        )

    asyncio.run(_delete_async(config, identity, keep_files))


async def _info_async(config: AppConfig) -> None:
    """Async implementation of info command."""
    table = Table(title="super-clone")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    try:
        git_version = await GitOperator().check_git_installed()
    except OperatorError as e:
        git_version = f"[red]{e.message}[/red]"

    table.add_row("Git", git_version)
    table.add_row("Clone Path", str(config.sync.clone_path))
    table.add_row("Transport", config.sync.transport.value)
    table.add_row("Concurrency", str(config.sync.concurrency))
    table.add_row("Catalog", f"{config.catalog.store_type.value} {config.catalog.connection_string}")
    table.add_row("GitHub", f"{config.github.api_url} (token: {'yes' if config.github.token else 'no'})")
    table.add_row("GitLab", f"{config.gitlab.base_url} (token: {'yes' if config.gitlab.token else 'no'})")
    table.add_row("Log Level", config.logging.level.value)

    try:
        store = await initialize_catalog(config)
    except StorageError as e:
        table.add_row("Repositories", f"[red]{e.message}[/red]")
    else:
        try:
            for state in CloneState:
                count = await store.count(RepositoryFilter(state=state))
                table.add_row(f"Repositories ({state.value})", str(count))
        finally:
            await store.close()

    console.print(table)


@app.command()
def info(
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
):
    """Show configuration, git version and catalog counts."""
    config = _load_config(config_file, database)
    asyncio.run(_info_async(config))


if __name__ == "__main__":
    app()
