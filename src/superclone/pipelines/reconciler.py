"""Reconciler: discovery sync passes and bulk clone/pull operations.

Why this exists:
- Merges paginated provider listings into the catalog, page by page
- Fans clone/pull work out over a bounded worker pool
- Records every per-repository outcome in the catalog

How to use:
    from superclone.pipelines.reconciler import Reconciler

    reconciler = Reconciler(store, GitOperator(), Path("~/repositories"))
    session = await reconciler.sync(client, "acme", OwnerKind.ORGANIZATION)
    summary = await reconciler.clone_all(concurrency=4)
"""

import asyncio
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Callable, Optional

from superclone.config.schema import AppConfig
from superclone.core.operator import (
    GitOperator,
    NetworkFailure,
    NotCloned,
    OperationResult,
    OperatorError,
)
from superclone.core.retry import RetryPolicy
from superclone.entities import (
    CloneState,
    OwnerKind,
    Provider,
    Repository,
    RepositoryIdentity,
    Transport,
    utcnow,
)
from superclone.observability.logging import get_logger
from superclone.pipelines.workers import InFlightRegistry, run_bounded
from superclone.providers.base import (
    ProviderClient,
    ProviderError,
    RateLimited,
    TransientNetworkError,
)
from superclone.storage.base import (
    CatalogStore,
    RepositoryFilter,
    StorageError,
    UnknownRepositoryError,
)

logger = get_logger(__name__)

PROVIDER_RETRYABLE = (TransientNetworkError, RateLimited)
GIT_RETRYABLE = (NetworkFailure,)


class SyncState(str, Enum):
    """Lifecycle of one discovery pass."""

    IDLE = "idle"
    PAGINATING = "paginating"
    MERGING = "merging"
    DONE = "done"
    FAILED = "failed"


_SYNC_TRANSITIONS = {
    SyncState.IDLE: {SyncState.PAGINATING, SyncState.FAILED},
    SyncState.PAGINATING: {SyncState.MERGING, SyncState.DONE, SyncState.FAILED},
    SyncState.MERGING: {SyncState.PAGINATING, SyncState.DONE, SyncState.FAILED},
    SyncState.DONE: set(),
    SyncState.FAILED: set(),
}


@dataclass
class SyncSession:
    """State of one discovery pass for a single owner."""

    provider: Provider
    owner: str
    kind: OwnerKind
    state: SyncState = SyncState.IDLE
    cursor: Optional[str] = None
    pages_fetched: int = 0
    items_seen: int = 0
    items_upserted: int = 0
    created: int = 0
    refreshed: int = 0
    retries: int = 0
    errors: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def partial(self) -> bool:
        """True when the pass finished but some pages could not be fetched."""
        return self.state is SyncState.DONE and bool(self.errors)

    @property
    def finished(self) -> bool:
        return self.state in (SyncState.DONE, SyncState.FAILED)

    def transition(self, new_state: SyncState) -> None:
        if new_state not in _SYNC_TRANSITIONS[self.state]:
            raise ValueError(f"Illegal sync transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        if self.finished:
            self.finished_at = utcnow()


class OperationState(str, Enum):
    """Per-repository state within a bulk clone/pull call."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class RepositoryOutcome:
    """Outcome of one clone/pull for one repository."""

    identity: RepositoryIdentity
    state: OperationState = OperationState.PENDING
    action: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    path: Optional[Path] = None
    attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return self.state is OperationState.SUCCEEDED


@dataclass
class BulkSummary:
    """Aggregate of a bulk clone/pull call."""

    operation: str
    outcomes: list[RepositoryOutcome] = field(default_factory=list)

    def _count(self, state: OperationState) -> int:
        return sum(1 for outcome in self.outcomes if outcome.state is state)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return self._count(OperationState.SUCCEEDED)

    @property
    def failed(self) -> int:
        return self._count(OperationState.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(OperationState.SKIPPED)

    @property
    def cancelled(self) -> int:
        return self._count(OperationState.CANCELLED)

    @property
    def failures(self) -> list[RepositoryOutcome]:
        return [o for o in self.outcomes if o.state is OperationState.FAILED]


class ReconcileError(Exception):
    """Base exception for reconciler errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class SyncFailedError(ReconcileError):
    """A sync pass was aborted; committed upserts are kept."""

    def __init__(self, session: SyncSession, cause: Exception):
        self.session = session
        self.cause = cause
        super().__init__(
            f"Sync of {session.provider.value}:{session.owner} failed: {cause}"
        )


class OperationInFlightError(ReconcileError):
    """An operation for this identity is already running."""

    def __init__(self, identity: RepositoryIdentity):
        self.identity = identity
        super().__init__(f"An operation is already in flight for {identity}")


OutcomeCallback = Callable[[RepositoryOutcome], None]


class Reconciler:
    """Drives discovery into the catalog and clone/pull out of it.

    One Reconciler owns one in-flight registry; every clone, pull and delete
    issued through it respects at-most-one-operation per identity.
    """

    def __init__(
        self,
        store: CatalogStore,
        operator: GitOperator,
        destination_root: Path,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        concurrency: int = 4,
        transport: Transport = Transport.HTTPS,
    ):
        """Initialize the reconciler.

        Args:
            store: Initialized catalog store
            operator: Git operator for clone/pull
            destination_root: Root of the working-copy tree
            retry_policy: Backoff settings; retry_on is set per call site
            concurrency: Default worker pool size for bulk calls
            transport: Default clone transport
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self.store = store
        self.operator = operator
        self.destination_root = Path(destination_root).expanduser()
        self.concurrency = concurrency
        self.transport = transport
        self.in_flight = InFlightRegistry()

        policy = retry_policy or RetryPolicy()
        self.provider_retry = dataclasses.replace(policy, retry_on=PROVIDER_RETRYABLE)
        self.git_retry = dataclasses.replace(policy, retry_on=GIT_RETRYABLE)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        store: CatalogStore,
        operator: Optional[GitOperator] = None,
    ) -> "Reconciler":
        """Build a reconciler from the [sync] configuration section."""
        return cls(
            store,
            operator or GitOperator(),
            config.sync.clone_path,
            retry_policy=RetryPolicy.from_config(config.sync.retry, retry_on=()),
            concurrency=config.sync.concurrency,
            transport=config.sync.transport,
        )

    # Discovery

    async def sync(self, client: ProviderClient, owner: str, kind: OwnerKind) -> SyncSession:
        """Merge every repository of an owner into the catalog.

        Pages are fetched and merged in order. Transient failures and rate
        limits are retried from the same cursor; when retries run out the
        session ends ``done`` with ``partial`` set.

        Raises:
            SyncFailedError: On authentication, not-found or other
                non-retryable provider errors
            StorageError: If the catalog becomes unavailable
        """
        session = SyncSession(provider=client.provider, owner=owner, kind=kind)
        session.transition(SyncState.PAGINATING)
        logger.info(
            "sync_started", provider=session.provider.value, owner=owner, kind=kind.value
        )

        def count_retry(attempt: int, exc: BaseException, delay: float) -> None:
            session.retries += 1
            logger.warning(
                "sync_page_retry",
                owner=owner,
                cursor=session.cursor,
                attempt=attempt,
                delay=delay,
                error=str(exc),
            )

        while True:
            try:
                page = await self.provider_retry.run(
                    partial(client.fetch_page, owner, kind, session.cursor),
                    on_retry=count_retry,
                )
            except PROVIDER_RETRYABLE as e:
                session.errors.append(f"page cursor={session.cursor or 1}: {e}")
                session.transition(SyncState.DONE)
                logger.warning(
                    "sync_degraded",
                    owner=owner,
                    pages_fetched=session.pages_fetched,
                    upserted=session.items_upserted,
                    error=str(e),
                )
                return session
            except ProviderError as e:
                session.errors.append(str(e))
                session.transition(SyncState.FAILED)
                logger.error("sync_failed", owner=owner, error=str(e), error_type=type(e).__name__)
                raise SyncFailedError(session, e) from e

            session.pages_fetched += 1
            session.transition(SyncState.MERGING)
            try:
                for descriptor in page.descriptors:
                    session.items_seen += 1
                    stored = await self.store.upsert(descriptor)
                    session.items_upserted += 1
                    # New rows carry identical discovery and update stamps
                    if stored.discovered_at == stored.updated_at:
                        session.created += 1
                    else:
                        session.refreshed += 1
            except StorageError:
                session.transition(SyncState.FAILED)
                raise

            logger.info(
                "sync_page_merged",
                owner=owner,
                page=session.pages_fetched,
                items=len(page.descriptors),
            )

            if page.is_last:
                session.transition(SyncState.DONE)
                logger.info(
                    "sync_completed",
                    owner=owner,
                    pages=session.pages_fetched,
                    created=session.created,
                    refreshed=session.refreshed,
                )
                return session

            session.cursor = page.next_cursor
            session.transition(SyncState.PAGINATING)

    async def _call_provider(self, client: ProviderClient, owner: str, kind: OwnerKind, call):
        try:
            return await self.provider_retry.run(call)
        except ProviderError as e:
            session = SyncSession(provider=client.provider, owner=owner, kind=kind)
            session.errors.append(str(e))
            session.transition(SyncState.FAILED)
            raise SyncFailedError(session, e) from e

    async def sync_authenticated_user(self, client: ProviderClient) -> SyncSession:
        """Sync the repositories of the token owner."""
        login = await self._call_provider(
            client, "@me", OwnerKind.USER, client.get_authenticated_user
        )
        logger.info("authenticated_user_resolved", provider=client.provider.value, login=login)
        return await self.sync(client, login, OwnerKind.USER)

    async def sync_all_organizations(self, client: ProviderClient) -> list[SyncSession]:
        """Sync every organization/group visible to the token.

        A failing organization does not stop the others; its failed session is
        included in the result.
        """
        organizations = await self._call_provider(
            client, "*", OwnerKind.ORGANIZATION, client.list_organizations
        )
        logger.info(
            "organizations_resolved",
            provider=client.provider.value,
            count=len(organizations),
        )

        sessions = []
        for organization in organizations:
            try:
                sessions.append(await self.sync(client, organization, OwnerKind.ORGANIZATION))
            except SyncFailedError as e:
                sessions.append(e.session)
        return sessions

    # Clone / pull

    async def _record_state(
        self, identity: RepositoryIdentity, state: CloneState, **changes
    ) -> bool:
        """Write a clone outcome; False if the row was deleted meanwhile.

        Only an unavailable store propagates.
        """
        try:
            await self.store.update_clone_state(identity, state, **changes)
        except UnknownRepositoryError:
            logger.warning("outcome_row_missing", repository=str(identity), state=state.value)
            return False
        return True

    async def _execute(
        self, repository: Repository, operation: str, transport: Transport
    ) -> RepositoryOutcome:
        """Run one clone/pull and write its outcome to the catalog.

        The caller must hold the identity in the in-flight registry.
        """
        identity = repository.identity
        outcome = RepositoryOutcome(identity, OperationState.IN_FLIGHT, attempts=1)

        def count_retry(attempt: int, exc: BaseException, delay: float) -> None:
            outcome.attempts += 1

        if operation == "clone":
            call = partial(self.operator.clone, repository, self.destination_root, transport)
        else:
            call = partial(self.operator.pull, repository, self.destination_root)

        try:
            result: OperationResult = await self.git_retry.run(call, on_retry=count_retry)
        except OperatorError as e:
            outcome.state = OperationState.FAILED
            outcome.error = e.message
            outcome.error_type = type(e).__name__
            state = CloneState.NOT_CLONED if isinstance(e, NotCloned) else CloneState.ERROR
            await self._record_state(identity, state, error=e.message)
            logger.warning(
                f"{operation}_failed",
                repository=str(identity),
                error_type=outcome.error_type,
                error=e.message,
            )
            return outcome

        outcome.state = OperationState.SUCCEEDED
        outcome.action = result.action
        outcome.path = result.path
        if not await self._record_state(
            identity, CloneState.CLONED, error=None, local_path=str(result.path)
        ):
            outcome.state = OperationState.FAILED
            outcome.error = f"Repository left the catalog during {operation}"
            outcome.error_type = UnknownRepositoryError.__name__
        return outcome

    async def _run_single(
        self, identity: RepositoryIdentity, operation: str, transport: Transport
    ) -> RepositoryOutcome:
        repository = await self.store.get(identity)
        if repository is None:
            raise UnknownRepositoryError(identity, storage_type=self.store.config.store_type)
        if not self.in_flight.try_acquire(identity):
            raise OperationInFlightError(identity)
        try:
            return await self._execute(repository, operation, transport)
        finally:
            self.in_flight.release(identity)

    async def clone_one(
        self, identity: RepositoryIdentity, transport: Optional[Transport] = None
    ) -> RepositoryOutcome:
        """Clone one catalog repository.

        Raises:
            UnknownRepositoryError: If the identity is not in the catalog
            OperationInFlightError: If the identity is already being processed
        """
        return await self._run_single(identity, "clone", transport or self.transport)

    async def pull_one(self, identity: RepositoryIdentity) -> RepositoryOutcome:
        """Pull one catalog repository.

        Raises:
            UnknownRepositoryError: If the identity is not in the catalog
            OperationInFlightError: If the identity is already being processed
        """
        return await self._run_single(identity, "pull", self.transport)

    async def _run_bulk(
        self,
        operation: str,
        repositories: list[Repository],
        transport: Transport,
        concurrency: Optional[int],
        cancel_event: Optional[asyncio.Event],
        on_outcome: Optional[OutcomeCallback],
    ) -> BulkSummary:
        summary = BulkSummary(
            operation=operation,
            outcomes=[RepositoryOutcome(repo.identity) for repo in repositories],
        )
        workers = concurrency or self.concurrency
        logger.info(
            "bulk_started", operation=operation, repositories=len(repositories), concurrency=workers
        )

        async def work(index: int) -> None:
            repository = repositories[index]
            identity = repository.identity
            if not self.in_flight.try_acquire(identity):
                summary.outcomes[index].state = OperationState.SKIPPED
                summary.outcomes[index].error = "operation already in flight"
            else:
                summary.outcomes[index].state = OperationState.IN_FLIGHT
                try:
                    summary.outcomes[index] = await self._execute(repository, operation, transport)
                finally:
                    self.in_flight.release(identity)
            if on_outcome is not None:
                on_outcome(summary.outcomes[index])

        undispatched = await run_bounded(
            list(range(len(repositories))), work, workers, cancel_event
        )
        for index in undispatched:
            summary.outcomes[index].state = OperationState.CANCELLED

        logger.info(
            "bulk_completed",
            operation=operation,
            succeeded=summary.succeeded,
            failed=summary.failed,
            skipped=summary.skipped,
            cancelled=summary.cancelled,
        )
        return summary

    async def clone_all(
        self,
        filter: Optional[RepositoryFilter] = None,
        transport: Optional[Transport] = None,
        *,
        concurrency: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_outcome: Optional[OutcomeCallback] = None,
    ) -> BulkSummary:
        """Clone every matching repository; defaults to all not-cloned rows.

        Raises:
            StorageError: If the catalog becomes unavailable
        """
        repositories = await self.store.list(filter or RepositoryFilter(not_cloned_only=True))
        return await self._run_bulk(
            "clone",
            repositories,
            transport or self.transport,
            concurrency,
            cancel_event,
            on_outcome,
        )

    async def pull_all(
        self,
        filter: Optional[RepositoryFilter] = None,
        *,
        concurrency: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_outcome: Optional[OutcomeCallback] = None,
    ) -> BulkSummary:
        """Pull every matching repository; defaults to all cloned rows.

        Raises:
            StorageError: If the catalog becomes unavailable
        """
        repositories = await self.store.list(filter or RepositoryFilter(cloned_only=True))
        return await self._run_bulk(
            "pull", repositories, self.transport, concurrency, cancel_event, on_outcome
        )

    # Delete

    async def delete(self, identity: RepositoryIdentity, remove_working_copy: bool = True) -> bool:
        """Remove a repository's working copy and catalog row.

        Returns:
            True if the row existed

        Raises:
            OperationInFlightError: If the identity is being cloned or pulled
            LocalConflict: If the working-copy path is not a git repository or
                belongs to another repository
        """
        if not self.in_flight.try_acquire(identity):
            raise OperationInFlightError(identity)
        try:
            repository = await self.store.get(identity)
            if repository is None:
                return False
            if remove_working_copy:
                await self.operator.remove_working_copy(repository, self.destination_root)
            deleted = await self.store.delete(identity)
            logger.info("repository_deleted", repository=str(identity))
            return deleted
        finally:
            self.in_flight.release(identity)
