"""Bounded worker pool and per-identity in-flight registry.

The reconciler fans clone/pull work out through ``run_bounded``; the
``InFlightRegistry`` guarantees that no two operations for the same
repository identity ever run at the same time.
"""

import asyncio
from typing import Awaitable, Callable, Iterator, Optional, Sequence, TypeVar

from superclone.entities import RepositoryIdentity
from superclone.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class InFlightRegistry:
    """Set of identities with an operation currently running.

    Acquire and release are synchronous, so a check-and-claim can never be
    interleaved with another coroutine. The guarantee covers one registry in
    one process only: two super-clone processes sharing a catalog and clone
    root do not see each other's claims.
    """

    def __init__(self) -> None:
        self._active: set[RepositoryIdentity] = set()

    def try_acquire(self, identity: RepositoryIdentity) -> bool:
        """Claim an identity; False if it is already in flight."""
        if identity in self._active:
            return False
        self._active.add(identity)
        return True

    def release(self, identity: RepositoryIdentity) -> None:
        self._active.discard(identity)

    def __contains__(self, identity: object) -> bool:
        return identity in self._active

    def __len__(self) -> int:
        return len(self._active)

    def __iter__(self) -> Iterator[RepositoryIdentity]:
        return iter(list(self._active))


async def run_bounded(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[None]],
    concurrency: int,
    cancel_event: Optional[asyncio.Event] = None,
) -> list[T]:
    """Run ``worker`` over ``items`` with at most ``concurrency`` at once.

    Items are dispatched in order. Once ``cancel_event`` is set no further item
    is dispatched; running workers finish their current item. If a worker
    raises, dispatching stops the same way and the first error is re-raised
    after every running worker has finished.

    Args:
        items: Work items
        worker: Coroutine function called once per dispatched item
        concurrency: Maximum number of simultaneous worker calls
        cancel_event: Optional cooperative cancellation signal

    Returns:
        Items that were never dispatched, in their original order
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")

    queue: asyncio.Queue[T] = asyncio.Queue()
    for item in items:
        queue.put_nowait(item)

    stop = asyncio.Event()

    def should_stop() -> bool:
        return stop.is_set() or (cancel_event is not None and cancel_event.is_set())

    async def consume(worker_id: int) -> None:
        while not should_stop():
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await worker(item)
            except BaseException:
                stop.set()
                raise
            finally:
                queue.task_done()

    tasks = [
        asyncio.create_task(consume(i), name=f"superclone-worker-{i}")
        for i in range(min(concurrency, max(len(items), 1)))
    ]
    results = await asyncio.gather(*tasks, return_exceptions=True)

    undispatched: list[T] = []
    while not queue.empty():
        undispatched.append(queue.get_nowait())

    for result in results:
        if isinstance(result, BaseException):
            raise result

    if undispatched:
        logger.info("worker_pool_stopped_early", undispatched=len(undispatched))
    return undispatched
