"""
Fetch Coordination

Coalesces concurrent catalog builds per configuration fingerprint.
The first caller starts the build; later callers for the same key await
the same result instead of triggering duplicate upstream fetches.
"""
import asyncio
import logging
from typing import Awaitable, Callable, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


class FetchCoordinator:
    """
    Single-flight coordinator keyed by fingerprint.

    At most one build per key is in flight. The in-flight marker is cleared
    once the build settles, whether it succeeded, failed or was cancelled,
    so the next call can retry.
    """

    def __init__(self):
        """Initialize the coordinator with no builds in flight."""
        self._in_flight: dict[str, asyncio.Task] = {}

    async def run(self, key: str, fetch_func: Callable[[], Awaitable[T]]) -> T:
        """
        Execute a build for a key, or join the one already running.

        Args:
            key: Coalescing key (configuration fingerprint)
            fetch_func: Async function performing the build

        Returns:
            Result of the (possibly shared) build

        Raises:
            Any exception raised by fetch_func, delivered to every waiter
        """
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(self._execute(key, fetch_func))
            task.add_done_callback(_consume_result)
            self._in_flight[key] = task
            logger.debug("Build started for %s", key[:12])
        else:
            logger.debug("Build already in progress for %s, awaiting it", key[:12])

        # A cancelled waiter must not cancel the build other callers share
        return await asyncio.shield(task)

    async def _execute(self, key: str, fetch_func: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fetch_func()
        finally:
            self._in_flight.pop(key, None)

    def is_fetching(self, key: str) -> bool:
        """
        Check if a build for a key is currently in progress.

        Returns:
            True if a build is running, False otherwise
        """
        return key in self._in_flight


def _consume_result(task: asyncio.Task) -> None:
    """Retrieve the outcome so an unawaited failure is not reported as lost."""
    if not task.cancelled():
        task.exception()
