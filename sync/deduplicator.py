"""Per-process coalescing of concurrent syncs for the same feed."""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Hashable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class SyncDeduplicator:
    """
    Runs at most one operation per key at a time within one event loop.

    Callers arriving while an operation for their key is in flight await
    that operation and receive its result object instead of starting a
    second one. This is not a cross-process lock.
    """

    def __init__(self):
        self._in_flight: Dict[Hashable, asyncio.Task] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._in_flight

    async def run_exclusive(
        self,
        key: Hashable,
        operation: Callable[[], Awaitable[T]]
    ) -> T:
        """
        Run operation for key, or join the run already in progress.

        Args:
            key: Deduplication key
            operation: Zero-argument coroutine function

        Returns:
            The (shared) result of the operation
        """
        task = self._in_flight.get(key)
        if task is not None:
            logger.info(f"Joining in-flight sync for {key}")
            return await asyncio.shield(task)

        # Registered before the first suspension point, so no second caller
        # can miss the marker.
        task = asyncio.ensure_future(self._run(key, operation))
        self._in_flight[key] = task
        return await asyncio.shield(task)

    async def _run(self, key: Hashable, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await operation()
        finally:
            if self._in_flight.get(key) is asyncio.current_task():
                del self._in_flight[key]
