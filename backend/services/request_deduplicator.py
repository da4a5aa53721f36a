"""Collapse concurrent requests for the same upstream operation into one."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


def refresh_key(connection_id: str) -> str:
    return f"refresh:{connection_id}"


def sync_key(connection_id: str) -> str:
    return f"sync:{connection_id}"


class RequestDeduplicator:
    """Share one in-flight task between all callers using the same key.

    The entry is removed as soon as the task finishes (successfully or
    not), so the next call after completion starts a fresh request.
    Callers that are cancelled do not cancel the shared task.
    """

    def __init__(self):
        self._in_flight: dict[str, asyncio.Task] = {}

    async def run(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``fn`` unless a call with ``key`` is already in flight.

        Args:
            key: Connection id plus operation kind (see ``refresh_key``).
            fn: Zero-argument coroutine function performing the request.

        Returns:
            The result of the single shared invocation. Exceptions raised
            by ``fn`` propagate to every waiting caller.
        """
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(self._run_and_forget(key, fn))
            self._in_flight[key] = task
        else:
            logger.debug("Joining in-flight request %s", key)
        return await asyncio.shield(task)

    async def _run_and_forget(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await fn()
        finally:
            self._in_flight.pop(key, None)

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def __len__(self) -> int:
        return len(self._in_flight)
