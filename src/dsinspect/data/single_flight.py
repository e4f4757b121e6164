"""At-most-one-in-flight-per-key coroutine execution."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable

logger = logging.getLogger(__name__)


class SingleFlight:
    """Concurrent callers for the same key share one computation.

    The first caller runs ``factory``; later callers await the same future.
    Nothing is cached after completion, so a later call recomputes (callers
    put results in their own caches).
    """

    def __init__(self) -> None:
        self._inflight: Dict[Hashable, asyncio.Future] = {}
        self.computations = 0

    def in_flight(self, key: Hashable) -> bool:
        return key in self._inflight

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> Any:
        existing = self._inflight.get(key)
        if existing is not None:
            logger.debug("Joining in-flight computation for %r", key)
            return await asyncio.shield(existing)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        self.computations += 1
        try:
            result = await factory()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # mark retrieved so a future nobody joined does not warn on GC
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._inflight.pop(key, None)
