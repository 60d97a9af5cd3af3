import asyncio
import logging
from typing import Awaitable, Callable

from .errors import WaitTimeout
from .store import ArtifactStore

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class DependencyWaiter:
    """Polls the store until an artifact written by another stage shows up.

    The stage that produces the artifact may have been triggered by a request
    that returned before its write landed, so readers poll with a fixed delay
    and a bounded number of attempts.
    """

    def __init__(
        self,
        store: ArtifactStore,
        max_retries: int = 5,
        retry_delay_ms: int = 2000,
        sleep: Sleep = asyncio.sleep,
    ):
        self.store = store
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self._sleep = sleep

    async def wait_for(
        self,
        session_id: str,
        artifact: str,
        max_retries: int | None = None,
        retry_delay_ms: int | None = None,
    ) -> dict:
        """Return the artifact once it exists; raise ``WaitTimeout`` after
        ``max_retries`` existence checks."""
        attempts = self.max_retries if max_retries is None else max_retries
        delay_s = (self.retry_delay_ms if retry_delay_ms is None else retry_delay_ms) / 1000

        for attempt in range(1, attempts + 1):
            try:
                if await self.store.exists(session_id, artifact):
                    return await self.store.read(session_id, artifact)
            except Exception as e:
                logger.error("Error checking '%s' for %s (attempt %d): %s",
                             artifact, session_id, attempt, e)

            if attempt < attempts:
                logger.info("Waiting for '%s' of %s... (attempt %d/%d)",
                            artifact, session_id, attempt, attempts)
                await self._sleep(delay_s)

        raise WaitTimeout(session_id, artifact, attempts)
