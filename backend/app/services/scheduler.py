"""Background tasks run inside the API process.

`PeriodicTask` wraps an asyncio loop that calls a coroutine every
`interval` seconds until stopped. The FastAPI lifespan starts the hourly
refresh-token sweep on startup and cancels it on shutdown, waiting for the
loop to exit so no sweep is left half-way when the process stops.

Usage:
    In main.py:

        from app.services.scheduler import lifespan
        app = FastAPI(lifespan=lifespan, ...)

Configuration:
    TOKEN_SWEEP_INTERVAL_SECONDS=3600   (via .env)
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.auth.tokens import TokenService
from app.config import settings, validate_jwt_settings
from app.database import async_session
from app.utils.cache import close_redis

logger = logging.getLogger("boutique.scheduler")


class PeriodicTask:
    """Run `job` every `interval` seconds on the running event loop.

    The first run happens one interval after start(). A failing run is
    logged and the loop carries on.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        job: Callable[[], Awaitable[Any]],
    ):
        self.name = name
        self.interval = interval
        self._job = job
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("%s started (every %s seconds)", self.name, self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("%s stopped", self.name)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self._job()
            except Exception:
                logger.exception("Unhandled error in %s", self.name)


async def sweep_refresh_tokens(
    sessions: async_sessionmaker[AsyncSession] = async_session,
) -> int:
    """Delete expired and revoked refresh tokens."""
    deleted = await TokenService(sessions).sweep_expired()
    if deleted:
        logger.info("Swept %d expired or revoked refresh tokens", deleted)
    return deleted


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: check JWT settings, run the token sweep while serving."""
    validate_jwt_settings()
    sweeper = PeriodicTask(
        "refresh-token-sweep",
        settings.token_sweep_interval_seconds,
        sweep_refresh_tokens,
    )
    sweeper.start()
    try:
        yield
    finally:
        await sweeper.stop()
        await close_redis()
