"""
services/provider/simulator.py
Live-traffic ticker for development and demos: nudges a random batch of
provider_status rows every tick so maps show moving professionals.
"""

import asyncio
import logging
import random
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from config.settings import settings
from shared.exceptions import ValidationError
from shared.models.models import ProviderStatus, utcnow

logger = logging.getLogger(__name__)

MAX_STEP_DEGREES = 0.001


class LiveTrafficSimulator:
    """An owned start/stop handle; one instance lives on `app.state`."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        interval_seconds: float = settings.SIMULATION_INTERVAL_SECONDS,
        batch_size: int = settings.SIMULATION_BATCH_SIZE,
        busy_probability: float = settings.SIMULATION_BUSY_PROBABILITY,
        rng: Optional[random.Random] = None,
    ):
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.busy_probability = busy_probability
        self.rng = rng or random.Random()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start ticking. Restarts if already running."""
        async with self.session_factory() as session:
            count = await session.scalar(select(func.count()).select_from(ProviderStatus))
        if not count:
            raise ValidationError("No provider status rows to simulate")

        if self.is_running:
            await self.stop()
        self._task = asyncio.create_task(self._run(), name="live-traffic-simulator")
        logger.info(f"Live traffic simulation started ({count} providers, every {self.interval_seconds}s)")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Live traffic simulation stopped")

    async def tick(self) -> int:
        """Move one random batch and commit it in a single transaction."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ProviderStatus).order_by(func.random()).limit(self.batch_size)
            )
            rows = result.scalars().all()
            now = utcnow()
            for row in rows:
                if row.lat is None or row.lng is None:
                    continue
                lat = max(-90.0, min(90.0, row.lat + self.rng.uniform(-MAX_STEP_DEGREES, MAX_STEP_DEGREES)))
                lng = max(-180.0, min(180.0, row.lng + self.rng.uniform(-MAX_STEP_DEGREES, MAX_STEP_DEGREES)))
                row.relocate(lat, lng)
                row.is_online = True
                row.is_busy = self.rng.random() < self.busy_probability
                row.last_seen = now
            await session.commit()
            return len(rows)

    async def _run(self) -> None:
        while True:
            try:
                moved = await self.tick()
                logger.debug(f"Simulation tick moved {moved} providers")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Simulation tick failed: {e}")
            await asyncio.sleep(self.interval_seconds)
