"""Background health checking loop."""
import asyncio
import logging
from typing import Optional

from nodeops.utils.health import HealthProbeEngine, HealthSnapshot

logger = logging.getLogger(__name__)


class HealthMonitor:
    """
    Runs a health pass every `interval` seconds.

    Usage:
        monitor = HealthMonitor(engine, interval=5)
        await monitor.start()

        # Later...
        await monitor.stop()
    """

    def __init__(self, engine: HealthProbeEngine, interval: float = 5.0):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.engine = engine
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self.cycles = 0
        self.failed_cycles = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            logger.warning("Health monitor already running")
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Health monitor started (interval: {self.interval}s)")

    async def stop(self) -> None:
        if not self._task:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Health monitor stopped")

    async def _run(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval)

    async def run_once(self) -> Optional[HealthSnapshot]:
        """One pass; errors are logged and the loop keeps going."""
        previous = self.engine.snapshot
        try:
            snapshot = await self.engine.check_all()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failed_cycles += 1
            logger.warning(f"Health check cycle failed: {type(e).__name__}: {e}")
            return None

        self.cycles += 1
        self._log_transitions(previous, snapshot)
        return snapshot

    @staticmethod
    def _log_transitions(previous: HealthSnapshot, current: HealthSnapshot) -> None:
        for record in current.records:
            before = previous.get(record.name)
            if before is None or before.status == record.status:
                continue
            logger.info(f"{record.name}: {before.status.value} -> {record.status.value}")
