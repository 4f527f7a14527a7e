import asyncio
import logging
import os
from datetime import timezone
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from broadcast import BroadcastHub
from exceptions import PersistenceError, StatusUnavailable
from models import TelemetrySample, utcnow
from tuya_client import TuyaClient, build_reading

logger = logging.getLogger(__name__)

POLL_JOB_ID = "poll_tuya_status"


class TelemetryPoller:
    """Polls the device status, stores each sample and pushes it live.

    Upstream and storage failures are counted instead of raised. Once
    ``failure_threshold`` consecutive polls have failed, subscribers get an
    error notice and the process exits with status 1 after
    ``restart_delay`` seconds, leaving the restart to the supervisor
    (systemd, docker, fly.io).

    The failure counter is unlocked instance state. Overlapping ticks may
    at worst run one extra poll before the threshold fires.
    """

    def __init__(
        self,
        client: TuyaClient,
        session_factory,
        hub: BroadcastHub,
        failure_threshold: int = 40,
        restart_delay: float = 10.0,
        exit_func: Callable[[int], None] = os._exit,
    ):
        self.client = client
        self.session_factory = session_factory
        self.hub = hub
        self.failure_threshold = failure_threshold
        self.restart_delay = restart_delay
        self._exit = exit_func

        self.consecutive_failures = 0
        self.restart_scheduled = False
        self._restart_handle: Optional[asyncio.TimerHandle] = None
        self._scheduler = None

    def start(self, scheduler, interval_seconds: float):
        """Register the poll job on an APScheduler scheduler."""
        scheduler.add_job(
            self.poll_once,
            "interval",
            seconds=interval_seconds,
            id=POLL_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler = scheduler
        logger.info(f"Polling device {self.client.device_id} every {interval_seconds}s")

    def stop(self):
        if self._scheduler is not None and self._scheduler.get_job(POLL_JOB_ID):
            self._scheduler.remove_job(POLL_JOB_ID)
        self._scheduler = None
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None

    async def poll_once(self) -> Optional[dict]:
        """Run one poll cycle, returning the broadcast reading or None on failure."""
        try:
            status = await self.client.fetch_device_status()
            if not isinstance(status, list):
                raise StatusUnavailable("Device status missing from Tuya response")
            self.consecutive_failures = 0

            sample = TelemetrySample.from_status(utcnow(), status)
            await self._persist(sample)

            reading = build_reading(sample.timestamp.replace(tzinfo=timezone.utc), status)
            await self.hub.broadcast(reading)
            logger.info(f"Stored and broadcast: {reading}")
            return reading
        except Exception as e:
            await self._record_failure(e)
            return None

    async def _persist(self, sample: TelemetrySample):
        try:
            async with self.session_factory() as db:
                db.add(sample)
                await db.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to store sample: {e}") from e

    async def _record_failure(self, error: Exception):
        self.consecutive_failures += 1
        logger.error(
            f"Polling failed ({self.consecutive_failures}/{self.failure_threshold}): {error}"
        )
        if self.consecutive_failures < self.failure_threshold or self.restart_scheduled:
            return

        self.restart_scheduled = True
        logger.critical(
            f"{self.consecutive_failures} consecutive poll failures, exiting in {self.restart_delay}s"
        )
        await self.hub.broadcast({
            "type": "error",
            "message": "Device polling is failing repeatedly, the service is restarting",
            "failures": self.consecutive_failures,
            "time": utcnow().replace(tzinfo=timezone.utc).isoformat(),
        })
        loop = asyncio.get_running_loop()
        self._restart_handle = loop.call_later(self.restart_delay, self._exit, 1)
