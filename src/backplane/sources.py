"""
Update sources: the pollers that observe the runtime.

UpdateSourceManager runs three independent asyncio tasks. Each one calls the
blocking adapter through asyncio.to_thread and turns what it sees into
events on the shared EventChannel. Producers never touch the view state.

  - inventory: list_containers() diffed against the last emitted inventory,
    emitting only Added/Updated/Removed deltas
  - stats: one concurrent get_stats() per running container
  - host: host CPU/memory/disk/GPU and per-container VRAM on a coarser
    cadence

Failure Handling:
  - A failed inventory poll leaves the mirror untouched, so an outage never
    looks like "every container was removed"
  - Daemon outages are reported once per source (DaemonUnreachable) and
    cleared on the first good poll (DaemonRecovered)
  - Per-container stats failures become StatsUnavailable for that container;
    a container that is gone also wakes the inventory poller early
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Set

from . import events as ev
from .channel import EventChannel
from .config import RefreshConfig
from .errors import BackplaneError, ContainerGone, DaemonUnreachable
from .model import ContainerRecord

logger = logging.getLogger(__name__)


class UpdateSourceManager:
    def __init__(self, backend, channel: EventChannel, cadence: Optional[RefreshConfig] = None):
        self.backend = backend
        self.channel = channel
        self.cadence = cadence or RefreshConfig()
        self._mirror: Dict[str, ContainerRecord] = {}
        self._down: Set[str] = set()
        self._tasks: List[asyncio.Task] = []
        self._wake: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> EventChannel:
        """Launch the pollers on the running loop."""
        if self.running:
            return self.channel
        self.channel.bind(asyncio.get_running_loop())
        self._wake = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._loop(self.poll_inventory, self.cadence.inventory_interval, wakeable=True),
                                name="backplane-inventory"),
            asyncio.create_task(self._loop(self.poll_stats, self.cadence.stats_interval),
                                name="backplane-stats"),
            asyncio.create_task(self._loop(self.poll_host, self.cadence.host_interval),
                                name="backplane-host"),
        ]
        logger.info("Update sources started")
        return self.channel

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Update sources stopped")

    def request_refresh(self) -> None:
        """Poll the inventory now instead of at the next interval."""
        if self._wake is not None:
            self._wake.set()

    async def _loop(self, poll, interval: float, wakeable: bool = False) -> None:
        while True:
            try:
                await poll()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Poller {poll.__name__} failed")
            if wakeable and self._wake is not None:
                try:
                    await asyncio.wait_for(self._wake.wait(), interval)
                except asyncio.TimeoutError:
                    pass
                self._wake.clear()
            else:
                await asyncio.sleep(interval)

    # Health

    def _report_failure(self, origin: str, error: Exception) -> None:
        if origin in self._down:
            logger.debug(f"{origin}: still failing: {error}")
            return
        self._down.add(origin)
        logger.warning(f"{origin}: daemon unreachable: {error}")
        self.channel.put(ev.DaemonUnreachable(origin, str(error)))

    def _report_ok(self, origin: str) -> None:
        if origin in self._down:
            self._down.discard(origin)
            logger.info(f"{origin}: daemon reachable again")
            self.channel.put(ev.DaemonRecovered(origin))

    # Pollers

    async def poll_inventory(self) -> None:
        try:
            records = await asyncio.to_thread(self.backend.list_containers)
        except BackplaneError as e:
            self._report_failure("inventory", e)
            return
        self._report_ok("inventory")

        observed_at = time.monotonic()
        seen = set()
        for record in records:
            seen.add(record.id)
            known = self._mirror.get(record.id)
            if known is None:
                self.channel.put(ev.ContainerAdded(record))
            elif known.identity_fields() != record.identity_fields():
                self.channel.put(ev.ContainerUpdated(record))
            else:
                continue
            self._mirror[record.id] = record
        for container_id in [cid for cid in self._mirror if cid not in seen]:
            del self._mirror[container_id]
            self.channel.put(ev.ContainerRemoved(container_id, observed_at))

    async def poll_stats(self) -> None:
        running = [r.id for r in self._mirror.values() if r.state.is_running]
        if not running:
            return
        results = await asyncio.gather(
            *(asyncio.to_thread(self.backend.get_stats, cid) for cid in running),
            return_exceptions=True,
        )
        daemon_down = 0
        gone = False
        last_error: Optional[Exception] = None
        for cid, result in zip(running, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if not isinstance(result, BaseException):
                self.channel.put(ev.StatsSampled(cid, result))
                continue
            last_error = result
            if isinstance(result, DaemonUnreachable):
                daemon_down += 1
                reason = "daemon unreachable"
            elif isinstance(result, ContainerGone):
                gone = True
                reason = "container gone"
            else:
                if not isinstance(result, BackplaneError):
                    logger.error(f"Unexpected stats failure for {cid[:12]}", exc_info=result)
                reason = str(result) or type(result).__name__
            self.channel.put(ev.StatsUnavailable(cid, reason))

        if daemon_down == len(running):
            self._report_failure("stats", last_error)
        else:
            self._report_ok("stats")
        if gone:
            # Let the inventory poller tombstone it now, not at the next interval
            self.request_refresh()

    async def poll_host(self) -> None:
        try:
            metrics = await asyncio.to_thread(self.backend.get_host_metrics)
        except Exception as e:
            logger.warning(f"Host metrics unavailable: {e}")
            return
        self.channel.put(ev.HostMetricsSampled(metrics))

        try:
            usage = await asyncio.to_thread(self.backend.get_container_gpu_usage)
        except Exception as e:
            logger.warning(f"Container GPU usage unavailable: {e}")
            return
        self.channel.put(ev.ContainerGpuSampled(tuple(sorted(usage.items()))))
