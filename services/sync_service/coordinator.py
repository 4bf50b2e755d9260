"""Sync coordination: per-source schedules, run guards and commit sequencing."""

import asyncio
import logging
from dataclasses import replace
from typing import Dict, List, Optional

from shared.config import AppConfig, SOURCE_NAMES
from shared.db_operations import RecordStore
from shared.errors import ReconciliationError, SourceError
from shared.models import SourceStatus, SyncRunResult, utcnow
from services.source_adapters.base import SourceAdapter
from services.source_adapters.calendar_feed import CalendarAdapter
from services.source_adapters.figma import FigmaAdapter
from services.source_adapters.github import GitHubAdapter
from services.source_adapters.shortcut import ShortcutAdapter
from services.source_adapters.todoist import TodoistAdapter
from services.sync_service.alerts import AlertService
from services.sync_service.schedules import Cadence, default_cadences

logger = logging.getLogger(__name__)

ADAPTER_CLASSES = {
    "calendar": CalendarAdapter,
    "shortcut": ShortcutAdapter,
    "github": GitHubAdapter,
    "todoist": TodoistAdapter,
    "figma": FigmaAdapter,
}


class SyncCoordinator:
    """
    Runs every configured source on its own schedule.

    At most one run per source is in flight at any time: schedule ticks that
    find the source running are skipped, manual triggers join the running
    sync. A failing source never stops the schedules of the others, and a
    failed run leaves the source's stored records untouched.
    """

    def __init__(
        self,
        store: RecordStore,
        adapters: Dict[str, SourceAdapter],
        cadences: Optional[Dict[str, Cadence]] = None,
        alert_service: Optional[AlertService] = None
    ):
        """
        Initialize the coordinator.

        Args:
            store: Record store runs are committed to
            adapters: Adapter per enabled source; absent sources are disabled
            cadences: Cadence per source; defaults to the office-hours schedule
            alert_service: Alerting for repeatedly failing sources
        """
        self.store = store
        self.adapters = dict(adapters)
        self.cadences = cadences or default_cadences()
        self.alert_service = alert_service or AlertService()
        self.running = False

        names = list(SOURCE_NAMES) + [name for name in self.adapters if name not in SOURCE_NAMES]
        self._statuses: Dict[str, SourceStatus] = {
            name: SourceStatus(source=name, state="idle" if name in self.adapters else "disabled")
            for name in names
        }
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._loops: Dict[str, asyncio.Task] = {}

    @property
    def enabled_sources(self) -> List[str]:
        return list(self.adapters)

    async def start(self):
        """Start one schedule loop per enabled source; each runs immediately."""
        if self.running:
            logger.warning("Sync coordinator already running")
            return

        for source in self.adapters:
            if source not in self.cadences:
                raise ValueError(f"No cadence configured for source {source}")
            self._loops[source] = asyncio.create_task(
                self._schedule_loop(source), name=f"sync-schedule-{source}"
            )
        self.running = True
        logger.info(f"Sync coordinator started for sources: {self.enabled_sources}")

    async def stop(self):
        """Cancel the schedules, wait for in-flight runs and close the adapters."""
        for task in self._loops.values():
            task.cancel()
        await asyncio.gather(*self._loops.values(), return_exceptions=True)
        self._loops.clear()

        if self._in_flight:
            logger.info(f"Waiting for in-flight syncs: {list(self._in_flight)}")
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)

        for adapter in self.adapters.values():
            await adapter.aclose()
        self.running = False
        logger.info("Sync coordinator stopped")

    async def _schedule_loop(self, source: str):
        cadence = self.cadences[source]
        while True:
            tick_at = utcnow()
            if self.is_running(source):
                logger.info(f"Skipping scheduled {source} sync, a run is already in flight")
            else:
                await self.trigger(source)

            next_due = cadence.next_run(tick_at)
            self._statuses[source].next_due_at = next_due
            delay = (next_due - utcnow()).total_seconds()
            await asyncio.sleep(max(delay, 0))

    def is_running(self, source: str) -> bool:
        task = self._in_flight.get(source)
        return task is not None and not task.done()

    async def trigger(self, source: str) -> SyncRunResult:
        """
        Run a sync for a source now, or join the run already in flight.

        Args:
            source: Source name

        Returns:
            SyncRunResult of the run (skipped for disabled sources)

        Raises:
            ValueError: If the source is unknown
        """
        if source not in self._statuses:
            raise ValueError(f"Unknown source: {source}")

        if source not in self.adapters:
            now = utcnow()
            logger.info(f"{source} is not configured, skipping sync")
            return SyncRunResult(
                source=source, status="skipped", started_at=now, finished_at=now,
                error="Source not configured"
            )

        task = self._in_flight.get(source)
        if task is None or task.done():
            task = asyncio.create_task(self._run(source), name=f"sync-run-{source}")
            self._in_flight[source] = task
            task.add_done_callback(lambda done, name=source: self._clear_in_flight(name, done))
        else:
            logger.info(f"{source} sync already running, joining the in-flight run")

        # A cancelled caller must not cancel a run others may be waiting on
        return await asyncio.shield(task)

    def _clear_in_flight(self, source: str, task: asyncio.Task):
        if self._in_flight.get(source) is task:
            del self._in_flight[source]

    async def trigger_all(self) -> List[SyncRunResult]:
        """Run every enabled source concurrently."""
        return list(await asyncio.gather(*(self.trigger(source) for source in self.adapters)))

    async def _run(self, source: str) -> SyncRunResult:
        adapter = self.adapters[source]
        status = self._statuses[source]
        started_at = utcnow()
        status.state = "running"
        status.last_attempt_at = started_at
        logger.info(f"Starting {source} sync")

        try:
            records = await self._fetch(adapter)
            counts = self.store.apply_sync(source, records)
        except (SourceError, ReconciliationError) as e:
            return await self._record_failure(source, started_at, str(e))
        except Exception as e:
            logger.error(f"Unexpected error during {source} sync: {e}", exc_info=True)
            return await self._record_failure(source, started_at, f"Unexpected error: {e}")
        finally:
            status.state = "idle"

        finished_at = utcnow()
        status.last_success_at = finished_at
        status.last_error = None
        status.consecutive_failures = 0
        duration = (finished_at - started_at).total_seconds()
        logger.info(f"{source} sync completed in {duration:.2f}s: {counts}")
        return SyncRunResult(
            source=source, status="completed", started_at=started_at,
            finished_at=finished_at, counts=counts
        )

    async def _fetch(self, adapter: SourceAdapter) -> Dict[str, list]:
        """Fetch every kind of one source; any failure fails the whole run."""
        calls = {}
        if adapter.snapshot_kind:
            calls[adapter.snapshot_kind] = adapter.fetch_snapshot()
        if adapter.supports_notifications and adapter.notification_kind:
            calls[adapter.notification_kind] = adapter.fetch_notifications()

        results = await asyncio.gather(*calls.values(), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return dict(zip(calls, results))

    async def _record_failure(self, source: str, started_at, message: str) -> SyncRunResult:
        status = self._statuses[source]
        status.last_error = message
        status.consecutive_failures += 1
        logger.error(
            f"{source} sync failed ({status.consecutive_failures} in a row), keeping previous data: {message}"
        )

        if self.alert_service.should_alert(status.consecutive_failures):
            await self.alert_service.send_source_failure_alert(
                source=source,
                consecutive_failures=status.consecutive_failures,
                error_message=message,
                last_success_at=status.last_success_at.isoformat() if status.last_success_at else None
            )

        return SyncRunResult(
            source=source, status="failed", started_at=started_at,
            finished_at=utcnow(), error=message
        )

    def status(self) -> Dict[str, SourceStatus]:
        """Snapshot of every source's run state."""
        return {name: replace(status) for name, status in self._statuses.items()}


def build_adapters(config: AppConfig) -> Dict[str, SourceAdapter]:
    """Instantiate an adapter for every source with credentials."""
    return {
        source: ADAPTER_CLASSES[source](config.source_settings(source))
        for source in config.enabled_sources()
    }


def build_coordinator(
    config: AppConfig,
    store: RecordStore,
    cadences: Optional[Dict[str, Cadence]] = None,
    alert_service: Optional[AlertService] = None
) -> SyncCoordinator:
    """
    Build a coordinator for a configuration.

    Coordinators are never reconfigured in place: a configuration change
    builds a new coordinator and the caller swaps it for the stopped old one.
    """
    adapters = build_adapters(config)
    if not adapters:
        logger.warning("No sources configured, coordinator will be idle")
    return SyncCoordinator(store, adapters, cadences=cadences, alert_service=alert_service)
