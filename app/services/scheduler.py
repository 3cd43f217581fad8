# app/services/scheduler.py
"""
Poll cycles and their timers.

A cycle is fetch → parse → geocode → diff → swap → enqueue. It either
completes and publishes a new snapshot, or it is abandoned and the previous
snapshot stays authoritative. Each source has its own loop and its own
single-flight lock; the two loops never share anything but the dispatcher.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from app.core.contracts import CycleReport, Incident, RecordType, Warning112
from app.core.errors import PipelineError
from app.core.settings import settings
from app.core.time import utc_now, utc_now_iso
from app.services.changes import carry_first_seen, diff, notifiable
from app.services.geocoding import GeocodingResolver
from app.services.incidents import IncidentScraper
from app.services.notifications import NotificationDispatcher
from app.services.state import StateStore
from app.services.warnings112 import WarningScraper

logger = logging.getLogger(__name__)

SOURCES: tuple = ("incidents", "warnings")


@dataclass
class _SourceRuntime:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_report: Optional[CycleReport] = None
    last_success: Optional[CycleReport] = None


class Pipeline:
    def __init__(
        self,
        *,
        resolver: GeocodingResolver,
        incident_scraper: IncidentScraper,
        warning_scraper: WarningScraper,
        dispatcher: NotificationDispatcher,
        hard_timeout_s: float | None = None,
    ) -> None:
        self.resolver = resolver
        self.incident_scraper = incident_scraper
        self.warning_scraper = warning_scraper
        self.dispatcher = dispatcher
        self.hard_timeout_s = float(settings.poll_hard_timeout_s if hard_timeout_s is None else hard_timeout_s)

        self.incidents: StateStore[Incident] = StateStore("incidents")
        self.warnings: StateStore[Warning112] = StateStore("warnings")

        self._runtime: Dict[str, _SourceRuntime] = {s: _SourceRuntime() for s in SOURCES}
        self._loops: List["PollLoop"] = []

    @classmethod
    def from_settings(cls) -> "Pipeline":
        resolver = GeocodingResolver.from_settings()
        return cls(
            resolver=resolver,
            incident_scraper=IncidentScraper(resolver=resolver),
            warning_scraper=WarningScraper(resolver=resolver),
            dispatcher=NotificationDispatcher(),
        )

    # ── cycles ──

    def is_running(self, source: str) -> bool:
        return self._runtime[source].lock.locked()

    def last_report(self, source: str) -> Optional[CycleReport]:
        return self._runtime[source].last_report

    def last_success(self, source: str) -> Optional[CycleReport]:
        return self._runtime[source].last_success

    async def run_cycle(self, source: str, *, now: Optional[datetime] = None) -> CycleReport:
        if source == "incidents":
            return await self.run_incidents_cycle(now=now)
        if source == "warnings":
            return await self.run_warnings_cycle(now=now)
        raise ValueError(f"unknown source {source!r}")

    async def run_incidents_cycle(self, *, now: Optional[datetime] = None) -> CycleReport:
        return await self._guarded(
            "incidents",
            lambda: self.incident_scraper.fetch_incidents(),
            self.incidents,
            now=now,
        )

    async def run_warnings_cycle(self, *, now: Optional[datetime] = None) -> CycleReport:
        return await self._guarded(
            "warnings",
            lambda: self.warning_scraper.fetch_warnings(now=now),
            self.warnings,
            now=now,
        )

    async def _guarded(
        self,
        source: str,
        fetch: Callable[[], Awaitable[list]],
        store: StateStore,
        *,
        now: Optional[datetime],
    ) -> CycleReport:
        rt = self._runtime[source]
        started_iso = utc_now_iso()
        record_type: RecordType = "incident" if source == "incidents" else "warning"

        if rt.lock.locked():
            logger.info("poll_skipped source=%s reason=in_flight", source)
            return CycleReport(source=record_type, ok=False, skipped=True, started_at=started_iso, error="in_flight")

        async with rt.lock:
            t0 = time.monotonic()
            try:
                records = await asyncio.wait_for(fetch(), timeout=self.hard_timeout_s)
                report = self._publish(record_type, records, store, now=now, started_iso=started_iso)
            except asyncio.TimeoutError:
                report = CycleReport(
                    source=record_type,
                    ok=False,
                    started_at=started_iso,
                    error=f"timeout after {self.hard_timeout_s:.0f}s",
                )
                logger.warning("poll_abandoned source=%s reason=timeout", source)
            except PipelineError as e:
                report = CycleReport(source=record_type, ok=False, started_at=started_iso, error=str(e))
                logger.warning("poll_failed source=%s err=%s", source, e)
            except Exception as e:
                report = CycleReport(source=record_type, ok=False, started_at=started_iso, error=repr(e))
                logger.exception("poll_crashed source=%s", source)
            report.duration_s = round(time.monotonic() - t0, 3)

        rt.last_report = report
        if report.ok:
            rt.last_success = report
        return report

    def _publish(
        self,
        record_type: RecordType,
        records: list,
        store: StateStore,
        *,
        now: Optional[datetime],
        started_iso: str,
    ) -> CycleReport:
        stamp = (now or utc_now()).isoformat()
        previous = store.read()
        stamped = carry_first_seen(previous.items, records, now_iso=stamp)
        events = diff(previous.items, stamped, record_type=record_type)

        store.swap(stamped, now=now)

        if previous.cycle == 0:
            # seed cycle: everything is "created" only because nothing was held yet
            logger.info("poll_seed source=%s count=%d", record_type, len(stamped))
            queued = 0
        else:
            queued = self.dispatcher.enqueue_many(notifiable(events))
        created = sum(1 for e in events if e.kind == "created")
        updated = sum(1 for e in events if e.kind == "updated")
        resolved = sum(1 for e in events if e.kind == "resolved")
        logger.info(
            "poll_ok source=%s count=%d created=%d updated=%d resolved=%d queued=%d",
            record_type,
            len(stamped),
            created,
            updated,
            resolved,
            queued,
        )
        return CycleReport(
            source=record_type,
            ok=True,
            count=len(stamped),
            created=created,
            updated=updated,
            resolved=resolved,
            started_at=started_iso,
        )

    # ── loops ──

    async def start(self) -> None:
        await self.dispatcher.start()
        if not settings.scheduler_enabled:
            logger.info("scheduler_disabled")
            return
        self._loops = [
            PollLoop(
                "incidents",
                self.run_incidents_cycle,
                interval_s=settings.incidents_poll_interval_s,
                initial_delay_s=settings.incidents_initial_delay_s,
            ),
            PollLoop(
                "warnings",
                self.run_warnings_cycle,
                interval_s=settings.warnings_poll_interval_s,
                initial_delay_s=settings.warnings_initial_delay_s,
            ),
        ]
        for loop in self._loops:
            loop.start()

    async def stop(self) -> None:
        for loop in self._loops:
            await loop.stop()
        self._loops = []
        await self.dispatcher.stop()
        await self.warning_scraper.aclose()
        await self.resolver.aclose()


class PollLoop:
    """Fires a cycle every interval. Ticks that land on an in-flight cycle are skipped by the cycle itself."""

    def __init__(
        self,
        name: str,
        cycle: Callable[[], Awaitable[CycleReport]],
        *,
        interval_s: float,
        initial_delay_s: float = 0.0,
    ) -> None:
        self.name = name
        self.cycle = cycle
        self.interval_s = max(float(interval_s), 1.0)
        self.initial_delay_s = max(float(initial_delay_s), 0.0)
        self._task: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name=f"poll-{self.name}")
            logger.info(
                "poll_loop_started source=%s interval_s=%.0f delay_s=%.0f",
                self.name,
                self.interval_s,
                self.initial_delay_s,
            )

    async def stop(self) -> None:
        for task in (self._task, self._inflight):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._inflight = None

    async def _run(self) -> None:
        if self.initial_delay_s:
            await asyncio.sleep(self.initial_delay_s)
        while True:
            # the cycle runs detached so a slow poll does not stretch the timer;
            # overlapping ticks are turned away by the per-source lock
            if self._inflight is None or self._inflight.done():
                self._inflight = asyncio.create_task(self.cycle(), name=f"cycle-{self.name}")
            else:
                logger.info("poll_tick_skipped source=%s reason=in_flight", self.name)
            await asyncio.sleep(self.interval_s)
