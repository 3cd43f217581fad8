"""Unit tests for app/services/scheduler.py.

Scrapers are replaced with scripted fakes. The dispatcher is real; unless a
test starts its worker, queued events stay in the queue and can be counted.
"""

import asyncio
import unittest
from datetime import datetime, timedelta, timezone

import httpx

from app.core.contracts import Incident, Warning112
from app.core.errors import FetchError, ParseError
from app.services.incidents import IncidentScraper
from app.services.notifications import NotificationDispatcher
from app.services.scheduler import Pipeline, PollLoop


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

T0 = datetime(2025, 7, 21, 12, 0, tzinfo=timezone.utc)


def make_incident(**kwargs) -> Incident:
    defaults = dict(
        id="inc-kalentzi",
        category="forest-fire",
        status="ongoing",
        region="ΠΕΡΙΦΕΡΕΙΑ ΑΤΤΙΚΗΣ",
        municipality="ΔΗΜΟΣ ΜΑΡΑΘΩΝΟΣ",
        location="ΚΑΛΕΝΤΖΙ",
    )
    defaults.update(kwargs)
    return Incident(**defaults)


class ScriptedIncidents:
    """Returns (or raises) the next scripted batch on every fetch."""

    def __init__(self, *batches, gate=None, delay=0.0):
        self.batches = list(batches)
        self.gate = gate
        self.delay = delay
        self.fetches = 0

    async def fetch_incidents(self):
        self.fetches += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        batch = self.batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return batch


class ScriptedWarnings:
    def __init__(self, *batches):
        self.batches = list(batches)
        self.closed = False

    async def fetch_warnings(self, now=None):
        batch = self.batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return batch

    async def aclose(self):
        self.closed = True


class FakeResolver:
    def __init__(self):
        self.closed = False

    async def aclose(self):
        self.closed = True

    def stats(self):
        return {}


def make_pipeline(incidents=None, warnings=None, hard_timeout_s=5.0) -> Pipeline:
    return Pipeline(
        resolver=FakeResolver(),
        incident_scraper=incidents or ScriptedIncidents(),
        warning_scraper=warnings or ScriptedWarnings(),
        dispatcher=NotificationDispatcher(min_spacing_s=0.0, queue_max=100),
        hard_timeout_s=hard_timeout_s,
    )


# ---------------------------------------------------------------------------
# Incident cycles
# ---------------------------------------------------------------------------

class TestIncidentCycle(unittest.IsolatedAsyncioTestCase):

    async def test_first_cycle_seeds_without_queueing(self):
        scraper = ScriptedIncidents([make_incident(), make_incident(id="inc-2", location="ΜΥΣΤΡΑΣ")])
        pipeline = make_pipeline(incidents=scraper)

        report = await pipeline.run_incidents_cycle(now=T0)
        self.assertTrue(report.ok)
        self.assertEqual((report.count, report.created), (2, 2))

        snap = pipeline.incidents.read()
        self.assertEqual(snap.cycle, 1)
        self.assertEqual(snap.get("inc-kalentzi").first_seen_at, T0.isoformat())
        self.assertEqual(pipeline.dispatcher.pending, 0)
        self.assertIs(pipeline.last_success("incidents"), report)

    async def test_later_cycle_queues_new_records(self):
        scraper = ScriptedIncidents([make_incident()], [make_incident(), make_incident(id="inc-2", location="ΜΥΣΤΡΑΣ")])
        pipeline = make_pipeline(incidents=scraper)
        await pipeline.run_incidents_cycle(now=T0)
        report = await pipeline.run_incidents_cycle(now=T0 + timedelta(minutes=1))
        self.assertEqual(report.created, 1)
        self.assertEqual(pipeline.dispatcher.pending, 1)

    async def test_failed_fetch_keeps_previous_snapshot(self):
        scraper = ScriptedIncidents([make_incident()], FetchError("incidents", "HTTP 502"))
        pipeline = make_pipeline(incidents=scraper)
        await pipeline.run_incidents_cycle(now=T0)
        before = pipeline.incidents.read()

        report = await pipeline.run_incidents_cycle(now=T0 + timedelta(minutes=1))
        self.assertFalse(report.ok)
        self.assertIn("HTTP 502", report.error)
        self.assertIs(pipeline.incidents.read(), before)
        self.assertEqual(pipeline.last_report("incidents"), report)
        self.assertTrue(pipeline.last_success("incidents").ok)

    async def test_parse_error_keeps_previous_snapshot(self):
        scraper = ScriptedIncidents([make_incident()], ParseError("no incident category sections found"))
        pipeline = make_pipeline(incidents=scraper)
        await pipeline.run_incidents_cycle(now=T0)
        before = pipeline.incidents.read()

        report = await pipeline.run_incidents_cycle(now=T0 + timedelta(minutes=1))
        self.assertFalse(report.ok)
        self.assertIs(pipeline.incidents.read(), before)

    async def test_unexpected_error_is_contained(self):
        scraper = ScriptedIncidents(KeyError("boom"))
        pipeline = make_pipeline(incidents=scraper)
        report = await pipeline.run_incidents_cycle(now=T0)
        self.assertFalse(report.ok)
        self.assertEqual(pipeline.incidents.read().cycle, 0)

    async def test_status_change_updates_without_notifying(self):
        first = make_incident()
        scraper = ScriptedIncidents([first], [make_incident(status="partial-control")])
        pipeline = make_pipeline(incidents=scraper)
        await pipeline.run_incidents_cycle(now=T0)

        report = await pipeline.run_incidents_cycle(now=T0 + timedelta(minutes=1))
        self.assertEqual((report.created, report.updated, report.resolved), (0, 1, 0))
        self.assertEqual(pipeline.dispatcher.pending, 0)

        current = pipeline.incidents.read().get("inc-kalentzi")
        self.assertEqual(current.status, "partial-control")
        self.assertEqual(current.first_seen_at, T0.isoformat())

    async def test_disappeared_incident_resolved(self):
        scraper = ScriptedIncidents([make_incident()], [])
        pipeline = make_pipeline(incidents=scraper)
        await pipeline.run_incidents_cycle(now=T0)
        report = await pipeline.run_incidents_cycle(now=T0 + timedelta(minutes=1))
        self.assertTrue(report.ok)
        self.assertEqual(report.resolved, 1)
        self.assertEqual(len(pipeline.incidents.read()), 0)

    async def test_duplicate_ids_abandon_cycle(self):
        scraper = ScriptedIncidents([make_incident(), make_incident(status="full-control")])
        pipeline = make_pipeline(incidents=scraper)
        report = await pipeline.run_incidents_cycle(now=T0)
        self.assertFalse(report.ok)
        self.assertEqual(pipeline.incidents.read().cycle, 0)
        self.assertEqual(pipeline.dispatcher.pending, 0)


# ---------------------------------------------------------------------------
# Single flight and timeouts
# ---------------------------------------------------------------------------

class TestCycleGuards(unittest.IsolatedAsyncioTestCase):

    async def test_overlapping_cycle_is_skipped(self):
        gate = asyncio.Event()
        scraper = ScriptedIncidents([make_incident()], gate=gate)
        pipeline = make_pipeline(incidents=scraper)

        first = asyncio.create_task(pipeline.run_incidents_cycle(now=T0))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        self.assertTrue(pipeline.is_running("incidents"))

        skipped = await pipeline.run_incidents_cycle(now=T0)
        self.assertTrue(skipped.skipped)
        self.assertFalse(skipped.ok)

        gate.set()
        report = await first
        self.assertTrue(report.ok)
        self.assertEqual(scraper.fetches, 1)
        self.assertFalse(pipeline.is_running("incidents"))

    async def test_sources_do_not_block_each_other(self):
        gate = asyncio.Event()
        pipeline = make_pipeline(
            incidents=ScriptedIncidents([make_incident()], gate=gate),
            warnings=ScriptedWarnings([Warning112(id="112:1", published_at=T0.isoformat())]),
        )
        first = asyncio.create_task(pipeline.run_incidents_cycle(now=T0))
        await asyncio.sleep(0)

        report = await pipeline.run_warnings_cycle(now=T0)
        self.assertTrue(report.ok)
        self.assertEqual(len(pipeline.warnings.read()), 1)

        gate.set()
        await first

    async def test_hard_timeout_abandons_cycle(self):
        scraper = ScriptedIncidents([make_incident()], delay=1.0)
        pipeline = make_pipeline(incidents=scraper, hard_timeout_s=0.05)
        report = await pipeline.run_incidents_cycle(now=T0)
        self.assertFalse(report.ok)
        self.assertTrue(report.error.startswith("timeout"))
        self.assertEqual(pipeline.incidents.read().cycle, 0)
        self.assertFalse(pipeline.is_running("incidents"))

    async def test_unknown_source(self):
        with self.assertRaises(ValueError):
            await make_pipeline().run_cycle("earthquakes")

    async def test_run_cycle_dispatches_by_name(self):
        pipeline = make_pipeline(warnings=ScriptedWarnings([]))
        report = await pipeline.run_cycle("warnings", now=T0)
        self.assertEqual(report.source, "warning")
        self.assertTrue(report.ok)


# ---------------------------------------------------------------------------
# Delivery after a restart
# ---------------------------------------------------------------------------

class RecordingSink:
    def __init__(self):
        self.messages = []

    async def __call__(self, message):
        self.messages.append(message)


class TestRestartDelivery(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.old = make_incident(id="inc-old", start_date=(T0 - timedelta(days=2)).isoformat())
        self.sink = RecordingSink()

    async def run_and_drain(self, pipeline, *stamps):
        await pipeline.dispatcher.subscribe("s1", connect_ts=T0 - timedelta(seconds=5), sink=self.sink)
        await pipeline.dispatcher.start()
        try:
            for now in stamps:
                await pipeline.run_incidents_cycle(now=now)
            await pipeline.dispatcher.join()
        finally:
            await pipeline.dispatcher.stop()

    async def test_existing_picture_not_pushed_after_restart(self):
        pipeline = make_pipeline(incidents=ScriptedIncidents([self.old]))
        await self.run_and_drain(pipeline, T0)
        self.assertEqual(self.sink.messages, [])
        self.assertEqual(len(pipeline.incidents.read()), 1)

    async def test_record_that_started_before_connect_is_withheld(self):
        fresh = make_incident(id="inc-new", location="ΜΥΣΤΡΑΣ", start_date=(T0 + timedelta(seconds=30)).isoformat())
        scraper = ScriptedIncidents([], [self.old, fresh])
        pipeline = make_pipeline(incidents=scraper)
        await self.run_and_drain(pipeline, T0, T0 + timedelta(minutes=1))
        self.assertEqual([m["payload"]["data"]["id"] for m in self.sink.messages], ["inc-new"])


# ---------------------------------------------------------------------------
# Failure after partial work
# ---------------------------------------------------------------------------

def make_listing(locations) -> str:
    panels = "".join(
        '<div class="panel panel-red"><div class="panel-heading"><table><tr>'
        f"<td>ΠΕΡΙΦΕΡΕΙΑ ΑΤΤΙΚΗΣ<br>ΔΗΜΟΣ ΜΑΡΑΘΩΝΟΣ<br><b>{loc}</b></td>"
        "<td>ΕΝΑΡΞΗ <b>21/07/2025 14:05:00</b></td>"
        "</tr></table> Τελευταία Ενημέρωση 21/07/2025 15:10:00</div></div>"
        for loc in locations
    )
    return (
        "<html><head><meta charset='utf-8'></head><body>"
        '<ul class="nav nav-tabs">'
        '<li><a href="#L1">Δασικές Πυρκαγιές</a></li>'
        '<li><a href="#P1">Αστικές Πυρκαγιές</a></li>'
        '<li><a href="#Q1">Παροχές Βοήθειας</a></li>'
        "</ul>"
        '<div class="tab-content">'
        f'<div id="L1" class="tab-pane">{panels}</div>'
        '<div id="P1" class="tab-pane"></div>'
        '<div id="Q1" class="tab-pane"></div>'
        "</div></body></html>"
    )


class FlakyResolver(FakeResolver):
    """Fails on the n-th resolve call once armed."""

    def __init__(self):
        super().__init__()
        self.fail_on = None
        self.calls = 0

    async def resolve(self, location, municipality, region=None):
        self.calls += 1
        if self.fail_on is not None and self.calls == self.fail_on:
            raise FetchError("incidents", "connection dropped mid-cycle")
        return None


class TestPartialFailure(unittest.IsolatedAsyncioTestCase):

    async def test_failure_mid_geocode_keeps_previous_snapshot(self):
        pages = [
            make_listing([f"ΘΕΣΗ {i}" for i in range(10)]),
            make_listing([f"ΝΕΑ ΘΕΣΗ {i}" for i in range(10)]),
        ]
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=pages.pop(0).encode("utf-8")))
        resolver = FlakyResolver()
        async with httpx.AsyncClient(transport=transport) as client:
            scraper = IncidentScraper(resolver=resolver, client=client, url="https://fires.test/symvanta/")
            pipeline = make_pipeline(incidents=scraper)
            self.assertTrue((await pipeline.run_incidents_cycle(now=T0)).ok)
            before = pipeline.incidents.read()
            self.assertEqual(len(before), 10)

            resolver.calls = 0
            resolver.fail_on = 4
            report = await pipeline.run_incidents_cycle(now=T0 + timedelta(minutes=1))

        self.assertFalse(report.ok)
        self.assertIn("connection dropped", report.error)
        self.assertIs(pipeline.incidents.read(), before)
        self.assertEqual(pipeline.dispatcher.pending, 0)
        self.assertGreaterEqual(resolver.calls, 4)


# ---------------------------------------------------------------------------
# PollLoop
# ---------------------------------------------------------------------------

class TestPollLoop(unittest.IsolatedAsyncioTestCase):

    async def test_first_tick_runs_immediately_and_stop_cancels(self):
        ran = asyncio.Event()
        calls = []

        async def cycle():
            calls.append(1)
            ran.set()
            await asyncio.sleep(10)

        loop = PollLoop("incidents", cycle, interval_s=60, initial_delay_s=0)
        loop.start()
        await asyncio.wait_for(ran.wait(), timeout=1.0)
        await loop.stop()
        self.assertEqual(calls, [1])

    async def test_stop_closes_scrapers_and_resolver(self):
        warnings = ScriptedWarnings()
        pipeline = make_pipeline(warnings=warnings)
        await pipeline.stop()
        self.assertTrue(warnings.closed)
        self.assertTrue(pipeline.resolver.closed)


if __name__ == "__main__":
    unittest.main()
