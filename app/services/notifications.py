# app/services/notifications.py
"""
Push delivery of newly created incidents and 112 warnings.

One process-wide FIFO queue feeds a single worker task. The worker keeps a
minimum gap between deliveries (NOTIFY_MIN_SPACING_S) so a poll that finds
ten new fires does not flood the client UI, and fans each event out to every
subscribed session.

A session only ever sees records that first appeared after it connected:
the comparison runs at delivery time, so events already sitting in the queue
when a client (re)connects are filtered too.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional

from app.core.contracts import ChangeEvent, Incident, NotificationPayload, Warning112
from app.core.errors import DispatchError
from app.core.settings import settings
from app.core.time import parse_iso, utc_now, utc_now_iso
from app.services.warnings112 import warning_tier

logger = logging.getLogger(__name__)

Sink = Callable[[Dict[str, Any]], Awaitable[None]]
SessionState = Literal["connected", "subscribed", "disconnected"]

_INCIDENT_TITLES = {
    "forest-fire": "Forest Fire",
    "urban-fire": "Structure Fire",
    "assistance": "Assistance",
}

INCIDENT_EVENT = "NewIncidentNotification"
WARNING_EVENT = "NewWarningNotification"


# ══════════════════════════════════════════════════════════════
# Payloads
# ══════════════════════════════════════════════════════════════

def incident_payload(incident: Incident) -> NotificationPayload:
    message = ", ".join(p for p in (incident.location, incident.municipality) if p) or incident.full_address
    return NotificationPayload(
        type="incident",
        id=f"incident_{incident.id}",
        title=_INCIDENT_TITLES.get(incident.category, "Fire Incident"),
        message=message,
        location=incident.coordinates,
        category=incident.category,
        status=incident.status,
        timestamp=utc_now_iso(),
        data=incident.model_dump(mode="json"),
    )


def warning_payload(warning: Warning112, now: Optional[datetime] = None) -> NotificationPayload:
    primary = warning.primary_location
    tier = warning_tier(warning.published_at, now)
    return NotificationPayload(
        type="warning112",
        id=warning.id,
        title=f"112 Warning - {warning.warning_type}",
        message=primary.name if primary else "Unknown location",
        location=primary.coordinates if primary else None,
        icon_type=tier[1] if tier else None,
        timestamp=utc_now_iso(),
        data=warning.model_dump(mode="json"),
    )


def event_message(event: ChangeEvent) -> Dict[str, Any]:
    if event.record_type == "incident":
        name, payload = INCIDENT_EVENT, incident_payload(event.record)  # type: ignore[arg-type]
    else:
        name, payload = WARNING_EVENT, warning_payload(event.record)  # type: ignore[arg-type]
    return {"event": name, "payload": payload.model_dump(mode="json")}


# ══════════════════════════════════════════════════════════════
# Sessions
# ══════════════════════════════════════════════════════════════

@dataclass
class Session:
    session_id: str
    connected_at: datetime
    sink: Sink
    state: SessionState = "connected"
    delivered: int = 0

    def wants(self, event: ChangeEvent) -> bool:
        """Strictly-after comparison; records without a first-seen time are never pushed."""
        if self.state != "subscribed":
            return False
        seen = parse_iso(event.record_timestamp)
        if seen is None or seen <= self.connected_at:
            return False
        # a record that started upstream before the client connected already existed
        upstream = parse_iso(event.source_timestamp)
        return upstream is None or upstream > self.connected_at


# ══════════════════════════════════════════════════════════════
# Dispatcher
# ══════════════════════════════════════════════════════════════

class NotificationDispatcher:
    def __init__(
        self,
        *,
        min_spacing_s: float | None = None,
        queue_max: int | None = None,
        send_timeout_s: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_spacing_s = float(settings.notify_min_spacing_s if min_spacing_s is None else min_spacing_s)
        self.send_timeout_s = send_timeout_s
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(
            maxsize=int(settings.notify_queue_max if queue_max is None else queue_max)
        )
        self._sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._worker: asyncio.Task | None = None
        self._sleep = sleep
        self._clock = clock
        self._last_delivery_at: Optional[float] = None

        self.delivered = 0
        self.dropped = 0

    # ── lifecycle ──

    async def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="notification-dispatcher")
            logger.info("dispatcher_started spacing_s=%.1f", self.min_spacing_s)

    async def stop(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        async with self._lock:
            for s in self._sessions.values():
                s.state = "disconnected"
            self._sessions.clear()
        logger.info("dispatcher_stopped")

    # ── sessions ──

    async def connect(self, session_id: str, sink: Sink, connect_ts: Optional[datetime] = None) -> Session:
        session = Session(session_id=session_id, connected_at=connect_ts or utc_now(), sink=sink)
        async with self._lock:
            old = self._sessions.get(session_id)
            if old is not None:
                old.state = "disconnected"
            self._sessions[session_id] = session
            total = len(self._sessions)
        logger.info("session_connected id=%s total=%d", session_id, total)
        return session

    async def subscribe(
        self,
        session_id: str,
        connect_ts: Optional[datetime] = None,
        sink: Optional[Sink] = None,
    ) -> Session:
        """
        Move a session to subscribed, registering it first if needed.

        connect_ts becomes the session's cut-off: only records first seen
        after it are delivered.
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.state == "disconnected":
                if sink is None:
                    raise KeyError(f"unknown session {session_id!r}")
                session = Session(session_id=session_id, connected_at=connect_ts or utc_now(), sink=sink)
                self._sessions[session_id] = session
            elif connect_ts is not None:
                session.connected_at = connect_ts
            if sink is not None:
                session.sink = sink
            session.state = "subscribed"
        logger.info("session_subscribed id=%s since=%s", session_id, session.connected_at.isoformat())
        return session

    async def unsubscribe(self, session_id: str) -> bool:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is not None:
                session.state = "disconnected"
            total = len(self._sessions)
        if session is not None:
            logger.info("session_disconnected id=%s total=%d", session_id, total)
        return session is not None

    async def sessions(self) -> List[Session]:
        async with self._lock:
            return list(self._sessions.values())

    def session_count(self) -> int:
        return len(self._sessions)

    # ── queue ──

    def enqueue(self, event: ChangeEvent) -> bool:
        if not settings.notify_enabled:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("dispatcher_queue_full dropped key=%s type=%s", event.key, event.record_type)
            return False
        return True

    def enqueue_many(self, events: List[ChangeEvent]) -> int:
        return sum(1 for e in events if self.enqueue(e))

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def join(self) -> None:
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.deliver(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("dispatcher_delivery_failed key=%s", event.key)
            finally:
                self._queue.task_done()

    async def _wait_for_slot(self) -> None:
        if self._last_delivery_at is not None:
            wait = self.min_spacing_s - (self._clock() - self._last_delivery_at)
            if wait > 0:
                await self._sleep(wait)
        self._last_delivery_at = self._clock()

    async def deliver(self, event: ChangeEvent) -> int:
        """Fan one event out to matching sessions. Returns how many received it."""
        async with self._lock:
            if not any(s.wants(event) for s in self._sessions.values()):
                logger.debug("dispatcher_no_targets key=%s", event.key)
                return 0

        await self._wait_for_slot()

        async with self._lock:
            targets = [s for s in self._sessions.values() if s.wants(event)]
        if not targets:
            return 0

        message = event_message(event)
        results = await asyncio.gather(*(self._send(s, message) for s in targets))
        sent = sum(1 for ok in results if ok)
        self.delivered += sent
        logger.info(
            "dispatcher_delivered type=%s key=%s sessions=%d failed=%d",
            event.record_type,
            event.key,
            sent,
            len(targets) - sent,
        )
        return sent

    async def _send(self, session: Session, message: Dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(session.sink(message), timeout=self.send_timeout_s)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            err = DispatchError(session.session_id, repr(e))
            logger.warning("dispatcher_send_failed %s", err)
            await self._drop(session)
            return False
        session.delivered += 1
        return True

    async def _drop(self, session: Session) -> None:
        async with self._lock:
            if self._sessions.get(session.session_id) is session:
                del self._sessions[session.session_id]
            session.state = "disconnected"

    # ── diagnostics ──

    async def send_test(self, kind: str = "incident", session_id: Optional[str] = None) -> int:
        """Push a synthetic notification now, bypassing the queue and the session cut-off."""
        test_id = uuid.uuid4().hex[:8]
        if kind == "warning112":
            payload = NotificationPayload(
                type="warning112",
                id=f"test_warning_{test_id}",
                title="112 Warning - Test",
                message="Athens, Attica",
                location={"lat": 37.9838, "lng": 23.7275},
                icon_type="red",
                timestamp=utc_now_iso(),
                data={"is_test": True},
            )
            name = WARNING_EVENT
        else:
            payload = NotificationPayload(
                type="incident",
                id=f"test_incident_{test_id}",
                title="Forest Fire",
                message="Test Location, Test Municipality",
                location={"lat": 38.2466, "lng": 21.7359},
                category="forest-fire",
                status="ongoing",
                timestamp=utc_now_iso(),
                data={"is_test": True},
            )
            name = INCIDENT_EVENT

        message = {"event": name, "payload": payload.model_dump(mode="json")}
        async with self._lock:
            targets = [
                s for s in self._sessions.values()
                if s.state == "subscribed" and (session_id is None or s.session_id == session_id)
            ]
        results = await asyncio.gather(*(self._send(s, message) for s in targets))
        return sum(1 for ok in results if ok)

    def stats(self) -> Dict[str, Any]:
        return {
            "sessions": len(self._sessions),
            "pending": self._queue.qsize(),
            "delivered": self.delivered,
            "dropped": self.dropped,
            "running": self._worker is not None and not self._worker.done(),
        }
