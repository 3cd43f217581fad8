# app/services/changes.py
from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, TypeVar

from app.core.contracts import ChangeEvent, Incident, RecordType, Warning112
from app.core.time import utc_now_iso

R = TypeVar("R", Incident, Warning112)


def _incident_changed(old: Incident, new: Incident) -> bool:
    return old.status != new.status or old.last_update != new.last_update


def diff(
    previous: Sequence[R],
    new: Sequence[R],
    *,
    record_type: RecordType,
) -> List[ChangeEvent]:
    """
    Compare two collections by id.

    Created and Updated events follow the order of `new`, Resolved events the
    order of `previous`. Only Created events are marked notify. Warnings
    produce Created events only.
    """
    prev_by_id = {p.id: p for p in previous}
    new_ids = {n.id for n in new}
    out: List[ChangeEvent] = []

    for rec in new:
        old = prev_by_id.get(rec.id)
        if old is None:
            out.append(ChangeEvent(kind="created", record_type=record_type, key=rec.id, record=rec, notify=True))
        elif record_type == "incident" and _incident_changed(old, rec):
            out.append(
                ChangeEvent(kind="updated", record_type=record_type, key=rec.id, record=rec, previous=old)
            )

    if record_type == "incident":
        for old in previous:
            if old.id not in new_ids:
                out.append(ChangeEvent(kind="resolved", record_type=record_type, key=old.id, record=old))

    return out


def notifiable(events: Iterable[ChangeEvent]) -> List[ChangeEvent]:
    return [e for e in events if e.notify]


def carry_first_seen(previous: Sequence[R], new: Sequence[R], *, now_iso: Optional[str] = None) -> List[R]:
    """
    Stamp first_seen_at on new records; records that persist keep the time
    they first appeared.
    """
    stamp = now_iso or utc_now_iso()
    prev_seen = {p.id: p.first_seen_at for p in previous}
    out: List[R] = []
    for rec in new:
        seen = prev_seen.get(rec.id) or rec.first_seen_at or stamp
        out.append(rec if rec.first_seen_at == seen else rec.model_copy(update={"first_seen_at": seen}))
    return out
