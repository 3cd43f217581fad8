# app/services/state.py
"""
In-memory snapshot holder for one record collection.

Writers build the next collection completely, then publish it with a single
reference assignment; readers grab whatever reference is current. There is
no lock on the read path and nothing is ever mutated in place.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Generic, Iterable, Optional, Tuple, TypeVar

from pydantic import BaseModel

from app.core.time import utc_now

T = TypeVar("T", bound=BaseModel)


@dataclass(frozen=True)
class Snapshot(Generic[T]):
    items: Tuple[T, ...] = ()
    updated_at: Optional[datetime] = None
    cycle: int = 0
    index: Dict[str, T] = field(default_factory=dict, compare=False, repr=False)

    def get(self, key: str) -> Optional[T]:
        return self.index.get(key)

    def keys(self) -> Iterable[str]:
        return self.index.keys()

    def __len__(self) -> int:
        return len(self.items)


class StateStore(Generic[T]):
    def __init__(self, name: str) -> None:
        self.name = name
        self._current: Snapshot[T] = Snapshot()

    def read(self) -> Snapshot[T]:
        return self._current

    def swap(self, new_items: Iterable[T], *, now: Optional[datetime] = None) -> Snapshot[T]:
        """
        Publish new_items as the current snapshot and return the previous one.

        Raises ValueError (and publishes nothing) if two items share an id.
        """
        items = tuple(new_items)
        index: Dict[str, T] = {}
        for it in items:
            key = getattr(it, "id")
            if key in index:
                raise ValueError(f"{self.name}: duplicate key {key!r} in new snapshot")
            index[key] = it

        previous = self._current
        self._current = Snapshot(
            items=items,
            updated_at=now or utc_now(),
            cycle=previous.cycle + 1,
            index=index,
        )
        return previous
