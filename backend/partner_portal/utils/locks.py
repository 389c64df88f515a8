"""In-process locking primitives.

  - KeyedLock     one asyncio.Lock per key, created on demand and dropped
                  when no coroutine holds or waits on it.  Used to serialize
                  task document merges per (tenant_id, task_key).
  - SingleFlight  non-blocking "is someone already doing this?" registry.
                  Used by the phase controller's per-tenant guard.

Neither is global: each owner creates its own instance, so two owners
never contend on the same lock.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Hashable


@dataclass
class _Slot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class KeyedLock:
    """Mutual exclusion per key; different keys never block each other."""

    def __init__(self) -> None:
        self._slots: dict[Hashable, _Slot] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        slot = self._slots.get(key)
        if slot is None:
            slot = _Slot()
            self._slots[key] = slot
        slot.users += 1
        try:
            async with slot.lock:
                yield
        finally:
            slot.users -= 1
            if slot.users == 0:
                self._slots.pop(key, None)

    def is_held(self, key: Hashable) -> bool:
        slot = self._slots.get(key)
        return slot is not None and slot.lock.locked()

    def __len__(self) -> int:
        return len(self._slots)


class SingleFlight:
    """Registry of keys with an operation in flight.

    `acquire` never waits: it returns False when the key is already taken.
    """

    def __init__(self) -> None:
        self._in_flight: set[Hashable] = set()

    def acquire(self, key: Hashable) -> bool:
        if key in self._in_flight:
            return False
        self._in_flight.add(key)
        return True

    def release(self, key: Hashable) -> None:
        self._in_flight.discard(key)

    def is_in_flight(self, key: Hashable) -> bool:
        return key in self._in_flight
