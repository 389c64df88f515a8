"""Debounced task writer for autosaving editors.

Rapid successive edits to one task are collapsed into a single
`merge_task_data` call, sent once the editor has been quiet for the
debounce period (or immediately on `flush()`).

Collapsing keeps the meaning of applying the edits one after another:
a later merge of a key cancels an earlier removal of it, a later removal
cancels an earlier merge, and completion, once asked for, stays asked for.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping

from partner_portal.config import settings
from partner_portal.middleware.exceptions import PortalException

logger = logging.getLogger(__name__)

MergeWriter = Callable[[dict[str, Any], list[str], bool], Awaitable[Any]]


@dataclass
class PendingMerge:
    merge: dict[str, Any] = field(default_factory=dict)
    remove: set[str] = field(default_factory=set)
    mark_completed: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.merge and not self.remove and not self.mark_completed

    def add(
        self,
        merge_map: Mapping[str, Any] | None = None,
        remove_keys: Iterable[str] = (),
        mark_completed: bool = False,
    ) -> None:
        for key, value in (merge_map or {}).items():
            self.merge[key] = value
            self.remove.discard(key)
        for key in remove_keys:
            self.merge.pop(key, None)
            self.remove.add(key)
        self.mark_completed = self.mark_completed or mark_completed

    def then(self, later: "PendingMerge") -> "PendingMerge":
        combined = PendingMerge(dict(self.merge), set(self.remove), self.mark_completed)
        combined.add(later.merge, later.remove, later.mark_completed)
        return combined


class DebouncedTaskWriter:
    def __init__(self, write: MergeWriter, delay: float | None = None):
        self._write = write
        self._delay = settings.autosave_debounce_seconds if delay is None else delay
        self._pending = PendingMerge()
        self._timer: asyncio.Task | None = None
        self._flush_lock = asyncio.Lock()

    @property
    def has_pending(self) -> bool:
        return not self._pending.is_empty

    def stage(
        self,
        merge_map: Mapping[str, Any] | None = None,
        remove_keys: Iterable[str] = (),
        mark_completed: bool = False,
    ) -> None:
        """Queue an edit and restart the quiet-period timer."""
        self._pending.add(merge_map, remove_keys, mark_completed)
        self._cancel_timer()
        self._timer = asyncio.ensure_future(self._fire_after_delay())

    async def flush(self) -> Any:
        """Send whatever is queued now; returns the writer's result or None."""
        self._cancel_timer()
        async with self._flush_lock:
            if self._pending.is_empty:
                return None
            batch, self._pending = self._pending, PendingMerge()
            try:
                return await self._write(batch.merge, sorted(batch.remove), batch.mark_completed)
            except Exception:
                # Put the batch back ahead of anything staged meanwhile
                self._pending = batch.then(self._pending)
                raise

    async def close(self) -> None:
        await self.flush()

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _fire_after_delay(self) -> None:
        await asyncio.sleep(self._delay)
        self._timer = None
        try:
            await self.flush()
        except PortalException as e:
            logger.warning("Autosave failed, keeping edits queued: %s", e.message)
