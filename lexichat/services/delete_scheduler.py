"""Deferred deletion with an undo window."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Hashable

from PyQt6.QtCore import QObject, pyqtSignal


logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = 3.0


class DeleteScheduler(QObject):
    """Hide items immediately and delete them once a grace period has elapsed.

    ``schedule`` suppresses the item and arms a one-shot timer on the running
    event loop. ``cancel`` disarms it and restores the item; ``force_now``
    performs a pending deletion immediately. Each item has at most one pending
    deletion.
    """

    suppressed_changed = pyqtSignal(object)

    def __init__(
        self,
        delete_callback: Callable[[Hashable], None],
        *,
        delay: float = DEFAULT_GRACE_PERIOD,
    ) -> None:
        super().__init__()
        self._delete = delete_callback
        self.delay = max(0.0, delay)
        self._pending: dict[Hashable, asyncio.TimerHandle] = {}
        self._suppressed: set[Hashable] = set()

    @property
    def suppressed(self) -> frozenset[Hashable]:
        return frozenset(self._suppressed)

    def is_pending(self, item_id: Hashable) -> bool:
        return item_id in self._pending

    def is_suppressed(self, item_id: Hashable) -> bool:
        return item_id in self._suppressed

    def schedule(self, item_id: Hashable, delay: float | None = None) -> None:
        """Suppress ``item_id`` now and delete it after ``delay`` seconds."""

        self._disarm(item_id)
        wait = self.delay if delay is None else max(0.0, delay)
        loop = asyncio.get_running_loop()
        self._pending[item_id] = loop.call_later(wait, self._run, item_id)
        self._set_suppressed(item_id, True)
        logger.info("Deletion scheduled", extra={"item_id": item_id, "delay": wait})

    def cancel(self, item_id: Hashable) -> bool:
        """Undo a pending deletion. Returns ``False`` when nothing was pending."""

        if not self._disarm(item_id):
            return False
        self._set_suppressed(item_id, False)
        logger.info("Deletion cancelled", extra={"item_id": item_id})
        return True

    def force_now(self, item_id: Hashable) -> bool:
        """Run a pending deletion immediately instead of waiting for its timer."""

        if not self._disarm(item_id):
            return False
        self._perform(item_id)
        return True

    def flush(self) -> None:
        """Perform every pending deletion, e.g. before the application exits."""

        for item_id in list(self._pending):
            self.force_now(item_id)

    # ------------------------------------------------------------------
    def _disarm(self, item_id: Hashable) -> bool:
        handle = self._pending.pop(item_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def _run(self, item_id: Hashable) -> None:
        if self._pending.pop(item_id, None) is None:
            return
        self._perform(item_id)

    def _perform(self, item_id: Hashable) -> None:
        try:
            self._delete(item_id)
        finally:
            self._set_suppressed(item_id, False)
        logger.info("Deletion performed", extra={"item_id": item_id})

    def _set_suppressed(self, item_id: Hashable, value: bool) -> None:
        if value == (item_id in self._suppressed):
            return
        if value:
            self._suppressed.add(item_id)
        else:
            self._suppressed.discard(item_id)
        self.suppressed_changed.emit(frozenset(self._suppressed))


__all__ = ["DEFAULT_GRACE_PERIOD", "DeleteScheduler"]
