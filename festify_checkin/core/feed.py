from __future__ import annotations
from collections import defaultdict
from typing import Awaitable, Callable
import itertools
import logging

from ..schemas import CheckInSummary

logger = logging.getLogger(__name__)

SummaryListener = Callable[[CheckInSummary], None]
SummaryLoader = Callable[[str], Awaitable[CheckInSummary]]

class Subscription:
    """Handle returned by SummaryHub.subscribe; unsubscribe() detaches it once."""

    def __init__(self, hub: "SummaryHub", event_id: str, key: int):
        self._hub = hub
        self.event_id = event_id
        self._key = key
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._hub._remove(self.event_id, self._key)

class SummaryHub:
    """
    Live CheckInSummary per event. Writers call refresh()/publish() after a
    check-in lands; display sessions subscribe and get every new summary.
    """

    def __init__(self, loader: SummaryLoader | None = None):
        self._loader = loader
        self._listeners: dict[str, dict[int, SummaryListener]] = defaultdict(dict)
        self._keys = itertools.count(1)

    def subscribe(self, event_id: str, listener: SummaryListener) -> Subscription:
        key = next(self._keys)
        self._listeners[event_id][key] = listener
        return Subscription(self, event_id, key)

    def _remove(self, event_id: str, key: int) -> None:
        listeners = self._listeners.get(event_id)
        if listeners is None:
            return
        listeners.pop(key, None)
        if not listeners:
            del self._listeners[event_id]

    def listener_count(self, event_id: str) -> int:
        return len(self._listeners.get(event_id, {}))

    async def load(self, event_id: str) -> CheckInSummary:
        if self._loader is None:
            return CheckInSummary(event_id=event_id)
        return await self._loader(event_id)

    def publish(self, summary: CheckInSummary) -> None:
        # copy: a listener may unsubscribe while being notified
        for listener in list(self._listeners.get(summary.event_id, {}).values()):
            try:
                listener(summary)
            except Exception:
                logger.exception("summary listener failed for event %s", summary.event_id)

    async def refresh(self, event_id: str) -> CheckInSummary | None:
        """Reload the summary and push it, only if someone is watching."""
        if not self.listener_count(event_id):
            return None
        summary = await self.load(event_id)
        self.publish(summary)
        return summary
