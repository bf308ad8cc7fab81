from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict
import asyncio
import logging

from ..core.barcode import RenderError, render_barcode
from ..core.config import get_settings
from ..core.feed import Subscription, SummaryHub
from ..core.qr import issue, now_ms
from ..schemas import CheckInPayload, CheckInSummary

settings = get_settings()
logger = logging.getLogger(__name__)

Renderer = Callable[[str, int, int], bytes]
EventLookup = Callable[[str], Awaitable[Dict[str, Any] | None]]

class SessionState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"

@dataclass(frozen=True)
class IssuedCode:
    payload: CheckInPayload
    text: str
    image: bytes
    generation: int

class QRIssuer:
    """
    Keeps one event's check-in code fresh while a host is displaying it.

    start_session() issues and renders a code, then a background task
    re-issues it every `rotation_seconds`. stop_session() bumps the
    generation, so a tick or render already in flight cannot publish a code
    for a session that is gone. The live check-in count is a separate
    subscription (watch_summary/unwatch_summary) that outlives rotation.
    """

    def __init__(
        self,
        *,
        secret: str | None = None,
        renderer: Renderer = render_barcode,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rotation_seconds: float | None = None,
        size_px: int | None = None,
        hub: SummaryHub | None = None,
        event_lookup: EventLookup | None = None,
    ):
        self._secret = secret
        self._renderer = renderer
        self._clock = clock
        self._sleep = sleep
        self.rotation_seconds = settings.qr_rotation_seconds if rotation_seconds is None else rotation_seconds
        self.size_px = size_px or settings.qr_size_px
        self._hub = hub
        self._event_lookup = event_lookup

        self._generation = 0
        self._event_id: str | None = None
        self._task: asyncio.Task | None = None
        self._subscription: Subscription | None = None
        self._starting: asyncio.Event | None = None

        self.current: IssuedCode | None = None
        self.event: Dict[str, Any] | None = None
        self.summary: CheckInSummary | None = None

    @property
    def state(self) -> SessionState:
        return SessionState.ACTIVE if self._event_id is not None else SessionState.IDLE

    @property
    def event_id(self) -> str | None:
        return self._event_id

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def checkin_count(self) -> int:
        return self.summary.check_in_count if self.summary else 0

    # ---- rotation ----

    async def start_session(self, event_id: str) -> IssuedCode | None:
        if self._event_id == event_id:
            # a concurrent start for the same event shares the first code
            if self._starting is not None:
                await self._starting.wait()
            return self.current
        if self._event_id is not None:
            self.stop_session()

        self._generation += 1
        generation = self._generation
        self._event_id = event_id
        self.current = None
        self.event = None
        starting = self._starting = asyncio.Event()
        logger.info("check-in display session started for event %s", event_id)

        try:
            await self._load_event(event_id, generation)
            code = await self._issue(event_id, generation)
            if generation == self._generation:
                self._task = asyncio.create_task(self._rotate_forever(event_id, generation))
        finally:
            starting.set()
            if self._starting is starting:
                self._starting = None
        return code

    def stop_session(self) -> None:
        """Cancel rotation; safe to call repeatedly or before start."""
        if self._event_id is None and self._task is None:
            return
        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        logger.info("check-in display session stopped for event %s", self._event_id)
        self._event_id = None

    async def rotate(self) -> IssuedCode | None:
        """Issue a fresh code now; returns None when idle or rendering failed."""
        if self._event_id is None:
            return None
        return await self._issue(self._event_id, self._generation)

    async def _rotate_forever(self, event_id: str, generation: int) -> None:
        while generation == self._generation:
            await self._sleep(self.rotation_seconds)
            if generation != self._generation:
                return
            try:
                await self._issue(event_id, generation)
            except Exception:
                logger.exception("QR rotation tick failed for event %s, retrying next tick", event_id)

    async def _issue(self, event_id: str, generation: int) -> IssuedCode | None:
        payload, text = issue(event_id, self._clock(), self._secret)
        try:
            image = await asyncio.to_thread(self._renderer, text, self.size_px, self.size_px)
        except RenderError:
            # previous code stays on screen; next tick tries again
            logger.warning("QR render failed for event %s, keeping previous code", event_id, exc_info=True)
            return None
        if generation != self._generation:
            logger.debug("discarding code for event %s from stale session %s", event_id, generation)
            return None
        self.current = IssuedCode(payload=payload, text=text, image=image, generation=generation)
        return self.current

    async def _load_event(self, event_id: str, generation: int) -> None:
        if self._event_lookup is None:
            return
        try:
            event = await self._event_lookup(event_id)
        except Exception:
            logger.warning("could not load event %s for display", event_id, exc_info=True)
            return
        if generation == self._generation:
            self.event = event

    # ---- live summary ----

    async def watch_summary(self, event_id: str) -> None:
        if self._hub is None:
            return
        if self._subscription is not None:
            if self._subscription.event_id == event_id:
                return
            self.unwatch_summary()
        self._subscription = self._hub.subscribe(event_id, self._on_summary)
        try:
            summary = await self._hub.load(event_id)
        except Exception:
            logger.warning("could not load initial summary for event %s", event_id, exc_info=True)
            return
        self._on_summary(summary)

    def unwatch_summary(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _on_summary(self, summary: CheckInSummary) -> None:
        if self._subscription is None or summary.event_id != self._subscription.event_id:
            return
        self.summary = summary

    async def close(self) -> None:
        self.stop_session()
        self.unwatch_summary()

class IssuerRegistry:
    """One display session per event, shared by every host request for it."""

    def __init__(self, factory: Callable[[], QRIssuer]):
        self._factory = factory
        self._issuers: dict[str, QRIssuer] = {}

    def get(self, event_id: str) -> QRIssuer | None:
        return self._issuers.get(event_id)

    async def start(self, event_id: str) -> QRIssuer:
        issuer = self._issuers.get(event_id)
        if issuer is None:
            issuer = self._factory()
            self._issuers[event_id] = issuer
        await issuer.start_session(event_id)
        # stopped while starting: the issuer is already closed
        if self._issuers.get(event_id) is not issuer:
            return issuer
        await issuer.watch_summary(event_id)
        return issuer

    async def stop(self, event_id: str) -> bool:
        issuer = self._issuers.pop(event_id, None)
        if issuer is None:
            return False
        await issuer.close()
        return True

    async def close_all(self) -> None:
        for event_id in list(self._issuers):
            await self.stop(event_id)
