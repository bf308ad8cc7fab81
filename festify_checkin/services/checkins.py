from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.feed import SummaryHub
from ..models import CheckIn
from ..schemas import CheckInRead, CheckInSummary

logger = logging.getLogger(__name__)

CLOSED_EVENT_STATUSES = frozenset({"cancelled", "past"})

EventLookup = Callable[[str], Awaitable[Dict[str, Any] | None]]
Publisher = Callable[[dict], Awaitable[None]]

async def _find(db: AsyncSession, event_id: str, user_id: str) -> CheckIn | None:
    return (await db.execute(
        select(CheckIn).where(CheckIn.event_id == event_id, CheckIn.user_id == user_id)
    )).scalar_one_or_none()

async def record_checkin(
    db: AsyncSession,
    *,
    event_id: str,
    user_id: str,
    user_name: str = "Unknown",
    device_info: str = "",
):
    # idempotent: one record per (event, user); a repeat returns the existing one
    existing = await _find(db, event_id, user_id)
    if existing:
        return existing, False

    obj = CheckIn(event_id=event_id, user_id=user_id, user_name=user_name, device_info=device_info)
    db.add(obj)
    try:
        await db.commit()
    except IntegrityError:
        # lost the insert race against a concurrent scan by the same user
        await db.rollback()
        existing = await _find(db, event_id, user_id)
        if existing is None:
            raise
        return existing, False
    await db.refresh(obj)
    return obj, True

async def list_event_checkins(db: AsyncSession, event_id: str) -> list[CheckIn]:
    rows = (await db.execute(
        select(CheckIn).where(CheckIn.event_id == event_id).order_by(CheckIn.checked_at.desc())
    )).scalars().all()
    return list(rows)

async def list_user_checkins(db: AsyncSession, user_id: str) -> list[CheckIn]:
    rows = (await db.execute(
        select(CheckIn).where(CheckIn.user_id == user_id).order_by(CheckIn.checked_at.desc())
    )).scalars().all()
    return list(rows)

async def get_summary(db: AsyncSession, event_id: str) -> CheckInSummary:
    rows = await list_event_checkins(db, event_id)
    times = [r.checked_at for r in rows]
    return CheckInSummary(
        event_id=event_id,
        check_in_count=len(rows),
        last_check_in_at=times[0] if times else None,
        all_check_ins=times,
    )

class FailureKind(str, Enum):
    NOT_FOUND = "not_found"
    CLOSED = "closed"
    ERROR = "error"

@dataclass(frozen=True)
class CheckInResult:
    ok: bool
    record: CheckInRead | None = None
    created: bool = False
    reason: str | None = None
    kind: FailureKind | None = None

    @classmethod
    def success(cls, record: CheckInRead, created: bool) -> "CheckInResult":
        return cls(ok=True, record=record, created=created)

    @classmethod
    def failure(cls, kind: FailureKind, reason: str) -> "CheckInResult":
        return cls(ok=False, reason=reason, kind=kind)

class CheckinWriter:
    """
    Persists check-ins and keeps the live summaries current.

    Never raises: every problem comes back as CheckInResult.failure with a
    reason the scanning UI can show as-is.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        hub: SummaryHub | None = None,
        event_lookup: EventLookup | None = None,
        publish: Publisher | None = None,
    ):
        self._session_maker = session_maker
        self.hub = hub
        self._event_lookup = event_lookup
        self._publish = publish

    async def load_summary(self, event_id: str) -> CheckInSummary:
        async with self._session_maker() as db:
            return await get_summary(db, event_id)

    async def _check_event(self, event_id: str) -> CheckInResult | None:
        if self._event_lookup is None:
            return None
        try:
            event = await self._event_lookup(event_id)
        except Exception as e:
            logger.warning("event lookup failed for %s: %s", event_id, e)
            return CheckInResult.failure(FailureKind.ERROR, f"Could not load event: {e}")
        if event is None:
            return CheckInResult.failure(FailureKind.NOT_FOUND, "Event not found")
        if str(event.get("status", "")).lower() in CLOSED_EVENT_STATUSES:
            return CheckInResult.failure(FailureKind.CLOSED, "Event is not open for check-in")
        return None

    async def record_checkin(
        self,
        event_id: str,
        user_id: str,
        user_name: str | None = None,
        device_info: str | None = None,
    ) -> CheckInResult:
        rejected = await self._check_event(event_id)
        if rejected is not None:
            return rejected

        try:
            async with self._session_maker() as db:
                obj, created = await record_checkin(
                    db,
                    event_id=event_id,
                    user_id=user_id,
                    user_name=user_name or "Unknown",
                    device_info=device_info or "",
                )
                record = CheckInRead.model_validate(obj)
        except Exception as e:
            logger.exception("check-in write failed for event=%s user=%s", event_id, user_id)
            return CheckInResult.failure(FailureKind.ERROR, str(e) or e.__class__.__name__)

        if created:
            logger.info("user %s checked in to event %s", user_id, event_id)
            await self._announce(record)
        else:
            logger.info("user %s already checked in to event %s", user_id, event_id)
        return CheckInResult.success(record, created)

    async def _announce(self, record: CheckInRead) -> None:
        if self.hub is not None:
            try:
                await self.hub.refresh(record.event_id)
            except Exception:
                logger.warning("summary refresh failed for event %s", record.event_id, exc_info=True)
        if self._publish is not None:
            try:
                await self._publish({
                    "event_id": record.event_id,
                    "user_id": record.user_id,
                    "checked_at": record.checked_at.isoformat(),
                    "idempotency_key": f"{record.event_id}:{record.user_id}",
                })
            except Exception:
                # non-fatal: other replicas just miss one live update
                logger.warning("failed to publish check-in for event %s", record.event_id, exc_info=True)
