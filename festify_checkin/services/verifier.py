from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol
import asyncio
import logging

from ..core.qr import QRValidation, now_ms, validate_payload
from .checkins import CheckInResult, FailureKind

logger = logging.getLogger(__name__)

MAX_SESSIONS = 10_000

class CheckinRecorder(Protocol):
    async def record_checkin(
        self, event_id: str, user_id: str, user_name: str | None = None, device_info: str | None = None
    ) -> CheckInResult: ...

class ScanState(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"

@dataclass(frozen=True)
class ScanOutcome:
    validation: QRValidation
    result: CheckInResult | None = None

    @property
    def ok(self) -> bool:
        return self.validation.is_valid and self.result is not None and self.result.ok

    @property
    def reason(self) -> str | None:
        if not self.validation.is_valid:
            return self.validation.message
        if self.result is not None and not self.result.ok:
            return self.result.reason
        return None

class QRVerifier:
    """
    Scan side of check-in for one scanning session (one user on one device).

    Every decoded camera frame goes through process(). While a check-in
    write is in flight, further frames are dropped (process returns None),
    so a code held in front of the camera produces one write, not dozens.
    """

    def __init__(
        self,
        recorder: CheckinRecorder,
        *,
        user_id: str,
        user_name: str | None = None,
        device_info: str | None = None,
        secret: str | None = None,
        expiration_window_ms: int | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self._recorder = recorder
        self.user_id = user_id
        self.user_name = user_name
        self.device_info = device_info
        self._secret = secret
        self.expiration_window_ms = expiration_window_ms
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def state(self) -> ScanState:
        return ScanState.PROCESSING if self._lock.locked() else ScanState.IDLE

    def validate(self, text: str) -> QRValidation:
        return validate_payload(
            text,
            secret=self._secret,
            expiration_window_ms=self.expiration_window_ms,
            now=self._clock(),
        )

    async def process(self, text: str) -> ScanOutcome | None:
        # locked() + acquire() on a free lock completes without yielding,
        # so check-and-set is atomic on the event loop
        if self._lock.locked():
            logger.debug("scan dropped for user %s: check-in already in progress", self.user_id)
            return None
        async with self._lock:
            validation = self.validate(text)
            if not validation.is_valid:
                return ScanOutcome(validation)
            try:
                result = await self._recorder.record_checkin(
                    validation.event_id, self.user_id, self.user_name, self.device_info
                )
            except Exception as e:
                logger.exception("check-in for event %s raised", validation.event_id)
                result = CheckInResult.failure(FailureKind.ERROR, str(e) or e.__class__.__name__)
            return ScanOutcome(validation, result)

class VerifierRegistry:
    """Scanning sessions keyed by (user, device)."""

    def __init__(self, factory: Callable[..., QRVerifier]):
        self._factory = factory
        self._verifiers: dict[tuple[str, str], QRVerifier] = {}

    def get(self, user_id: str, user_name: str | None = None, device_info: str | None = None) -> QRVerifier:
        key = (user_id, device_info or "")
        verifier = self._verifiers.get(key)
        if verifier is None:
            if len(self._verifiers) >= MAX_SESSIONS:
                self.prune()
            verifier = self._factory(user_id=user_id, user_name=user_name, device_info=device_info)
            self._verifiers[key] = verifier
        elif user_name:
            verifier.user_name = user_name
        return verifier

    def prune(self) -> int:
        """Forget idle sessions; returns how many were dropped."""
        idle = [k for k, v in self._verifiers.items() if v.state is ScanState.IDLE]
        for k in idle:
            del self._verifiers[k]
        return len(idle)

    def __len__(self) -> int:
        return len(self._verifiers)
