from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
import hashlib
import hmac
import json
import logging
import time

from pydantic import ValidationError

from ..core.config import get_settings
from ..schemas import CheckInPayload

settings = get_settings()
logger = logging.getLogger(__name__)

class MalformedPayloadError(ValueError):
    """Scanned text is not a {eventId, ts, sig} object."""

class QRStatus(str, Enum):
    VALID = "valid"
    MALFORMED = "malformed"
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED = "expired"

MESSAGES = {
    QRStatus.MALFORMED: "Invalid QR code format",
    QRStatus.INVALID_SIGNATURE: "Invalid QR code",
    QRStatus.EXPIRED: "QR code has expired",
}

@dataclass(frozen=True)
class QRValidation:
    status: QRStatus
    event_id: str | None = None

    @property
    def is_valid(self) -> bool:
        return self.status is QRStatus.VALID

    @property
    def message(self) -> str | None:
        return MESSAGES.get(self.status)

def now_ms() -> int:
    return int(time.time() * 1000)

def sign(event_id: str, issued_at_ms: int, secret: str | None = None) -> str:
    """SHA-256 over eventId + decimal ts + secret, as 64 lowercase hex chars."""
    key = settings.checkin_secret if secret is None else secret
    data = f"{event_id}{int(issued_at_ms)}{key}".encode("utf-8")
    return hashlib.sha256(data).hexdigest()

def verify(event_id: str, issued_at_ms: int, signature: str, secret: str | None = None) -> bool:
    expected = sign(event_id, issued_at_ms, secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))

def encode(event_id: str, issued_at_ms: int, signature: str) -> str:
    return json.dumps(
        {"eventId": event_id, "ts": int(issued_at_ms), "sig": signature},
        separators=(",", ":"),
    )

def decode(text: str) -> CheckInPayload:
    try:
        raw = json.loads(text)
    except (TypeError, ValueError, RecursionError) as e:
        raise MalformedPayloadError("payload is not JSON") from e
    if not isinstance(raw, dict):
        raise MalformedPayloadError("payload is not an object")
    try:
        payload = CheckInPayload.model_validate(raw)
    except ValidationError as e:
        raise MalformedPayloadError(str(e)) from e
    # JSON \ud800 escapes decode to lone surrogates that cannot be hashed
    try:
        payload.event_id.encode("utf-8")
        payload.signature.encode("utf-8")
    except UnicodeEncodeError as e:
        raise MalformedPayloadError("payload contains invalid unicode") from e
    return payload

def issue(event_id: str, issued_at_ms: int | None = None, secret: str | None = None) -> tuple[CheckInPayload, str]:
    ts = now_ms() if issued_at_ms is None else int(issued_at_ms)
    sig = sign(event_id, ts, secret)
    return CheckInPayload(event_id=event_id, issued_at_ms=ts, signature=sig), encode(event_id, ts, sig)

def validate_payload(
    text: str,
    *,
    secret: str | None = None,
    expiration_window_ms: int | None = None,
    now: int | None = None,
) -> QRValidation:
    """
    Classify one scanned string. Never raises for bad input:
    decode -> signature -> (optional) age -> valid.
    """
    try:
        payload = decode(text)
    except MalformedPayloadError as e:
        logger.info("rejected scan: malformed payload (%s)", e.__cause__ or e)
        return QRValidation(QRStatus.MALFORMED)

    if not verify(payload.event_id, payload.issued_at_ms, payload.signature, secret):
        logger.info("rejected scan for event %s: signature mismatch", payload.event_id)
        return QRValidation(QRStatus.INVALID_SIGNATURE)

    if expiration_window_ms is not None:
        age = (now_ms() if now is None else now) - payload.issued_at_ms
        if age > expiration_window_ms:
            logger.info("rejected scan for event %s: payload is %sms old", payload.event_id, age)
            return QRValidation(QRStatus.EXPIRED, payload.event_id)

    return QRValidation(QRStatus.VALID, payload.event_id)
