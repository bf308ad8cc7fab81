from __future__ import annotations
from typing import Any, Dict
import logging
import httpx
from fastapi import APIRouter, Depends, HTTPException, status, Response, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_db, get_claims, get_issuers, get_verifiers, events_get_event
from ..schemas import QRCodeRead, ScanRequest, ScanResult, CheckInRead, CheckInSummary
from ..services.checkins import FailureKind, get_summary, list_event_checkins, list_user_checkins
from ..services.issuer import IssuerRegistry, QRIssuer
from ..services.verifier import VerifierRegistry
from ..core.redis import allow_request
from ..core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)
router = APIRouter(prefix="/checkin", tags=["checkin"])

_FAILURE_STATUS = {
    FailureKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    FailureKind.CLOSED: status.HTTP_409_CONFLICT,
    FailureKind.ERROR: status.HTTP_502_BAD_GATEWAY,
}

def _code_read(issuer: QRIssuer) -> QRCodeRead:
    code = issuer.current
    if code is None:
        raise HTTPException(status_code=503, detail="QR code not rendered yet, retrying")
    return QRCodeRead(
        event_id=code.payload.event_id,
        payload=code.text,
        issued_at_ms=code.payload.issued_at_ms,
        generation=code.generation,
        rotation_seconds=issuer.rotation_seconds,
        state=issuer.state.value,
        event_title=(issuer.event or {}).get("title"),
        check_in_count=issuer.checkin_count,
    )

def _active(issuers: IssuerRegistry, event_id: str) -> QRIssuer:
    issuer = issuers.get(event_id)
    if issuer is None:
        raise HTTPException(status_code=404, detail="No active check-in session for this event")
    return issuer

async def _require_host(event_id: str, claims: Dict[str, Any]) -> None:
    # without an events service there is nobody to ask who hosts the event
    if not settings.events_base_url:
        return
    try:
        event = await events_get_event(event_id)
    except httpx.HTTPError:
        logger.warning("events service unavailable for %s", event_id, exc_info=True)
        raise HTTPException(status_code=502, detail="Events service unavailable")
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    host_id = event.get("hostId") or event.get("host_id")
    if host_id and host_id != claims["sub"]:
        raise HTTPException(status_code=403, detail="Only the host can manage check-in for this event")

# --- 1) Host opens the check-in display: signed code, rotated in the background
@router.post("/events/{event_id}/session", response_model=QRCodeRead, status_code=201)
async def start_session(event_id: str, claims: dict = Depends(get_claims), issuers: IssuerRegistry = Depends(get_issuers)):
    await _require_host(event_id, claims)
    issuer = await issuers.start(event_id)
    return _code_read(issuer)

@router.delete("/events/{event_id}/session", status_code=204)
async def stop_session(event_id: str, claims: dict = Depends(get_claims), issuers: IssuerRegistry = Depends(get_issuers)):
    await _require_host(event_id, claims)
    await issuers.stop(event_id)
    return Response(status_code=204)

@router.get("/events/{event_id}/qr", response_model=QRCodeRead)
async def current_qr(event_id: str, claims: dict = Depends(get_claims), issuers: IssuerRegistry = Depends(get_issuers)):
    return _code_read(_active(issuers, event_id))

@router.get("/events/{event_id}/qr.png")
async def current_qr_png(event_id: str, claims: dict = Depends(get_claims), issuers: IssuerRegistry = Depends(get_issuers)):
    issuer = _active(issuers, event_id)
    if issuer.current is None:
        raise HTTPException(status_code=503, detail="QR code not rendered yet, retrying")
    return Response(
        content=issuer.current.image,
        media_type="image/png",
        headers={"Cache-Control": "no-store"},
    )

@router.post("/events/{event_id}/qr/rotate", response_model=QRCodeRead)
async def rotate_qr(event_id: str, claims: dict = Depends(get_claims), issuers: IssuerRegistry = Depends(get_issuers)):
    await _require_host(event_id, claims)
    issuer = _active(issuers, event_id)
    await issuer.rotate()
    return _code_read(issuer)

# --- 2) Live counter / roster for the host screen
@router.get("/events/{event_id}/summary", response_model=CheckInSummary)
async def summary(
    event_id: str,
    claims: dict = Depends(get_claims),
    issuers: IssuerRegistry = Depends(get_issuers),
    db: AsyncSession = Depends(get_db),
):
    issuer = issuers.get(event_id)
    if issuer is not None and issuer.summary is not None:
        return issuer.summary
    return await get_summary(db, event_id)

@router.get("/events/{event_id}/roster", response_model=list[CheckInRead])
async def roster(event_id: str, claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    await _require_host(event_id, claims)
    rows = await list_event_checkins(db, event_id)
    return [CheckInRead.model_validate(r) for r in rows]

# --- 3) Attendee scans: classify, then check in once per in-flight scan
@router.post("/scan", response_model=ScanResult)
async def scan_and_checkin(
    body: ScanRequest,
    request: Request,
    response: Response,
    claims: dict = Depends(get_claims),
    verifiers: VerifierRegistry = Depends(get_verifiers),
):
    ip = request.client.host if request.client else "unknown"
    if not await allow_request(ip, "checkin.scan"):
        raise HTTPException(status_code=429, detail="Too many requests")

    device_info = body.device_info or request.headers.get("user-agent") or ""
    verifier = verifiers.get(claims["sub"], claims.get("name"), device_info)
    outcome = await verifier.process(body.text)

    if outcome is None:
        response.status_code = status.HTTP_202_ACCEPTED
        return ScanResult(status="ignored")
    if not outcome.validation.is_valid:
        raise HTTPException(status_code=400, detail=outcome.reason)
    result = outcome.result
    if not result.ok:
        raise HTTPException(status_code=_FAILURE_STATUS[result.kind], detail=result.reason)
    if result.created:
        response.status_code = status.HTTP_201_CREATED
    return ScanResult(
        status="checked_in",
        event_id=outcome.validation.event_id,
        already_checked_in=not result.created,
        checkin=result.record,
    )

# --- 4) Attendee history
@router.get("/users/me", response_model=list[CheckInRead])
async def my_checkins(claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    rows = await list_user_checkins(db, claims["sub"])
    return [CheckInRead.model_validate(r) for r in rows]
