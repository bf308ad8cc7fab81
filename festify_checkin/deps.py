from __future__ import annotations
from typing import Any, Dict, AsyncGenerator
from fastapi import Header, HTTPException, status
import logging
import time
import httpx
import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session, async_session_maker
from .core.config import get_settings
from .core.feed import SummaryHub
from .core.nats import publish_checkin
from .services.checkins import CheckinWriter
from .services.issuer import IssuerRegistry, QRIssuer
from .services.verifier import QRVerifier, VerifierRegistry

settings = get_settings()
logger = logging.getLogger(__name__)

_JWKS: Dict[str, Any] | None = None
_JWKS_TS: float = 0.0
_JWKS_TTL: int = 3600

async def fetch_jwks() -> Dict[str, Any]:
    global _JWKS, _JWKS_TS
    now = time.time()
    if _JWKS is None or (now - _JWKS_TS) > _JWKS_TTL:
        async with httpx.AsyncClient() as client:
            r = await client.get(settings.auth_jwks_url, timeout=5.0)
            r.raise_for_status()
            _JWKS = r.json()
            _JWKS_TS = now
    return _JWKS

async def get_signing_key():
    from jwt.algorithms import RSAAlgorithm
    jwks = await fetch_jwks()
    key = jwks["keys"][0]
    return RSAAlgorithm.from_jwk(key)

async def get_claims(authorization: str | None = Header(default=None)) -> Dict[str, Any]:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        key = await get_signing_key()
    except httpx.HTTPError:
        logger.exception("could not fetch JWKS from %s", settings.auth_jwks_url)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Auth unavailable")
    try:
        payload = jwt.decode(token, key=key, algorithms=["RS256"], options={"verify_aud": False})
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if "sub" not in payload:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return payload

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for s in get_session():
        yield s

# --- outbound clients ---

async def events_get_event(event_id: str) -> Dict[str, Any] | None:
    """Return the event document, or None if the events service says 404."""
    url = f"{settings.events_base_url}/events/{event_id}"
    async with httpx.AsyncClient() as client:
        r = await client.get(url, timeout=5.0)
        if r.status_code == 404:
            return None
        r.raise_for_status()
        return r.json()

async def _publish(evt: dict) -> None:
    if settings.nats_enabled:
        await publish_checkin(evt)

# --- process-wide check-in state ---

_event_lookup = events_get_event if settings.events_base_url else None

writer = CheckinWriter(async_session_maker, event_lookup=_event_lookup, publish=_publish)
hub = SummaryHub(loader=writer.load_summary)
writer.hub = hub

issuers = IssuerRegistry(lambda: QRIssuer(
    secret=settings.checkin_secret,
    hub=hub,
    event_lookup=_event_lookup,
))

verifiers = VerifierRegistry(lambda **kw: QRVerifier(
    writer,
    secret=settings.checkin_secret,
    expiration_window_ms=settings.qr_expiration_window_ms,
    **kw,
))

def get_hub() -> SummaryHub:
    return hub

def get_issuers() -> IssuerRegistry:
    return issuers

def get_verifiers() -> VerifierRegistry:
    return verifiers
