from __future__ import annotations
import json
import logging
from typing import Awaitable, Callable, Sequence
from nats.aio.client import Client as NATS
from .config import get_settings

_settings = get_settings()
_nats = NATS()
logger = logging.getLogger(__name__)

async def nats_connect():
    if not _nats.is_connected:
        servers: Sequence[str] = [u.strip() for u in _settings.nats_urls.split(",") if u.strip()]
        await _nats.connect(servers=servers)

async def nats_close():
    try:
        if _nats.is_connected:
            await _nats.drain()
    except Exception:
        logger.warning("NATS drain failed", exc_info=True)

async def publish_checkin(evt: dict):
    """
    evt = {
      "event_id": str,
      "user_id": str,
      "checked_at": iso8601,
      "idempotency_key": "event_id:user_id"
    }
    """
    await nats_connect()
    await _nats.publish(_settings.nats_subject_checkin, json.dumps(evt).encode("utf-8"))

async def subscribe_checkins(cb: Callable[[dict], Awaitable[None]]):
    await nats_connect()
    async def handler(msg):
        try:
            data = json.loads(msg.data)
        except ValueError:
            logger.warning("dropping undecodable message on %s", msg.subject)
            return
        try:
            await cb(data)
        except Exception:
            logger.exception("check-in event handler failed")
    await _nats.subscribe(_settings.nats_subject_checkin, cb=handler)
