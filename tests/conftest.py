import os

# settings are read at import time, so the environment has to be ready first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ.setdefault("AUTH_JWKS_URL", "http://auth.test/.well-known/jwks.json")
os.environ["CHECKIN_SECRET"] = "test-checkin-secret"
os.environ["RL_ENABLED"] = "false"
os.environ["NATS_ENABLED"] = "false"
os.environ.pop("EVENTS_BASE_URL", None)
os.environ.pop("QR_EXPIRATION_WINDOW_MS", None)
os.environ.pop("QR_ROTATION_SECONDS", None)

import asyncio
import itertools
import threading
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from festify_checkin.core.barcode import RenderError
from festify_checkin.core.feed import SummaryHub
from festify_checkin.models import Base
from festify_checkin.schemas import CheckInRead
from festify_checkin.services.checkins import CheckInResult, CheckinWriter

SECRET = "test-checkin-secret"


async def wait_for(predicate, timeout=2.0):
    """Poll until predicate() is truthy; fail the test after `timeout` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def step_clock(start=1_000_000, step=1_000):
    """Millisecond clock that advances by `step` on every read."""
    counter = itertools.count(start, step)
    return lambda: next(counter)


class ManualTicks:
    """Stand-in for asyncio.sleep: each sleep waits until the test calls advance()."""

    def __init__(self):
        self.queue = asyncio.Queue()
        self.sleeps = 0

    async def sleep(self, seconds):
        self.sleeps += 1
        await self.queue.get()

    def advance(self, n=1):
        for _ in range(n):
            self.queue.put_nowait(None)


class RecordingRenderer:
    """Barcode renderer double; runs in a worker thread like the real one."""

    def __init__(self):
        self.texts = []
        self.fail = False
        self.gate = None
        self.entered = threading.Event()

    def __call__(self, text, width_px, height_px):
        if self.gate is not None:
            self.entered.set()
            self.gate.wait(timeout=2)
        if self.fail:
            raise RenderError("encoder exploded")
        self.texts.append(text)
        return b"png:" + text.encode()


class FakeRecorder:
    """Check-in write collaborator double."""

    def __init__(self):
        self.calls = []
        self.gate = None
        self.error = None
        self.result = None

    async def record_checkin(self, event_id, user_id, user_name=None, device_info=None):
        self.calls.append((event_id, user_id, user_name, device_info))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.result is not None:
            return self.result
        record = CheckInRead(
            id=f"rec{len(self.calls)}",
            event_id=event_id,
            user_id=user_id,
            user_name=user_name or "Unknown",
            device_info=device_info or "",
            checked_at=datetime.now(timezone.utc),
        )
        return CheckInResult.success(record, created=True)


@pytest.fixture
def renderer():
    return RecordingRenderer()


@pytest.fixture
def ticks():
    return ManualTicks()


@pytest.fixture
def recorder():
    return FakeRecorder()


@pytest_asyncio.fixture
async def session_maker():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def writer(session_maker):
    w = CheckinWriter(session_maker)
    w.hub = SummaryHub(loader=w.load_summary)
    return w
