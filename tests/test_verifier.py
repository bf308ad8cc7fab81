"""
QR verifier tests: classification, single-flight and the end-to-end scenarios.
"""

import asyncio

import pytest

from festify_checkin.core.qr import QRStatus, encode, issue
from festify_checkin.services.checkins import CheckInResult, FailureKind
from festify_checkin.services.issuer import QRIssuer
from festify_checkin.services.verifier import QRVerifier, ScanState, VerifierRegistry
from conftest import SECRET, step_clock, wait_for


@pytest.fixture
def verifier(recorder):
    return QRVerifier(
        recorder,
        user_id="u1",
        user_name="Ada",
        device_info="Pixel 8",
        secret=SECRET,
    )


class TestScenarios:

    async def test_a_fresh_code_checks_in(self, verifier, recorder):
        _, text = issue("concert42", 1_000_000, SECRET)
        outcome = await verifier.process(text)

        assert outcome.validation.status is QRStatus.VALID
        assert outcome.validation.event_id == "concert42"
        assert outcome.ok
        assert outcome.reason is None
        assert recorder.calls == [("concert42", "u1", "Ada", "Pixel 8")]

    async def test_b_tampered_signature_is_rejected(self, verifier, recorder):
        payload, _ = issue("concert42", 1_000_000, SECRET)
        sig = payload.signature
        tampered = encode("concert42", 1_000_000, ("f" if sig[0] != "f" else "e") + sig[1:])

        outcome = await verifier.process(tampered)
        assert outcome.validation.status is QRStatus.INVALID_SIGNATURE
        assert not outcome.ok
        assert outcome.reason == "Invalid QR code"
        assert recorder.calls == []

    async def test_c_plain_text_is_malformed(self, verifier, recorder):
        outcome = await verifier.process("not a qr payload")
        assert outcome.validation.status is QRStatus.MALFORMED
        assert outcome.reason == "Invalid QR code format"
        assert recorder.calls == []

    async def test_d_rotated_out_code_still_accepted(self, verifier, recorder, renderer):
        issuer = QRIssuer(secret=SECRET, renderer=renderer, clock=step_clock(), rotation_seconds=120)
        old = await issuer.start_session("concert42")
        new = await issuer.rotate()
        issuer.stop_session()
        assert new.payload.issued_at_ms != old.payload.issued_at_ms

        outcome = await verifier.process(old.text)
        assert outcome.validation.status is QRStatus.VALID
        assert outcome.ok
        assert len(recorder.calls) == 1


class TestExpiration:

    async def test_expired_when_window_configured(self, recorder):
        verifier = QRVerifier(
            recorder,
            user_id="u1",
            secret=SECRET,
            expiration_window_ms=300_000,
            clock=lambda: 1_000_000 + 300_001,
        )
        _, text = issue("concert42", 1_000_000, SECRET)
        outcome = await verifier.process(text)
        assert outcome.validation.status is QRStatus.EXPIRED
        assert outcome.reason == "QR code has expired"
        assert recorder.calls == []

    async def test_disabled_by_default(self, recorder):
        verifier = QRVerifier(recorder, user_id="u1", secret=SECRET, clock=lambda: 10**13)
        _, text = issue("concert42", 1_000_000, SECRET)
        assert (await verifier.process(text)).ok


class TestSingleFlight:

    async def test_second_scan_dropped_while_first_in_flight(self, verifier, recorder):
        _, text = issue("concert42", 1_000_000, SECRET)
        recorder.gate = asyncio.Event()

        first = asyncio.create_task(verifier.process(text))
        await wait_for(lambda: recorder.calls)
        assert verifier.state is ScanState.PROCESSING

        assert await verifier.process(text) is None
        assert await verifier.process("not a qr payload") is None

        recorder.gate.set()
        outcome = await first
        assert outcome.ok
        assert len(recorder.calls) == 1
        assert verifier.state is ScanState.IDLE

    async def test_scans_accepted_again_after_completion(self, verifier, recorder):
        _, text = issue("concert42", 1_000_000, SECRET)
        await verifier.process(text)
        await verifier.process(text)
        assert len(recorder.calls) == 2

    async def test_raising_write_resets_flag(self, verifier, recorder):
        _, text = issue("concert42", 1_000_000, SECRET)
        recorder.error = ConnectionError("network down")

        outcome = await verifier.process(text)
        assert outcome.validation.is_valid
        assert not outcome.ok
        assert outcome.result.kind is FailureKind.ERROR
        assert outcome.reason == "network down"
        assert verifier.state is ScanState.IDLE

        recorder.error = None
        assert (await verifier.process(text)).ok

    async def test_cancelled_scan_resets_flag(self, verifier, recorder):
        _, text = issue("concert42", 1_000_000, SECRET)
        recorder.gate = asyncio.Event()
        task = asyncio.create_task(verifier.process(text))
        await wait_for(lambda: recorder.calls)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert verifier.state is ScanState.IDLE

    async def test_write_failure_reason_passed_through(self, verifier, recorder):
        recorder.result = CheckInResult.failure(FailureKind.NOT_FOUND, "Event not found")
        _, text = issue("concert42", 1_000_000, SECRET)
        outcome = await verifier.process(text)
        assert not outcome.ok
        assert outcome.reason == "Event not found"


class TestVerifierRegistry:

    def test_one_verifier_per_user_and_device(self, recorder):
        registry = VerifierRegistry(lambda **kw: QRVerifier(recorder, secret=SECRET, **kw))
        a = registry.get("u1", "Ada", "phone")
        assert registry.get("u1", None, "phone") is a
        assert registry.get("u1", "Ada", "tablet") is not a
        assert registry.get("u2", "Bob", "phone") is not a
        assert len(registry) == 3

    def test_name_is_refreshed(self, recorder):
        registry = VerifierRegistry(lambda **kw: QRVerifier(recorder, secret=SECRET, **kw))
        registry.get("u1", "Ada", "phone")
        assert registry.get("u1", "Ada L.", "phone").user_name == "Ada L."

    async def test_prune_keeps_busy_sessions(self, recorder):
        registry = VerifierRegistry(lambda **kw: QRVerifier(recorder, secret=SECRET, **kw))
        busy = registry.get("u1", None, "phone")
        registry.get("u2", None, "phone")

        recorder.gate = asyncio.Event()
        _, text = issue("concert42", 1_000_000, SECRET)
        task = asyncio.create_task(busy.process(text))
        await wait_for(lambda: recorder.calls)

        assert registry.prune() == 1
        assert registry.get("u1", None, "phone") is busy
        recorder.gate.set()
        await task
