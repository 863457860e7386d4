from datetime import datetime, timedelta, timezone

import pytest

from app.types.dose_contract import DeliveryResult
from app.utils import sms as sms_util
from app.workers.confirmation import confirmation_message, dispatch_confirmations
import db

T0 = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def sent(monkeypatch):
    messages = []

    def fake_send_sms(to, body):
        messages.append((to, body))
        return DeliveryResult(channel="sms", ok=True)

    monkeypatch.setattr(sms_util, "send_sms", fake_send_sms)
    return messages


@pytest.mark.asyncio
async def test_confirmation_sent_once_per_dose(make_dose, sent):
    dose = await make_dose()

    first = await dispatch_confirmations(now=T0 - timedelta(minutes=10))
    second = await dispatch_confirmations(now=T0)

    assert first.sent == {"sms": 1}
    assert second.sent == {}
    assert sent == [("+15551234567", confirmation_message("Warfarin"))]
    assert (await db.get_dose_event(dose.id)).confirmation_sms_sent_at == T0 - timedelta(minutes=10)


@pytest.mark.asyncio
async def test_doses_outside_window_are_ignored(make_dose, sent):
    await make_dose(T0 - timedelta(minutes=30))
    await make_dose(T0 + timedelta(hours=2))

    report = await dispatch_confirmations(now=T0)

    assert report.processed == 0
    assert sent == []


@pytest.mark.asyncio
async def test_non_critical_medication_not_texted(make_dose, sent):
    await make_dose(is_critical=False)

    report = await dispatch_confirmations(now=T0)

    assert report.processed == 0
    assert sent == []


@pytest.mark.asyncio
async def test_user_without_phone_is_skipped(make_dose, sent):
    dose = await make_dose(phone=None)

    report = await dispatch_confirmations(now=T0)

    assert report.skipped == 1
    assert sent == []
    assert (await db.get_dose_event(dose.id)).confirmation_sms_sent_at is None


@pytest.mark.asyncio
async def test_failed_send_leaves_guard_unset(make_dose, monkeypatch):
    dose = await make_dose()

    def failing_send_sms(to, body):
        raise RuntimeError("gateway down")

    monkeypatch.setattr(sms_util, "send_sms", failing_send_sms)
    report = await dispatch_confirmations(now=T0)

    assert report.failures == [dose.id]
    assert (await db.get_dose_event(dose.id)).confirmation_sms_sent_at is None


@pytest.mark.asyncio
async def test_resolved_dose_not_texted(make_dose, sent):
    dose = await make_dose()
    await db.resolve_dose(dose.id, "taken", T0 - timedelta(minutes=1))

    await dispatch_confirmations(now=T0)

    assert sent == []


@pytest.mark.asyncio
async def test_store_error_on_one_dose_does_not_stop_batch(make_dose, sent, monkeypatch):
    broken = await make_dose(T0)
    healthy = await make_dose(T0 + timedelta(minutes=5), user_id="user-2", phone="+15550001111")
    real_get_dose_event = db.get_dose_event

    async def flaky_get_dose_event(dose_id):
        if dose_id == broken.id:
            raise RuntimeError("connection reset")
        return await real_get_dose_event(dose_id)

    monkeypatch.setattr(db, "get_dose_event", flaky_get_dose_event)
    report = await dispatch_confirmations(now=T0)

    assert report.processed == 2
    assert report.failures == [broken.id]
    assert report.sent == {"sms": 1}
    assert sent == [("+15550001111", confirmation_message("Warfarin"))]
    assert (await real_get_dose_event(healthy.id)).confirmation_sms_sent_at == T0
