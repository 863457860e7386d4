import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.services import dose_actions
from app.services.reply_resolver import NOTHING_PENDING_MESSAGE, resolve_reply
from app.types.dose_contract import EscalationPolicy
import db

T0 = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_first_resolution_wins(make_dose):
    dose = await make_dose()

    assert await db.resolve_dose(dose.id, "taken", T0) is True
    assert await db.resolve_dose(dose.id, "skipped", T0 + timedelta(minutes=1)) is False

    stored = await db.get_dose_event(dose.id)
    assert stored.status == "taken"
    assert stored.confirmed_at == T0


@pytest.mark.asyncio
async def test_concurrent_resolutions_apply_exactly_once(make_dose):
    dose = await make_dose()

    results = await asyncio.gather(
        db.resolve_dose(dose.id, "taken", T0),
        db.resolve_dose(dose.id, "skipped", T0),
        db.resolve_dose(dose.id, "taken", T0),
    )

    assert sum(results) == 1
    assert (await db.get_dose_event(dose.id)).status in {"taken", "skipped"}


@pytest.mark.asyncio
async def test_resolve_rejects_non_terminal_status(make_dose):
    dose = await make_dose()
    with pytest.raises(ValueError):
        await db.resolve_dose(dose.id, "snoozed", T0)


@pytest.mark.asyncio
async def test_guard_written_once(make_dose):
    dose = await make_dose()

    first = await db.mark_guard(dose.id, "caregiver_sms_sent_at", T0)
    second = await db.mark_guard(dose.id, "caregiver_sms_sent_at", T0 + timedelta(minutes=5))

    assert (first, second) == (True, False)
    assert (await db.get_dose_event(dose.id)).caregiver_sms_sent_at == T0


@pytest.mark.asyncio
async def test_guard_not_written_on_resolved_dose(make_dose):
    dose = await make_dose()
    await db.resolve_dose(dose.id, "skipped", T0)

    assert await db.mark_guard(dose.id, "retry_1_sent_at", T0) is False


@pytest.mark.asyncio
async def test_unknown_guard_rejected(make_dose):
    dose = await make_dose()
    with pytest.raises(ValueError):
        await db.mark_guard(dose.id, "status", T0)


@pytest.mark.asyncio
async def test_create_dose_event_is_idempotent(make_dose):
    dose = await make_dose()
    again = await db.create_dose_event(dose.medication_id, dose.user_id, T0)
    assert again.id == dose.id


@pytest.mark.asyncio
async def test_naive_datetime_raises(make_dose):
    dose = await make_dose()
    with pytest.raises(ValueError, match="timezone-aware"):
        await db.create_dose_event(dose.medication_id, dose.user_id, datetime(2026, 10, 19, 9, 0))


@pytest.mark.asyncio
async def test_snooze_closes_dose_and_opens_follow_up(make_dose):
    dose = await make_dose()
    await db.mark_guard(dose.id, "retry_1_sent_at", T0 + timedelta(minutes=10))

    now = T0 + timedelta(minutes=12)
    resp = await dose_actions.snooze(dose.id, 15, now=now)

    assert resp.applied and resp.status == "snoozed"
    original = await db.get_dose_event(dose.id)
    follow_up = await db.get_dose_event(resp.next_dose_id)
    assert original.status == "snoozed"
    assert follow_up.status == "pending"
    assert follow_up.scheduled_at == now + timedelta(minutes=15)
    assert follow_up.rescheduled_from_id == dose.id
    assert follow_up.retry_1_sent_at is None


@pytest.mark.asyncio
async def test_snooze_after_taken_is_ignored(make_dose):
    dose = await make_dose()
    await dose_actions.mark_taken(dose.id, now=T0)

    resp = await dose_actions.snooze(dose.id, 10, now=T0)

    assert resp.applied is False
    assert resp.status == "taken"
    assert resp.next_dose_id is None


@pytest.mark.asyncio
async def test_mark_skipped_reports_current_status_when_late(make_dose):
    dose = await make_dose()
    await dose_actions.mark_skipped(dose.id, now=T0)

    resp = await dose_actions.mark_taken(dose.id, now=T0)

    assert resp.applied is False
    assert resp.status == "skipped"


@pytest.mark.asyncio
async def test_local_taken_races_sms_skip(make_dose, scheduler, center):
    dose = await make_dose()
    await db.mark_guard(dose.id, "confirmation_sms_sent_at", T0)
    scheduler.schedule(dose.id, dose.scheduled_at)
    now = T0 + timedelta(minutes=2)

    local, reply = await asyncio.gather(
        scheduler.on_action(dose.id, "taken", now=now),
        resolve_reply("+15551234567", "SKIP", policy=EscalationPolicy(), now=now),
    )

    assert local.applied != reply.applied
    stored = await db.get_dose_event(dose.id)
    assert stored.status == ("taken" if local.applied else "skipped")
    if not reply.applied:
        assert reply.message == NOTHING_PENDING_MESSAGE
    assert center.triggers == {}


@pytest.mark.asyncio
async def test_snooze_onto_existing_dose_is_not_applied(make_dose):
    dose = await make_dose()
    now = T0 + timedelta(minutes=5)
    occupied = await db.create_dose_event(dose.medication_id, dose.user_id, now + timedelta(minutes=10))

    resp = await dose_actions.snooze(dose.id, 10, now=now)

    assert resp.applied is False
    assert resp.status == "pending"
    assert resp.next_dose_id is None
    assert (await db.get_dose_event(dose.id)).status == "pending"
    assert (await db.get_dose_event(occupied.id)).rescheduled_from_id is None
