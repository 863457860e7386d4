"""Server confirmation dispatcher.

Texts the user "reply TAKEN or SKIP" for pending critical doses scheduled in
``[now - confirmation_lookback_minutes, now + confirmation_lookahead_minutes]``.
The window is wider than the beat cadence so every dose falls into at least
one run; ``confirmation_sms_sent_at`` keeps repeat runs from re-sending.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.celery_app import celery_app
from app.types.dose_contract import PENDING, EscalationPolicy, JobReport
from app.utils import sms
from app.utils.delivery import deliver
from config import settings
from db.models import DoseEvent, Profile
import db

_LOGGER = logging.getLogger(__name__)


def confirmation_message(medication_name: Optional[str]) -> str:
    return f"Time to take {medication_name or 'your medication'}. Reply TAKEN or SKIP to confirm."


async def dispatch_confirmations(
    policy: Optional[EscalationPolicy] = None,
    now: Optional[datetime] = None,
) -> JobReport:
    policy = policy or EscalationPolicy.from_settings(settings)
    now = now or datetime.now(timezone.utc)
    report = JobReport(job="confirmation_sms", ran_at=now)

    start = now - timedelta(minutes=policy.confirmation_lookback_minutes)
    end = now + timedelta(minutes=policy.confirmation_lookahead_minutes)
    doses = await db.fetch_confirmation_candidates(start, end)
    profiles = await db.fetch_profiles(d.user_id for d in doses)
    _LOGGER.info("Found %d critical doses needing a confirmation SMS", len(doses))

    for dose in doses:
        report.processed += 1
        try:
            await _confirm_one(dose, profiles.get(dose.user_id), policy, now, report)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("Confirmation SMS failed for dose %s", dose.id)
            report.failures.append(dose.id)
    return report


async def _confirm_one(
    dose: DoseEvent,
    profile: Optional[Profile],
    policy: EscalationPolicy,
    now: datetime,
    report: JobReport,
) -> None:
    phone = profile.phone if profile else None
    if not phone:
        _LOGGER.info("Skipping dose %s: no phone number for user %s", dose.id, dose.user_id)
        report.skipped += 1
        return

    current = await db.get_dose_event(dose.id)
    if current is None or current.status != PENDING or current.confirmation_sms_sent_at is not None:
        report.skipped += 1
        return

    result = await deliver(
        "sms",
        sms.send_sms,
        phone,
        confirmation_message(dose.medication.name if dose.medication else None),
        timeout=policy.delivery_timeout_seconds,
    )
    if not result.ok:
        _LOGGER.error("Failed to send confirmation SMS for dose %s: %s", dose.id, result.detail)
        report.failures.append(dose.id)
        return

    if await db.mark_guard(dose.id, "confirmation_sms_sent_at", now):
        report.count("sms")
        _LOGGER.info("Confirmation SMS sent for dose %s", dose.id)


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------

async def _run(policy: EscalationPolicy) -> JobReport:
    try:
        return await dispatch_confirmations(policy)
    finally:
        await db.dispose_engine()


@celery_app.task(name="app.workers.confirmation.dispatch", bind=True, max_retries=3)
def dispatch(self):  # noqa: D401
    """Run one confirmation pass; a failed candidate fetch is retried."""
    try:
        report = asyncio.run(_run(EscalationPolicy.from_settings(settings)))
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc, countdown=30)
    return report.model_dump(mode="json")
