"""Caregiver escalation dispatcher.

For pending doses older than ``escalation_minutes`` whose medication is both
critical and caregiver-consented, alert the caregiver on every available
channel. Channels are independent: each has its own guard, set only after the
provider accepted the message, and a failure on one never blocks the others.
Alerts name the patient but never the medication or dose.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, NamedTuple, Optional

from app.celery_app import celery_app
from app.types.dose_contract import PENDING, EscalationPolicy, JobReport
from app.utils import mailer, sms, voice
from app.utils.delivery import deliver
from config import settings
from db.models import DoseEvent, Profile
import db

_LOGGER = logging.getLogger(__name__)


class _Attempt(NamedTuple):
    channel: str
    guard: str
    send: Callable[..., Any]
    args: tuple


def caregiver_message(first_name: Optional[str]) -> str:
    name = (first_name or "").strip() or "the user"
    return f"Reminder alert: {name} hasn't confirmed a scheduled medication reminder. Please check in."


def plan_attempts(dose: DoseEvent, message: str, policy: EscalationPolicy) -> List[_Attempt]:
    med = dose.medication
    if med is None or not (med.is_critical and med.caregiver_consent):
        return []

    attempts: List[_Attempt] = []
    if med.caregiver_phone and dose.caregiver_sms_sent_at is None:
        attempts.append(_Attempt("sms", "caregiver_sms_sent_at", sms.send_sms, (med.caregiver_phone, message)))
    if med.caregiver_email and dose.caregiver_email_sent_at is None:
        attempts.append(
            _Attempt(
                "email",
                "caregiver_email_sent_at",
                mailer.send_email,
                (med.caregiver_email, settings.ALERT_SUBJECT, message),
            )
        )
    if policy.enable_calls and med.caregiver_phone and dose.caregiver_call_sent_at is None:
        attempts.append(_Attempt("call", "caregiver_call_sent_at", voice.place_call, (med.caregiver_phone, message)))
    return attempts


async def escalate_caregivers(
    policy: Optional[EscalationPolicy] = None,
    now: Optional[datetime] = None,
) -> JobReport:
    policy = policy or EscalationPolicy.from_settings(settings)
    now = now or datetime.now(timezone.utc)
    report = JobReport(job="caregiver_escalation", ran_at=now)

    cutoff = now - timedelta(minutes=policy.escalation_minutes)
    doses = await db.fetch_escalation_candidates(cutoff)
    profiles = await db.fetch_profiles(d.user_id for d in doses)

    for dose in doses:
        report.processed += 1
        try:
            await _escalate_one(dose, profiles.get(dose.user_id), policy, now, report)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("Caregiver escalation failed for dose %s", dose.id)
            report.failures.append(dose.id)

    _LOGGER.info(
        "Caregiver escalation: processed=%d sent=%s failures=%d cutoff=%s",
        report.processed,
        report.sent,
        len(report.failures),
        cutoff.isoformat(),
    )
    return report


async def _escalate_one(
    dose: DoseEvent,
    profile: Optional[Profile],
    policy: EscalationPolicy,
    now: datetime,
    report: JobReport,
) -> None:
    attempts = plan_attempts(dose, caregiver_message(profile.first_name if profile else None), policy)
    if not attempts:
        report.skipped += 1
        return

    for attempt in attempts:
        try:
            await _attempt_channel(dose.id, attempt, policy, now, report)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("Caregiver %s failed for dose %s", attempt.channel, dose.id)
            report.failures.append(f"{dose.id}:{attempt.channel}")


async def _attempt_channel(
    dose_id: str,
    attempt: _Attempt,
    policy: EscalationPolicy,
    now: datetime,
    report: JobReport,
) -> None:
    current = await db.get_dose_event(dose_id)
    if current is None or current.status != PENDING or getattr(current, attempt.guard) is not None:
        return

    result = await deliver(attempt.channel, attempt.send, *attempt.args, timeout=policy.delivery_timeout_seconds)
    if not result.ok:
        _LOGGER.warning("Caregiver %s not delivered for dose %s: %s", attempt.channel, dose_id, result.detail)
        report.failures.append(f"{dose_id}:{attempt.channel}")
        return

    if await db.mark_guard(dose_id, attempt.guard, now):
        report.count(attempt.channel)


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------

async def _run(policy: EscalationPolicy) -> JobReport:
    try:
        return await escalate_caregivers(policy)
    finally:
        await db.dispose_engine()


@celery_app.task(name="app.workers.escalation.escalate", bind=True, max_retries=3)
def escalate(self, escalation_minutes: Optional[int] = None, enable_calls: Optional[bool] = None):  # noqa: D401
    """Run one caregiver escalation pass with optional policy overrides."""
    policy = EscalationPolicy.from_settings(
        settings, escalation_minutes=escalation_minutes, enable_calls=enable_calls
    )
    try:
        report = asyncio.run(_run(policy))
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc, countdown=30)
    return report.model_dump(mode="json")
