"""Local retry poller, run by the device background task every 1–5 minutes.

For each pending dose of the signed-in user:

* ``retry_1_minutes ≤ elapsed < retry_2_minutes`` → gentle reminder, sets ``retry_1_sent_at``
* ``retry_2_minutes ≤ elapsed < local_cutoff_minutes`` → stronger reminder, sets ``retry_2_sent_at``
* ``elapsed ≥ local_cutoff_minutes`` → nothing; the caregiver tier runs server-side

The notification is presented first and the guard written second. Both
steps are idempotent (replace-by-id, conditional UPDATE) so overlapping runs
cannot stack duplicate reminders.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from app.device.notifications import LocalReminderScheduler
from app.types.dose_contract import PENDING, EscalationPolicy, JobReport, NotificationKind
from db.models import DoseEvent
import db

_LOGGER = logging.getLogger(__name__)

RETRY_BODIES = {
    "retry_1": "It's time to take your medication.",
    "retry_2": "Reminder: Please take your medication.",
}


def elapsed_minutes(scheduled_at: datetime, now: datetime) -> float:
    return (now - scheduled_at).total_seconds() / 60


def retry_tier(elapsed: float, policy: EscalationPolicy) -> Optional[NotificationKind]:
    if policy.retry_1_minutes <= elapsed < policy.retry_2_minutes:
        return "retry_1"
    if policy.retry_2_minutes <= elapsed < policy.local_cutoff_minutes:
        return "retry_2"
    return None


async def run_retry_poller(
    user_id: str,
    scheduler: LocalReminderScheduler,
    policy: Optional[EscalationPolicy] = None,
    now: Optional[datetime] = None,
) -> JobReport:
    policy = policy or EscalationPolicy()
    now = now or datetime.now(timezone.utc)
    report = JobReport(job="local_retry", ran_at=now)

    try:
        doses = await db.fetch_pending_for_user(user_id)
    except Exception as exc:  # noqa: BLE001
        _LOGGER.error("Retry poller could not load doses for %s: %s", user_id, exc)
        report.failures.append(f"fetch:{user_id}")
        return report

    for dose in doses:
        report.processed += 1
        try:
            await _escalate_locally(dose, scheduler, policy, now, report)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("Local escalation failed for dose %s", dose.id)
            report.failures.append(dose.id)
    return report


async def _escalate_locally(
    dose: DoseEvent,
    scheduler: LocalReminderScheduler,
    policy: EscalationPolicy,
    now: datetime,
    report: JobReport,
) -> None:
    tier = retry_tier(elapsed_minutes(dose.scheduled_at, now), policy)
    if tier is None:
        report.skipped += 1
        return

    guard = f"{tier}_sent_at"
    if getattr(dose, guard) is not None:
        report.skipped += 1
        return

    scheduler.present(dose.id, tier, RETRY_BODIES[tier])
    if await db.mark_guard(dose.id, guard, now):
        report.count(tier)
        return

    # Another run won, or the dose was resolved mid-flight.
    report.skipped += 1
    current = await db.get_dose_event(dose.id)
    if current is not None and current.status != PENDING:
        scheduler.cancel(dose.id)
    _LOGGER.debug("Guard %s not written for dose %s", guard, dose.id)
