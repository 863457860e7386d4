"""User-initiated dose transitions: Taken, Skip and Snooze.

All three are first-writer-wins. A transition attempted on a dose that is no
longer pending is reported with ``applied=False`` and changes nothing.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from app.types.dose_contract import SKIPPED, TAKEN, DoseActionResponse
import db

if TYPE_CHECKING:
    from app.device.notifications import LocalReminderScheduler

_LOGGER = logging.getLogger(__name__)

DEFAULT_SNOOZE_MINUTES = 10


async def _resolve(
    dose_id: str,
    status: str,
    scheduler: Optional["LocalReminderScheduler"],
    now: Optional[datetime],
) -> DoseActionResponse:
    applied = await db.resolve_dose(dose_id, status, now or datetime.now(timezone.utc))
    if scheduler is not None:
        scheduler.cancel(dose_id)
    if not applied:
        _LOGGER.info("Dose %s already resolved; %s ignored", dose_id, status)
        current = await db.get_dose_event(dose_id)
        return DoseActionResponse(dose_id=dose_id, applied=False, status=current.status if current else None)
    return DoseActionResponse(dose_id=dose_id, applied=True, status=status)


async def mark_taken(
    dose_id: str,
    *,
    scheduler: Optional["LocalReminderScheduler"] = None,
    now: Optional[datetime] = None,
) -> DoseActionResponse:
    return await _resolve(dose_id, TAKEN, scheduler, now)


async def mark_skipped(
    dose_id: str,
    *,
    scheduler: Optional["LocalReminderScheduler"] = None,
    now: Optional[datetime] = None,
) -> DoseActionResponse:
    return await _resolve(dose_id, SKIPPED, scheduler, now)


async def snooze(
    dose_id: str,
    minutes: int = DEFAULT_SNOOZE_MINUTES,
    *,
    scheduler: Optional["LocalReminderScheduler"] = None,
    now: Optional[datetime] = None,
) -> DoseActionResponse:
    """Close the dose as snoozed and open a fresh pending dose ``minutes`` later."""
    follow_up = await db.snooze_dose(dose_id, minutes, now or datetime.now(timezone.utc))
    if follow_up is None:
        current = await db.get_dose_event(dose_id)
        return DoseActionResponse(dose_id=dose_id, applied=False, status=current.status if current else None)

    if scheduler is not None:
        scheduler.cancel(dose_id)
        fresh = await db.get_dose_event(follow_up.id)
        scheduler.schedule(
            fresh.id,
            fresh.scheduled_at,
            {"medication_name": fresh.medication.name if fresh.medication else None},
            kind="snooze",
        )
    return DoseActionResponse(dose_id=dose_id, applied=True, status="snoozed", next_dose_id=follow_up.id)
