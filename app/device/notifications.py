"""On-device reminder scheduling.

``NotificationCenter`` is the boundary to the platform notification API. Every
trigger is keyed by id, so scheduling an id that already exists replaces it.
``LocalReminderScheduler`` derives those ids from dose ids; cancelling a dose
removes its initial trigger and any retry notifications at once.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Literal, Optional, Protocol

from app.services import dose_actions
from app.types.dose_contract import PENDING, DoseActionResponse, NotificationKind, NotificationTrigger, TriggerData
import db

_LOGGER = logging.getLogger(__name__)

REMINDER_TITLE = "Medication Reminder"


class NotificationCenter(Protocol):
    def schedule(self, trigger: NotificationTrigger) -> None: ...

    def cancel(self, trigger_id: str) -> None: ...

    def trigger_ids(self) -> List[str]: ...


class InMemoryNotificationCenter:
    """Notification center used by tests and headless device simulations."""

    def __init__(self) -> None:
        self.triggers: Dict[str, NotificationTrigger] = {}

    def schedule(self, trigger: NotificationTrigger) -> None:
        self.triggers[trigger.id] = trigger

    def cancel(self, trigger_id: str) -> None:
        self.triggers.pop(trigger_id, None)

    def trigger_ids(self) -> List[str]:
        return list(self.triggers)


def trigger_id(dose_id: str, kind: NotificationKind = "initial") -> str:
    if kind in ("initial", "snooze"):
        return f"dose:{dose_id}"
    return f"dose:{dose_id}:{kind}"


def dose_id_of(trigger_id_: str) -> Optional[str]:
    parts = trigger_id_.split(":")
    if len(parts) < 2 or parts[0] != "dose":
        return None
    return parts[1]


class LocalReminderScheduler:
    def __init__(self, center: NotificationCenter) -> None:
        self.center = center

    def schedule(
        self,
        dose_id: str,
        scheduled_at: datetime,
        details: Optional[dict] = None,
        kind: NotificationKind = "initial",
    ) -> NotificationTrigger:
        name = (details or {}).get("medication_name") or "your medication"
        trigger = NotificationTrigger(
            id=trigger_id(dose_id, kind),
            title=REMINDER_TITLE if kind == "initial" else "Snoozed Medication Reminder",
            body=f"It's time to take {name}.",
            fire_at=scheduled_at,
            data=TriggerData(dose_id=dose_id, kind=kind),
        )
        self.center.schedule(trigger)
        return trigger

    def present(self, dose_id: str, kind: NotificationKind, body: str) -> NotificationTrigger:
        """Show a notification immediately; re-presenting the same kind replaces it."""
        trigger = NotificationTrigger(
            id=trigger_id(dose_id, kind),
            title=REMINDER_TITLE,
            body=body,
            fire_at=None,
            data=TriggerData(dose_id=dose_id, kind=kind),
        )
        self.center.schedule(trigger)
        return trigger

    def cancel(self, dose_id: str) -> int:
        prefix = trigger_id(dose_id)
        doomed = [t for t in self.center.trigger_ids() if t == prefix or t.startswith(prefix + ":")]
        for t in doomed:
            self.center.cancel(t)
        return len(doomed)

    async def sync(self) -> List[str]:
        """Cancel triggers for doses resolved elsewhere (e.g. by an SMS reply)."""
        known = {dose_id_of(t) for t in self.center.trigger_ids()} - {None}
        if not known:
            return []
        statuses = await db.fetch_statuses(known)
        stale = sorted(d for d in known if statuses.get(d) != PENDING)
        for dose_id in stale:
            self.cancel(dose_id)
        if stale:
            _LOGGER.info("Cancelled local reminders for %d resolved doses", len(stale))
        return stale

    async def on_action(
        self,
        dose_id: str,
        action: Literal["taken", "skip", "snooze"],
        snooze_minutes: int = dose_actions.DEFAULT_SNOOZE_MINUTES,
        now: Optional[datetime] = None,
    ) -> DoseActionResponse:
        if action == "taken":
            return await dose_actions.mark_taken(dose_id, scheduler=self, now=now)
        if action == "skip":
            return await dose_actions.mark_skipped(dose_id, scheduler=self, now=now)
        if action == "snooze":
            return await dose_actions.snooze(dose_id, snooze_minutes, scheduler=self, now=now)
        raise ValueError(f"unknown notification action {action!r}")
