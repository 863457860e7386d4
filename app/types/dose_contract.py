"""Pydantic models shared by the escalation jobs, the device layer and the
webhooks.

Kept free of FastAPI and database imports so workers and tests can use them
directly.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

DoseStatus = Literal["pending", "taken", "skipped", "snoozed"]

PENDING: DoseStatus = "pending"
TAKEN: DoseStatus = "taken"
SKIPPED: DoseStatus = "skipped"
SNOOZED: DoseStatus = "snoozed"

GuardField = Literal[
    "retry_1_sent_at",
    "retry_2_sent_at",
    "confirmation_sms_sent_at",
    "caregiver_sms_sent_at",
    "caregiver_email_sent_at",
    "caregiver_call_sent_at",
]

GUARD_FIELDS: tuple[str, ...] = (
    "retry_1_sent_at",
    "retry_2_sent_at",
    "confirmation_sms_sent_at",
    "caregiver_sms_sent_at",
    "caregiver_email_sent_at",
    "caregiver_call_sent_at",
)

Channel = Literal["sms", "email", "call", "local"]
NotificationKind = Literal["initial", "retry_1", "retry_2", "snooze"]


class EscalationPolicy(BaseModel):
    """Timing and channel policy handed to every job invocation."""

    retry_1_minutes: int = Field(default=10, ge=0)
    retry_2_minutes: int = Field(default=30, ge=0)
    # Local retries stop here; the server caregiver threshold is independent.
    local_cutoff_minutes: int = Field(default=60, ge=1)
    escalation_minutes: int = Field(default=60, ge=1)
    confirmation_lookback_minutes: int = Field(default=5, ge=0)
    confirmation_lookahead_minutes: int = Field(default=20, ge=0)
    reply_lookback_minutes: int = Field(default=120, ge=1)
    enable_calls: bool = False
    delivery_timeout_seconds: float = Field(default=10.0, gt=0)

    @field_validator("retry_2_minutes")
    def _after_retry_1(cls, v, info):  # noqa: N805
        first = info.data.get("retry_1_minutes")
        if first is not None and v <= first:
            raise ValueError("retry_2_minutes must be later than retry_1_minutes")
        return v

    @field_validator("local_cutoff_minutes")
    def _after_retry_2(cls, v, info):  # noqa: N805
        second = info.data.get("retry_2_minutes")
        if second is not None and v <= second:
            raise ValueError("local_cutoff_minutes must be later than retry_2_minutes")
        return v

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> "EscalationPolicy":
        values: Dict[str, Any] = {
            "escalation_minutes": settings.ESCALATION_MINUTES,
            "reply_lookback_minutes": settings.REPLY_LOOKBACK_MINUTES,
            "enable_calls": settings.ENABLE_CAREGIVER_CALLS,
            "delivery_timeout_seconds": settings.DELIVERY_TIMEOUT_SECONDS,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class DeliveryResult(BaseModel):
    """Outcome of one outbound gateway call. Anything but ``ok`` is a failure."""

    channel: Channel
    ok: bool
    detail: Optional[Dict[str, Any]] = None


class TriggerData(BaseModel):
    dose_id: str
    kind: NotificationKind


class NotificationTrigger(BaseModel):
    """An on-device notification. Scheduling an existing ``id`` replaces it."""

    id: str
    title: str
    body: str
    fire_at: Optional[datetime] = None  # None → present immediately
    data: TriggerData


class ReplyOutcome(BaseModel):
    """Result of handling one inbound SMS reply."""

    message: str
    action: Optional[Literal["taken", "skipped"]] = None
    dose_id: Optional[str] = None
    applied: bool = False


class JobReport(BaseModel):
    """Counters returned by each periodic job run."""

    job: str
    processed: int = 0
    sent: Dict[str, int] = Field(default_factory=dict)
    skipped: int = 0
    failures: List[str] = Field(default_factory=list)
    ran_at: Optional[datetime] = None

    def count(self, channel: str) -> None:
        self.sent[channel] = self.sent.get(channel, 0) + 1


class DoseActionResponse(BaseModel):
    dose_id: str
    applied: bool
    status: Optional[DoseStatus] = None
    next_dose_id: Optional[str] = None
