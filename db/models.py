from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class UTCDateTime(TypeDecorator):
    """TIMESTAMPTZ that only accepts aware datetimes and always returns UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("datetime values must be timezone-aware")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class Profile(Base):
    """Read-only projection of the account owner."""

    __tablename__ = "profiles"

    id:         Mapped[str] = mapped_column(String(36), primary_key=True)
    first_name: Mapped[str | None] = mapped_column(String(120))
    phone:      Mapped[str | None] = mapped_column(String(32), index=True)


class Medication(Base):
    __tablename__ = "medications"

    id:                Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id:           Mapped[str] = mapped_column(ForeignKey("profiles.id"), index=True)
    name:              Mapped[str] = mapped_column(String(255))
    dosage:            Mapped[str | None] = mapped_column(String(128))
    is_critical:       Mapped[bool] = mapped_column(Boolean, default=False)
    caregiver_phone:   Mapped[str | None] = mapped_column(String(32))
    caregiver_email:   Mapped[str | None] = mapped_column(Text)
    caregiver_consent: Mapped[bool] = mapped_column(Boolean, default=False)


class DoseEvent(Base):
    __tablename__ = "dose_events"
    __table_args__ = (
        UniqueConstraint("medication_id", "scheduled_at", name="uq_dose_events_medication_scheduled"),
        Index("ix_dose_events_status_scheduled_at", "status", "scheduled_at"),
        Index("ix_dose_events_user_status", "user_id", "status"),
    )

    id:            Mapped[str] = mapped_column(String(36), primary_key=True)
    medication_id: Mapped[str] = mapped_column(ForeignKey("medications.id"))
    user_id:       Mapped[str] = mapped_column(ForeignKey("profiles.id"))
    scheduled_at:  Mapped[datetime] = mapped_column(UTCDateTime)
    status:        Mapped[str] = mapped_column(String(16), default="pending")
    confirmed_at:  Mapped[datetime | None] = mapped_column(UTCDateTime)

    # Idempotency guards: written at most once, never cleared.
    retry_1_sent_at:          Mapped[datetime | None] = mapped_column(UTCDateTime)
    retry_2_sent_at:          Mapped[datetime | None] = mapped_column(UTCDateTime)
    confirmation_sms_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    caregiver_sms_sent_at:    Mapped[datetime | None] = mapped_column(UTCDateTime)
    caregiver_email_sent_at:  Mapped[datetime | None] = mapped_column(UTCDateTime)
    caregiver_call_sent_at:   Mapped[datetime | None] = mapped_column(UTCDateTime)

    rescheduled_from_id: Mapped[str | None] = mapped_column(ForeignKey("dose_events.id"))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    medication: Mapped[Medication] = relationship(lazy="joined")
