"""
Async DB helpers for the dose escalation engine.
Uses SQLAlchemy 2.0 (asyncpg in production, aiosqlite in tests) – no raw SQL
strings in app code.

Every state change is a single conditional UPDATE. A helper returns ``True``
only when its WHERE clause matched, which is how first-writer-wins and the
write-once guards are enforced without in-process locks.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Iterable, Sequence
from uuid import uuid4

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.types.dose_contract import GUARD_FIELDS, PENDING, SKIPPED, SNOOZED, TAKEN
from db.models import Base, DoseEvent, Medication, Profile

__all__ = ["Base", "DoseEvent", "Medication", "Profile"]

_LOGGER = logging.getLogger(__name__)

# ──────────────────────────────────────────────────────────────────────
# 1. Lazy engine / session factory
# ──────────────────────────────────────────────────────────────────────
_engine = None
_session_maker: async_sessionmaker[AsyncSession] | None = None

def _build_url() -> str:
    url = os.getenv("DATABASE_URL") or os.getenv("DATABASE_PUBLIC_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    if url.startswith("sqlite"):
        return url
    if "+asyncpg" not in url:
        url = url.replace("postgres://", "postgresql+asyncpg://", 1).replace(
            "postgresql://", "postgresql+asyncpg://", 1
        )
    return url

def get_engine():
    global _engine
    if _engine is None:
        url = _build_url()
        if url.startswith("sqlite"):
            _engine = create_async_engine(url)
        else:
            _engine = create_async_engine(url, pool_size=5, max_overflow=5)
    return _engine

@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(get_engine(), expire_on_commit=False)
    async with _session_maker() as session:
        yield session


async def create_all():
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine():
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
    _session_maker = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

# ──────────────────────────────────────────────────────────────────────
# 2. Profiles & medications
# ──────────────────────────────────────────────────────────────────────

async def upsert_profile(profile_id: str, first_name: str | None, phone: str | None) -> Profile:
    async with session_scope() as s:
        row = await s.get(Profile, profile_id)
        if row is None:
            row = Profile(id=profile_id)
            s.add(row)
        row.first_name = first_name
        row.phone = phone
        await s.commit()
        return row


async def insert_medication(
    user_id: str,
    name: str,
    dosage: str | None = None,
    *,
    is_critical: bool = False,
    caregiver_phone: str | None = None,
    caregiver_email: str | None = None,
    caregiver_consent: bool = False,
    medication_id: str | None = None,
) -> Medication:
    med = Medication(
        id=medication_id or str(uuid4()),
        user_id=user_id,
        name=name,
        dosage=dosage,
        is_critical=is_critical,
        caregiver_phone=caregiver_phone,
        caregiver_email=caregiver_email,
        caregiver_consent=caregiver_consent,
    )
    async with session_scope() as s:
        s.add(med)
        await s.commit()
    return med


async def fetch_profiles(ids: Iterable[str]) -> dict[str, Profile]:
    ids = list(set(ids))
    if not ids:
        return {}
    async with session_scope() as s:
        res = await s.execute(select(Profile).where(Profile.id.in_(ids)))
        return {p.id: p for p in res.scalars()}


async def find_profile_by_phone(candidates: Sequence[str]) -> Profile | None:
    if not candidates:
        return None
    async with session_scope() as s:
        res = await s.execute(
            select(Profile).where(Profile.phone.in_(list(candidates))).order_by(Profile.id).limit(1)
        )
        return res.scalar_one_or_none()

# ──────────────────────────────────────────────────────────────────────
# 3. Dose events
# ──────────────────────────────────────────────────────────────────────

async def create_dose_event(
    medication_id: str,
    user_id: str,
    scheduled_at: datetime,
    *,
    rescheduled_from_id: str | None = None,
) -> DoseEvent:
    """Insert a pending dose; an existing (medication, scheduled_at) row is returned instead."""
    if scheduled_at.tzinfo is None:
        raise ValueError("scheduled_at must be timezone-aware")
    dose = DoseEvent(
        id=str(uuid4()),
        medication_id=medication_id,
        user_id=user_id,
        scheduled_at=scheduled_at,
        status=PENDING,
        rescheduled_from_id=rescheduled_from_id,
    )
    async with session_scope() as s:
        s.add(dose)
        try:
            await s.commit()
            return dose
        except IntegrityError:
            await s.rollback()
            res = await s.execute(
                select(DoseEvent).where(
                    DoseEvent.medication_id == medication_id,
                    DoseEvent.scheduled_at == scheduled_at,
                )
            )
            return res.scalar_one()


async def get_dose_event(dose_id: str) -> DoseEvent | None:
    async with session_scope() as s:
        return await s.get(DoseEvent, dose_id)


async def fetch_pending_for_user(user_id: str) -> list[DoseEvent]:
    async with session_scope() as s:
        res = await s.execute(
            select(DoseEvent)
            .where(DoseEvent.user_id == user_id, DoseEvent.status == PENDING)
            .order_by(DoseEvent.scheduled_at)
        )
        return list(res.scalars())


async def fetch_statuses(dose_ids: Iterable[str]) -> dict[str, str]:
    ids = list(set(dose_ids))
    if not ids:
        return {}
    async with session_scope() as s:
        res = await s.execute(select(DoseEvent.id, DoseEvent.status).where(DoseEvent.id.in_(ids)))
        return {row.id: row.status for row in res}


async def fetch_confirmation_candidates(start: datetime, end: datetime, limit: int = 500) -> list[DoseEvent]:
    """Pending critical doses in [start, end] that have not been texted yet."""
    async with session_scope() as s:
        res = await s.execute(
            select(DoseEvent)
            .join(Medication, Medication.id == DoseEvent.medication_id)
            .where(
                DoseEvent.status == PENDING,
                Medication.is_critical.is_(True),
                DoseEvent.confirmation_sms_sent_at.is_(None),
                DoseEvent.scheduled_at >= start,
                DoseEvent.scheduled_at <= end,
            )
            .order_by(DoseEvent.scheduled_at)
            .limit(limit)
        )
        return list(res.scalars().unique())


async def fetch_escalation_candidates(cutoff: datetime, limit: int = 500) -> list[DoseEvent]:
    """Pending doses at or before *cutoff* whose medication passes the consent gate."""
    async with session_scope() as s:
        res = await s.execute(
            select(DoseEvent)
            .join(Medication, Medication.id == DoseEvent.medication_id)
            .where(
                DoseEvent.status == PENDING,
                DoseEvent.scheduled_at <= cutoff,
                Medication.is_critical.is_(True),
                Medication.caregiver_consent.is_(True),
            )
            .order_by(DoseEvent.scheduled_at)
            .limit(limit)
        )
        return list(res.scalars().unique())


async def confirmable_doses(user_id: str, since: datetime) -> list[DoseEvent]:
    """Pending, SMS-confirmed doses for *user_id*, newest scheduled first."""
    async with session_scope() as s:
        res = await s.execute(
            select(DoseEvent)
            .where(
                DoseEvent.user_id == user_id,
                DoseEvent.status == PENDING,
                DoseEvent.confirmation_sms_sent_at.is_not(None),
                DoseEvent.scheduled_at >= since,
            )
            .order_by(DoseEvent.scheduled_at.desc())
        )
        return list(res.scalars().unique())

# ──────────────────────────────────────────────────────────────────────
# 4. Conditional writes
# ──────────────────────────────────────────────────────────────────────

async def resolve_dose(dose_id: str, status: str, now: datetime | None = None) -> bool:
    """pending → taken | skipped. Returns False if the dose was already resolved."""
    if status not in (TAKEN, SKIPPED):
        raise ValueError(f"cannot resolve a dose to {status!r}")
    now = now or _utcnow()
    async with session_scope() as s:
        res = await s.execute(
            update(DoseEvent)
            .where(DoseEvent.id == dose_id, DoseEvent.status == PENDING)
            .values(status=status, confirmed_at=now, updated_at=func.now())
        )
        await s.commit()
        return res.rowcount == 1


async def snooze_dose(dose_id: str, minutes: int, now: datetime | None = None) -> DoseEvent | None:
    """pending → snoozed, then insert the follow-up pending dose.

    Returns the new dose, or None when the original was no longer pending or
    the medication already has a dose at the snoozed time. In the latter case
    nothing is written.
    """
    if minutes <= 0:
        raise ValueError("snooze minutes must be positive")
    now = now or _utcnow()
    rescheduled_at = now + timedelta(minutes=minutes)
    async with session_scope() as s:
        res = await s.execute(
            update(DoseEvent)
            .where(DoseEvent.id == dose_id, DoseEvent.status == PENDING)
            .values(status=SNOOZED, updated_at=func.now())
            .returning(DoseEvent.medication_id, DoseEvent.user_id)
        )
        row = res.first()
        if row is None:
            await s.rollback()
            return None
        follow_up = DoseEvent(
            id=str(uuid4()),
            medication_id=row.medication_id,
            user_id=row.user_id,
            scheduled_at=rescheduled_at,
            status=PENDING,
            rescheduled_from_id=dose_id,
        )
        s.add(follow_up)
        try:
            await s.commit()
        except IntegrityError:
            await s.rollback()
            _LOGGER.warning(
                "Snooze of dose %s collides with an existing dose at %s; left pending",
                dose_id,
                rescheduled_at.isoformat(),
            )
            return None
        return follow_up


async def mark_guard(dose_id: str, guard: str, now: datetime | None = None) -> bool:
    """Set *guard* iff it is still null and the dose is still pending."""
    if guard not in GUARD_FIELDS:
        raise ValueError(f"unknown guard column {guard!r}")
    column = getattr(DoseEvent, guard)
    now = now or _utcnow()
    async with session_scope() as s:
        res = await s.execute(
            update(DoseEvent)
            .where(and_(DoseEvent.id == dose_id, DoseEvent.status == PENDING, column.is_(None)))
            .values({guard: now, "updated_at": func.now()})
        )
        await s.commit()
        return res.rowcount == 1
