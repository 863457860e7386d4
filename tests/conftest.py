from datetime import datetime, timezone
from uuid import uuid4

import pytest
import pytest_asyncio

from app.device.notifications import InMemoryNotificationCenter, LocalReminderScheduler
import db

T0 = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def database(tmp_path, monkeypatch):
    """Fresh file-backed SQLite database per test; separate connections can race."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path}/doses.db")
    monkeypatch.delenv("DATABASE_PUBLIC_URL", raising=False)
    await db.dispose_engine()
    await db.create_all()
    yield
    await db.dispose_engine()


@pytest.fixture
def make_dose(database):
    """Factory: ``await make_dose(...)`` seeds a profile, a medication and one pending dose."""

    async def _make(
        scheduled_at=T0,
        *,
        user_id="user-1",
        first_name="Ana",
        phone="+15551234567",
        name="Warfarin",
        is_critical=True,
        caregiver_phone="+15559876543",
        caregiver_email="carer@example.com",
        caregiver_consent=True,
    ):
        await db.upsert_profile(user_id, first_name, phone)
        med = await db.insert_medication(
            user_id,
            name,
            "5mg",
            is_critical=is_critical,
            caregiver_phone=caregiver_phone,
            caregiver_email=caregiver_email,
            caregiver_consent=caregiver_consent,
            medication_id=str(uuid4()),
        )
        return await db.create_dose_event(med.id, user_id, scheduled_at)

    return _make


@pytest.fixture
def center():
    return InMemoryNotificationCenter()


@pytest.fixture
def scheduler(center):
    return LocalReminderScheduler(center)
