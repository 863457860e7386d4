"""create profiles, medications and dose_events

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _guard(name: str) -> sa.Column:
    return sa.Column(name, sa.TIMESTAMP(timezone=True), nullable=True)


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("first_name", sa.String(length=120), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
    )
    op.create_index("ix_profiles_phone", "profiles", ["phone"])

    op.create_table(
        "medications",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("dosage", sa.String(length=128), nullable=True),
        sa.Column("is_critical", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("caregiver_phone", sa.String(length=32), nullable=True),
        sa.Column("caregiver_email", sa.Text(), nullable=True),
        sa.Column("caregiver_consent", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_medications_user_id", "medications", ["user_id"])

    op.create_table(
        "dose_events",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("medication_id", sa.String(length=36), sa.ForeignKey("medications.id"), nullable=False),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("scheduled_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("confirmed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        _guard("retry_1_sent_at"),
        _guard("retry_2_sent_at"),
        _guard("confirmation_sms_sent_at"),
        _guard("caregiver_sms_sent_at"),
        _guard("caregiver_email_sent_at"),
        _guard("caregiver_call_sent_at"),
        sa.Column("rescheduled_from_id", sa.String(length=36), sa.ForeignKey("dose_events.id"), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("medication_id", "scheduled_at", name="uq_dose_events_medication_scheduled"),
        sa.CheckConstraint(
            "status IN ('pending', 'taken', 'skipped', 'snoozed')",
            name="ck_dose_events_status",
        ),
    )
    op.create_index("ix_dose_events_status_scheduled_at", "dose_events", ["status", "scheduled_at"])
    op.create_index("ix_dose_events_user_status", "dose_events", ["user_id", "status"])


def downgrade() -> None:
    op.drop_index("ix_dose_events_user_status", table_name="dose_events")
    op.drop_index("ix_dose_events_status_scheduled_at", table_name="dose_events")
    op.drop_table("dose_events")
    op.drop_index("ix_medications_user_id", table_name="medications")
    op.drop_table("medications")
    op.drop_index("ix_profiles_phone", table_name="profiles")
    op.drop_table("profiles")
