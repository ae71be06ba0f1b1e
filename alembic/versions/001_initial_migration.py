"""Initial migration - create scheduling tables.

Revision ID: 001
Revises:
Create Date: 2025-07-01 00:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            postgresql.TIMESTAMP(timezone=False),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            postgresql.TIMESTAMP(timezone=False),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    """Upgrade database schema."""
    # Enable pgcrypto extension
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    # Create patients table
    op.create_table(
        "patients",
        sa.Column(
            "id", postgresql.UUID(), server_default=sa.text("gen_random_uuid()"), nullable=False
        ),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("phone", sa.VARCHAR(length=32), nullable=True),
        sa.Column("email", sa.VARCHAR(length=320), nullable=True),
        sa.Column("messaging_id", sa.Text(), nullable=True),
        sa.Column("preferred_channel", sa.VARCHAR(length=16), nullable=True),
        sa.Column("visibility", sa.VARCHAR(length=16), server_default="visible", nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "preferred_channel IS NULL OR preferred_channel IN ('email', 'sms', 'push')",
            name="patients_preferred_channel_check",
        ),
        sa.CheckConstraint(
            "visibility IN ('visible', 'archived')", name="patients_visibility_check"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_patients_phone", "patients", ["phone"])
    op.create_index("idx_patients_email", "patients", ["email"])

    # Create appointments table
    op.create_table(
        "appointments",
        sa.Column(
            "id", postgresql.UUID(), server_default=sa.text("gen_random_uuid()"), nullable=False
        ),
        sa.Column("patient_id", postgresql.UUID(), nullable=False),
        sa.Column("scheduled_at", postgresql.TIMESTAMP(timezone=False), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), server_default="60", nullable=False),
        sa.Column("treatment_type", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.VARCHAR(length=16), server_default="booked", nullable=False),
        sa.Column("visibility", sa.VARCHAR(length=16), server_default="visible", nullable=False),
        *_timestamps(),
        sa.Column("visited_at", postgresql.TIMESTAMP(timezone=False), nullable=True),
        sa.Column("completed_at", postgresql.TIMESTAMP(timezone=False), nullable=True),
        sa.Column("paid_at", postgresql.TIMESTAMP(timezone=False), nullable=True),
        sa.Column("cancelled_at", postgresql.TIMESTAMP(timezone=False), nullable=True),
        sa.Column("no_show_at", postgresql.TIMESTAMP(timezone=False), nullable=True),
        sa.CheckConstraint(
            "status IN ('booked', 'visited', 'done', 'paid', 'cancelled', 'no_show')",
            name="appointments_status_check",
        ),
        sa.CheckConstraint(
            "visibility IN ('visible', 'archived')", name="appointments_visibility_check"
        ),
        sa.CheckConstraint("duration_minutes > 0", name="appointments_duration_check"),
        sa.ForeignKeyConstraint(["patient_id"], ["patients.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_appointments_scheduled_at", "appointments", ["scheduled_at"])
    op.create_index("idx_appointments_status", "appointments", ["status"])
    # One active booking per patient per exact timestamp
    op.create_index(
        "uq_appointments_patient_active_slot",
        "appointments",
        ["patient_id", "scheduled_at"],
        unique=True,
        postgresql_where=sa.text("status NOT IN ('cancelled', 'no_show')"),
    )

    # Create appointment_events table
    op.create_table(
        "appointment_events",
        sa.Column(
            "id", postgresql.UUID(), server_default=sa.text("gen_random_uuid()"), nullable=False
        ),
        sa.Column("appointment_id", postgresql.UUID(), nullable=False),
        sa.Column("sequence", sa.Integer(), server_default="0", nullable=False),
        sa.Column("event_type", sa.VARCHAR(length=32), nullable=False),
        sa.Column("from_status", sa.VARCHAR(length=16), nullable=True),
        sa.Column("to_status", sa.VARCHAR(length=16), nullable=False),
        sa.Column("previous_scheduled_at", postgresql.TIMESTAMP(timezone=False), nullable=True),
        sa.Column("scheduled_at", postgresql.TIMESTAMP(timezone=False), nullable=False),
        sa.Column(
            "created_at",
            postgresql.TIMESTAMP(timezone=False),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.CheckConstraint(
            "event_type IN ('booked', 'cancelled', 'rescheduled', 'status_changed', 'archived')",
            name="appointment_events_type_check",
        ),
        sa.ForeignKeyConstraint(["appointment_id"], ["appointments.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_appointment_events_appointment", "appointment_events", ["appointment_id"]
    )

    # Create deliveries table
    op.create_table(
        "deliveries",
        sa.Column(
            "id", postgresql.UUID(), server_default=sa.text("gen_random_uuid()"), nullable=False
        ),
        sa.Column("appointment_id", postgresql.UUID(), nullable=False),
        sa.Column("patient_id", postgresql.UUID(), nullable=False),
        sa.Column("channel", sa.VARCHAR(length=16), nullable=False),
        sa.Column("lead_time_bucket", sa.VARCHAR(length=16), nullable=False),
        sa.Column("scheduled_at", postgresql.TIMESTAMP(timezone=False), nullable=False),
        sa.Column("next_attempt_at", postgresql.TIMESTAMP(timezone=False), nullable=False),
        sa.Column("status", sa.VARCHAR(length=16), server_default="pending", nullable=False),
        sa.Column("retry_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("sent_at", postgresql.TIMESTAMP(timezone=False), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("channel IN ('email', 'sms', 'push')", name="deliveries_channel_check"),
        sa.CheckConstraint(
            "lead_time_bucket IN ('seven_day', 'three_day', 'one_day')",
            name="deliveries_bucket_check",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'sent', 'failed', 'cancelled')",
            name="deliveries_status_check",
        ),
        sa.ForeignKeyConstraint(["appointment_id"], ["appointments.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["patient_id"], ["patients.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_deliveries_status_scheduled", "deliveries", ["status", "scheduled_at"])
    op.create_index(
        "idx_deliveries_status_next_attempt", "deliveries", ["status", "next_attempt_at"]
    )
    op.create_index("idx_deliveries_appointment", "deliveries", ["appointment_id"])
    # At most one live reminder per bucket
    op.create_index(
        "uq_deliveries_pending_bucket",
        "deliveries",
        ["appointment_id", "lead_time_bucket"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index("uq_deliveries_pending_bucket", table_name="deliveries")
    op.drop_index("idx_deliveries_appointment", table_name="deliveries")
    op.drop_index("idx_deliveries_status_next_attempt", table_name="deliveries")
    op.drop_index("idx_deliveries_status_scheduled", table_name="deliveries")
    op.drop_table("deliveries")

    op.drop_index("idx_appointment_events_appointment", table_name="appointment_events")
    op.drop_table("appointment_events")

    op.drop_index("uq_appointments_patient_active_slot", table_name="appointments")
    op.drop_index("idx_appointments_status", table_name="appointments")
    op.drop_index("idx_appointments_scheduled_at", table_name="appointments")
    op.drop_table("appointments")

    op.drop_index("idx_patients_email", table_name="patients")
    op.drop_index("idx_patients_phone", table_name="patients")
    op.drop_table("patients")
