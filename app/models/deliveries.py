"""Reminder delivery model for tracking scheduled sends and their outcome."""

from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    Uuid,
    func,
    text,
)

metadata = MetaData()

PENDING_ONLY = text("status = 'pending'")

deliveries = Table(
    "deliveries",
    metadata,
    Column("id", Uuid(as_uuid=True), primary_key=True, default=uuid4),
    Column(
        "appointment_id",
        Uuid(as_uuid=True),
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column(
        "patient_id",
        Uuid(as_uuid=True),
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("channel", String(16), nullable=False),
    Column("lead_time_bucket", String(16), nullable=False),
    Column("scheduled_at", DateTime(timezone=False), nullable=False),
    Column("next_attempt_at", DateTime(timezone=False), nullable=False),
    Column("status", String(16), nullable=False, server_default="pending"),
    Column("retry_count", Integer, nullable=False, server_default="0"),
    Column("last_error", Text, nullable=True),
    Column("sent_at", DateTime(timezone=False), nullable=True),
    Column("created_at", DateTime(timezone=False), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=False), nullable=False, server_default=func.now()),
    CheckConstraint(
        "channel IN ('email', 'sms', 'push')",
        name="deliveries_channel_check",
    ),
    CheckConstraint(
        "lead_time_bucket IN ('seven_day', 'three_day', 'one_day')",
        name="deliveries_bucket_check",
    ),
    CheckConstraint(
        "status IN ('pending', 'sent', 'failed', 'cancelled')",
        name="deliveries_status_check",
    ),
    Index("idx_deliveries_status_scheduled", "status", "scheduled_at"),
    Index("idx_deliveries_status_next_attempt", "status", "next_attempt_at"),
    Index("idx_deliveries_appointment", "appointment_id"),
    # At most one live reminder per bucket
    Index(
        "uq_deliveries_pending_bucket",
        "appointment_id",
        "lead_time_bucket",
        unique=True,
        postgresql_where=PENDING_ONLY,
        sqlite_where=PENDING_ONLY,
    ),
)
