"""Appointments table model using SQLAlchemy Core."""

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

# Metadata for all tables
metadata = MetaData()

ACTIVE_ONLY = text("status NOT IN ('cancelled', 'no_show')")

# Appointments table
appointments = Table(
    "appointments",
    metadata,
    Column("id", Uuid(as_uuid=True), primary_key=True, default=uuid4),
    # Ownership / references
    Column(
        "patient_id",
        Uuid(as_uuid=True),
        ForeignKey("patients.id", ondelete="RESTRICT"),
        nullable=False,
    ),
    # Appointment details (clinic-local wall clock)
    Column("scheduled_at", DateTime(timezone=False), nullable=False),
    Column("duration_minutes", Integer, nullable=False, server_default="60"),
    Column("treatment_type", Text, nullable=True),
    Column("notes", Text, nullable=True),
    # Status management
    Column("status", String(16), nullable=False, server_default="booked"),
    Column("visibility", String(16), nullable=False, server_default="visible"),
    # Audit fields
    Column("created_at", DateTime(timezone=False), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=False), nullable=False, server_default=func.now()),
    Column("visited_at", DateTime(timezone=False), nullable=True),
    Column("completed_at", DateTime(timezone=False), nullable=True),
    Column("paid_at", DateTime(timezone=False), nullable=True),
    Column("cancelled_at", DateTime(timezone=False), nullable=True),
    Column("no_show_at", DateTime(timezone=False), nullable=True),
    # Constraints
    CheckConstraint(
        "status IN ('booked', 'visited', 'done', 'paid', 'cancelled', 'no_show')",
        name="appointments_status_check",
    ),
    CheckConstraint(
        "visibility IN ('visible', 'archived')",
        name="appointments_visibility_check",
    ),
    CheckConstraint("duration_minutes > 0", name="appointments_duration_check"),
    # One active booking per patient per exact timestamp
    Index(
        "uq_appointments_patient_active_slot",
        "patient_id",
        "scheduled_at",
        unique=True,
        postgresql_where=ACTIVE_ONLY,
        sqlite_where=ACTIVE_ONLY,
    ),
    Index("idx_appointments_scheduled_at", "scheduled_at"),
    Index("idx_appointments_status", "status"),
)

# Lifecycle history, one row per accepted event
appointment_events = Table(
    "appointment_events",
    metadata,
    Column("id", Uuid(as_uuid=True), primary_key=True, default=uuid4),
    Column(
        "appointment_id",
        Uuid(as_uuid=True),
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
    ),
    # Position within the appointment's history
    Column("sequence", Integer, nullable=False, server_default="0"),
    Column("event_type", String(32), nullable=False),
    Column("from_status", String(16), nullable=True),
    Column("to_status", String(16), nullable=False),
    Column("previous_scheduled_at", DateTime(timezone=False), nullable=True),
    Column("scheduled_at", DateTime(timezone=False), nullable=False),
    Column("created_at", DateTime(timezone=False), nullable=False, server_default=func.now()),
    CheckConstraint(
        "event_type IN ('booked', 'cancelled', 'rescheduled', 'status_changed', 'archived')",
        name="appointment_events_type_check",
    ),
    Index("idx_appointment_events_appointment", "appointment_id"),
)
