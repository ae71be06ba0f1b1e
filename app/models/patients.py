"""Patient model definition using SQLAlchemy Core."""

from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    MetaData,
    String,
    Table,
    Text,
    Uuid,
    func,
)

metadata = MetaData()

patients = Table(
    "patients",
    metadata,
    Column("id", Uuid(as_uuid=True), primary_key=True, default=uuid4),
    Column("name", Text, nullable=False),
    # Contact channels
    Column("phone", String(32), nullable=True),
    Column("email", String(320), nullable=True),
    # FCM device token for push reminders
    Column("messaging_id", Text, nullable=True),
    Column("preferred_channel", String(16), nullable=True),
    # Soft delete is a state, not a timestamp
    Column("visibility", String(16), nullable=False, server_default="visible"),
    # Metadata
    Column("created_at", DateTime(timezone=False), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=False), nullable=False, server_default=func.now()),
    CheckConstraint(
        "preferred_channel IS NULL OR preferred_channel IN ('email', 'sms', 'push')",
        name="patients_preferred_channel_check",
    ),
    CheckConstraint(
        "visibility IN ('visible', 'archived')",
        name="patients_visibility_check",
    ),
    Index("idx_patients_phone", "phone"),
    Index("idx_patients_email", "email"),
)
