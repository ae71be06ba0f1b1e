"""Patient service for business logic."""

from uuid import UUID

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundException
from app.models.patients import patients
from app.schemas.appointments import Visibility
from app.schemas.patients import PatientCreate, PatientResponse


class PatientService:
    """Service for the patient records the scheduler refers to."""

    def __init__(self, db: AsyncSession):
        """Initialize service with database session."""
        self.db = db

    async def create_patient(self, data: PatientCreate) -> PatientResponse:
        """Register a patient."""
        stmt = (
            patients.insert()
            .values(
                name=data.name,
                phone=data.phone,
                email=data.email,
                messaging_id=data.messaging_id,
                preferred_channel=data.preferred_channel.value if data.preferred_channel else None,
                visibility=Visibility.VISIBLE.value,
            )
            .returning(patients)
        )

        result = await self.db.execute(stmt)
        row = result.fetchone()
        await self.db.commit()

        return PatientResponse.model_validate(dict(row._mapping))

    async def find_patient(self, patient_id: UUID) -> PatientResponse | None:
        """Get a visible patient by ID, or None."""
        stmt = select(patients).where(
            and_(
                patients.c.id == patient_id,
                patients.c.visibility == Visibility.VISIBLE.value,
            )
        )
        result = await self.db.execute(stmt)
        row = result.fetchone()

        if not row:
            return None
        return PatientResponse.model_validate(dict(row._mapping))

    async def get_patient(self, patient_id: UUID) -> PatientResponse:
        """
        Get a visible patient by ID.

        Raises:
            NotFoundException: If patient not found
        """
        patient = await self.find_patient(patient_id)
        if patient is None:
            raise NotFoundException("Patient not found")
        return patient
