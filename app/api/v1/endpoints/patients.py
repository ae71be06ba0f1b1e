"""Patient endpoints."""

from uuid import UUID

from fastapi import APIRouter, status

from app.dependencies import PatientServiceDep
from app.schemas.patients import PatientCreate, PatientResponse

router = APIRouter()


@router.post(
    "",
    response_model=PatientResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Patients"],
    summary="Register patient",
)
async def create_patient(
    data: PatientCreate,
    service: PatientServiceDep,
) -> PatientResponse:
    """Register a patient with their reminder contacts."""
    return await service.create_patient(data)


@router.get(
    "/{patient_id}",
    response_model=PatientResponse,
    status_code=status.HTTP_200_OK,
    tags=["Patients"],
    summary="Get patient by ID",
)
async def get_patient(
    patient_id: UUID,
    service: PatientServiceDep,
) -> PatientResponse:
    """Get a specific patient by ID."""
    return await service.get_patient(patient_id)
