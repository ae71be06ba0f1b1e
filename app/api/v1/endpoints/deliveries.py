"""Reminder delivery endpoints."""

from uuid import UUID

from fastapi import APIRouter, status

from app.dependencies import DeliveryDispatcherDep
from app.schemas.deliveries import DeliveryResponse

router = APIRouter()


@router.get(
    "/{delivery_id}",
    response_model=DeliveryResponse,
    status_code=status.HTTP_200_OK,
    tags=["Deliveries"],
    summary="Get delivery by ID",
)
async def get_delivery(
    delivery_id: UUID,
    dispatcher: DeliveryDispatcherDep,
) -> DeliveryResponse:
    """Get a specific reminder delivery."""
    return await dispatcher.get_delivery(delivery_id)


@router.post(
    "/{delivery_id}/dispatch",
    response_model=DeliveryResponse,
    status_code=status.HTTP_200_OK,
    tags=["Deliveries"],
    summary="Dispatch delivery now",
)
async def dispatch_delivery(
    delivery_id: UUID,
    dispatcher: DeliveryDispatcherDep,
) -> DeliveryResponse:
    """
    Attempt a pending delivery immediately.

    Delivery failures are recorded on the returned delivery rather than
    reported as errors. Non-pending deliveries are returned unchanged.
    """
    return await dispatcher.dispatch(delivery_id)
