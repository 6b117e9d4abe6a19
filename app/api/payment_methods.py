from fastapi import APIRouter, Depends, Response, status
from typing import List
from uuid import UUID

from app.api.deps import get_payment_method_service
from app.schemas.payment import PaymentMethodCreate, PaymentMethodResponse
from app.services.payment_methods import PaymentMethodService

router = APIRouter()


@router.get("/{business_id}/payment-methods", response_model=List[PaymentMethodResponse])
def list_payment_methods(business_id: UUID, service: PaymentMethodService = Depends(get_payment_method_service)):
    return service.list(business_id)


@router.post(
    "/{business_id}/payment-methods",
    response_model=PaymentMethodResponse,
    status_code=status.HTTP_201_CREATED,
)
def store_payment_method(
    business_id: UUID,
    body: PaymentMethodCreate,
    service: PaymentMethodService = Depends(get_payment_method_service),
):
    """Store a tokenized card. The first card stored becomes the default."""
    return service.store(business_id, body)


@router.post("/{business_id}/payment-methods/{payment_method_id}/default", response_model=PaymentMethodResponse)
def set_default_payment_method(
    business_id: UUID,
    payment_method_id: UUID,
    service: PaymentMethodService = Depends(get_payment_method_service),
):
    return service.set_default(business_id, payment_method_id)


@router.delete("/{business_id}/payment-methods/{payment_method_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_payment_method(
    business_id: UUID,
    payment_method_id: UUID,
    service: PaymentMethodService = Depends(get_payment_method_service),
):
    service.delete(business_id, payment_method_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
