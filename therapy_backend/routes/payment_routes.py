import logging
import uuid

from fastapi import APIRouter, status
from pydantic import BaseModel, field_validator

from therapy_backend.integrations import paypal
from therapy_backend.integrations.paypal import PaymentError
from therapy_backend.routes.common import bad_request, upstream_failure

logger = logging.getLogger(__name__)

router = APIRouter(tags=['payments'])


class OrderPackage(BaseModel):
    id: str | None = None
    name: str
    price: float
    description: str = ''

    @field_validator('price')
    @classmethod
    def validate_price(cls, value: float) -> float:
        if value <= 0:
            raise ValueError('Package price must be greater than zero.')
        return value


class CreateOrderRequest(BaseModel):
    sessionPackage: OrderPackage


@router.post('', status_code=status.HTTP_201_CREATED)
async def create_order(data: CreateOrderRequest):
    package = data.sessionPackage
    try:
        order = await paypal.create_order(package.id, package.name, package.price, package.description)
    except PaymentError as exc:
        raise upstream_failure('Failed to create order.', exc) from exc
    return order


@router.post('/{order_id}/capture')
async def capture_order(order_id: str):
    if not order_id.strip():
        raise bad_request('Order ID is required.')

    try:
        order = await paypal.capture_order(order_id.strip())
    except PaymentError as exc:
        raise upstream_failure('Failed to capture order.', exc) from exc

    # The user id ties the later intake submission to this payment.
    return {**order, 'userId': str(uuid.uuid4()), 'sessionPackage': paypal.package_from_order(order)}
