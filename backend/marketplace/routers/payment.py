from fastapi import APIRouter, Depends

from marketplace.auth import require_principal
from marketplace.deps import get_lifecycle, raise_service_http_error
from marketplace.models import (
    BookingEnvelope,
    ConfirmPaymentRequest,
    PaymentIntentEnvelope,
    PaymentIntentRequest,
    PaymentMethod,
    PaymentMethodCard,
    PaymentMethodsEnvelope,
    PaymentStatusEnvelope,
    Principal,
    RefundRequest,
)
from marketplace.services.booking_lifecycle import BookingLifecycleManager
from marketplace.services.payment_gateway import PUBLISHABLE_KEY
from marketplace.services.store import ServiceStoreError

router = APIRouter(prefix="/payment", tags=["payment"])

MOCK_PAYMENT_METHODS = [
    PaymentMethod(
        id="pm_mock_card_visa",
        card=PaymentMethodCard(brand="visa", last4="4242", exp_month=12, exp_year=2030),
    ),
    PaymentMethod(
        id="pm_mock_card_mastercard",
        card=PaymentMethodCard(brand="mastercard", last4="5555", exp_month=10, exp_year=2029),
    ),
]


@router.post("/create-payment-intent", response_model=PaymentIntentEnvelope)
def create_payment_intent(
    request: PaymentIntentRequest,
    principal: Principal = Depends(require_principal),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle),
):
    try:
        intent = lifecycle.create_payment_intent(principal, request.booking_id)
    except ServiceStoreError as exc:
        raise_service_http_error(exc)
    return PaymentIntentEnvelope(payment_intent=intent, publishable_key=PUBLISHABLE_KEY)


@router.post("/confirm-payment", response_model=BookingEnvelope)
def confirm_payment(
    request: ConfirmPaymentRequest,
    principal: Principal = Depends(require_principal),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle),
):
    try:
        booking = lifecycle.confirm_payment(
            principal,
            request.booking_id,
            request.payment_intent_id,
            request.payment_method_id,
        )
    except ServiceStoreError as exc:
        raise_service_http_error(exc)
    return BookingEnvelope(message="Payment confirmed successfully", booking=booking)


@router.get("/payment-status/{booking_id}", response_model=PaymentStatusEnvelope)
def payment_status(
    booking_id: str,
    principal: Principal = Depends(require_principal),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle),
):
    try:
        return PaymentStatusEnvelope(booking=lifecycle.payment_status(principal, booking_id))
    except ServiceStoreError as exc:
        raise_service_http_error(exc)


@router.post("/refund", response_model=BookingEnvelope)
def refund(
    request: RefundRequest,
    principal: Principal = Depends(require_principal),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle),
):
    try:
        booking = lifecycle.refund(principal, request.booking_id, request.reason)
    except ServiceStoreError as exc:
        raise_service_http_error(exc)
    return BookingEnvelope(message="Refund processed successfully", booking=booking)


@router.get("/payment-methods", response_model=PaymentMethodsEnvelope)
def payment_methods(principal: Principal = Depends(require_principal)):
    return PaymentMethodsEnvelope(payment_methods=MOCK_PAYMENT_METHODS)
