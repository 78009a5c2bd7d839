from typing import Optional

from fastapi import APIRouter, Depends

from marketplace.auth import require_principal
from marketplace.deps import get_lifecycle, raise_service_http_error
from marketplace.models import (
    BookingCancelRequest,
    BookingCreateRequest,
    BookingEnvelope,
    BookingHistoryEnvelope,
    BookingListEnvelope,
    BookingStatusUpdateRequest,
    Principal,
    RatingRequest,
)
from marketplace.services.booking_lifecycle import BookingLifecycleManager
from marketplace.services.store import ServiceStoreError

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("", response_model=BookingEnvelope, status_code=201)
def create_booking(
    request: BookingCreateRequest,
    principal: Principal = Depends(require_principal),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle),
):
    try:
        booking = lifecycle.create_booking(principal, request)
    except ServiceStoreError as exc:
        raise_service_http_error(exc)
    return BookingEnvelope(message="Booking created successfully", booking=booking)


@router.get("/my-bookings", response_model=BookingListEnvelope)
def my_bookings(
    principal: Principal = Depends(require_principal),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle),
):
    bookings = lifecycle.list_customer_bookings(principal)
    return BookingListEnvelope(count=len(bookings), bookings=bookings)


@router.get("/provider-bookings", response_model=BookingListEnvelope)
def provider_bookings(
    principal: Principal = Depends(require_principal),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle),
):
    try:
        bookings = lifecycle.list_provider_bookings(principal)
    except ServiceStoreError as exc:
        raise_service_http_error(exc)
    return BookingListEnvelope(count=len(bookings), bookings=bookings)


@router.get("/{booking_id}", response_model=BookingEnvelope)
def get_booking(
    booking_id: str,
    principal: Principal = Depends(require_principal),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle),
):
    try:
        return BookingEnvelope(booking=lifecycle.get_booking(principal, booking_id))
    except ServiceStoreError as exc:
        raise_service_http_error(exc)


@router.get("/{booking_id}/history", response_model=BookingHistoryEnvelope)
def booking_history(
    booking_id: str,
    principal: Principal = Depends(require_principal),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle),
):
    try:
        return BookingHistoryEnvelope(history=lifecycle.booking_history(principal, booking_id))
    except ServiceStoreError as exc:
        raise_service_http_error(exc)


@router.put("/{booking_id}/status", response_model=BookingEnvelope)
def update_booking_status(
    booking_id: str,
    request: BookingStatusUpdateRequest,
    principal: Principal = Depends(require_principal),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle),
):
    try:
        booking = lifecycle.update_status(
            principal,
            booking_id,
            request.status,
            expected_version=request.expected_version,
            note=request.note,
        )
    except ServiceStoreError as exc:
        raise_service_http_error(exc)
    return BookingEnvelope(message="Booking status updated successfully", booking=booking)


@router.put("/{booking_id}/cancel", response_model=BookingEnvelope)
def cancel_booking(
    booking_id: str,
    request: Optional[BookingCancelRequest] = None,
    principal: Principal = Depends(require_principal),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle),
):
    request = request or BookingCancelRequest()
    try:
        booking = lifecycle.cancel(
            principal,
            booking_id,
            expected_version=request.expected_version,
            reason=request.reason,
        )
    except ServiceStoreError as exc:
        raise_service_http_error(exc)
    return BookingEnvelope(message="Booking cancelled successfully", booking=booking)


@router.post("/{booking_id}/rating", response_model=BookingEnvelope)
def rate_booking(
    booking_id: str,
    request: RatingRequest,
    principal: Principal = Depends(require_principal),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle),
):
    try:
        booking = lifecycle.rate(principal, booking_id, request.score, request.review)
    except ServiceStoreError as exc:
        raise_service_http_error(exc)
    return BookingEnvelope(message="Rating added successfully", booking=booking)
