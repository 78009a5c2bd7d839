from typing import Optional

from fastapi import APIRouter, Depends, Query

from marketplace.auth import require_principal
from marketplace.deps import get_catalog, get_lifecycle, raise_service_http_error
from marketplace.models import (
    AdminBookingPage,
    AdminDashboard,
    AdminListingPage,
    ListingEnvelope,
    ListingStatusRequest,
    Principal,
)
from marketplace.services.booking_lifecycle import BookingLifecycleManager
from marketplace.services.catalog import ListingCatalog
from marketplace.services.store import ServiceStoreError

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/dashboard", response_model=AdminDashboard)
def dashboard(
    principal: Principal = Depends(require_principal),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle),
):
    try:
        return lifecycle.admin_dashboard(principal)
    except ServiceStoreError as exc:
        raise_service_http_error(exc)


@router.get("/services", response_model=AdminListingPage)
def all_services(
    category: Optional[str] = Query(default=None),
    page: int = Query(default=1),
    limit: int = Query(default=10),
    principal: Principal = Depends(require_principal),
    catalog: ListingCatalog = Depends(get_catalog),
):
    try:
        return catalog.admin_list(principal, category=category, page=page, limit=limit)
    except ServiceStoreError as exc:
        raise_service_http_error(exc)


@router.put("/services/{listing_id}/status", response_model=ListingEnvelope)
def set_service_status(
    listing_id: str,
    request: ListingStatusRequest,
    principal: Principal = Depends(require_principal),
    catalog: ListingCatalog = Depends(get_catalog),
):
    try:
        listing = catalog.set_active(principal, listing_id, request.is_active)
    except ServiceStoreError as exc:
        raise_service_http_error(exc)
    return ListingEnvelope(message="Service status updated successfully", service=listing)


@router.get("/bookings", response_model=AdminBookingPage)
def all_bookings(
    status: Optional[str] = Query(default=None),
    page: int = Query(default=1),
    limit: int = Query(default=10),
    principal: Principal = Depends(require_principal),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle),
):
    try:
        return lifecycle.admin_bookings(principal, status=status, page=page, limit=limit)
    except ServiceStoreError as exc:
        raise_service_http_error(exc)
