from typing import Optional

from fastapi import APIRouter, Depends, Query

from marketplace.auth import require_principal
from marketplace.deps import get_catalog, raise_service_http_error
from marketplace.models import (
    ListingCreateRequest,
    ListingEnvelope,
    ListingListEnvelope,
    ListingUpdateRequest,
    MessageEnvelope,
    Principal,
)
from marketplace.services.catalog import ListingCatalog
from marketplace.services.store import ServiceStoreError

router = APIRouter(prefix="/services", tags=["services"])


@router.get("", response_model=ListingListEnvelope)
def search_services(
    category: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None),
    lat: Optional[float] = Query(default=None),
    lng: Optional[float] = Query(default=None),
    radius: Optional[float] = Query(default=None),
    catalog: ListingCatalog = Depends(get_catalog),
):
    try:
        services = catalog.search(category=category, search=search, lat=lat, lng=lng, radius=radius)
    except ServiceStoreError as exc:
        raise_service_http_error(exc)
    return ListingListEnvelope(count=len(services), services=services)


@router.get("/provider/{provider_id}", response_model=ListingListEnvelope)
def provider_services(provider_id: str, catalog: ListingCatalog = Depends(get_catalog)):
    services = catalog.list_for_provider(provider_id)
    return ListingListEnvelope(count=len(services), services=services)


@router.get("/{listing_id}", response_model=ListingEnvelope)
def get_service(listing_id: str, catalog: ListingCatalog = Depends(get_catalog)):
    try:
        return ListingEnvelope(service=catalog.get(listing_id))
    except ServiceStoreError as exc:
        raise_service_http_error(exc)


@router.post("", response_model=ListingEnvelope, status_code=201)
def create_service(
    request: ListingCreateRequest,
    principal: Principal = Depends(require_principal),
    catalog: ListingCatalog = Depends(get_catalog),
):
    try:
        listing = catalog.create(principal, request)
    except ServiceStoreError as exc:
        raise_service_http_error(exc)
    return ListingEnvelope(message="Service created successfully", service=listing)


@router.put("/{listing_id}", response_model=ListingEnvelope)
def update_service(
    listing_id: str,
    request: ListingUpdateRequest,
    principal: Principal = Depends(require_principal),
    catalog: ListingCatalog = Depends(get_catalog),
):
    try:
        listing = catalog.update(principal, listing_id, request)
    except ServiceStoreError as exc:
        raise_service_http_error(exc)
    return ListingEnvelope(message="Service updated successfully", service=listing)


@router.delete("/{listing_id}", response_model=MessageEnvelope)
def delete_service(
    listing_id: str,
    principal: Principal = Depends(require_principal),
    catalog: ListingCatalog = Depends(get_catalog),
):
    try:
        outcome = catalog.delete(principal, listing_id)
    except ServiceStoreError as exc:
        raise_service_http_error(exc)
    if outcome == "deactivated":
        return MessageEnvelope(message="Service has bookings and was deactivated")
    return MessageEnvelope(message="Service deleted successfully")
