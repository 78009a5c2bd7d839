from fastapi import HTTPException, Request

from marketplace.services.booking_lifecycle import BookingLifecycleManager
from marketplace.services.catalog import ListingCatalog
from marketplace.services.store import (
    ServiceStoreConflictError,
    ServiceStoreError,
    ServiceStoreExternalError,
    ServiceStoreInvalidTransitionError,
    ServiceStoreNotFoundError,
    ServiceStorePaymentDeclinedError,
    ServiceStorePermissionError,
)


def get_catalog(request: Request) -> ListingCatalog:
    return request.app.state.catalog


def get_lifecycle(request: Request) -> BookingLifecycleManager:
    return request.app.state.lifecycle


def raise_service_http_error(exc: ServiceStoreError) -> None:
    if isinstance(exc, ServiceStoreNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ServiceStorePermissionError):
        raise HTTPException(status_code=403, detail=str(exc))
    # Invalid transitions are conflicts in the domain but client errors on the wire.
    if isinstance(exc, (ServiceStoreInvalidTransitionError, ServiceStorePaymentDeclinedError)):
        raise HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ServiceStoreConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ServiceStoreExternalError):
        raise HTTPException(status_code=503, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))
