import logging
from datetime import time
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import uuid4

from marketplace.models import (
    AdminListingPage,
    AvailabilityWindow,
    Listing,
    ListingCreateRequest,
    ListingUpdateRequest,
    Principal,
)
from marketplace.services import geo
from marketplace.services.access_guard import authorize
from marketplace.services.store import (
    MarketplaceStore,
    ServiceStoreNotFoundError,
    ServiceStoreValidationError,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

LISTING_CATEGORIES = ("plumbing", "electrical", "beauty", "cleaning", "repair", "other")


def _parse_clock(value: str, field: str) -> time:
    try:
        return time.fromisoformat(value)
    except ValueError as exc:
        raise ServiceStoreValidationError(f"Invalid {field}; expected HH:MM") from exc


def validate_category(category: str) -> str:
    if category not in LISTING_CATEGORIES:
        raise ServiceStoreValidationError(f"Invalid category. Allowed: {', '.join(LISTING_CATEGORIES)}")
    return category


def _validate_availability(windows: List[AvailabilityWindow]) -> None:
    for window in windows:
        start = _parse_clock(window.start_time, "start_time")
        end = _parse_clock(window.end_time, "end_time")
        if start >= end:
            raise ServiceStoreValidationError(f"Availability on {window.day} must end after it starts")


def _validate_listing(listing: Listing) -> None:
    if not listing.name.strip():
        raise ServiceStoreValidationError("Service name is required")
    if not listing.description.strip():
        raise ServiceStoreValidationError("Description is required")
    validate_category(listing.category)
    if listing.price < 0:
        raise ServiceStoreValidationError("price must not be negative")
    if listing.price != listing.price.quantize(Decimal("0.01")):
        raise ServiceStoreValidationError("price supports at most two decimal places")
    if listing.duration <= 0:
        raise ServiceStoreValidationError("duration must be greater than 0")
    _validate_availability(listing.availability)


class ListingCatalog:
    def __init__(self, store: MarketplaceStore):
        self._store = store

    def search(
        self,
        *,
        category: Optional[str] = None,
        search: Optional[str] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        radius: Optional[float] = None,
    ) -> List[Listing]:
        if category:
            validate_category(category)
        if radius is not None and radius < 0:
            raise ServiceStoreValidationError("radius must not be negative")

        with self._store.read() as conn:
            candidates = self._store.fetch_listings(conn, active_only=True, category=category)

        query = (search or "").strip().lower()
        # Geo filtering only applies when the searcher gives a full position.
        origin: Optional[Tuple[float, float]] = (lat, lng) if lat is not None and lng is not None else None
        result: List[Listing] = []
        for listing in candidates:
            if query and query not in listing.name.lower() and query not in listing.description.lower():
                continue
            if origin:
                if not geo.matches_location(origin[0], origin[1], listing.service_area, radius):
                    continue
                listing = listing.model_copy(
                    update={"distance_km": geo.distance_to_area_km(origin[0], origin[1], listing.service_area)}
                )
            result.append(listing)
        return result

    def get(self, listing_id: str) -> Listing:
        listing = self._store.get_listing(listing_id)
        if not listing:
            raise ServiceStoreNotFoundError("Service not found")
        return listing

    def list_for_provider(self, provider_id: str) -> List[Listing]:
        with self._store.read() as conn:
            return self._store.fetch_listings(conn, active_only=True, provider_id=provider_id)

    def create(self, principal: Principal, request: ListingCreateRequest) -> Listing:
        authorize(principal, "create_listing")
        listing = Listing(
            id=f"svc_{uuid4().hex[:10]}",
            name=request.name.strip(),
            description=request.description.strip(),
            category=validate_category(request.category),
            price=request.price,
            duration=request.duration,
            provider_id=principal.user_id,
            availability=request.availability,
            service_area=request.service_area,
            images=[url.strip() for url in request.images if url and url.strip()],
            created_at=utc_now_iso(),
        )
        _validate_listing(listing)
        with self._store.transaction() as conn:
            self._store.insert_listing(conn, listing)
            stored = self._store.fetch_listing(conn, listing.id)
        logger.info("listing_created id=%s provider=%s category=%s", listing.id, listing.provider_id, listing.category)
        return stored

    def update(self, principal: Principal, listing_id: str, request: ListingUpdateRequest) -> Listing:
        with self._store.transaction() as conn:
            current = self._store.fetch_listing(conn, listing_id)
            authorize(principal, "edit_listing", current, entity_label="Service")

            changes = request.model_dump(exclude_unset=True, exclude={"clear_service_area"})
            if "category" in changes and changes["category"] is not None:
                validate_category(changes["category"])
            if "name" in changes and changes["name"] is not None:
                changes["name"] = changes["name"].strip()
            if "description" in changes and changes["description"] is not None:
                changes["description"] = changes["description"].strip()
            if "availability" in changes and request.availability is not None:
                changes["availability"] = request.availability
            if "service_area" in changes and request.service_area is not None:
                changes["service_area"] = request.service_area
            if request.clear_service_area:
                changes["service_area"] = None
            changes = {key: value for key, value in changes.items() if value is not None or key == "service_area"}

            updated = current.model_copy(update=changes)
            _validate_listing(updated)
            self._store.update_listing(conn, updated)
            stored = self._store.fetch_listing(conn, listing_id)
        logger.info("listing_updated id=%s actor=%s fields=%s", listing_id, principal.user_id, sorted(changes))
        return stored

    def admin_list(
        self,
        principal: Principal,
        *,
        category: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> AdminListingPage:
        """Every listing, deactivated ones included, newest first."""
        authorize(principal, "admin_reports")
        if category:
            validate_category(category)
        if page < 1 or limit < 1:
            raise ServiceStoreValidationError("page and limit must be positive")
        with self._store.read() as conn:
            total = self._store.count_listings(conn, category=category)
            listings = self._store.fetch_listings(
                conn,
                active_only=False,
                category=category,
                limit=limit,
                offset=(page - 1) * limit,
            )
        total_pages = (total + limit - 1) // limit
        return AdminListingPage(services=listings, total_pages=total_pages, current_page=page, total=total)

    def set_active(self, principal: Principal, listing_id: str, is_active: bool) -> Listing:
        authorize(principal, "admin_reports")
        with self._store.transaction() as conn:
            current = self._store.fetch_listing(conn, listing_id)
            if current is None:
                raise ServiceStoreNotFoundError("Service not found")
            self._store.update_listing(conn, current.model_copy(update={"is_active": is_active}))
            stored = self._store.fetch_listing(conn, listing_id)
        logger.info("listing_active_set id=%s active=%s actor=%s", listing_id, is_active, principal.user_id)
        return stored

    def delete(self, principal: Principal, listing_id: str) -> str:
        """Remove a listing, or deactivate it when bookings still reference it.

        Returns ``"deleted"`` or ``"deactivated"``.
        """
        with self._store.transaction() as conn:
            current = self._store.fetch_listing(conn, listing_id)
            authorize(principal, "delete_listing", current, entity_label="Service")
            if self._store.count_bookings_for_listing(conn, listing_id):
                self._store.update_listing(conn, current.model_copy(update={"is_active": False}))
                outcome = "deactivated"
            else:
                self._store.delete_listing(conn, listing_id)
                outcome = "deleted"
        logger.info("listing_%s id=%s actor=%s", outcome, listing_id, principal.user_id)
        return outcome
