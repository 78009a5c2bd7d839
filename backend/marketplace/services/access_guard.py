from typing import Literal, Optional, Union

from marketplace.models import Booking, Listing, Principal
from marketplace.services.store import ServiceStoreNotFoundError, ServiceStorePermissionError

Action = Literal[
    "read_booking",
    "create_booking",
    "update_status",
    "cancel_booking",
    "rate_booking",
    "pay_booking",
    "refund_booking",
    "create_listing",
    "edit_listing",
    "delete_listing",
    "delete_account",
    "admin_reports",
]

Entity = Union[Booking, Listing, Principal, None]

_BOOKING_ACTIONS = {
    "read_booking",
    "update_status",
    "cancel_booking",
    "rate_booking",
    "pay_booking",
    "refund_booking",
}

_LISTING_ACTIONS = {"edit_listing", "delete_listing"}

_DENIAL_MESSAGES = {
    "read_booking": "Access denied",
    "create_booking": "Only customers can create bookings",
    "update_status": "Only provider can update booking status",
    "cancel_booking": "Access denied",
    "rate_booking": "Only the customer can rate this booking",
    "pay_booking": "Access denied",
    "refund_booking": "Access denied",
    "create_listing": "Access denied. Provider role required.",
    "edit_listing": "Not authorized to update this service",
    "delete_listing": "Not authorized to delete this service",
    "delete_account": "Cannot delete admin user",
    "admin_reports": "Access denied. Admin role required.",
}


def can_act(principal: Principal, action: Action, entity: Entity = None) -> bool:
    role = principal.role
    user_id = principal.user_id

    if action == "create_booking":
        return role == "customer"
    if action == "create_listing":
        return role in {"provider", "admin"}
    if action == "admin_reports":
        return role == "admin"

    if action == "delete_account":
        if role != "admin" or not isinstance(entity, Principal):
            return False
        # The one hard exception to the admin bypass: admins cannot remove other admins.
        return entity.role != "admin" or entity.user_id == user_id

    if action in _LISTING_ACTIONS:
        if not isinstance(entity, Listing):
            return False
        if role == "admin":
            return True
        return role == "provider" and entity.provider_id == user_id

    if action in _BOOKING_ACTIONS:
        if not isinstance(entity, Booking):
            return False
        is_customer = role == "customer" and entity.customer_id == user_id
        is_provider = role == "provider" and entity.provider_id == user_id
        if action == "read_booking":
            return role == "admin" or entity.customer_id == user_id or entity.provider_id == user_id
        if action == "update_status":
            return role == "admin" or is_provider
        if action in {"cancel_booking", "refund_booking"}:
            return role == "admin" or is_customer
        # Rating and paying are personal to the customer; admins do not bypass these.
        return is_customer

    return False


def authorize(
    principal: Principal,
    action: Action,
    entity: Entity = None,
    *,
    entity_label: Optional[str] = None,
) -> None:
    """Raise unless ``principal`` may perform ``action`` on ``entity``.

    When ``entity_label`` is given the entity was expected to exist; a missing entity is
    reported as not found before any ownership check runs.
    """
    if entity_label is not None and entity is None:
        raise ServiceStoreNotFoundError(f"{entity_label} not found")
    if not can_act(principal, action, entity):
        raise ServiceStorePermissionError(_DENIAL_MESSAGES.get(action, "Access denied"))
