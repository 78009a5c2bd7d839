import logging
from datetime import date, time
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple
from uuid import uuid4

from marketplace.models import (
    AdminBookingPage,
    AdminDashboard,
    Booking,
    BookingCreateRequest,
    BookingRating,
    BookingStatusChange,
    PaymentIntent,
    PaymentStatusView,
    Principal,
)
from marketplace.services.access_guard import authorize
from marketplace.services.payment_gateway import PAYMENT_CURRENCY, PaymentGateway, PaymentGatewayError
from marketplace.services.rating_aggregator import RatingAggregator
from marketplace.services.store import (
    MarketplaceStore,
    ServiceStoreConflictError,
    ServiceStoreExternalError,
    ServiceStoreInvalidTransitionError,
    ServiceStoreNotFoundError,
    ServiceStorePaymentDeclinedError,
    ServiceStorePermissionError,
    ServiceStoreValidationError,
    to_cents,
    utc_now_iso,
)

logger = logging.getLogger(__name__)


BOOKING_STATUSES = ("pending", "confirmed", "in-progress", "completed", "cancelled")

BOOKING_TERMINAL_STATUSES = {"completed", "cancelled"}

# (from, to) -> roles allowed to take the edge. Anything missing is not a transition.
STATUS_TRANSITIONS: Dict[Tuple[str, str], FrozenSet[str]] = {
    ("pending", "confirmed"): frozenset({"provider", "admin"}),
    ("pending", "cancelled"): frozenset({"provider", "customer", "admin"}),
    ("confirmed", "in-progress"): frozenset({"provider", "admin"}),
    ("confirmed", "cancelled"): frozenset({"customer", "admin"}),
    ("in-progress", "completed"): frozenset({"provider", "admin"}),
    ("in-progress", "cancelled"): frozenset({"admin"}),
}

PAYMENT_TRANSITIONS = {
    ("requires_payment_method", "paid"),
    ("requires_payment_method", "failed"),
    ("failed", "paid"),
    ("failed", "failed"),
    ("paid", "refunded"),
}

PAYABLE_PAYMENT_STATUSES = {"requires_payment_method", "failed"}

# Re-reads allowed when recording a gateway outcome races other writers.
PAYMENT_WRITE_ATTEMPTS = 5


def allowed_roles(current_status: str, next_status: str) -> Optional[FrozenSet[str]]:
    return STATUS_TRANSITIONS.get((current_status, next_status))


class BookingLifecycleManager:
    """Owns the reservation status machine and the payment status machine.

    Every mutation reads a snapshot, validates it, then writes with a compare-and-swap on
    the booking's version. Two requests that acted on the same snapshot cannot both commit;
    the slower one gets ServiceStoreConflictError and may retry after re-reading.
    """

    def __init__(
        self,
        store: MarketplaceStore,
        gateway: PaymentGateway,
        aggregator: Optional[RatingAggregator] = None,
    ):
        self._store = store
        self._gateway = gateway
        self._aggregator = aggregator or RatingAggregator(store)

    # Reads

    def _load(self, booking_id: str) -> Optional[Booking]:
        return self._store.get_booking(booking_id)

    def _joined(self, booking: Booking) -> Booking:
        with self._store.read() as conn:
            return self._store.attach_listing_summary(conn, [booking])[0]

    def get_booking(self, principal: Principal, booking_id: str) -> Booking:
        booking = self._load(booking_id)
        authorize(principal, "read_booking", booking, entity_label="Booking")
        return self._joined(booking)

    def list_customer_bookings(self, principal: Principal) -> List[Booking]:
        with self._store.read() as conn:
            bookings = self._store.fetch_bookings(conn, customer_id=principal.user_id)
            return self._store.attach_listing_summary(conn, bookings)

    def list_provider_bookings(self, principal: Principal) -> List[Booking]:
        if principal.role not in {"provider", "admin"}:
            raise ServiceStorePermissionError("Access denied. Provider role required.")
        with self._store.read() as conn:
            bookings = self._store.fetch_bookings(conn, provider_id=principal.user_id)
            return self._store.attach_listing_summary(conn, bookings)

    def booking_history(self, principal: Principal, booking_id: str) -> List[BookingStatusChange]:
        booking = self._load(booking_id)
        authorize(principal, "read_booking", booking, entity_label="Booking")
        with self._store.read() as conn:
            return self._store.fetch_history(conn, booking_id)

    # Creation

    def _parse_schedule(self, scheduled_date: str, scheduled_time: str) -> Tuple[str, str]:
        try:
            parsed_date = date.fromisoformat(scheduled_date)
        except ValueError as exc:
            raise ServiceStoreValidationError("Invalid scheduled_date; expected YYYY-MM-DD") from exc
        try:
            parsed_time = time.fromisoformat(scheduled_time)
        except ValueError as exc:
            raise ServiceStoreValidationError("Invalid scheduled_time; expected HH:MM") from exc
        return parsed_date.isoformat(), parsed_time.strftime("%H:%M")

    def create_booking(self, principal: Principal, request: BookingCreateRequest) -> Booking:
        authorize(principal, "create_booking")
        scheduled_date, scheduled_time = self._parse_schedule(request.scheduled_date, request.scheduled_time)
        address = request.address.strip()
        if not address:
            raise ServiceStoreValidationError("Address is required")

        with self._store.transaction() as conn:
            listing = self._store.fetch_listing(conn, request.listing_id)
            if not listing:
                raise ServiceStoreNotFoundError("Service not found")
            if not listing.is_active:
                raise ServiceStoreValidationError("Service is not available for booking")

            now_iso = utc_now_iso()
            booking = Booking(
                id=f"b_{uuid4().hex[:12]}",
                customer_id=principal.user_id,
                listing_id=listing.id,
                provider_id=listing.provider_id,
                scheduled_date=scheduled_date,
                scheduled_time=scheduled_time,
                address=address,
                total_amount=listing.price,
                notes=request.notes,
                status="pending",
                payment_status="requires_payment_method",
                version=1,
                created_at=now_iso,
                updated_at=now_iso,
            )
            self._store.insert_booking(conn, booking)
            self._store.append_history(
                conn,
                booking_id=booking.id,
                actor_user_id=principal.user_id,
                field="status",
                from_status="none",
                to_status="pending",
                note="booking requested",
            )
            joined = self._store.attach_listing_summary(conn, [booking])[0]

        logger.info(
            "booking_created id=%s listing=%s customer=%s amount=%s",
            booking.id,
            booking.listing_id,
            booking.customer_id,
            booking.total_amount,
        )
        return joined

    # Status machine

    def _check_version(self, booking: Booking, expected_version: Optional[int]) -> None:
        if expected_version is not None and expected_version != booking.version:
            raise ServiceStoreConflictError(
                f"Booking version is {booking.version}, expected {expected_version}; reload and retry"
            )

    def _commit(
        self,
        principal: Principal,
        snapshot: Booking,
        changes: Dict[str, Any],
        note: str = "",
    ) -> Booking:
        candidate = snapshot.model_copy(update=changes)
        try:
            with self._store.transaction() as conn:
                updated = self._store.compare_and_swap_booking(conn, candidate, snapshot.version)
                for field in ("status", "payment_status"):
                    before = getattr(snapshot, field)
                    after = getattr(updated, field)
                    if before != after or field in changes:
                        self._store.append_history(
                            conn,
                            booking_id=snapshot.id,
                            actor_user_id=principal.user_id,
                            field=field,
                            from_status=before,
                            to_status=after,
                            note=note,
                        )
                if "rating" in changes:
                    self._aggregator.recompute_in(conn, snapshot.listing_id)
                joined = self._store.attach_listing_summary(conn, [updated])[0]
        except ServiceStoreConflictError:
            logger.warning("booking_write_conflict id=%s version=%d actor=%s", snapshot.id, snapshot.version, principal.user_id)
            raise
        return joined

    def _commit_latest(
        self,
        principal: Principal,
        booking_id: str,
        plan: Callable[[Booking], Optional[Dict[str, Any]]],
        note: str = "",
    ) -> Booking:
        """Write the changes ``plan`` derives from the newest version of the booking.

        Used once money has already moved at the gateway: a concurrent status change must
        not discard the outcome, so a lost compare-and-swap re-reads and tries again.
        ``plan`` returns None when the latest version already reflects the outcome, and
        raises when the outcome can no longer be applied.
        """
        for attempt in range(1, PAYMENT_WRITE_ATTEMPTS + 1):
            latest = self._load(booking_id)
            if latest is None:
                raise ServiceStoreNotFoundError("Booking not found")
            changes = plan(latest)
            if changes is None:
                return self._joined(latest)
            try:
                return self._commit(principal, latest, changes, note=note)
            except ServiceStoreConflictError:
                if attempt == PAYMENT_WRITE_ATTEMPTS:
                    raise
                logger.info("booking_write_retry id=%s attempt=%d", booking_id, attempt)
        raise ServiceStoreConflictError("Booking was modified concurrently; reload and retry")

    def _transition(
        self,
        principal: Principal,
        booking_id: str,
        next_status: str,
        *,
        action: str,
        expected_version: Optional[int] = None,
        note: str = "",
        rejection_message: Optional[str] = None,
    ) -> Booking:
        snapshot = self._load(booking_id)
        authorize(principal, action, snapshot, entity_label="Booking")
        self._check_version(snapshot, expected_version)

        current_status = snapshot.status
        roles = allowed_roles(current_status, next_status)
        if roles is None:
            raise ServiceStoreInvalidTransitionError(
                rejection_message or f"Invalid status transition: {current_status} -> {next_status}"
            )
        if principal.role not in roles:
            raise ServiceStorePermissionError(
                f"Role {principal.role} cannot move a booking from {current_status} to {next_status}"
            )

        updated = self._commit(principal, snapshot, {"status": next_status}, note=note)
        logger.info(
            "booking_status_changed id=%s %s -> %s actor=%s role=%s",
            booking_id,
            current_status,
            next_status,
            principal.user_id,
            principal.role,
        )
        return updated

    def update_status(
        self,
        principal: Principal,
        booking_id: str,
        next_status: str,
        *,
        expected_version: Optional[int] = None,
        note: str = "",
    ) -> Booking:
        if next_status not in BOOKING_STATUSES:
            raise ServiceStoreValidationError("Invalid status")
        return self._transition(
            principal,
            booking_id,
            next_status,
            action="update_status",
            expected_version=expected_version,
            note=note,
        )

    def cancel(
        self,
        principal: Principal,
        booking_id: str,
        *,
        expected_version: Optional[int] = None,
        reason: str = "",
    ) -> Booking:
        return self._transition(
            principal,
            booking_id,
            "cancelled",
            action="cancel_booking",
            expected_version=expected_version,
            note=reason or "cancelled",
            rejection_message="Cannot cancel this booking",
        )

    # Rating

    def _validate_score(self, score: Any) -> int:
        if isinstance(score, bool):
            raise ServiceStoreValidationError("Rating must be between 1 and 5")
        if isinstance(score, float) and score.is_integer():
            score = int(score)
        if not isinstance(score, int) or not 1 <= score <= 5:
            raise ServiceStoreValidationError("Rating must be between 1 and 5")
        return score

    def rate(self, principal: Principal, booking_id: str, score: Any, review: str = "") -> Booking:
        validated = self._validate_score(score)
        snapshot = self._load(booking_id)
        authorize(principal, "rate_booking", snapshot, entity_label="Booking")
        if snapshot.rating is not None:
            raise ServiceStoreConflictError("Booking already rated")
        if snapshot.status != "completed":
            raise ServiceStoreInvalidTransitionError("Can only rate completed bookings")

        rating = BookingRating(score=validated, review=review.strip(), created_at=utc_now_iso())
        updated = self._commit(principal, snapshot, {"rating": rating}, note=f"rated {validated}")
        logger.info("booking_rated id=%s listing=%s score=%d", booking_id, snapshot.listing_id, validated)
        return updated

    # Payments

    def _check_payment_edge(self, current: str, target: str) -> None:
        if (current, target) not in PAYMENT_TRANSITIONS:
            raise ServiceStoreInvalidTransitionError(f"Invalid payment transition: {current} -> {target}")

    def create_payment_intent(self, principal: Principal, booking_id: str) -> PaymentIntent:
        booking = self._load(booking_id)
        authorize(principal, "pay_booking", booking, entity_label="Booking")
        if booking.status == "cancelled":
            raise ServiceStoreConflictError("Cannot pay for a cancelled booking")
        if booking.payment_status not in PAYABLE_PAYMENT_STATUSES:
            raise ServiceStoreConflictError(f"Booking payment is already {booking.payment_status}")

        try:
            intent = self._gateway.create_intent(
                amount=to_cents(booking.total_amount),
                currency=PAYMENT_CURRENCY,
                idempotency_key=f"{booking.id}:intent:{booking.version}",
            )
        except PaymentGatewayError as exc:
            logger.warning("payment_intent_failed booking=%s error=%s", booking_id, exc)
            raise ServiceStoreExternalError("Payment provider unavailable; retry shortly") from exc

        return PaymentIntent(
            id=intent.id,
            amount=intent.amount,
            currency=intent.currency,
            status="requires_payment_method",
            client_secret=intent.client_secret,
        )

    def confirm_payment(
        self,
        principal: Principal,
        booking_id: str,
        payment_intent_id: str,
        payment_method_id: Optional[str] = None,
    ) -> Booking:
        snapshot = self._load(booking_id)
        authorize(principal, "pay_booking", snapshot, entity_label="Booking")
        if snapshot.status == "cancelled":
            raise ServiceStoreConflictError("Cannot pay for a cancelled booking")
        if snapshot.payment_status not in PAYABLE_PAYMENT_STATUSES:
            raise ServiceStoreConflictError(f"Booking payment is already {snapshot.payment_status}")

        # The key is stable across retries of the same intent, so a retry after a lost
        # write replays the original charge instead of charging again.
        try:
            confirmation = self._gateway.confirm(
                intent_id=payment_intent_id,
                payment_method_id=payment_method_id,
                idempotency_key=f"{snapshot.id}:confirm:{payment_intent_id}",
            )
        except PaymentGatewayError as exc:
            logger.warning("payment_confirm_failed booking=%s error=%s", booking_id, exc)
            raise ServiceStoreExternalError("Payment provider unavailable; retry shortly") from exc

        def record_outcome(latest: Booking) -> Optional[Dict[str, Any]]:
            # payment_status moves independently of status: a charge is recorded even if
            # the booking was confirmed or cancelled while the gateway call was in flight.
            if confirmation.succeeded:
                if latest.payment_status == "paid" and latest.payment_id == confirmation.reference:
                    return None
                if latest.payment_status not in PAYABLE_PAYMENT_STATUSES:
                    logger.error(
                        "payment_charged_but_booking_%s booking=%s reference=%s",
                        latest.payment_status,
                        booking_id,
                        confirmation.reference,
                    )
                    raise ServiceStoreConflictError(f"Booking payment is already {latest.payment_status}")
                self._check_payment_edge(latest.payment_status, "paid")
                return {"payment_status": "paid", "payment_id": confirmation.reference}
            if latest.payment_status not in PAYABLE_PAYMENT_STATUSES:
                return None
            self._check_payment_edge(latest.payment_status, "failed")
            return {"payment_status": "failed"}

        updated = self._commit_latest(
            principal,
            booking_id,
            record_outcome,
            note=confirmation.failure_code or "payment confirmed",
        )

        if not confirmation.succeeded:
            logger.info("payment_declined booking=%s code=%s", booking_id, confirmation.failure_code)
            raise ServiceStorePaymentDeclinedError("Payment failed. Please try again.")
        logger.info("payment_confirmed booking=%s reference=%s", booking_id, confirmation.reference)
        return updated

    def _check_refundable(self, booking: Booking) -> None:
        if booking.payment_status != "paid":
            raise ServiceStoreConflictError("Booking is not paid or already refunded")
        if booking.status == "completed":
            raise ServiceStoreConflictError("Cannot refund completed bookings")
        self._check_payment_edge(booking.payment_status, "refunded")

    def refund(self, principal: Principal, booking_id: str, reason: str = "") -> Booking:
        snapshot = self._load(booking_id)
        authorize(principal, "refund_booking", snapshot, entity_label="Booking")
        self._check_refundable(snapshot)

        # One refund per booking: every retry replays the same gateway refund.
        try:
            gateway_refund = self._gateway.refund(
                reference=snapshot.payment_id or "",
                amount=to_cents(snapshot.total_amount),
                reason=reason,
                idempotency_key=f"{snapshot.id}:refund",
            )
        except PaymentGatewayError as exc:
            logger.warning("refund_failed booking=%s error=%s", booking_id, exc)
            raise ServiceStoreExternalError("Payment provider unavailable; retry shortly") from exc

        def record_refund(latest: Booking) -> Optional[Dict[str, Any]]:
            if latest.payment_status == "refunded":
                return None
            self._check_refundable(latest)
            # payment_status and status move together in one write.
            return {"payment_status": "refunded", "status": "cancelled"}

        try:
            updated = self._commit_latest(principal, booking_id, record_refund, note=reason or "refunded")
        except ServiceStoreConflictError:
            logger.error(
                "refund_issued_but_not_recorded booking=%s refund=%s reference=%s",
                booking_id,
                gateway_refund.id,
                snapshot.payment_id,
            )
            raise
        logger.info("booking_refunded id=%s reason=%s", booking_id, reason)
        return updated

    def payment_status(self, principal: Principal, booking_id: str) -> PaymentStatusView:
        booking = self.get_booking(principal, booking_id)
        return PaymentStatusView(
            id=booking.id,
            listing=booking.listing,
            total_amount=booking.total_amount,
            payment_status=booking.payment_status,
            payment_id=booking.payment_id,
            status=booking.status,
        )

    # Admin reporting

    def admin_dashboard(self, principal: Principal) -> AdminDashboard:
        authorize(principal, "admin_reports")
        with self._store.read() as conn:
            stats = {
                "total_services": self._store.count_listings(conn),
                "total_bookings": self._store.count_bookings(conn),
                "completed_bookings": self._store.count_bookings(conn, status="completed"),
                "pending_bookings": self._store.count_bookings(conn, status="pending"),
            }
            recent = self._store.attach_listing_summary(conn, self._store.fetch_bookings(conn, limit=10))
        return AdminDashboard(stats=stats, recent_bookings=recent)

    def admin_bookings(
        self,
        principal: Principal,
        *,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> AdminBookingPage:
        authorize(principal, "admin_reports")
        if status is not None and status not in BOOKING_STATUSES:
            raise ServiceStoreValidationError("Invalid status")
        if page < 1 or limit < 1:
            raise ServiceStoreValidationError("page and limit must be positive")
        with self._store.read() as conn:
            total = self._store.count_bookings(conn, status=status)
            bookings = self._store.fetch_bookings(conn, status=status, limit=limit, offset=(page - 1) * limit)
            bookings = self._store.attach_listing_summary(conn, bookings)
        total_pages = (total + limit - 1) // limit
        return AdminBookingPage(bookings=bookings, total_pages=total_pages, current_page=page, total=total)
