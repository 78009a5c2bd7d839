import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from threading import Lock
from typing import Any, Iterator, List, Optional
from uuid import uuid4

from marketplace.models import (
    AvailabilityWindow,
    Booking,
    BookingRating,
    BookingStatusChange,
    Listing,
    ListingRating,
    ListingSummary,
    ServiceArea,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


class ServiceStoreError(ValueError):
    """Base class for user-visible marketplace errors."""


class ServiceStoreValidationError(ServiceStoreError):
    pass


class ServiceStoreNotFoundError(ServiceStoreError):
    pass


class ServiceStorePermissionError(ServiceStoreError):
    pass


class ServiceStoreConflictError(ServiceStoreError):
    """The write lost against the current state of the entity. Safe to retry after re-reading."""


class ServiceStoreInvalidTransitionError(ServiceStoreConflictError):
    pass


class ServiceStoreExternalError(ServiceStoreError):
    """A collaborator outside the store failed or timed out."""


class ServiceStorePaymentDeclinedError(ServiceStoreExternalError):
    pass


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(CENTS)


@dataclass
class MarketplaceStore:
    db_path: str

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode; transactions are opened explicitly in transaction().
        conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                yield conn
            finally:
                conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialized read-modify-write unit.

        The in-process lock orders writers within one worker; BEGIN IMMEDIATE takes the
        sqlite write lock up front so a second process cannot interleave between our
        read and our write.
        """
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            finally:
                conn.close()

    def init_db(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS listings (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT NOT NULL,
                    category TEXT NOT NULL,
                    price_cents INTEGER NOT NULL,
                    duration INTEGER NOT NULL,
                    provider_id TEXT NOT NULL,
                    availability_json TEXT NOT NULL,
                    service_area_json TEXT,
                    rating_average REAL NOT NULL DEFAULT 0,
                    rating_count INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    images_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bookings (
                    id TEXT PRIMARY KEY,
                    customer_id TEXT NOT NULL,
                    listing_id TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    scheduled_date TEXT NOT NULL,
                    scheduled_time TEXT NOT NULL,
                    address TEXT NOT NULL,
                    total_amount_cents INTEGER NOT NULL,
                    notes TEXT NOT NULL,
                    status TEXT NOT NULL,
                    payment_status TEXT NOT NULL,
                    payment_id TEXT,
                    rating_score INTEGER,
                    rating_review TEXT,
                    rating_created_at TEXT,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS booking_status_history (
                    id TEXT PRIMARY KEY,
                    booking_id TEXT NOT NULL,
                    actor_user_id TEXT NOT NULL,
                    field TEXT NOT NULL,
                    from_status TEXT NOT NULL,
                    to_status TEXT NOT NULL,
                    note TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_bookings_listing ON bookings (listing_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_bookings_customer ON bookings (customer_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_bookings_provider ON bookings (provider_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_history_booking ON booking_status_history (booking_id)")
        logger.info("Marketplace store ready at %s", self.db_path)

    # Listings

    def _row_to_listing(self, row: sqlite3.Row) -> Listing:
        area_json = row["service_area_json"]
        return Listing(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            category=row["category"],
            price=from_cents(row["price_cents"]),
            duration=int(row["duration"]),
            provider_id=row["provider_id"],
            availability=[AvailabilityWindow(**item) for item in json.loads(row["availability_json"] or "[]")],
            service_area=ServiceArea(**json.loads(area_json)) if area_json else None,
            rating=ListingRating(average=float(row["rating_average"]), count=int(row["rating_count"])),
            is_active=bool(row["is_active"]),
            images=json.loads(row["images_json"] or "[]"),
            created_at=row["created_at"],
        )

    def insert_listing(self, conn: sqlite3.Connection, listing: Listing) -> None:
        conn.execute(
            """
            INSERT INTO listings (
                id, name, description, category, price_cents, duration, provider_id,
                availability_json, service_area_json, rating_average, rating_count,
                is_active, images_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                listing.id,
                listing.name,
                listing.description,
                listing.category,
                to_cents(listing.price),
                listing.duration,
                listing.provider_id,
                json.dumps([window.model_dump() for window in listing.availability]),
                listing.service_area.model_dump_json() if listing.service_area else None,
                listing.rating.average,
                listing.rating.count,
                int(listing.is_active),
                json.dumps(listing.images),
                listing.created_at,
            ),
        )

    def update_listing(self, conn: sqlite3.Connection, listing: Listing) -> None:
        # Rating columns are owned by write_listing_rating and never touched here.
        conn.execute(
            """
            UPDATE listings
            SET name = ?, description = ?, category = ?, price_cents = ?, duration = ?,
                availability_json = ?, service_area_json = ?, is_active = ?, images_json = ?
            WHERE id = ?
            """,
            (
                listing.name,
                listing.description,
                listing.category,
                to_cents(listing.price),
                listing.duration,
                json.dumps([window.model_dump() for window in listing.availability]),
                listing.service_area.model_dump_json() if listing.service_area else None,
                int(listing.is_active),
                json.dumps(listing.images),
                listing.id,
            ),
        )

    def write_listing_rating(self, conn: sqlite3.Connection, listing_id: str, average: float, count: int) -> None:
        conn.execute(
            "UPDATE listings SET rating_average = ?, rating_count = ? WHERE id = ?",
            (average, count, listing_id),
        )

    def delete_listing(self, conn: sqlite3.Connection, listing_id: str) -> None:
        conn.execute("DELETE FROM listings WHERE id = ?", (listing_id,))

    def fetch_listing(self, conn: sqlite3.Connection, listing_id: str) -> Optional[Listing]:
        row = conn.execute("SELECT * FROM listings WHERE id = ?", (listing_id,)).fetchone()
        return self._row_to_listing(row) if row else None

    def fetch_listings(
        self,
        conn: sqlite3.Connection,
        *,
        active_only: bool = True,
        provider_id: Optional[str] = None,
        category: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Listing]:
        query = "SELECT * FROM listings WHERE 1 = 1"
        params: List[Any] = []
        if active_only:
            query += " AND is_active = 1"
        if provider_id:
            query += " AND provider_id = ?"
            params.append(provider_id)
        if category:
            query += " AND category = ?"
            params.append(category)
        query += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_listing(row) for row in rows]

    def count_listings(self, conn: sqlite3.Connection, category: Optional[str] = None) -> int:
        if category:
            row = conn.execute("SELECT COUNT(*) FROM listings WHERE category = ?", (category,)).fetchone()
        else:
            row = conn.execute("SELECT COUNT(*) FROM listings").fetchone()
        return int(row[0])

    def get_listing(self, listing_id: str) -> Optional[Listing]:
        with self.read() as conn:
            return self.fetch_listing(conn, listing_id)

    # Bookings

    def _row_to_booking(self, row: sqlite3.Row) -> Booking:
        rating = None
        if row["rating_score"] is not None:
            rating = BookingRating(
                score=int(row["rating_score"]),
                review=row["rating_review"] or "",
                created_at=row["rating_created_at"],
            )
        return Booking(
            id=row["id"],
            customer_id=row["customer_id"],
            listing_id=row["listing_id"],
            provider_id=row["provider_id"],
            scheduled_date=row["scheduled_date"],
            scheduled_time=row["scheduled_time"],
            address=row["address"],
            total_amount=from_cents(row["total_amount_cents"]),
            notes=row["notes"],
            status=row["status"],
            payment_status=row["payment_status"],
            payment_id=row["payment_id"],
            rating=rating,
            version=int(row["version"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def insert_booking(self, conn: sqlite3.Connection, booking: Booking) -> None:
        conn.execute(
            """
            INSERT INTO bookings (
                id, customer_id, listing_id, provider_id, scheduled_date, scheduled_time,
                address, total_amount_cents, notes, status, payment_status, payment_id,
                rating_score, rating_review, rating_created_at, version, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, NULL, ?, ?, ?)
            """,
            (
                booking.id,
                booking.customer_id,
                booking.listing_id,
                booking.provider_id,
                booking.scheduled_date,
                booking.scheduled_time,
                booking.address,
                to_cents(booking.total_amount),
                booking.notes,
                booking.status,
                booking.payment_status,
                booking.payment_id,
                booking.version,
                booking.created_at,
                booking.updated_at,
            ),
        )

    def compare_and_swap_booking(self, conn: sqlite3.Connection, booking: Booking, expected_version: int) -> Booking:
        """Persist the mutable fields of ``booking`` if the stored version still matches.

        total_amount and the booking's references are not part of the write, so the
        price snapshot taken at creation can never be overwritten.
        """
        updated_at = utc_now_iso()
        rating = booking.rating
        cursor = conn.execute(
            """
            UPDATE bookings
            SET status = ?, payment_status = ?, payment_id = ?,
                rating_score = ?, rating_review = ?, rating_created_at = ?,
                version = version + 1, updated_at = ?
            WHERE id = ? AND version = ?
            """,
            (
                booking.status,
                booking.payment_status,
                booking.payment_id,
                rating.score if rating else None,
                rating.review if rating else None,
                rating.created_at if rating else None,
                updated_at,
                booking.id,
                expected_version,
            ),
        )
        if cursor.rowcount != 1:
            raise ServiceStoreConflictError("Booking was modified concurrently; reload and retry")
        stored = self.fetch_booking(conn, booking.id)
        assert stored is not None
        return stored

    def fetch_booking(self, conn: sqlite3.Connection, booking_id: str) -> Optional[Booking]:
        row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        return self._row_to_booking(row) if row else None

    def fetch_bookings(
        self,
        conn: sqlite3.Connection,
        *,
        customer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Booking]:
        query = "SELECT * FROM bookings WHERE 1 = 1"
        params: List[Any] = []
        if customer_id:
            query += " AND customer_id = ?"
            params.append(customer_id)
        if provider_id:
            query += " AND provider_id = ?"
            params.append(provider_id)
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_booking(row) for row in rows]

    def count_bookings(self, conn: sqlite3.Connection, status: Optional[str] = None) -> int:
        if status:
            row = conn.execute("SELECT COUNT(*) FROM bookings WHERE status = ?", (status,)).fetchone()
        else:
            row = conn.execute("SELECT COUNT(*) FROM bookings").fetchone()
        return int(row[0])

    def count_bookings_for_listing(self, conn: sqlite3.Connection, listing_id: str) -> int:
        row = conn.execute("SELECT COUNT(*) FROM bookings WHERE listing_id = ?", (listing_id,)).fetchone()
        return int(row[0])

    def fetch_rating_scores(self, conn: sqlite3.Connection, listing_id: str) -> List[int]:
        rows = conn.execute(
            "SELECT rating_score FROM bookings WHERE listing_id = ? AND rating_score IS NOT NULL",
            (listing_id,),
        ).fetchall()
        return [int(row["rating_score"]) for row in rows]

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with self.read() as conn:
            return self.fetch_booking(conn, booking_id)

    def attach_listing_summary(self, conn: sqlite3.Connection, bookings: List[Booking]) -> List[Booking]:
        """Join each booking with a summary of the listing it references."""
        cache: dict[str, Optional[ListingSummary]] = {}
        joined: List[Booking] = []
        for booking in bookings:
            if booking.listing_id not in cache:
                listing = self.fetch_listing(conn, booking.listing_id)
                cache[booking.listing_id] = (
                    ListingSummary(
                        id=listing.id,
                        name=listing.name,
                        description=listing.description,
                        price=listing.price,
                        duration=listing.duration,
                    )
                    if listing
                    else None
                )
            joined.append(booking.model_copy(update={"listing": cache[booking.listing_id]}))
        return joined

    # Status history

    def append_history(
        self,
        conn: sqlite3.Connection,
        *,
        booking_id: str,
        actor_user_id: str,
        field: str,
        from_status: str,
        to_status: str,
        note: str = "",
    ) -> None:
        conn.execute(
            """
            INSERT INTO booking_status_history (id, booking_id, actor_user_id, field, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                f"bsh_{uuid4().hex[:10]}",
                booking_id,
                actor_user_id,
                field,
                from_status,
                to_status,
                note,
                utc_now_iso(),
            ),
        )

    def fetch_history(self, conn: sqlite3.Connection, booking_id: str) -> List[BookingStatusChange]:
        rows = conn.execute(
            "SELECT * FROM booking_status_history WHERE booking_id = ? ORDER BY created_at, rowid",
            (booking_id,),
        ).fetchall()
        return [
            BookingStatusChange(
                id=row["id"],
                booking_id=row["booking_id"],
                actor_user_id=row["actor_user_id"],
                field=row["field"],
                from_status=row["from_status"],
                to_status=row["to_status"],
                note=row["note"],
                created_at=row["created_at"],
            )
            for row in rows
        ]


default_db = str(Path(__file__).resolve().parents[2] / "data" / "marketplace.sqlite3")


def store_from_env() -> MarketplaceStore:
    return MarketplaceStore(db_path=os.getenv("MARKETPLACE_DB_PATH", default_db))
