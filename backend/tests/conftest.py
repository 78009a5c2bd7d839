import os
import sys
from decimal import Decimal
from typing import Callable, List, Optional

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from marketplace.auth import create_access_token  # noqa: E402
from marketplace.main import create_app  # noqa: E402
from marketplace.models import BookingCreateRequest, ListingCreateRequest, Principal  # noqa: E402
from marketplace.services.booking_lifecycle import BookingLifecycleManager  # noqa: E402
from marketplace.services.catalog import ListingCatalog  # noqa: E402
from marketplace.services.payment_gateway import (  # noqa: E402
    GatewayConfirmation,
    GatewayIntent,
    GatewayRefund,
)
from marketplace.services.store import MarketplaceStore  # noqa: E402

CUSTOMER = Principal(user_id="cust_1", role="customer")
OTHER_CUSTOMER = Principal(user_id="cust_2", role="customer")
PROVIDER = Principal(user_id="prov_1", role="provider")
OTHER_PROVIDER = Principal(user_id="prov_2", role="provider")
ADMIN = Principal(user_id="admin_1", role="admin")


class FakePaymentGateway:
    """Deterministic gateway: confirmations follow ``outcomes`` (default success).

    ``while_in_flight`` runs once, inside the next gateway call, to simulate other
    requests landing while the call is outstanding.
    """

    def __init__(self):
        self.outcomes: List[bool] = []
        self.fail_with: Optional[Exception] = None
        self.while_in_flight: Optional[Callable[[], None]] = None
        self.calls: List[tuple] = []
        self.closed = False

    def _record(self, operation: str, idempotency_key: str) -> None:
        self.calls.append((operation, idempotency_key))
        if self.while_in_flight is not None:
            hook, self.while_in_flight = self.while_in_flight, None
            hook()
        if self.fail_with is not None:
            raise self.fail_with

    def create_intent(self, *, amount, currency, idempotency_key):
        self._record("create_intent", idempotency_key)
        return GatewayIntent(
            id=f"pi_fake_{len(self.calls)}",
            client_secret=f"pi_fake_{len(self.calls)}_secret",
            amount=amount,
            currency=currency,
        )

    def confirm(self, *, intent_id, payment_method_id, idempotency_key):
        self._record("confirm", idempotency_key)
        succeeded = self.outcomes.pop(0) if self.outcomes else True
        return GatewayConfirmation(
            succeeded=succeeded,
            reference=intent_id,
            failure_code=None if succeeded else "card_declined",
        )

    def refund(self, *, reference, amount, reason, idempotency_key):
        self._record("refund", idempotency_key)
        return GatewayRefund(id=f"re_fake_{len(self.calls)}", reference=reference, amount=amount)

    def close(self):
        self.closed = True


@pytest.fixture
def store(tmp_path):
    marketplace_store = MarketplaceStore(db_path=str(tmp_path / "marketplace.sqlite3"))
    marketplace_store.init_db()
    return marketplace_store


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def catalog(store):
    return ListingCatalog(store)


@pytest.fixture
def lifecycle(store, gateway):
    return BookingLifecycleManager(store, gateway)


@pytest.fixture
def make_listing(catalog):
    def _make(price: str = "50.00", provider: Principal = PROVIDER, **overrides):
        fields = {
            "name": "Leak repair",
            "description": "Kitchen and bathroom leak fixes",
            "category": "plumbing",
            "price": Decimal(price),
            "duration": 60,
        }
        fields.update(overrides)
        return catalog.create(provider, ListingCreateRequest(**fields))

    return _make


@pytest.fixture
def make_booking(lifecycle):
    def _make(listing, customer: Principal = CUSTOMER):
        return lifecycle.create_booking(
            customer,
            BookingCreateRequest(
                listing_id=listing.id,
                scheduled_date="2026-11-02",
                scheduled_time="10:00",
                address="12 MG Road, Bengaluru",
                notes="Ring the bell twice",
            ),
        )

    return _make


@pytest.fixture
def client(store, gateway):
    app = create_app(store=store, gateway=gateway)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    def _headers(user_id: str, role: str) -> dict:
        token, _ = create_access_token(user_id=user_id, role=role)
        return {"Authorization": f"Bearer {token}"}

    return _headers
