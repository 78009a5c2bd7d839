import importlib
import random
import sqlite3
import sys
import threading
from decimal import Decimal

import pytest

from marketplace.services.payment_gateway import (
    BoundedPaymentGateway,
    GatewayIntent,
    MockPaymentGateway,
    PaymentGatewayTimeout,
)
from marketplace.services.rating_aggregator import RatingAggregator, summarize_scores
from marketplace.services.store import MarketplaceStore, from_cents, to_cents


def test_auth_ttl_invalid_env_falls_back(monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN_TTL_HOURS", "not-a-number")
    sys.modules.pop("marketplace.auth", None)
    auth = importlib.import_module("marketplace.auth")
    assert auth.TOKEN_TTL_HOURS == 24


def test_auth_ttl_non_positive_env_falls_back(monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN_TTL_HOURS", "0")
    sys.modules.pop("marketplace.auth", None)
    auth = importlib.import_module("marketplace.auth")
    assert auth.TOKEN_TTL_HOURS == 24


def test_tampered_token_is_rejected():
    from marketplace.auth import create_access_token, verify_access_token

    token, _ = create_access_token(user_id="cust_1", role="customer")
    principal = verify_access_token(token)
    assert principal.user_id == "cust_1"
    assert principal.role == "customer"

    payload, signature = token.split(".")
    forged_payload, _ = create_access_token(user_id="cust_1", role="admin")
    assert verify_access_token(f"{forged_payload.split('.')[0]}.{signature}") is None
    assert verify_access_token(f"{payload}.") is None
    assert verify_access_token("not-a-token") is None


def test_summarize_scores_rounds_half_up():
    assert summarize_scores([]) == (0.0, 0)
    assert summarize_scores([5, 3, 4]) == (4.0, 3)
    assert summarize_scores([4, 4, 4, 5]) == (4.3, 4)
    assert summarize_scores([1, 2]) == (1.5, 2)
    assert summarize_scores([5, 5, 4]) == (4.7, 3)


def test_money_round_trips_through_cents():
    assert to_cents(Decimal("49.99")) == 4999
    assert to_cents(Decimal("0.005")) == 1
    assert from_cents(4999) == Decimal("49.99")
    assert str(from_cents(5000)) == "50.00"


def test_store_transaction_rolls_back_on_error(store, make_listing):
    listing = make_listing()

    with pytest.raises(RuntimeError):
        with store.transaction() as conn:
            store.write_listing_rating(conn, listing.id, 4.5, 2)
            raise RuntimeError("boom")

    assert store.get_listing(listing.id).rating.count == 0


def test_store_init_is_idempotent(tmp_path):
    db_path = tmp_path / "nested" / "marketplace.sqlite3"
    store = MarketplaceStore(db_path=str(db_path))
    store.init_db()
    store.init_db()
    with sqlite3.connect(str(db_path)) as conn:
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert {"listings", "bookings", "booking_status_history"} <= tables


def test_rating_recompute_from_scratch(store, lifecycle, make_listing, make_booking):
    from conftest import CUSTOMER, PROVIDER

    listing = make_listing()
    booking = make_booking(listing)
    for status in ("confirmed", "in-progress", "completed"):
        lifecycle.update_status(PROVIDER, booking.id, status)
    lifecycle.rate(CUSTOMER, booking.id, 3)

    with store.transaction() as conn:
        store.write_listing_rating(conn, listing.id, 0.0, 0)
    rating = RatingAggregator(store).recompute(listing.id)
    assert (rating.average, rating.count) == (3.0, 1)
    assert store.get_listing(listing.id).rating.average == 3.0


def test_mock_gateway_replays_by_idempotency_key():
    gateway = MockPaymentGateway(success_rate=0.5, rng=random.Random(7))
    first = gateway.confirm(intent_id="pi_1", payment_method_id=None, idempotency_key="b_1:confirm:1")
    for _ in range(10):
        assert gateway.confirm(intent_id="pi_1", payment_method_id=None, idempotency_key="b_1:confirm:1") == first

    intent = gateway.create_intent(amount=5000, currency="usd", idempotency_key="b_1:intent:1")
    assert intent.id.startswith("pi_mock_")
    assert gateway.create_intent(amount=5000, currency="usd", idempotency_key="b_1:intent:1") == intent


def test_mock_gateway_success_rate_bounds():
    always = MockPaymentGateway(success_rate=1.0)
    never = MockPaymentGateway(success_rate=0.0)
    assert always.confirm(intent_id="pi_1", payment_method_id=None, idempotency_key="k").succeeded
    declined = never.confirm(intent_id="pi_1", payment_method_id=None, idempotency_key="k")
    assert not declined.succeeded
    assert declined.failure_code == "mock_payment_failure"


class _StuckGateway:
    def __init__(self):
        self.release = threading.Event()

    def create_intent(self, *, amount, currency, idempotency_key):
        self.release.wait(5)
        return GatewayIntent(id="pi_late", client_secret="secret", amount=amount, currency=currency)

    def close(self):
        self.release.set()


def test_bounded_gateway_times_out_slow_calls():
    inner = _StuckGateway()
    gateway = BoundedPaymentGateway(inner, timeout_seconds=0.05)
    try:
        with pytest.raises(PaymentGatewayTimeout):
            gateway.create_intent(amount=100, currency="usd", idempotency_key="k")
    finally:
        gateway.close()


def test_bounded_gateway_passes_results_through():
    gateway = BoundedPaymentGateway(MockPaymentGateway(success_rate=1.0), timeout_seconds=2)
    try:
        intent = gateway.create_intent(amount=2500, currency="usd", idempotency_key="k")
        assert intent.amount == 2500
        assert gateway.confirm(intent_id=intent.id, payment_method_id=None, idempotency_key="c").succeeded
    finally:
        gateway.close()


def test_importing_main_builds_nothing():
    main = importlib.import_module("marketplace.main")
    assert not hasattr(main, "app")
    assert callable(main.create_app)
