def _login(client, user_id, role):
    response = client.post("/auth/login", json={"user_id": user_id, "password": "marketplace-demo", "role": role})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def _create_service(client, headers, **overrides):
    payload = {
        "name": "Leak repair",
        "description": "Kitchen and bathroom leak fixes",
        "category": "plumbing",
        "price": "50.00",
        "duration": 60,
        "service_area": {"radius": 5, "center": {"lat": 12.9716, "lng": 77.5946}},
    }
    payload.update(overrides)
    response = client.post("/services", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["service"]


def _create_booking(client, headers, service_id):
    response = client.post(
        "/bookings",
        json={
            "listing_id": service_id,
            "scheduled_date": "2026-11-02",
            "scheduled_time": "10:00",
            "address": "12 MG Road, Bengaluru",
        },
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()["booking"]


def _set_status(client, headers, booking_id, status):
    return client.put(f"/bookings/{booking_id}/status", json={"status": status}, headers=headers)


def test_health_and_root(client):
    assert client.get("/health").json() == {"success": True, "status": "ok"}
    root = client.get("/")
    assert root.status_code == 200
    assert root.json()["success"] is True


def test_auth_login_and_me(client):
    headers = _login(client, "prov_1", "provider")
    me = client.get("/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json() == {"success": True, "user_id": "prov_1", "role": "provider"}


def test_auth_rejects_bad_password_and_missing_token(client):
    bad = client.post("/auth/login", json={"user_id": "prov_1", "password": "nope"})
    assert bad.status_code == 401
    assert bad.json()["success"] is False

    missing = client.get("/auth/me")
    assert missing.status_code == 401
    assert missing.json() == {"success": False, "message": "Invalid or missing bearer token"}

    tampered = client.get("/auth/me", headers={"Authorization": "Bearer abc.def"})
    assert tampered.status_code == 401


def test_create_and_search_services(client, auth_headers):
    provider = auth_headers("prov_1", "provider")
    created = _create_service(client, provider)
    assert created["price"] == "50.00"
    assert created["provider_id"] == "prov_1"
    _create_service(client, provider, name="Fan install", category="electrical", service_area=None)

    listing = client.get("/services", params={"category": "plumbing"})
    assert listing.status_code == 200
    body = listing.json()
    assert body["success"] is True
    assert body["count"] == 1
    assert body["services"][0]["id"] == created["id"]

    nearby = client.get("/services", params={"lat": 12.9750, "lng": 77.6000, "radius": 0.5}).json()
    assert [item["name"] for item in nearby["services"]] == ["Fan install"]

    by_provider = client.get("/services/provider/prov_1").json()
    assert by_provider["count"] == 2

    single = client.get(f"/services/{created['id']}")
    assert single.json()["service"]["name"] == "Leak repair"


def test_service_errors_use_envelope(client, auth_headers):
    missing = client.get("/services/svc_missing")
    assert missing.status_code == 404
    assert missing.json() == {"success": False, "message": "Service not found"}

    bad_category = client.get("/services", params={"category": "gardening"})
    assert bad_category.status_code == 400
    assert bad_category.json()["success"] is False

    customer = auth_headers("cust_1", "customer")
    forbidden = client.post(
        "/services",
        json={"name": "x", "description": "y", "category": "other", "price": "1.00", "duration": 10},
        headers=customer,
    )
    assert forbidden.status_code == 403

    invalid_body = client.post("/services", json={"name": "No price"}, headers=auth_headers("prov_1", "provider"))
    assert invalid_body.status_code == 400
    assert invalid_body.json()["success"] is False


def test_service_update_and_delete(client, auth_headers):
    provider = auth_headers("prov_1", "provider")
    service = _create_service(client, provider)

    other = auth_headers("prov_2", "provider")
    assert client.put(f"/services/{service['id']}", json={"price": "60.00"}, headers=other).status_code == 403

    updated = client.put(f"/services/{service['id']}", json={"price": "60.00"}, headers=provider)
    assert updated.status_code == 200
    assert updated.json()["service"]["price"] == "60.00"

    _create_booking(client, auth_headers("cust_1", "customer"), service["id"])
    deleted = client.delete(f"/services/{service['id']}", headers=provider)
    assert deleted.json() == {"success": True, "message": "Service has bookings and was deactivated"}
    assert client.get("/services").json()["count"] == 0

    unbooked = _create_service(client, provider, name="Tap swap")
    gone = client.delete(f"/services/{unbooked['id']}", headers=provider)
    assert gone.json()["message"] == "Service deleted successfully"
    assert client.get(f"/services/{unbooked['id']}").status_code == 404


def test_booking_golden_path_with_rating(client, auth_headers):
    provider = auth_headers("prov_1", "provider")
    customer = auth_headers("cust_1", "customer")
    service = _create_service(client, provider)

    booking = _create_booking(client, customer, service["id"])
    assert booking["status"] == "pending"
    assert booking["payment_status"] == "requires_payment_method"
    assert booking["total_amount"] == "50.00"
    assert booking["listing"]["name"] == "Leak repair"

    # Price edits after booking do not touch the snapshot.
    client.put(f"/services/{service['id']}", json={"price": "75.00"}, headers=provider)

    for status in ("confirmed", "in-progress", "completed"):
        response = _set_status(client, provider, booking["id"], status)
        assert response.status_code == 200, response.text
        assert response.json()["message"] == "Booking status updated successfully"

    fetched = client.get(f"/bookings/{booking['id']}", headers=customer).json()["booking"]
    assert fetched["status"] == "completed"
    assert fetched["total_amount"] == "50.00"
    assert fetched["version"] == 4

    rated = client.post(f"/bookings/{booking['id']}/rating", json={"score": 5, "review": "Spotless"}, headers=customer)
    assert rated.status_code == 200
    assert rated.json()["booking"]["rating"]["score"] == 5

    rating = client.get(f"/services/{service['id']}").json()["service"]["rating"]
    assert rating == {"average": 5.0, "count": 1}

    again = client.post(f"/bookings/{booking['id']}/rating", json={"score": 4}, headers=customer)
    assert again.status_code == 409
    assert again.json() == {"success": False, "message": "Booking already rated"}

    history = client.get(f"/bookings/{booking['id']}/history", headers=customer).json()["history"]
    assert [row["to_status"] for row in history] == ["pending", "confirmed", "in-progress", "completed"]


def test_booking_rejections(client, auth_headers):
    provider = auth_headers("prov_1", "provider")
    customer = auth_headers("cust_1", "customer")
    service = _create_service(client, provider)
    booking = _create_booking(client, customer, service["id"])

    assert _set_status(client, customer, booking["id"], "confirmed").status_code == 403
    skip = _set_status(client, provider, booking["id"], "completed")
    assert skip.status_code == 400
    assert skip.json()["success"] is False
    assert _set_status(client, provider, booking["id"], "done").status_code == 400

    early_rating = client.post(f"/bookings/{booking['id']}/rating", json={"score": 4}, headers=customer)
    assert early_rating.status_code == 400
    bad_score = client.post(f"/bookings/{booking['id']}/rating", json={"score": 7}, headers=customer)
    assert bad_score.status_code == 400
    assert bad_score.json()["message"] == "Rating must be between 1 and 5"

    stale = client.put(
        f"/bookings/{booking['id']}/status",
        json={"status": "confirmed", "expected_version": 9},
        headers=provider,
    )
    assert stale.status_code == 409

    intruder = auth_headers("cust_2", "customer")
    assert client.get(f"/bookings/{booking['id']}", headers=intruder).status_code == 403
    assert client.get("/bookings/b_missing", headers=customer).status_code == 404
    assert client.post("/bookings", json={"listing_id": service["id"]}, headers=customer).status_code == 400


def test_cancel_endpoint(client, auth_headers):
    provider = auth_headers("prov_1", "provider")
    customer = auth_headers("cust_1", "customer")
    service = _create_service(client, provider)

    open_booking = _create_booking(client, customer, service["id"])
    cancelled = client.put(f"/bookings/{open_booking['id']}/cancel", headers=customer)
    assert cancelled.status_code == 200
    assert cancelled.json()["message"] == "Booking cancelled successfully"
    assert cancelled.json()["booking"]["status"] == "cancelled"

    again = client.put(f"/bookings/{open_booking['id']}/cancel", json={"reason": "twice"}, headers=customer)
    assert again.status_code == 400
    assert again.json() == {"success": False, "message": "Cannot cancel this booking"}

    done = _create_booking(client, customer, service["id"])
    for status in ("confirmed", "in-progress", "completed"):
        _set_status(client, provider, done["id"], status)
    assert client.put(f"/bookings/{done['id']}/cancel", headers=customer).status_code == 400


def test_booking_listings_by_role(client, auth_headers):
    provider = auth_headers("prov_1", "provider")
    customer = auth_headers("cust_1", "customer")
    service = _create_service(client, provider)
    _create_booking(client, customer, service["id"])
    _create_booking(client, auth_headers("cust_2", "customer"), service["id"])

    mine = client.get("/bookings/my-bookings", headers=customer).json()
    assert mine["count"] == 1
    assert client.get("/bookings/provider-bookings", headers=provider).json()["count"] == 2
    assert client.get("/bookings/provider-bookings", headers=customer).status_code == 403


def test_payment_flow_and_refund(client, auth_headers):
    provider = auth_headers("prov_1", "provider")
    customer = auth_headers("cust_1", "customer")
    service = _create_service(client, provider, price="49.99")
    booking = _create_booking(client, customer, service["id"])

    intent = client.post("/payment/create-payment-intent", json={"booking_id": booking["id"]}, headers=customer)
    assert intent.status_code == 200
    body = intent.json()
    assert body["payment_intent"]["amount"] == 4999
    assert body["publishable_key"]

    confirm = client.post(
        "/payment/confirm-payment",
        json={"booking_id": booking["id"], "payment_intent_id": body["payment_intent"]["id"]},
        headers=customer,
    )
    assert confirm.status_code == 200
    assert confirm.json()["booking"]["payment_status"] == "paid"

    status = client.get(f"/payment/payment-status/{booking['id']}", headers=customer).json()["booking"]
    assert status["payment_status"] == "paid"
    assert status["payment_id"] == body["payment_intent"]["id"]

    refund = client.post("/payment/refund", json={"booking_id": booking["id"], "reason": "No-show"}, headers=customer)
    assert refund.status_code == 200
    refunded = refund.json()["booking"]
    assert refunded["payment_status"] == "refunded"
    assert refunded["status"] == "cancelled"

    second = client.post("/payment/refund", json={"booking_id": booking["id"]}, headers=customer)
    assert second.status_code == 409


def test_declined_payment_and_gateway_outage(client, gateway, auth_headers):
    from marketplace.services.payment_gateway import PaymentGatewayTimeout

    customer = auth_headers("cust_1", "customer")
    service = _create_service(client, auth_headers("prov_1", "provider"))
    booking = _create_booking(client, customer, service["id"])
    payload = {"booking_id": booking["id"], "payment_intent_id": "pi_fake_1"}

    gateway.outcomes = [False]
    declined = client.post("/payment/confirm-payment", json=payload, headers=customer)
    assert declined.status_code == 400
    assert declined.json() == {"success": False, "message": "Payment failed. Please try again."}
    assert client.get(f"/bookings/{booking['id']}", headers=customer).json()["booking"]["payment_status"] == "failed"

    gateway.fail_with = PaymentGatewayTimeout("Payment gateway confirm timed out")
    outage = client.post("/payment/confirm-payment", json=payload, headers=customer)
    assert outage.status_code == 503


def test_payment_methods_require_auth(client, auth_headers):
    assert client.get("/payment/payment-methods").status_code == 401
    methods = client.get("/payment/payment-methods", headers=auth_headers("cust_1", "customer")).json()
    assert [method["card"]["last4"] for method in methods["payment_methods"]] == ["4242", "5555"]


def test_admin_endpoints(client, auth_headers):
    provider = auth_headers("prov_1", "provider")
    customer = auth_headers("cust_1", "customer")
    admin = auth_headers("admin_1", "admin")
    service = _create_service(client, provider)
    for _ in range(3):
        _create_booking(client, customer, service["id"])

    assert client.get("/admin/dashboard", headers=customer).status_code == 403
    dashboard = client.get("/admin/dashboard", headers=admin).json()
    assert dashboard["stats"]["total_bookings"] == 3
    assert dashboard["stats"]["pending_bookings"] == 3
    assert len(dashboard["recent_bookings"]) == 3

    page = client.get("/admin/bookings", params={"page": 2, "limit": 2}, headers=admin).json()
    assert page["total"] == 3
    assert page["total_pages"] == 2
    assert len(page["bookings"]) == 1
    assert client.get("/admin/bookings", params={"status": "archived"}, headers=admin).status_code == 400


def test_admin_service_administration(client, auth_headers):
    provider = auth_headers("prov_1", "provider")
    admin = auth_headers("admin_1", "admin")
    service = _create_service(client, provider)
    _create_service(client, provider, name="Fan install", category="electrical")

    assert client.get("/admin/services", headers=provider).status_code == 403

    hidden = client.put(f"/admin/services/{service['id']}/status", json={"is_active": False}, headers=admin)
    assert hidden.status_code == 200
    assert hidden.json()["service"]["is_active"] is False
    assert client.get("/services").json()["count"] == 1

    page = client.get("/admin/services", headers=admin).json()
    assert page["total"] == 2
    assert page["current_page"] == 1
    assert {item["id"]: item["is_active"] for item in page["services"]}[service["id"]] is False

    plumbing = client.get("/admin/services", params={"category": "plumbing"}, headers=admin).json()
    assert [item["id"] for item in plumbing["services"]] == [service["id"]]

    restored = client.put(f"/admin/services/{service['id']}/status", json={"is_active": True}, headers=admin)
    assert restored.json()["service"]["is_active"] is True
    assert client.get("/services").json()["count"] == 2

    assert client.put("/admin/services/svc_missing/status", json={"is_active": True}, headers=admin).status_code == 404
    assert (
        client.put(f"/admin/services/{service['id']}/status", json={"is_active": False}, headers=provider).status_code
        == 403
    )
