from datetime import timedelta

from src.models import Payment, Reservation, utcnow
from tests.conftest import RETURN_URL, reservation_details

RESERVATIONS = "/api/v1/reservations"
PAYMENTS = "/api/v1/payments"


def _create(client, headers, **overrides):
    response = client.post(RESERVATIONS, json=reservation_details(**overrides), headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def _initiate(client, headers, **body):
    return client.post(f"{PAYMENTS}/initiate", json={"amount": "500", "return_url": RETURN_URL, **body}, headers=headers)


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_create_reservation(client, rider_headers):
    reservation = _create(client, rider_headers)

    assert reservation["status"] == "PENDING"
    assert reservation["owner_id"] == "rider-1"
    assert reservation["from_location"] == "Kathmandu"
    assert reservation["passenger_names"] == ["Sita Sharma", "Ram Thapa"]
    assert reservation["is_expired"] is False
    assert reservation["expires_at"]


def test_create_requires_token(client):
    response = client.post(RESERVATIONS, json=reservation_details())
    assert response.status_code == 401


def test_invalid_token_is_rejected(client):
    response = client.get(RESERVATIONS, headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_create_rejects_empty_passenger_list(client, rider_headers):
    response = client.post(RESERVATIONS, json=reservation_details(passengers=[]), headers=rider_headers)
    assert response.status_code == 422


def test_create_requires_price(client, rider_headers):
    details = reservation_details()
    del details["total_price"]
    response = client.post(RESERVATIONS, json=details, headers=rider_headers)
    assert response.status_code == 422


def test_get_and_list_reservations(client, rider_headers, other_rider_headers):
    mine = _create(client, rider_headers)
    _create(client, other_rider_headers)

    fetched = client.get(f"{RESERVATIONS}/{mine['id']}", headers=rider_headers)
    listed = client.get(RESERVATIONS, headers=rider_headers)

    assert fetched.status_code == 200
    assert fetched.json()["id"] == mine["id"]
    assert [r["id"] for r in listed.json()] == [mine["id"]]


def test_list_filters_by_status(client, rider_headers):
    first = _create(client, rider_headers)
    second = _create(client, rider_headers)
    client.post(f"{RESERVATIONS}/{first['id']}/cancel", headers=rider_headers)

    response = client.get(RESERVATIONS, params={"status": "CANCELLED"}, headers=rider_headers)

    assert [r["id"] for r in response.json()] == [first["id"]]
    assert second["id"] not in [r["id"] for r in response.json()]


def test_other_riders_reservation_is_not_found(client, rider_headers, other_rider_headers, admin_headers):
    reservation = _create(client, rider_headers)

    assert client.get(f"{RESERVATIONS}/{reservation['id']}", headers=other_rider_headers).status_code == 404
    assert client.get(f"{RESERVATIONS}/{reservation['id']}", headers=admin_headers).status_code == 200


def test_unknown_reservation(client, rider_headers):
    assert client.get(f"{RESERVATIONS}/missing", headers=rider_headers).status_code == 404


def test_cancel_reservation(client, rider_headers):
    reservation = _create(client, rider_headers)

    response = client.post(f"{RESERVATIONS}/{reservation['id']}/cancel", headers=rider_headers)

    assert response.status_code == 200
    assert response.json()["status"] == "CANCELLED"


def test_admin_override_requires_admin(client, rider_headers):
    reservation = _create(client, rider_headers)

    response = client.put(f"{RESERVATIONS}/{reservation['id']}/status", json={"status": "PAID"}, headers=rider_headers)

    assert response.status_code == 403


def test_admin_override_and_terminal_conflict(client, rider_headers, admin_headers):
    reservation = _create(client, rider_headers)
    url = f"{RESERVATIONS}/{reservation['id']}/status"

    paid = client.put(url, json={"status": "PAID"}, headers=admin_headers)
    reopened = client.put(url, json={"status": "PENDING"}, headers=admin_headers)
    cancel = client.post(f"{RESERVATIONS}/{reservation['id']}/cancel", headers=rider_headers)

    assert paid.status_code == 200
    assert paid.json()["applied"] is True
    assert reopened.status_code == 409
    assert cancel.status_code == 409

    history = client.get(f"{RESERVATIONS}/{reservation['id']}/history", headers=rider_headers).json()
    assert [(h["to_status"], h["source"]) for h in history] == [("PENDING", "BOOKING"), ("PAID", "MANUAL")]
    assert history[1]["actor_id"] == "operator-1"


def test_pay_for_reservation_then_verify(client, gateway, rider_headers):
    reservation = _create(client, rider_headers)

    initiated = _initiate(client, rider_headers, reservation_id=reservation["id"])
    assert initiated.status_code == 200, initiated.text
    transaction_id = initiated.json()["transaction_id"]
    assert initiated.json()["payment_url"]

    gateway.complete(transaction_id)
    verified = client.post(f"{PAYMENTS}/verify", json={"pidx": transaction_id}, headers=rider_headers)

    assert verified.status_code == 200
    assert verified.json()["success"] is True
    assert verified.json()["outcome"] == "PAID"
    assert client.get(f"{RESERVATIONS}/{reservation['id']}", headers=rider_headers).json()["status"] == "PAID"


def test_verify_ignores_client_supplied_status(client, gateway, rider_headers):
    reservation = _create(client, rider_headers)
    transaction_id = _initiate(client, rider_headers, reservation_id=reservation["id"]).json()["transaction_id"]

    verified = client.post(
        f"{PAYMENTS}/verify",
        json={"pidx": transaction_id, "status": "Completed"},
        headers=rider_headers,
    )

    assert verified.json()["success"] is False
    assert verified.json()["outcome"] == "NOT_COMPLETED"
    assert client.get(f"{RESERVATIONS}/{reservation['id']}", headers=rider_headers).json()["status"] == "PENDING"


def test_pay_first_through_gateway_callback(client, gateway, rider_headers):
    pending = reservation_details()
    del pending["total_price"]
    initiated = _initiate(client, rider_headers, pending_details=pending)
    assert initiated.status_code == 200, initiated.text
    transaction_id = initiated.json()["transaction_id"]

    gateway.complete(transaction_id)
    callback = client.get(f"{PAYMENTS}/callback", params={"pidx": transaction_id, "status": "Completed"})
    repeat = client.get(f"{PAYMENTS}/callback", params={"pidx": transaction_id})

    assert callback.status_code == 200
    assert callback.json()["success"] is True
    reservation_id = callback.json()["reservation_id"]
    assert repeat.json()["reservation_id"] == reservation_id
    reservation = client.get(f"{RESERVATIONS}/{reservation_id}", headers=rider_headers).json()
    assert reservation["status"] == "PAID"
    assert reservation["owner_id"] == "rider-1"


def test_initiate_with_both_targets_is_rejected(client, rider_headers):
    reservation = _create(client, rider_headers)

    response = _initiate(client, rider_headers, reservation_id=reservation["id"], pending_details=reservation_details())

    assert response.status_code == 400


def test_initiate_for_expired_reservation(client, session_factory, rider_headers):
    reservation = _create(client, rider_headers)
    session = session_factory()
    try:
        stored = session.query(Reservation).filter(Reservation.id == reservation["id"]).one()
        stored.created_at = utcnow() - timedelta(hours=3)
        session.commit()
    finally:
        session.close()

    response = _initiate(client, rider_headers, reservation_id=reservation["id"])

    assert response.status_code == 410


def test_initiate_gateway_down(client, gateway, rider_headers):
    reservation = _create(client, rider_headers)
    gateway.fail_initiate = True

    response = _initiate(client, rider_headers, reservation_id=reservation["id"])

    assert response.status_code == 502


def test_verify_unknown_transaction(client, rider_headers):
    response = client.post(f"{PAYMENTS}/verify", json={"pidx": "ghost"}, headers=rider_headers)
    assert response.status_code == 404


def test_callback_requires_transaction_id(client):
    assert client.get(f"{PAYMENTS}/callback").status_code == 422


def test_payment_visible_to_owner_and_admin_only(client, rider_headers, other_rider_headers, admin_headers):
    reservation = _create(client, rider_headers)
    transaction_id = _initiate(client, rider_headers, reservation_id=reservation["id"]).json()["transaction_id"]
    url = f"{PAYMENTS}/{transaction_id}"

    own = client.get(url, headers=rider_headers)

    assert own.status_code == 200
    assert own.json()["status"] == "INITIATED"
    assert own.json()["amount_minor"] == 50000
    assert client.get(url, headers=other_rider_headers).status_code == 404
    assert client.get(url, headers=admin_headers).status_code == 200


def test_repair_pending_details_over_http(client, gateway, session_factory, rider_headers):
    pending = reservation_details()
    initiated = _initiate(client, rider_headers, pending_details=pending).json()
    transaction_id = initiated["transaction_id"]
    gateway.complete(transaction_id)

    # Corrupt the stashed payload so settlement cannot build the reservation
    session = session_factory()
    try:
        payment = session.query(Payment).filter(Payment.transaction_id == transaction_id).one()
        payment.pending_details = {"from_location": "Kathmandu"}
        session.commit()
    finally:
        session.close()

    failed = client.post(f"{PAYMENTS}/verify", json={"pidx": transaction_id}, headers=rider_headers)
    assert failed.json()["outcome"] == "PARTIAL_FAILURE"

    repaired = client.put(f"{PAYMENTS}/{transaction_id}/pending-details", json=pending, headers=rider_headers)

    assert repaired.status_code == 200
    assert repaired.json()["success"] is True
    assert repaired.json()["reservation_id"]


def test_unowned_payment_repair_is_reserved_for_operators(client, gateway, rider_headers, other_rider_headers, admin_headers):
    gateway.set_status("ext-9", "Completed", 45000)
    failed = client.get(f"{PAYMENTS}/callback", params={"pidx": "ext-9"})
    assert failed.json()["outcome"] == "PARTIAL_FAILURE"
    details = reservation_details(passengers=["Stranger"])
    del details["total_price"]
    url = f"{PAYMENTS}/ext-9/pending-details"

    assert client.put(url, json=details, headers=other_rider_headers).status_code == 404
    assert client.put(url, params={"owner_id": "rider-2"}, json=details, headers=other_rider_headers).status_code == 403
    assert client.get(f"{PAYMENTS}/ext-9", headers=other_rider_headers).status_code == 404

    repaired = client.put(url, params={"owner_id": "rider-1"}, json=reservation_details(total_price="450"), headers=admin_headers)

    assert repaired.status_code == 200
    assert repaired.json()["success"] is True
    reservation = client.get(f"{RESERVATIONS}/{repaired.json()['reservation_id']}", headers=rider_headers)
    assert reservation.status_code == 200
    assert reservation.json()["owner_id"] == "rider-1"
