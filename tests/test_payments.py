import hashlib
import hmac
import json
from decimal import Decimal
from itertools import count

import pytest
from razorpay.errors import BadRequestError

from carehub.api import payments
from carehub.database.models import Appointment, AuditLog, MedicineOrder, Payment


def sign(secret, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def checkout_signature(order_id, payment_id):
    return sign(payments.RAZORPAY_KEY_SECRET, f"{order_id}|{payment_id}".encode())


@pytest.fixture
def gateway(monkeypatch):
    """Stand-in for the remote order/refund calls; records what was sent"""
    sent = {"orders": [], "refunds": []}
    ids = count(1)

    def create_order(data):
        sent["orders"].append(data)
        return {"id": f"order_TEST{next(ids):04d}", "amount": data["amount"], "currency": data["currency"]}

    def refund(payment_id, data):
        sent["refunds"].append((payment_id, data))
        return {"id": f"rfnd_TEST{next(ids):04d}", "amount": data["amount"]}

    monkeypatch.setattr(payments.razorpay_client.order, "create", create_order)
    monkeypatch.setattr(payments.razorpay_client.payment, "refund", refund)
    return sent


@pytest.fixture
def appointment_id(patient, book_appointment):
    return book_appointment(patient).json()["data"]["appointmentId"]


def create_order(client, user, type_, reference_id, amount):
    return client.post(
        "/api/payments/create-order",
        json={"type": type_, "reference_id": reference_id, "amount": amount},
        headers=user["headers"],
    )


def verify(client, user, order_id, payment_id, signature=None):
    return client.post(
        "/api/payments/verify",
        json={
            "razorpay_order_id": order_id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": signature or checkout_signature(order_id, payment_id),
        },
        headers=user["headers"],
    )


def post_webhook(client, event, order_id, payment_id="pay_HOOK0001", secret=None, **entity):
    body = json.dumps({
        "event": event,
        "payload": {"payment": {"entity": {"id": payment_id, "order_id": order_id, "method": "upi", **entity}}},
    }).encode()
    return post_raw_webhook(client, body, secret=secret)


def post_raw_webhook(client, body: bytes, secret=None):
    return client.post(
        "/api/payments/webhook",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Razorpay-Signature": sign(secret or payments.RAZORPAY_WEBHOOK_SECRET, body),
        },
    )


def fresh(db, model, pk):
    db.expire_all()
    return db.get(model, pk)

# ==================== CREATE ORDER ====================

def test_create_order_for_appointment(client, patient, appointment_id, gateway, db):
    response = create_order(client, patient, "appointment", appointment_id, "500.00")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["order_id"] == "order_TEST0001"
    assert data["currency"] == "INR"
    assert data["razorpay_key_id"] == payments.RAZORPAY_KEY_ID

    sent = gateway["orders"][0]
    assert sent["amount"] == 50000
    assert sent["receipt"].startswith("BILL-")

    payment = db.query(Payment).filter(Payment.razorpay_order_id == "order_TEST0001").one()
    assert payment.status == "created"
    assert payment.payment_type == "appointment"
    assert payment.reference_id == appointment_id


@pytest.mark.parametrize("body", [
    {"type": "appointment", "reference_id": 1, "amount": 0},
    {"type": "appointment", "reference_id": 1, "amount": -5},
    {"type": "lab-booking", "reference_id": 1, "amount": 100},
])
def test_create_order_rejects_bad_input(client, patient, gateway, body):
    response = client.post("/api/payments/create-order", json=body, headers=patient["headers"])

    assert response.status_code == 400
    assert gateway["orders"] == []


def test_create_order_amount_must_match_fee(client, patient, appointment_id, gateway):
    response = create_order(client, patient, "appointment", appointment_id, "499.00")

    assert response.status_code == 400
    assert gateway["orders"] == []


def test_create_order_for_someone_elses_appointment(client, register_user, appointment_id, gateway):
    stranger = register_user("PATIENT")
    assert create_order(client, stranger, "appointment", appointment_id, "500.00").status_code == 403


def test_create_order_unknown_reference(client, patient, gateway):
    assert create_order(client, patient, "medicine-order", 4242, "100.00").status_code == 404


def test_create_order_for_cancelled_appointment(client, patient, appointment_id, gateway):
    client.put(f"/api/appointments/{appointment_id}/cancel", json={}, headers=patient["headers"])
    assert create_order(client, patient, "appointment", appointment_id, "500.00").status_code == 400


def test_gateway_bad_request(client, patient, appointment_id, monkeypatch, db):
    def rejected(data):
        raise BadRequestError("The amount must be at least INR 1.00")

    monkeypatch.setattr(payments.razorpay_client.order, "create", rejected)

    response = create_order(client, patient, "appointment", appointment_id, "500.00")

    assert response.status_code == 400
    assert "Payment gateway error" in response.json()["message"]
    assert db.query(Payment).count() == 0


def test_gateway_unreachable(client, patient, appointment_id, monkeypatch):
    def down(data):
        raise ConnectionError("connection reset")

    monkeypatch.setattr(payments.razorpay_client.order, "create", down)

    assert create_order(client, patient, "appointment", appointment_id, "500.00").status_code == 502

# ==================== VERIFY ====================

def test_verify_marks_appointment_paid(client, patient, appointment_id, gateway, db):
    order_id = create_order(client, patient, "appointment", appointment_id, "500.00").json()["data"]["order_id"]

    response = verify(client, patient, order_id, "pay_OK0001")

    assert response.status_code == 200
    payment = db.query(Payment).filter(Payment.razorpay_order_id == order_id).one()
    assert payment.status == "success"
    assert payment.razorpay_payment_id == "pay_OK0001"
    assert payment.paid_at is not None

    appointment = db.get(Appointment, appointment_id)
    assert appointment.payment_status == "paid"
    assert appointment.status == "confirmed"


def test_verify_with_altered_payment_id_changes_nothing(client, patient, appointment_id, gateway, db):
    order_id = create_order(client, patient, "appointment", appointment_id, "500.00").json()["data"]["order_id"]
    signature = checkout_signature(order_id, "pay_REAL0001")

    response = verify(client, patient, order_id, "pay_FAKE0001", signature=signature)

    assert response.status_code == 400
    assert response.json()["message"] == "Invalid payment signature"

    assert db.query(Payment).filter(Payment.razorpay_order_id == order_id).one().status == "created"
    appointment = db.get(Appointment, appointment_id)
    assert appointment.payment_status == "pending"
    assert appointment.status == "pending"
    assert db.query(AuditLog).filter(AuditLog.action == "PAYMENT_VERIFICATION_FAILED").count() == 1


def test_verify_twice_is_idempotent(client, patient, appointment_id, gateway, db):
    order_id = create_order(client, patient, "appointment", appointment_id, "500.00").json()["data"]["order_id"]

    assert verify(client, patient, order_id, "pay_OK0001").status_code == 200
    again = verify(client, patient, order_id, "pay_OK0001")

    assert again.status_code == 200
    assert again.json()["message"] == "Payment already verified"
    assert db.query(AuditLog).filter(AuditLog.action == "PAYMENT_SUCCESS").count() == 1


def test_verify_unknown_order(client, patient, gateway):
    assert verify(client, patient, "order_MISSING", "pay_X").status_code == 404


def test_verify_someone_elses_payment(client, register_user, patient, appointment_id, gateway):
    order_id = create_order(client, patient, "appointment", appointment_id, "500.00").json()["data"]["order_id"]
    stranger = register_user("PATIENT")

    assert verify(client, stranger, order_id, "pay_OK0001").status_code == 403


def test_medicine_order_payment_moves_order_to_processing(client, patient, shop, add_medicine, gateway, db):
    medicine = add_medicine(price="30.00", stock=10)
    order = client.post(
        "/api/orders",
        json={
            "shop_id": shop["profile"]["shop_id"],
            "medicines": [{"medicine_id": medicine["medicine_id"], "quantity": 2}],
            "delivery_address": "12 MG Road, Pune",
        },
        headers=patient["headers"],
    ).json()["data"]
    assert Decimal(str(order["final_amount"])) == Decimal("100.00")

    assert create_order(client, patient, "medicine-order", order["order_id"], "99.00").status_code == 400
    gateway_order = create_order(client, patient, "medicine-order", order["order_id"], "100.00").json()["data"]["order_id"]
    assert gateway["orders"][-1]["amount"] == 10000

    assert verify(client, patient, gateway_order, "pay_MED0001").status_code == 200

    row = fresh(db, MedicineOrder, order["order_id"])
    assert row.payment_status == "paid"
    assert row.status == "processing"

    # Paid references cannot be charged again
    assert create_order(client, patient, "medicine-order", order["order_id"], "100.00").status_code == 400


def test_diagnostic_test_payment_has_no_local_entity(client, register_user, gateway, db):
    payer = register_user("PATIENT")
    order_id = create_order(client, payer, "diagnostic-test", 77, "1200.00").json()["data"]["order_id"]

    assert verify(client, payer, order_id, "pay_LAB0001").status_code == 200
    assert db.query(Payment).filter(Payment.razorpay_order_id == order_id).one().status == "success"

# ==================== WEBHOOK ====================

def test_webhook_capture_applied_once(client, patient, appointment_id, gateway, db):
    order_id = create_order(client, patient, "appointment", appointment_id, "500.00").json()["data"]["order_id"]

    first = post_webhook(client, "payment.captured", order_id)
    second = post_webhook(client, "payment.captured", order_id)

    assert first.status_code == second.status_code == 200
    payment = db.query(Payment).filter(Payment.razorpay_order_id == order_id).one()
    assert payment.status == "success"
    assert payment.payment_method == "upi"
    assert db.get(Appointment, appointment_id).status == "confirmed"
    assert db.query(AuditLog).filter(AuditLog.action == "PAYMENT_SUCCESS").count() == 1

    # The client callback arriving late is still answered as success
    late = verify(client, patient, order_id, "pay_HOOK0001")
    assert late.status_code == 200
    assert late.json()["message"] == "Payment already verified"


def test_webhook_rejects_bad_or_missing_signature(client, patient, appointment_id, gateway, db):
    order_id = create_order(client, patient, "appointment", appointment_id, "500.00").json()["data"]["order_id"]

    forged = post_webhook(client, "payment.captured", order_id, secret="not-the-secret")
    unsigned = client.post(
        "/api/payments/webhook",
        content=json.dumps({"event": "payment.captured"}).encode(),
        headers={"Content-Type": "application/json"},
    )

    assert forged.status_code == 400
    assert unsigned.status_code == 400
    assert db.query(Payment).filter(Payment.razorpay_order_id == order_id).one().status == "created"
    assert db.query(AuditLog).filter(AuditLog.action == "WEBHOOK_SIGNATURE_INVALID").count() == 2


def test_webhook_failed_leaves_reference_untouched(client, patient, appointment_id, gateway, db):
    order_id = create_order(client, patient, "appointment", appointment_id, "500.00").json()["data"]["order_id"]

    response = post_webhook(
        client, "payment.failed", order_id, payment_id="pay_FAIL0001",
        error_description="Payment declined by bank"
    )

    assert response.status_code == 200
    payment = db.query(Payment).filter(Payment.razorpay_order_id == order_id).one()
    assert payment.status == "failed"
    assert payment.failure_reason == "Payment declined by bank"

    appointment = db.get(Appointment, appointment_id)
    assert appointment.status == "pending"
    assert appointment.payment_status == "pending"


def test_payment_status_never_moves_backwards(client, patient, appointment_id, gateway, db):
    order_id = create_order(client, patient, "appointment", appointment_id, "500.00").json()["data"]["order_id"]
    post_webhook(client, "payment.failed", order_id)

    # A late capture or callback for a failed attempt does not resurrect it
    assert post_webhook(client, "payment.captured", order_id).status_code == 200
    assert verify(client, patient, order_id, "pay_LATE0001").status_code == 409

    assert fresh(db, Appointment, appointment_id).status == "pending"
    assert db.query(Payment).filter(Payment.razorpay_order_id == order_id).one().status == "failed"

    # And a failure after success is ignored
    retry = create_order(client, patient, "appointment", appointment_id, "500.00").json()["data"]["order_id"]
    post_webhook(client, "payment.captured", retry)
    post_webhook(client, "payment.failed", retry)
    assert db.query(Payment).filter(Payment.razorpay_order_id == retry).one().status == "success"


def test_webhook_acknowledges_unknown_orders_and_events(client, gateway):
    assert post_webhook(client, "payment.captured", "order_NOBODY").status_code == 200
    assert post_webhook(client, "refund.processed", "order_NOBODY").status_code == 200


@pytest.mark.parametrize("body", [
    b"[1, 2]",
    b'"payment.captured"',
    b'{"event": "payment.captured", "payload": {"payment": null}}',
    b'{"event": "payment.failed", "payload": []}',
])
def test_signed_webhook_with_wrong_shape_is_rejected(client, body):
    response = post_raw_webhook(client, body)

    assert response.status_code == 400
    assert response.json() == {"success": False, "message": "Malformed webhook payload"}

# ==================== REFUND & HISTORY ====================

def test_refund_successful_payment(client, patient, appointment_id, gateway, db):
    order_id = create_order(client, patient, "appointment", appointment_id, "500.00").json()["data"]["order_id"]

    too_early = client.post(
        "/api/payments/refund",
        json={"razorpay_order_id": order_id, "reason": "Doctor unavailable"},
        headers=patient["headers"],
    )
    assert too_early.status_code == 400

    verify(client, patient, order_id, "pay_OK0001")
    response = client.post(
        "/api/payments/refund",
        json={"razorpay_order_id": order_id, "reason": "Doctor unavailable", "amount": "200.00"},
        headers=patient["headers"],
    )

    assert response.status_code == 200
    assert gateway["refunds"][0][0] == "pay_OK0001"
    assert gateway["refunds"][0][1]["amount"] == 20000

    payment = db.query(Payment).filter(Payment.razorpay_order_id == order_id).one()
    assert payment.status == "refunded"
    assert payment.refund_id.startswith("rfnd_")
    assert payment.refund_amount == Decimal("200.00")


def test_payment_history(client, patient, register_user, gateway):
    for reference in (1, 2, 3):
        create_order(client, patient, "diagnostic-test", reference, "300.00")
    other = register_user("PATIENT")
    create_order(client, other, "diagnostic-test", 9, "300.00")

    page = client.get("/api/payments/history", params={"page": 1, "limit": 2}, headers=patient["headers"]).json()["data"]
    assert len(page["payments"]) == 2
    assert page["pagination"]["totalPayments"] == 3
    assert page["pagination"]["totalPages"] == 2

    filtered = client.get(
        "/api/payments/history", params={"type": "appointment"}, headers=patient["headers"]
    ).json()["data"]
    assert filtered["payments"] == []
