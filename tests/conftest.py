import os
import tempfile

# Must be set before carehub is imported; modules read config at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_carehub"
os.environ["RAZORPAY_KEY_SECRET"] = "test_key_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "test_webhook_secret"
os.environ["MAIL_HOST"] = ""
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="carehub-uploads-")

import pytest
from fastapi.testclient import TestClient

from carehub.database.connection import Base, SessionLocal, engine
from carehub.main import app

PASSWORD = "Secret123!"

ROLE_FIELDS = {
    "PATIENT": {"gender": "female", "address": "12 MG Road, Pune"},
    "DOCTOR": {
        "specialization": "Cardiology",
        "qualification": "MBBS, MD",
        "experience": 8,
        "license_number": "MCI-44871",
        "consultation_fee": "500.00",
    },
    "DIAGNOSTICS": {"license_number": "LAB-1201", "address": "4 Lab Street, Pune"},
    "SHOP": {"license_number": "DL-20B-7781", "address": "7 FC Road, Pune", "delivery_charges": "40.00"},
}


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def register_user(client):
    """Factory: register a user of a role and return token, headers and role profile"""
    counter = {"n": 0}

    def _register(role="PATIENT", email=None, **overrides):
        counter["n"] += 1
        payload = {
            "email": email or f"{role.lower()}{counter['n']}@example.com",
            "password": PASSWORD,
            "name": f"Test {role.title()} {counter['n']}",
            "phone": "9876543210",
            "role": role,
            **ROLE_FIELDS[role],
        }
        payload.update(overrides)

        response = client.post("/api/auth/register", json=payload)
        assert response.status_code == 201, response.text
        data = response.json()["data"]
        headers = {"Authorization": f"Bearer {data['token']}"}

        me = client.get("/api/auth/me", headers=headers)
        assert me.status_code == 200, me.text
        return {**data, "headers": headers, "profile": me.json()["data"]}

    return _register


@pytest.fixture
def patient(register_user):
    return register_user("PATIENT")


@pytest.fixture
def doctor(register_user):
    return register_user("DOCTOR")


@pytest.fixture
def shop(register_user):
    return register_user("SHOP")


@pytest.fixture
def add_medicine(client, shop):
    """Factory: stock a medicine in the `shop` fixture's inventory"""
    def _add(name="Paracetamol 500mg", price="25.50", stock=100, requires_prescription=False, owner=None):
        response = client.post(
            "/api/orders/shop/medicines",
            json={
                "name": name,
                "price": price,
                "stock": stock,
                "manufacturer": "Cipla",
                "requires_prescription": requires_prescription,
            },
            headers=(owner or shop)["headers"],
        )
        assert response.status_code == 201, response.text
        return response.json()["data"]

    return _add


@pytest.fixture
def book_appointment(client, doctor):
    """Factory: book the `doctor` fixture for a patient"""
    def _book(patient, appointment_date="2030-01-15", appointment_time="10:30:00", doctor_id=None):
        return client.post(
            "/api/appointments/book",
            json={
                "doctor_id": doctor_id or doctor["profile"]["doctor_id"],
                "appointment_date": appointment_date,
                "appointment_time": appointment_time,
                "symptoms": "Chest pain",
            },
            headers=patient["headers"],
        )

    return _book
