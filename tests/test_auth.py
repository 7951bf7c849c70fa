from decimal import Decimal

import jwt

from carehub.api import auth
from carehub.database.models import User, Doctor, AuditLog

PASSWORD = "Secret123!"


def test_register_patient_returns_token(client, register_user):
    user = register_user("PATIENT", email="Asha@Example.com")

    assert user["email"] == "asha@example.com"
    assert user["role"] == "PATIENT"

    payload = jwt.decode(user["token"], auth.SECRET_KEY, algorithms=[auth.ALGORITHM])
    assert payload["user_id"] == user["userId"]
    assert payload["role"] == "PATIENT"
    assert payload["type"] == "access"


def test_register_doctor_creates_profile(client, register_user, db):
    user = register_user("DOCTOR")

    doctor = db.query(Doctor).filter(Doctor.user_id == user["userId"]).first()
    assert doctor is not None
    assert doctor.specialization == "Cardiology"
    assert Decimal(str(user["profile"]["consultation_fee"])) == Decimal("500")


def test_duplicate_email_conflicts_across_roles(client, register_user):
    register_user("PATIENT", email="same@example.com")

    response = client.post("/api/auth/register", json={
        "email": "SAME@example.com",
        "password": PASSWORD,
        "name": "Dr Same",
        "phone": "9123456780",
        "role": "SHOP",
        "license_number": "DL-1",
        "address": "Somewhere",
    })

    assert response.status_code == 409
    assert response.json() == {"success": False, "message": "Email already registered"}


def test_missing_role_fields_leave_no_user_behind(client, register_user, db):
    response = client.post("/api/auth/register", json={
        "email": "half@example.com",
        "password": PASSWORD,
        "name": "Dr Half",
        "phone": "9123456780",
        "role": "DOCTOR",
        "specialization": "ENT",
    })

    assert response.status_code == 400
    assert "license_number" in response.json()["message"]
    assert db.query(User).filter(User.email == "half@example.com").count() == 0

    # The address is free again
    register_user("PATIENT", email="half@example.com")


def test_register_validation_errors_use_envelope(client):
    response = client.post("/api/auth/register", json={
        "email": "not-an-email",
        "password": "short",
        "name": "X",
        "phone": "12",
        "role": "ADMIN",
    })

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["errors"]


def test_login_same_error_for_unknown_email_and_wrong_password(client, register_user):
    register_user("PATIENT", email="login@example.com")

    wrong_password = client.post("/api/auth/login", json={"email": "login@example.com", "password": "nope-nope"})
    unknown_email = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": PASSWORD})

    assert wrong_password.status_code == unknown_email.status_code == 401
    assert wrong_password.json()["message"] == unknown_email.json()["message"] == auth.INVALID_CREDENTIALS


def test_login_updates_last_login(client, register_user, db):
    user = register_user("SHOP", email="shop@example.com")

    response = client.post("/api/auth/login", json={"email": "shop@example.com", "password": PASSWORD})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["name"] == user["profile"]["shop_name"]
    assert data["profile"]["shop_id"] == user["profile"]["shop_id"]

    db.expire_all()
    assert db.get(User, user["userId"]).last_login is not None
    assert db.query(AuditLog).filter(AuditLog.action == "LOGIN_SUCCESS").count() == 1


def test_deactivated_account_is_forbidden(client, register_user, db):
    user = register_user("PATIENT", email="inactive@example.com")

    row = db.get(User, user["userId"])
    row.is_active = False
    db.commit()

    login = client.post("/api/auth/login", json={"email": "inactive@example.com", "password": PASSWORD})
    me = client.get("/api/auth/me", headers=user["headers"])

    assert login.status_code == 403
    assert me.status_code == 403


def test_protected_routes_require_valid_token(client):
    assert client.get("/api/auth/me").status_code == 401

    response = client.get("/api/auth/me", headers={"Authorization": "Bearer not.a.token"})
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid token"


def test_expired_token_rejected(client, register_user):
    user = register_user("PATIENT")
    token = jwt.encode(
        {"user_id": user["userId"], "type": "access", "exp": 1},
        auth.SECRET_KEY,
        algorithm=auth.ALGORITHM
    )

    response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401
    assert response.json()["message"] == "Token has expired"


def test_change_password(client, register_user):
    user = register_user("PATIENT", email="pw@example.com")

    wrong = client.put(
        "/api/auth/change-password",
        json={"current_password": "wrong-one", "new_password": "NewSecret456"},
        headers=user["headers"],
    )
    assert wrong.status_code == 401

    ok = client.put(
        "/api/auth/change-password",
        json={"current_password": PASSWORD, "new_password": "NewSecret456"},
        headers=user["headers"],
    )
    assert ok.status_code == 200

    assert client.post("/api/auth/login", json={"email": "pw@example.com", "password": PASSWORD}).status_code == 401
    assert client.post("/api/auth/login", json={"email": "pw@example.com", "password": "NewSecret456"}).status_code == 200


def test_password_limit_counts_bytes(client, db):
    response = client.post("/api/auth/register", json={
        "email": "accent@example.com",
        "password": "é" * 40,
        "name": "Élodie",
        "phone": "9123456780",
        "role": "PATIENT",
    })

    assert response.status_code == 400
    assert "72 bytes" in response.json()["message"]
    assert db.query(User).filter(User.email == "accent@example.com").count() == 0


def test_multibyte_password_within_limit_works(client, register_user):
    register_user("PATIENT", email="accent@example.com", password="é" * 36)

    login = client.post("/api/auth/login", json={"email": "accent@example.com", "password": "é" * 36})
    assert login.status_code == 200


def test_change_password_rejects_too_many_bytes(client, register_user):
    user = register_user("PATIENT", email="pw2@example.com")

    response = client.put(
        "/api/auth/change-password",
        json={"current_password": PASSWORD, "new_password": "密" * 30},
        headers=user["headers"],
    )

    assert response.status_code == 400
    assert client.post("/api/auth/login", json={"email": "pw2@example.com", "password": PASSWORD}).status_code == 200
