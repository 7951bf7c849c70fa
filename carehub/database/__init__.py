# Database Package - Centralized imports
# Allows easy importing of models, connection utilities, and ORM objects

from .connection import (
    engine,
    Base,
    SessionLocal,
    get_db,
)

from .models import (
    # Enums
    UserRole,
    AppointmentStatus,
    OrderStatus,
    BillingStatus,
    PaymentStatus,
    PaymentType,

    # User & Role Profiles
    User,
    Patient,
    Doctor,
    DiagnosticCenter,
    MedicalShop,

    # Appointments & Prescriptions
    Appointment,
    Prescription,
    PrescriptionMedicine,
    PrescriptionTest,

    # Pharmacy
    Medicine,
    MedicineOrder,
    MedicineOrderItem,

    # Payments, Files & Audit
    Payment,
    UploadedFile,
    AuditLog,
)

__all__ = [
    # Connection
    "engine",
    "Base",
    "SessionLocal",
    "get_db",

    # Enums
    "UserRole",
    "AppointmentStatus",
    "OrderStatus",
    "BillingStatus",
    "PaymentStatus",
    "PaymentType",

    # User & Role Profiles
    "User",
    "Patient",
    "Doctor",
    "DiagnosticCenter",
    "MedicalShop",

    # Appointments & Prescriptions
    "Appointment",
    "Prescription",
    "PrescriptionMedicine",
    "PrescriptionTest",

    # Pharmacy
    "Medicine",
    "MedicineOrder",
    "MedicineOrderItem",

    # Payments, Files & Audit
    "Payment",
    "UploadedFile",
    "AuditLog",
]
