"""
CareHub Marketplace - Database Models
Users with one role profile each, appointments, medicine orders,
prescriptions and gateway payments
"""
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text, Boolean, Numeric, Time, Date, JSON, Index
from sqlalchemy.orm import relationship
from sqlalchemy import text
from datetime import datetime
from .connection import Base
import enum


# ============================================
# ENUMS
# ============================================

class UserRole(str, enum.Enum):
    PATIENT = "PATIENT"
    DOCTOR = "DOCTOR"
    DIAGNOSTICS = "DIAGNOSTICS"
    SHOP = "SHOP"


class AppointmentStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class BillingStatus(str, enum.Enum):
    """Payment state as seen from an appointment or an order"""
    PENDING = "pending"
    PAID = "paid"


class PaymentStatus(str, enum.Enum):
    CREATED = "created"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentType(str, enum.Enum):
    APPOINTMENT = "appointment"
    DIAGNOSTIC_TEST = "diagnostic-test"
    MEDICINE_ORDER = "medicine-order"


# ============================================
# USER MANAGEMENT
# ============================================

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(100), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False)  # PATIENT | DOCTOR | DIAGNOSTICS | SHOP
    is_active = Column(Boolean, default=True)
    last_login = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    patient_profile = relationship("Patient", back_populates="user", uselist=False)
    doctor_profile = relationship("Doctor", back_populates="user", uselist=False)
    diagnostics_profile = relationship("DiagnosticCenter", back_populates="user", uselist=False)
    shop_profile = relationship("MedicalShop", back_populates="user", uselist=False)
    payments = relationship("Payment", back_populates="user")
    uploaded_files = relationship("UploadedFile", back_populates="user")
    audit_logs = relationship("AuditLog", back_populates="user")

    @property
    def profile(self):
        """The single role profile row attached to this login"""
        return {
            UserRole.PATIENT.value: self.patient_profile,
            UserRole.DOCTOR.value: self.doctor_profile,
            UserRole.DIAGNOSTICS.value: self.diagnostics_profile,
            UserRole.SHOP.value: self.shop_profile,
        }.get(self.role)


# ============================================
# ROLE PROFILES
# ============================================

class Patient(Base):
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    name = Column(String(100), nullable=False)
    phone = Column(String(15), nullable=False)
    date_of_birth = Column(Date)
    gender = Column(String(10))
    address = Column(Text)
    created_at = Column(DateTime, default=datetime.now)

    user = relationship("User", back_populates="patient_profile")
    appointments = relationship("Appointment", back_populates="patient")
    orders = relationship("MedicineOrder", back_populates="patient")
    prescriptions = relationship("Prescription", back_populates="patient")

    def to_dict(self):
        return {
            "patient_id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "phone": self.phone,
            "date_of_birth": str(self.date_of_birth) if self.date_of_birth else None,
            "gender": self.gender,
            "address": self.address,
        }


class Doctor(Base):
    __tablename__ = "doctors"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    name = Column(String(100), nullable=False)
    phone = Column(String(15), nullable=False)
    specialization = Column(String(100), nullable=False)
    qualification = Column(String(200), nullable=False)
    experience = Column(Integer, default=0)
    license_number = Column(String(100), nullable=False)
    consultation_fee = Column(Numeric(10, 2), nullable=False)
    is_available = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.now)

    user = relationship("User", back_populates="doctor_profile")
    appointments = relationship("Appointment", back_populates="doctor")
    prescriptions = relationship("Prescription", back_populates="doctor")

    def to_dict(self):
        return {
            "doctor_id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "phone": self.phone,
            "specialization": self.specialization,
            "qualification": self.qualification,
            "experience": self.experience,
            "license_number": self.license_number,
            "consultation_fee": self.consultation_fee,
            "is_available": self.is_available,
        }


class DiagnosticCenter(Base):
    __tablename__ = "diagnostic_centers"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    center_name = Column(String(200), nullable=False)
    phone = Column(String(15), nullable=False)
    email = Column(String(100))
    license_number = Column(String(100), nullable=False)
    address = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.now)

    user = relationship("User", back_populates="diagnostics_profile")

    def to_dict(self):
        return {
            "center_id": self.id,
            "user_id": self.user_id,
            "center_name": self.center_name,
            "phone": self.phone,
            "email": self.email,
            "license_number": self.license_number,
            "address": self.address,
        }


class MedicalShop(Base):
    __tablename__ = "medical_shops"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    shop_name = Column(String(200), nullable=False)
    phone = Column(String(15), nullable=False)
    email = Column(String(100))
    license_number = Column(String(100), nullable=False)
    address = Column(Text, nullable=False)
    delivery_charges = Column(Numeric(10, 2), default=0)
    created_at = Column(DateTime, default=datetime.now)

    user = relationship("User", back_populates="shop_profile")
    medicines = relationship("Medicine", back_populates="shop")
    orders = relationship("MedicineOrder", back_populates="shop")

    def to_dict(self):
        return {
            "shop_id": self.id,
            "user_id": self.user_id,
            "shop_name": self.shop_name,
            "phone": self.phone,
            "email": self.email,
            "license_number": self.license_number,
            "address": self.address,
            "delivery_charges": self.delivery_charges,
        }


# ============================================
# APPOINTMENTS
# ============================================

class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False)
    appointment_date = Column(Date, nullable=False)
    appointment_time = Column(Time, nullable=False)
    consultation_type = Column(String(20), default="in-person")
    symptoms = Column(Text)
    consultation_fee = Column(Numeric(10, 2), nullable=False)

    status = Column(String(20), default=AppointmentStatus.PENDING.value)
    payment_status = Column(String(20), default=BillingStatus.PENDING.value)
    doctor_notes = Column(Text)

    cancellation_reason = Column(String(255))
    cancelled_by = Column(String(20))  # patient | doctor
    cancelled_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # At most one live booking per doctor slot; cancelled rows free the slot
    __table_args__ = (
        Index(
            "uq_appointments_doctor_slot_active",
            "doctor_id", "appointment_date", "appointment_time",
            unique=True,
            postgresql_where=text("status <> 'cancelled'"),
            sqlite_where=text("status <> 'cancelled'"),
        ),
    )

    # Relationships
    patient = relationship("Patient", back_populates="appointments")
    doctor = relationship("Doctor", back_populates="appointments")
    prescription = relationship("Prescription", back_populates="appointment", uselist=False)

    def to_dict(self):
        return {
            "appointment_id": self.id,
            "patient_id": self.patient_id,
            "patient_name": self.patient.name if self.patient else None,
            "doctor_id": self.doctor_id,
            "doctor_name": self.doctor.name if self.doctor else None,
            "specialization": self.doctor.specialization if self.doctor else None,
            "appointment_date": str(self.appointment_date),
            "appointment_time": self.appointment_time.strftime("%H:%M"),
            "consultation_type": self.consultation_type,
            "symptoms": self.symptoms,
            "consultation_fee": self.consultation_fee,
            "status": self.status,
            "payment_status": self.payment_status,
            "doctor_notes": self.doctor_notes,
            "cancellation_reason": self.cancellation_reason,
            "cancelled_by": self.cancelled_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ============================================
# PHARMACY
# ============================================

class Medicine(Base):
    """Inventory line of a single medical shop"""
    __tablename__ = "medicines"

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("medical_shops.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    manufacturer = Column(String(200))
    price = Column(Numeric(10, 2), nullable=False)
    stock = Column(Integer, default=0, nullable=False)
    requires_prescription = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    shop = relationship("MedicalShop", back_populates="medicines")

    def to_dict(self):
        return {
            "medicine_id": self.id,
            "shop_id": self.shop_id,
            "name": self.name,
            "manufacturer": self.manufacturer,
            "price": self.price,
            "stock": self.stock,
            "requires_prescription": self.requires_prescription,
        }


class MedicineOrder(Base):
    __tablename__ = "medicine_orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(30), unique=True, nullable=False)  # ORD-YYYYMMDD-XXXXX
    patient_id = Column(Integer, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False)
    shop_id = Column(Integer, ForeignKey("medical_shops.id"), nullable=False)

    total_amount = Column(Numeric(10, 2), nullable=False)
    delivery_charges = Column(Numeric(10, 2), default=0)
    final_amount = Column(Numeric(10, 2), nullable=False)

    delivery_address = Column(Text, nullable=False)
    prescription_file = Column(String(255))
    status = Column(String(20), default=OrderStatus.PENDING.value)
    payment_status = Column(String(20), default=BillingStatus.PENDING.value)
    tracking_number = Column(String(100))
    cancellation_reason = Column(String(255))

    order_date = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    patient = relationship("Patient", back_populates="orders")
    shop = relationship("MedicalShop", back_populates="orders")
    items = relationship("MedicineOrderItem", back_populates="order", cascade="all, delete-orphan")

    def to_dict(self, include_items: bool = True):
        data = {
            "order_id": self.id,
            "order_number": self.order_number,
            "patient_id": self.patient_id,
            "patient_name": self.patient.name if self.patient else None,
            "shop_id": self.shop_id,
            "shop_name": self.shop.shop_name if self.shop else None,
            "total_amount": self.total_amount,
            "delivery_charges": self.delivery_charges,
            "final_amount": self.final_amount,
            "delivery_address": self.delivery_address,
            "prescription_file": self.prescription_file,
            "status": self.status,
            "payment_status": self.payment_status,
            "tracking_number": self.tracking_number,
            "order_date": self.order_date.isoformat() if self.order_date else None,
        }
        if include_items:
            data["medicines"] = [item.to_dict() for item in self.items]
        return data


class MedicineOrderItem(Base):
    """Individual items within an order"""
    __tablename__ = "medicine_order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("medicine_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    medicine_id = Column(Integer, ForeignKey("medicines.id", ondelete="RESTRICT"), nullable=False)
    medicine_name = Column(String(200), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)  # Price at time of order
    subtotal = Column(Numeric(10, 2), nullable=False)

    order = relationship("MedicineOrder", back_populates="items")
    medicine = relationship("Medicine")

    def to_dict(self):
        return {
            "medicine_id": self.medicine_id,
            "medicine_name": self.medicine_name,
            "quantity": self.quantity,
            "price": self.price,
            "subtotal": self.subtotal,
        }


# ============================================
# PRESCRIPTIONS
# ============================================

class Prescription(Base):
    __tablename__ = "prescriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), unique=True, nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False)
    diagnosis = Column(Text, nullable=False)
    notes = Column(Text)
    follow_up_date = Column(Date)
    created_at = Column(DateTime, default=datetime.now)

    # Relationships
    appointment = relationship("Appointment", back_populates="prescription")
    patient = relationship("Patient", back_populates="prescriptions")
    doctor = relationship("Doctor", back_populates="prescriptions")
    medicines = relationship("PrescriptionMedicine", back_populates="prescription", cascade="all, delete-orphan")
    tests = relationship("PrescriptionTest", back_populates="prescription", cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "prescription_id": self.id,
            "appointment_id": self.appointment_id,
            "patient_id": self.patient_id,
            "patient_name": self.patient.name if self.patient else None,
            "doctor_id": self.doctor_id,
            "doctor_name": self.doctor.name if self.doctor else None,
            "specialization": self.doctor.specialization if self.doctor else None,
            "diagnosis": self.diagnosis,
            "notes": self.notes,
            "follow_up_date": str(self.follow_up_date) if self.follow_up_date else None,
            "medicines": [
                {
                    "medicine_name": m.medicine_name,
                    "dosage": m.dosage,
                    "frequency": m.frequency,
                    "duration": m.duration,
                    "instructions": m.instructions,
                }
                for m in self.medicines
            ],
            "tests": [
                {"test_name": t.test_name, "instructions": t.test_instructions}
                for t in self.tests
            ],
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class PrescriptionMedicine(Base):
    __tablename__ = "prescription_medicines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    prescription_id = Column(Integer, ForeignKey("prescriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    medicine_name = Column(String(200), nullable=False)
    dosage = Column(String(100))
    frequency = Column(String(100))
    duration = Column(String(100))
    instructions = Column(Text)

    prescription = relationship("Prescription", back_populates="medicines")


class PrescriptionTest(Base):
    __tablename__ = "prescription_tests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    prescription_id = Column(Integer, ForeignKey("prescriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    test_name = Column(String(200), nullable=False)
    test_instructions = Column(Text)

    prescription = relationship("Prescription", back_populates="tests")


# ============================================
# PAYMENT MANAGEMENT
# ============================================

class Payment(Base):
    """
    One row per gateway order attempt.
    payment_type tells which table reference_id points into.
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    payment_type = Column(String(30), nullable=False)  # appointment | diagnostic-test | medicine-order
    reference_id = Column(Integer, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="INR")
    receipt = Column(String(40))

    razorpay_order_id = Column(String(100), unique=True, nullable=False, index=True)
    razorpay_payment_id = Column(String(100))
    razorpay_signature = Column(String(255))
    payment_method = Column(String(50))  # card, upi, netbanking
    status = Column(String(20), default=PaymentStatus.CREATED.value)  # created | success | failed | refunded
    failure_reason = Column(Text)

    refund_id = Column(String(100))
    refund_amount = Column(Numeric(10, 2))
    refunded_at = Column(DateTime)
    paid_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    user = relationship("User", back_populates="payments")

    def to_dict(self):
        return {
            "payment_id": self.id,
            "payment_type": self.payment_type,
            "reference_id": self.reference_id,
            "amount": self.amount,
            "currency": self.currency,
            "receipt": self.receipt,
            "razorpay_order_id": self.razorpay_order_id,
            "razorpay_payment_id": self.razorpay_payment_id,
            "payment_method": self.payment_method,
            "status": self.status,
            "failure_reason": self.failure_reason,
            "refund_id": self.refund_id,
            "refund_amount": self.refund_amount,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ============================================
# FILES & AUDIT
# ============================================

class UploadedFile(Base):
    __tablename__ = "uploaded_files"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"))
    filename = Column(String(255), nullable=False)
    stored_filename = Column(String(255), nullable=False)
    file_path = Column(Text, nullable=False)
    file_size = Column(Integer, nullable=False)
    file_hash = Column(String(64), nullable=False)
    content_type = Column(String(100), nullable=False)
    category = Column(String(50), nullable=False)
    created_at = Column(DateTime, default=datetime.now)

    # Relationships
    user = relationship("User", back_populates="uploaded_files")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"))
    action = Column(String(100))
    entity_type = Column(String(50))
    entity_id = Column(String(100))
    details = Column(JSON)
    created_at = Column(DateTime, default=datetime.now)

    # Relationships
    user = relationship("User", back_populates="audit_logs")
