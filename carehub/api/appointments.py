import logging
from datetime import datetime, date, time
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from carehub.database.connection import get_db
from carehub.database.models import (
    User, UserRole, Doctor, Appointment, AppointmentStatus, BillingStatus
)
from carehub.utils.audit import log_action
from .auth import require_roles, require_profile

router = APIRouter(prefix="/api/appointments", tags=["Appointments"])
logger = logging.getLogger(__name__)

# Doctor-driven moves; cancellation has its own endpoint
ALLOWED_TRANSITIONS = {
    AppointmentStatus.PENDING.value: {AppointmentStatus.CONFIRMED.value},
    AppointmentStatus.CONFIRMED.value: {AppointmentStatus.COMPLETED.value},
}

# ==================== PYDANTIC MODELS (Request/Response) ====================

class AppointmentBookRequest(BaseModel):
    doctor_id: int
    appointment_date: date
    appointment_time: time
    consultation_type: str = Field("in-person", description="in-person/video/phone")
    symptoms: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: AppointmentStatus
    notes: Optional[str] = None


class CancellationRequest(BaseModel):
    cancellation_reason: Optional[str] = Field(None, max_length=255)

# ==================== HELPER FUNCTIONS ====================

def is_slot_available(db: Session, doctor_id: int, appointment_date: date, appointment_time: time) -> bool:
    """True when the doctor has no live (non-cancelled) booking at this date+time"""
    existing = db.query(Appointment.id).filter(
        and_(
            Appointment.doctor_id == doctor_id,
            Appointment.appointment_date == appointment_date,
            Appointment.appointment_time == appointment_time,
            Appointment.status != AppointmentStatus.CANCELLED.value
        )
    ).first()
    return existing is None


def get_appointment_or_404(db: Session, appointment_id: int) -> Appointment:
    appointment = db.query(Appointment).options(
        joinedload(Appointment.doctor),
        joinedload(Appointment.patient)
    ).filter(Appointment.id == appointment_id).first()

    if not appointment:
        raise HTTPException(status_code=404, detail="Appointment not found")
    return appointment


def party_of(appointment: Appointment, user: User) -> Optional[str]:
    """'patient' / 'doctor' when the user is on this appointment, else None"""
    profile = user.profile
    if profile is None:
        return None
    if user.role == UserRole.PATIENT.value and appointment.patient_id == profile.id:
        return "patient"
    if user.role == UserRole.DOCTOR.value and appointment.doctor_id == profile.id:
        return "doctor"
    return None

# ==================== API ENDPOINTS ====================

@router.post("/book", status_code=201, response_model=dict)
async def book_appointment(
    request: AppointmentBookRequest,
    current_user: User = Depends(require_roles(UserRole.PATIENT)),
    db: Session = Depends(get_db)
):
    """
    📅 Book a doctor slot

    First writer wins: the existence check rejects a taken slot and the
    partial unique index rejects the loser of a concurrent race.
    """
    patient = require_profile(current_user)

    doctor = db.query(Doctor).filter(Doctor.id == request.doctor_id).first()
    if not doctor:
        raise HTTPException(status_code=404, detail="Doctor not found")

    if not doctor.is_available:
        raise HTTPException(status_code=400, detail="Doctor is not accepting appointments")

    if not is_slot_available(db, doctor.id, request.appointment_date, request.appointment_time):
        raise HTTPException(status_code=409, detail="This time slot is already booked")

    appointment = Appointment(
        patient_id=patient.id,
        doctor_id=doctor.id,
        appointment_date=request.appointment_date,
        appointment_time=request.appointment_time,
        consultation_type=request.consultation_type,
        symptoms=request.symptoms,
        consultation_fee=doctor.consultation_fee,
        status=AppointmentStatus.PENDING.value,
        payment_status=BillingStatus.PENDING.value
    )
    db.add(appointment)

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("Slot race lost for doctor %s at %s %s",
                    doctor.id, request.appointment_date, request.appointment_time)
        raise HTTPException(status_code=409, detail="This time slot is already booked")

    db.refresh(appointment)

    log_action(
        db=db,
        user_id=current_user.id,
        action="APPOINTMENT_BOOKED",
        entity_type="appointment",
        entity_id=appointment.id,
        details={
            "doctor_id": doctor.id,
            "date": str(request.appointment_date),
            "time": request.appointment_time.strftime("%H:%M")
        }
    )

    return {
        "success": True,
        "message": "Appointment booked successfully",
        "data": {
            "appointmentId": appointment.id,
            "doctorName": doctor.name,
            "appointmentDate": str(appointment.appointment_date),
            "appointmentTime": appointment.appointment_time.strftime("%H:%M"),
            "consultationFee": appointment.consultation_fee,
            "status": appointment.status,
            "paymentStatus": appointment.payment_status
        }
    }


@router.get("", response_model=dict)
async def list_appointments(
    status: Optional[AppointmentStatus] = None,
    on_date: Optional[date] = Query(None, alias="date"),
    current_user: User = Depends(require_roles(UserRole.PATIENT, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    """Patients see their bookings newest first, doctors their schedule in order"""
    profile = require_profile(current_user)

    query = db.query(Appointment).options(
        joinedload(Appointment.doctor),
        joinedload(Appointment.patient)
    )

    if current_user.role == UserRole.PATIENT.value:
        query = query.filter(Appointment.patient_id == profile.id)
        order = (Appointment.appointment_date.desc(), Appointment.appointment_time.desc())
    else:
        query = query.filter(Appointment.doctor_id == profile.id)
        order = (Appointment.appointment_date.asc(), Appointment.appointment_time.asc())

    if status:
        query = query.filter(Appointment.status == status.value)
    if on_date:
        query = query.filter(Appointment.appointment_date == on_date)

    appointments: List[Appointment] = query.order_by(*order).all()

    return {
        "success": True,
        "data": [a.to_dict() for a in appointments]
    }


@router.get("/{appointment_id}", response_model=dict)
async def get_appointment(
    appointment_id: int,
    current_user: User = Depends(require_roles(UserRole.PATIENT, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    appointment = get_appointment_or_404(db, appointment_id)
    if party_of(appointment, current_user) is None:
        raise HTTPException(status_code=403, detail="Not authorized")

    return {"success": True, "data": appointment.to_dict()}


@router.put("/{appointment_id}/status", response_model=dict)
async def update_appointment_status(
    appointment_id: int,
    request: StatusUpdateRequest,
    current_user: User = Depends(require_roles(UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    """
    ✅ Doctor confirms or completes their own appointment

    pending -> confirmed -> completed
    """
    appointment = get_appointment_or_404(db, appointment_id)

    if party_of(appointment, current_user) != "doctor":
        raise HTTPException(status_code=403, detail="Not authorized")

    if request.status == AppointmentStatus.CANCELLED:
        raise HTTPException(status_code=400, detail="Use the cancel endpoint to cancel an appointment")

    target = request.status.value
    if target not in ALLOWED_TRANSITIONS.get(appointment.status, set()):
        raise HTTPException(
            status_code=400,
            detail=f"Cannot change appointment from {appointment.status} to {target}"
        )

    previous = appointment.status
    appointment.status = target
    if request.notes is not None:
        appointment.doctor_notes = request.notes
    db.commit()

    log_action(
        db=db,
        user_id=current_user.id,
        action="APPOINTMENT_STATUS_UPDATED",
        entity_type="appointment",
        entity_id=appointment.id,
        details={"from": previous, "to": target}
    )

    return {
        "success": True,
        "message": "Appointment status updated successfully",
        "data": {"appointmentId": appointment.id, "status": appointment.status}
    }


@router.put("/{appointment_id}/cancel", response_model=dict)
async def cancel_appointment(
    appointment_id: int,
    request: CancellationRequest,
    current_user: User = Depends(require_roles(UserRole.PATIENT, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    """
    ❌ Cancel appointment (patient or doctor on it)

    Terminal; completed appointments cannot be cancelled.
    """
    appointment = get_appointment_or_404(db, appointment_id)

    cancelled_by = party_of(appointment, current_user)
    if cancelled_by is None:
        raise HTTPException(status_code=403, detail="Not authorized")

    if appointment.status == AppointmentStatus.CANCELLED.value:
        raise HTTPException(status_code=400, detail="Appointment already cancelled")

    if appointment.status == AppointmentStatus.COMPLETED.value:
        raise HTTPException(status_code=400, detail="Cannot cancel completed appointment")

    appointment.status = AppointmentStatus.CANCELLED.value
    appointment.cancellation_reason = request.cancellation_reason
    appointment.cancelled_by = cancelled_by
    appointment.cancelled_at = datetime.now()
    db.commit()

    log_action(
        db=db,
        user_id=current_user.id,
        action="APPOINTMENT_CANCELLED",
        entity_type="appointment",
        entity_id=appointment.id,
        details={"cancelled_by": cancelled_by, "reason": request.cancellation_reason}
    )

    return {
        "success": True,
        "message": "Appointment cancelled successfully"
    }
