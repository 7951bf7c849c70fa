import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from carehub.database.connection import get_db
from carehub.database.models import (
    User, UserRole, Appointment, AppointmentStatus,
    Prescription, PrescriptionMedicine, PrescriptionTest
)
from carehub.utils.audit import log_action
from .auth import get_current_user, require_roles, require_profile

router = APIRouter(prefix="/api/prescriptions", tags=["Prescriptions"])
logger = logging.getLogger(__name__)

# ==================== PYDANTIC MODELS ====================

class PrescribedMedicine(BaseModel):
    medicine_name: str = Field(..., min_length=1, max_length=200)
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    duration: Optional[str] = None
    instructions: Optional[str] = None


class CreatePrescriptionRequest(BaseModel):
    appointment_id: int
    diagnosis: str = Field(..., min_length=1)
    medicines: List[PrescribedMedicine] = []
    tests: List[str] = []
    notes: Optional[str] = None
    follow_up_date: Optional[date] = None

# ==================== API ENDPOINTS ====================

@router.post("", status_code=201, response_model=dict)
async def create_prescription(
    request: CreatePrescriptionRequest,
    current_user: User = Depends(require_roles(UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    """
    💊 Issue a prescription for one of the doctor's appointments

    Header, medicine lines, test lines and the appointment moving to
    completed are one transaction. Prescriptions are never edited.
    """
    doctor = require_profile(current_user)

    appointment = db.query(Appointment).filter(Appointment.id == request.appointment_id).first()
    if not appointment:
        raise HTTPException(status_code=404, detail="Appointment not found")

    if appointment.doctor_id != doctor.id:
        raise HTTPException(status_code=403, detail="Not authorized")

    if appointment.status == AppointmentStatus.CANCELLED.value:
        raise HTTPException(status_code=400, detail="Cannot prescribe for a cancelled appointment")

    existing = db.query(Prescription.id).filter(Prescription.appointment_id == appointment.id).first()
    if existing:
        raise HTTPException(status_code=409, detail="Prescription already issued for this appointment")

    try:
        prescription = Prescription(
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            doctor_id=doctor.id,
            diagnosis=request.diagnosis,
            notes=request.notes,
            follow_up_date=request.follow_up_date
        )
        db.add(prescription)
        db.flush()

        for medicine in request.medicines:
            db.add(PrescriptionMedicine(
                prescription_id=prescription.id,
                medicine_name=medicine.medicine_name,
                dosage=medicine.dosage,
                frequency=medicine.frequency,
                duration=medicine.duration,
                instructions=medicine.instructions
            ))

        for test_name in request.tests:
            db.add(PrescriptionTest(
                prescription_id=prescription.id,
                test_name=test_name
            ))

        appointment.status = AppointmentStatus.COMPLETED.value
        db.commit()

    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Prescription already issued for this appointment")
    except Exception as e:
        db.rollback()
        logger.exception("Prescription creation failed for appointment %s", request.appointment_id)
        raise HTTPException(status_code=500, detail=f"Prescription creation failed: {str(e)}")

    log_action(
        db=db,
        user_id=current_user.id,
        action="PRESCRIPTION_CREATED",
        entity_type="prescription",
        entity_id=prescription.id,
        details={
            "appointment_id": appointment.id,
            "medicines": len(request.medicines),
            "tests": len(request.tests)
        }
    )

    return {
        "success": True,
        "message": "Prescription created successfully",
        "data": {"prescriptionId": prescription.id}
    }


@router.get("", response_model=dict)
async def list_prescriptions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: User = Depends(require_roles(UserRole.PATIENT, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    profile = require_profile(current_user)

    query = db.query(Prescription).options(
        joinedload(Prescription.doctor),
        joinedload(Prescription.patient),
        joinedload(Prescription.medicines),
        joinedload(Prescription.tests)
    )
    if current_user.role == UserRole.PATIENT.value:
        query = query.filter(Prescription.patient_id == profile.id)
    else:
        query = query.filter(Prescription.doctor_id == profile.id)

    total = query.count()
    prescriptions = query.order_by(Prescription.created_at.desc(), Prescription.id.desc()) \
        .offset((page - 1) * limit).limit(limit).all()

    return {
        "success": True,
        "data": {
            "prescriptions": [p.to_dict() for p in prescriptions],
            "pagination": {
                "currentPage": page,
                "totalPages": (total + limit - 1) // limit,
                "totalPrescriptions": total,
                "limit": limit
            }
        }
    }


@router.get("/{prescription_id}", response_model=dict)
async def get_prescription(
    prescription_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    prescription = db.query(Prescription).filter(Prescription.id == prescription_id).first()
    if not prescription:
        raise HTTPException(status_code=404, detail="Prescription not found")

    profile = current_user.profile
    is_patient = current_user.role == UserRole.PATIENT.value and profile and prescription.patient_id == profile.id
    is_doctor = current_user.role == UserRole.DOCTOR.value and profile and prescription.doctor_id == profile.id
    if not (is_patient or is_doctor):
        raise HTTPException(status_code=403, detail="Not authorized")

    return {"success": True, "data": prescription.to_dict()}
