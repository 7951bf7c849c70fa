import hashlib
import hmac
import json
import logging
import os
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import razorpay
from dotenv import load_dotenv
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from razorpay.errors import BadRequestError
from sqlalchemy.orm import Session

from carehub.database.connection import get_db
from carehub.database.models import (
    User, UserRole, Appointment, MedicineOrder, Payment,
    PaymentStatus, PaymentType, AppointmentStatus, OrderStatus, BillingStatus
)
from carehub.utils.audit import log_action
from carehub.utils.email_service import send_appointment_confirmation
from carehub.utils.ids import generate_bill_id
from .auth import get_current_user

load_dotenv()
router = APIRouter(prefix="/api/payments", tags=["Payments"])
logger = logging.getLogger(__name__)
security_logger = logging.getLogger("carehub.security")

# ==================== CONFIG ====================

RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "rzp_test_xxx")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "xxx")
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET", "whsec_xxx")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "INR")

razorpay_client = razorpay.Client(auth=(RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET))

# payment_type -> table the reference_id points into
REFERENCE_MODELS = {
    PaymentType.APPOINTMENT.value: Appointment,
    PaymentType.MEDICINE_ORDER.value: MedicineOrder,
}

# ==================== PYDANTIC MODELS ====================

class CreatePaymentOrderRequest(BaseModel):
    type: PaymentType
    reference_id: int
    amount: Decimal = Field(..., gt=0, description="Amount in rupees")


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: str = Field(..., min_length=1)
    razorpay_payment_id: str = Field(..., min_length=1)
    razorpay_signature: str = Field(..., min_length=1)


class RefundRequest(BaseModel):
    razorpay_order_id: str
    reason: str = Field(..., min_length=5, max_length=200)
    amount: Optional[Decimal] = Field(None, gt=0, description="Partial refund in rupees")

# ==================== HELPER FUNCTIONS ====================

def to_paise(amount) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_signature(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_razorpay_signature(order_id: str, payment_id: str, signature: str) -> bool:
    """
    ✅ Verify Razorpay checkout signature
    HMAC-SHA256 of "order_id|payment_id" keyed with the API secret
    """
    expected_signature = compute_signature(RAZORPAY_KEY_SECRET, f"{order_id}|{payment_id}".encode())
    return hmac.compare_digest(expected_signature, signature)


def verify_webhook_signature(body: bytes, signature: Optional[str]) -> bool:
    """HMAC-SHA256 of the raw request body keyed with the webhook secret"""
    if not signature:
        return False
    expected_signature = compute_signature(RAZORPAY_WEBHOOK_SECRET, body)
    return hmac.compare_digest(expected_signature, signature)


def payable_amount(reference) -> Decimal:
    if isinstance(reference, Appointment):
        return Decimal(reference.consultation_fee)
    return Decimal(reference.final_amount)


def validate_reference(db: Session, request: CreatePaymentOrderRequest, user: User):
    """
    📦 Check the entity a charge is for

    Diagnostic tests have no local entity. Appointments and medicine
    orders must belong to the caller, be unpaid and live, and the
    requested amount must match what they cost.
    """
    model = REFERENCE_MODELS.get(request.type.value)
    if model is None:
        return None

    reference = db.query(model).filter(model.id == request.reference_id).first()
    if not reference:
        label = "Appointment" if model is Appointment else "Medicine order"
        raise HTTPException(status_code=404, detail=f"{label} not found")

    profile = user.profile
    if user.role != UserRole.PATIENT.value or profile is None or reference.patient_id != profile.id:
        raise HTTPException(status_code=403, detail="Not authorized")

    if reference.status in (AppointmentStatus.CANCELLED.value, OrderStatus.CANCELLED.value):
        raise HTTPException(status_code=400, detail="Cannot pay for a cancelled booking")

    if reference.payment_status == BillingStatus.PAID.value:
        raise HTTPException(status_code=400, detail="Payment already completed")

    if Decimal(request.amount) != payable_amount(reference):
        raise HTTPException(
            status_code=400,
            detail=f"Amount does not match the payable amount of {payable_amount(reference)}"
        )

    return reference


def settle_reference(db: Session, payment: Payment):
    """
    Mark the referenced appointment/order paid and move it forward
    (appointment pending -> confirmed, order pending -> processing).
    """
    model = REFERENCE_MODELS.get(payment.payment_type)
    if model is None:
        return None

    reference = db.query(model).with_for_update().filter(model.id == payment.reference_id).first()
    if not reference:
        logger.warning("Payment %s references missing %s %s",
                       payment.razorpay_order_id, payment.payment_type, payment.reference_id)
        return None

    reference.payment_status = BillingStatus.PAID.value
    if isinstance(reference, Appointment) and reference.status == AppointmentStatus.PENDING.value:
        reference.status = AppointmentStatus.CONFIRMED.value
    elif isinstance(reference, MedicineOrder) and reference.status == OrderStatus.PENDING.value:
        reference.status = OrderStatus.PROCESSING.value
    return reference


def mark_payment_captured(
    db: Session,
    payment: Payment,
    razorpay_payment_id: Optional[str],
    razorpay_signature: Optional[str] = None,
    payment_method: Optional[str] = None
) -> bool:
    """
    created -> success plus the reference transition, in one commit.
    Returns False (and changes nothing) when the payment already left
    'created', so replays from the callback and the webhook are no-ops.
    """
    if payment.status != PaymentStatus.CREATED.value:
        return False

    payment.status = PaymentStatus.SUCCESS.value
    payment.razorpay_payment_id = razorpay_payment_id
    if razorpay_signature:
        payment.razorpay_signature = razorpay_signature
    payment.payment_method = payment_method or payment.payment_method or "razorpay"
    payment.paid_at = datetime.now()

    settle_reference(db, payment)
    db.commit()
    return True


def schedule_payment_mail(background_tasks: BackgroundTasks, db: Session, payment: Payment):
    """🔔 Appointment confirmation mail once a payment settles"""
    if payment.payment_type != PaymentType.APPOINTMENT.value:
        return

    appointment = db.query(Appointment).filter(Appointment.id == payment.reference_id).first()
    if not appointment or not appointment.patient or not appointment.patient.user:
        return

    background_tasks.add_task(
        send_appointment_confirmation,
        appointment.patient.user.email,
        appointment.patient.name,
        appointment.doctor.name,
        str(appointment.appointment_date),
        appointment.appointment_time.strftime("%I:%M %p"),
        appointment.consultation_fee
    )


def payment_entity(data: dict) -> Optional[dict]:
    """payload.payment.entity of a webhook body, None when the shape is wrong"""
    node = data
    for key in ("payload", "payment", "entity"):
        node = node.get(key) if isinstance(node, dict) else None
    return node if isinstance(node, dict) else None


def get_locked_payment(db: Session, razorpay_order_id: str) -> Optional[Payment]:
    return db.query(Payment).with_for_update().filter(
        Payment.razorpay_order_id == razorpay_order_id
    ).first()

# ==================== MAIN ENDPOINTS ====================

@router.post("/create-order", response_model=dict)
async def create_payment_order(
    request: CreatePaymentOrderRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    💳 CREATE RAZORPAY PAYMENT ORDER

    Creates the remote order (amount in paise) and a local payment row
    in status 'created', keyed by the gateway order id.
    """
    validate_reference(db, request, current_user)

    receipt = generate_bill_id()

    try:
        razorpay_order = razorpay_client.order.create({
            "amount": to_paise(request.amount),
            "currency": PAYMENT_CURRENCY,
            "receipt": receipt,
            "notes": {
                "user_id": current_user.id,
                "type": request.type.value,
                "reference_id": request.reference_id
            },
            "payment_capture": 1  # Auto-capture payment
        })

    except BadRequestError as e:
        raise HTTPException(
            status_code=400,
            detail=f"Payment gateway error: {str(e)}"
        )
    except Exception as e:
        logger.exception("Razorpay order creation failed")
        raise HTTPException(
            status_code=502,
            detail=f"Failed to create payment order: {str(e)}"
        )

    payment = Payment(
        user_id=current_user.id,
        payment_type=request.type.value,
        reference_id=request.reference_id,
        amount=request.amount,
        currency=PAYMENT_CURRENCY,
        receipt=receipt,
        razorpay_order_id=razorpay_order["id"],
        status=PaymentStatus.CREATED.value
    )
    db.add(payment)
    db.commit()

    log_action(
        db=db,
        user_id=current_user.id,
        action="PAYMENT_ORDER_CREATED",
        entity_type="payment",
        entity_id=razorpay_order["id"],
        details={
            "type": request.type.value,
            "reference_id": request.reference_id,
            "amount": str(request.amount),
            "receipt": receipt
        }
    )

    return {
        "success": True,
        "data": {
            "order_id": razorpay_order["id"],
            "amount": request.amount,
            "amount_in_paise": to_paise(request.amount),
            "currency": PAYMENT_CURRENCY,
            "receipt": receipt,
            "razorpay_key_id": RAZORPAY_KEY_ID
        }
    }


@router.post("/verify", response_model=dict)
async def verify_payment(
    request: VerifyPaymentRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    ✅ VERIFY CHECKOUT CALLBACK

    Signature must match exactly before anything is touched.
    A second verify of the same payment is answered as success.
    """
    is_valid = verify_razorpay_signature(
        request.razorpay_order_id,
        request.razorpay_payment_id,
        request.razorpay_signature
    )

    if not is_valid:
        security_logger.warning(
            "Checkout signature mismatch: user=%s order=%s payment=%s",
            current_user.id, request.razorpay_order_id, request.razorpay_payment_id
        )
        log_action(
            db=db,
            user_id=current_user.id,
            action="PAYMENT_VERIFICATION_FAILED",
            entity_type="payment",
            entity_id=request.razorpay_order_id,
            details={
                "reason": "Invalid signature",
                "razorpay_payment_id": request.razorpay_payment_id
            }
        )
        raise HTTPException(status_code=400, detail="Invalid payment signature")

    payment = get_locked_payment(db, request.razorpay_order_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment record not found")

    if payment.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="Not authorized")

    if payment.status == PaymentStatus.SUCCESS.value:
        db.commit()  # release row lock
        return {
            "success": True,
            "message": "Payment already verified",
            "data": {"paymentId": payment.razorpay_payment_id, "status": payment.status}
        }

    if payment.status != PaymentStatus.CREATED.value:
        raise HTTPException(status_code=409, detail=f"Payment is already {payment.status}")

    try:
        mark_payment_captured(
            db,
            payment,
            request.razorpay_payment_id,
            razorpay_signature=request.razorpay_signature
        )
    except Exception as e:
        db.rollback()
        logger.exception("Payment settlement failed for %s", request.razorpay_order_id)
        raise HTTPException(status_code=500, detail=f"Payment verification failed: {str(e)}")

    schedule_payment_mail(background_tasks, db, payment)

    log_action(
        db=db,
        user_id=current_user.id,
        action="PAYMENT_SUCCESS",
        entity_type="payment",
        entity_id=request.razorpay_order_id,
        details={
            "razorpay_payment_id": request.razorpay_payment_id,
            "type": payment.payment_type,
            "reference_id": payment.reference_id,
            "source": "checkout"
        }
    )

    return {
        "success": True,
        "message": "Payment verified successfully",
        "data": {"paymentId": request.razorpay_payment_id, "status": payment.status}
    }


@router.post("/webhook", include_in_schema=False)
async def razorpay_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db)
):
    """
    🔔 RAZORPAY WEBHOOK HANDLER

    Authenticated by X-Razorpay-Signature over the raw body, not by a
    session token. Delivery is at-least-once, so every branch is safe
    to replay.
    """
    body = await request.body()
    signature = request.headers.get("X-Razorpay-Signature")

    if not verify_webhook_signature(body, signature):
        security_logger.warning("Invalid webhook signature (present=%s)", bool(signature))
        log_action(db, None, "WEBHOOK_SIGNATURE_INVALID", "payment", None, {"signature_present": bool(signature)})
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        data = json.loads(body.decode())
    except ValueError:
        raise HTTPException(status_code=400, detail="Malformed webhook payload")

    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Malformed webhook payload")

    event = data.get("event")
    if event not in ("payment.captured", "payment.failed"):
        logger.info("Razorpay webhook: ignoring %s", event)
        return {"success": True}

    entity = payment_entity(data)
    if entity is None:
        raise HTTPException(status_code=400, detail="Malformed webhook payload")

    order_id = entity.get("order_id")
    logger.info("Razorpay webhook: %s order=%s payment=%s", event, order_id, entity.get("id"))

    if not order_id:
        return {"success": True}

    payment = get_locked_payment(db, order_id)
    if not payment:
        logger.warning("Webhook for unknown order %s", order_id)
        return {"success": True}

    if event == "payment.captured":
        changed = mark_payment_captured(
            db,
            payment,
            entity.get("id"),
            payment_method=entity.get("method")
        )
        if changed:
            schedule_payment_mail(background_tasks, db, payment)
            log_action(db, payment.user_id, "PAYMENT_SUCCESS", "payment", order_id, {
                "razorpay_payment_id": entity.get("id"),
                "source": "webhook"
            })
        else:
            db.commit()  # release row lock
            if payment.status != PaymentStatus.SUCCESS.value:
                logger.warning("Ignoring capture for %s payment %s", payment.status, order_id)

    else:  # payment.failed
        if payment.status == PaymentStatus.CREATED.value:
            payment.status = PaymentStatus.FAILED.value
            payment.razorpay_payment_id = entity.get("id")
            payment.failure_reason = entity.get("error_description")
            db.commit()
            log_action(db, payment.user_id, "PAYMENT_FAILED", "payment", order_id, {
                "reason": payment.failure_reason
            })
        else:
            db.commit()  # release row lock

    return {"success": True}


@router.post("/refund", response_model=dict)
async def initiate_refund(
    request: RefundRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """🔄 Refund a successful payment, fully or partially"""
    payment = get_locked_payment(db, request.razorpay_order_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")

    if payment.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="Not authorized")

    if payment.status != PaymentStatus.SUCCESS.value:
        raise HTTPException(status_code=400, detail="No payment to refund")

    refund_amount = request.amount or Decimal(payment.amount)
    if refund_amount > Decimal(payment.amount):
        raise HTTPException(status_code=400, detail="Refund amount exceeds the amount paid")

    try:
        refund = razorpay_client.payment.refund(
            payment.razorpay_payment_id,
            {
                "amount": to_paise(refund_amount),
                "speed": "normal",
                "notes": {
                    "reason": request.reason,
                    "user_id": current_user.id
                }
            }
        )
    except BadRequestError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=f"Refund failed: {str(e)}")
    except Exception as e:
        db.rollback()
        logger.exception("Razorpay refund failed for %s", payment.razorpay_order_id)
        raise HTTPException(status_code=502, detail=f"Refund failed: {str(e)}")

    payment.status = PaymentStatus.REFUNDED.value
    payment.refund_id = refund["id"]
    payment.refund_amount = refund_amount
    payment.refunded_at = datetime.now()
    db.commit()

    log_action(db, current_user.id, "PAYMENT_REFUNDED", "payment", payment.razorpay_order_id, {
        "refund_id": refund["id"],
        "amount": str(refund_amount),
        "reason": request.reason
    })

    return {
        "success": True,
        "message": "Refund initiated successfully",
        "data": {
            "refundId": refund["id"],
            "amount": refund_amount,
            "status": payment.status
        }
    }


@router.get("/history", response_model=dict)
async def get_payment_history(
    type: Optional[PaymentType] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """📜 GET PAYMENT HISTORY"""
    query = db.query(Payment).filter(Payment.user_id == current_user.id)
    if type:
        query = query.filter(Payment.payment_type == type.value)

    total = query.count()
    payments = query.order_by(Payment.created_at.desc(), Payment.id.desc()) \
        .offset((page - 1) * limit).limit(limit).all()

    return {
        "success": True,
        "data": {
            "payments": [p.to_dict() for p in payments],
            "pagination": {
                "currentPage": page,
                "totalPages": (total + limit - 1) // limit,
                "totalPayments": total,
                "limit": limit
            }
        }
    }


@router.get("/status/{razorpay_order_id}", response_model=dict)
async def get_payment_status(
    razorpay_order_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """📊 GET PAYMENT STATUS"""
    payment = db.query(Payment).filter(
        Payment.razorpay_order_id == razorpay_order_id,
        Payment.user_id == current_user.id
    ).first()

    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")

    return {"success": True, "data": payment.to_dict()}
