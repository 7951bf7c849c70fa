import logging
from datetime import date
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from carehub.database.connection import get_db
from carehub.database.models import (
    User, UserRole, MedicalShop, Medicine, MedicineOrder, MedicineOrderItem,
    OrderStatus, BillingStatus
)
from carehub.utils.audit import log_action
from carehub.utils.email_service import send_order_confirmation
from carehub.utils.ids import generate_order_number
from .auth import get_current_user, require_roles, require_profile

router = APIRouter(prefix="/api/orders", tags=["Medicine Orders"])
logger = logging.getLogger(__name__)

# Shop-driven moves; cancellation has its own endpoint
ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING.value: {OrderStatus.PROCESSING.value},
    OrderStatus.PROCESSING.value: {OrderStatus.READY.value},
    OrderStatus.READY.value: {OrderStatus.DELIVERED.value},
}

# ==================== PYDANTIC MODELS ====================

class MedicineStockRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    price: Decimal = Field(..., gt=0)
    stock: int = Field(..., ge=0, description="Units to add")
    manufacturer: Optional[str] = None
    requires_prescription: bool = False


class CartItem(BaseModel):
    medicine_id: int
    quantity: int = Field(..., gt=0)


class CreateOrderRequest(BaseModel):
    shop_id: int
    medicines: List[CartItem] = Field(..., min_length=1)
    delivery_address: str = Field(..., min_length=1)
    prescription_file: Optional[str] = None


class OrderStatusRequest(BaseModel):
    status: OrderStatus
    tracking_number: Optional[str] = None


class CancelOrderRequest(BaseModel):
    cancellation_reason: Optional[str] = Field(None, max_length=255)

# ==================== HELPER FUNCTIONS ====================

def merge_cart(items: List[CartItem]) -> dict:
    """medicine_id -> total quantity, keeping first-seen order"""
    quantities = {}
    for item in items:
        quantities[item.medicine_id] = quantities.get(item.medicine_id, 0) + item.quantity
    return quantities


def add_order_item(db: Session, order: MedicineOrder, medicine: Medicine, quantity: int) -> MedicineOrderItem:
    """Insert one order line and take its quantity out of the shop's stock"""
    item = MedicineOrderItem(
        order_id=order.id,
        medicine_id=medicine.id,
        medicine_name=medicine.name,
        quantity=quantity,
        price=medicine.price,
        subtotal=medicine.price * quantity
    )
    db.add(item)
    medicine.stock -= quantity
    db.flush()
    return item


def get_order_or_404(db: Session, order_id: int) -> MedicineOrder:
    order = db.query(MedicineOrder).options(
        joinedload(MedicineOrder.items),
        joinedload(MedicineOrder.shop),
        joinedload(MedicineOrder.patient)
    ).filter(MedicineOrder.id == order_id).first()

    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def party_of(order: MedicineOrder, user: User) -> Optional[str]:
    profile = user.profile
    if profile is None:
        return None
    if user.role == UserRole.PATIENT.value and order.patient_id == profile.id:
        return "patient"
    if user.role == UserRole.SHOP.value and order.shop_id == profile.id:
        return "shop"
    return None

# ==================== SHOP INVENTORY ====================

@router.post("/shop/medicines", status_code=201, response_model=dict)
async def add_shop_medicine(
    request: MedicineStockRequest,
    current_user: User = Depends(require_roles(UserRole.SHOP)),
    db: Session = Depends(get_db)
):
    """Add a medicine to the calling shop, or restock it when the name already exists"""
    shop = require_profile(current_user)

    medicine = db.query(Medicine).filter(
        Medicine.shop_id == shop.id,
        func.lower(Medicine.name) == request.name.lower()
    ).first()

    if medicine:
        medicine.stock += request.stock
        medicine.price = request.price
        if request.manufacturer is not None:
            medicine.manufacturer = request.manufacturer
        medicine.requires_prescription = request.requires_prescription
        action = "MEDICINE_RESTOCKED"
    else:
        medicine = Medicine(
            shop_id=shop.id,
            name=request.name,
            manufacturer=request.manufacturer,
            price=request.price,
            stock=request.stock,
            requires_prescription=request.requires_prescription
        )
        db.add(medicine)
        action = "MEDICINE_ADDED"

    db.commit()
    db.refresh(medicine)

    log_action(db, current_user.id, action, "medicine", medicine.id, {"stock": medicine.stock})

    return {
        "success": True,
        "message": "Medicine saved",
        "data": medicine.to_dict()
    }


@router.get("/shops/{shop_id}/medicines", response_model=dict)
async def list_shop_medicines(
    shop_id: int,
    in_stock_only: bool = False,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    shop = db.query(MedicalShop).filter(MedicalShop.id == shop_id).first()
    if not shop:
        raise HTTPException(status_code=404, detail="Shop not found")

    query = db.query(Medicine).filter(Medicine.shop_id == shop_id)
    if in_stock_only:
        query = query.filter(Medicine.stock > 0)

    return {
        "success": True,
        "data": [m.to_dict() for m in query.order_by(Medicine.name).all()]
    }

# ==================== ORDERS ====================

@router.post("", status_code=201, response_model=dict)
async def create_order(
    request: CreateOrderRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_roles(UserRole.PATIENT)),
    db: Session = Depends(get_db)
):
    """
    🛒 Create medicine order

    Order row, every item row and every stock decrement commit together
    or not at all. Stock is checked under a row lock before decrementing.
    final_amount = sum(item subtotals) + shop delivery charges
    """
    patient = require_profile(current_user)

    shop = db.query(MedicalShop).filter(MedicalShop.id == request.shop_id).first()
    if not shop:
        raise HTTPException(status_code=404, detail="Shop not found")

    try:
        lines = []
        total_amount = Decimal("0")

        for medicine_id, quantity in merge_cart(request.medicines).items():
            medicine = db.query(Medicine).with_for_update().filter(
                Medicine.id == medicine_id,
                Medicine.shop_id == shop.id
            ).first()

            if not medicine:
                raise HTTPException(
                    status_code=404,
                    detail=f"Medicine with ID {medicine_id} not found in this shop"
                )

            if medicine.stock < quantity:
                raise HTTPException(
                    status_code=409,
                    detail=f"{medicine.name} has only {medicine.stock} units in stock"
                )

            if medicine.requires_prescription and not request.prescription_file:
                raise HTTPException(
                    status_code=400,
                    detail=f"{medicine.name} requires prescription. Please upload prescription."
                )

            total_amount += Decimal(medicine.price) * quantity
            lines.append((medicine, quantity))

        delivery_charges = Decimal(shop.delivery_charges or 0)

        order = MedicineOrder(
            order_number=generate_order_number(),
            patient_id=patient.id,
            shop_id=shop.id,
            total_amount=total_amount,
            delivery_charges=delivery_charges,
            final_amount=total_amount + delivery_charges,
            delivery_address=request.delivery_address,
            prescription_file=request.prescription_file,
            status=OrderStatus.PENDING.value,
            payment_status=BillingStatus.PENDING.value
        )
        db.add(order)
        db.flush()

        for medicine, quantity in lines:
            add_order_item(db, order, medicine, quantity)

        db.commit()

    except HTTPException:
        db.rollback()
        raise
    except Exception as e:
        db.rollback()
        logger.exception("Order creation failed for patient %s", patient.id)
        raise HTTPException(status_code=500, detail=f"Order creation failed: {str(e)}")

    order = get_order_or_404(db, order.id)
    data = order.to_dict()

    background_tasks.add_task(
        send_order_confirmation,
        current_user.email,
        patient.name,
        order.order_number,
        data["medicines"],
        order.final_amount
    )

    log_action(
        db=db,
        user_id=current_user.id,
        action="ORDER_CREATED",
        entity_type="order",
        entity_id=order.id,
        details={
            "order_number": order.order_number,
            "final_amount": str(order.final_amount),
            "items_count": len(order.items)
        }
    )

    return {
        "success": True,
        "message": "Order placed successfully",
        "data": data
    }


@router.get("", response_model=dict)
async def list_orders(
    status: Optional[OrderStatus] = None,
    on_date: Optional[date] = Query(None, alias="date"),
    current_user: User = Depends(require_roles(UserRole.PATIENT, UserRole.SHOP)),
    db: Session = Depends(get_db)
):
    profile = require_profile(current_user)

    query = db.query(MedicineOrder).options(
        joinedload(MedicineOrder.items),
        joinedload(MedicineOrder.shop),
        joinedload(MedicineOrder.patient)
    )

    if current_user.role == UserRole.PATIENT.value:
        query = query.filter(MedicineOrder.patient_id == profile.id)
    else:
        query = query.filter(MedicineOrder.shop_id == profile.id)

    if status:
        query = query.filter(MedicineOrder.status == status.value)
    if on_date:
        query = query.filter(func.date(MedicineOrder.order_date) == on_date.isoformat())

    orders = query.order_by(MedicineOrder.order_date.desc()).all()

    return {
        "success": True,
        "data": [o.to_dict() for o in orders]
    }


@router.get("/{order_id}", response_model=dict)
async def get_order(
    order_id: int,
    current_user: User = Depends(require_roles(UserRole.PATIENT, UserRole.SHOP)),
    db: Session = Depends(get_db)
):
    order = get_order_or_404(db, order_id)
    if party_of(order, current_user) is None:
        raise HTTPException(status_code=403, detail="Not authorized")

    return {"success": True, "data": order.to_dict()}


@router.put("/{order_id}/status", response_model=dict)
async def update_order_status(
    order_id: int,
    request: OrderStatusRequest,
    current_user: User = Depends(require_roles(UserRole.SHOP)),
    db: Session = Depends(get_db)
):
    """pending -> processing -> ready -> delivered, by the owning shop"""
    order = get_order_or_404(db, order_id)

    if party_of(order, current_user) != "shop":
        raise HTTPException(status_code=403, detail="Not authorized")

    if request.status == OrderStatus.CANCELLED:
        raise HTTPException(status_code=400, detail="Use the cancel endpoint to cancel an order")

    target = request.status.value
    if target not in ALLOWED_TRANSITIONS.get(order.status, set()):
        raise HTTPException(
            status_code=400,
            detail=f"Cannot change order from {order.status} to {target}"
        )

    previous = order.status
    order.status = target
    if request.tracking_number is not None:
        order.tracking_number = request.tracking_number
    db.commit()

    log_action(db, current_user.id, "ORDER_STATUS_UPDATED", "order", order.id, {"from": previous, "to": target})

    return {
        "success": True,
        "message": "Order status updated successfully",
        "data": {"orderId": order.id, "status": order.status}
    }


@router.put("/{order_id}/cancel", response_model=dict)
async def cancel_order(
    order_id: int,
    request: CancelOrderRequest,
    current_user: User = Depends(require_roles(UserRole.PATIENT, UserRole.SHOP)),
    db: Session = Depends(get_db)
):
    """
    Cancel order (any time before delivery)
    Restores the stock taken by every item.
    """
    order = get_order_or_404(db, order_id)

    if party_of(order, current_user) is None:
        raise HTTPException(status_code=403, detail="Not authorized")

    if order.status == OrderStatus.DELIVERED.value:
        raise HTTPException(status_code=400, detail="Cannot cancel delivered order")

    if order.status == OrderStatus.CANCELLED.value:
        raise HTTPException(status_code=400, detail="Order already cancelled")

    try:
        for item in order.items:
            medicine = db.query(Medicine).with_for_update().filter(Medicine.id == item.medicine_id).first()
            if medicine:
                medicine.stock += item.quantity

        order.status = OrderStatus.CANCELLED.value
        order.cancellation_reason = request.cancellation_reason
        db.commit()

    except Exception as e:
        db.rollback()
        logger.exception("Cancellation failed for order %s", order_id)
        raise HTTPException(status_code=500, detail=f"Cancellation failed: {str(e)}")

    log_action(db, current_user.id, "ORDER_CANCELLED", "order", order.id, {"reason": request.cancellation_reason})

    return {
        "success": True,
        "message": "Order cancelled successfully"
    }
