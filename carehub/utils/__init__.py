from .audit import log_action
from .ids import generate_bill_id, generate_order_number
from .email_service import send_email, send_appointment_confirmation, send_order_confirmation

__all__ = [
    "log_action",
    "generate_bill_id",
    "generate_order_number",
    "send_email",
    "send_appointment_confirmation",
    "send_order_confirmation",
]
