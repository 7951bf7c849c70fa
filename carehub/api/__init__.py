# API Package - Centralized imports
# Allows easy importing of all routers and functions

from .auth import router as auth_router, get_current_user, require_roles, create_access_token
from .appointments import router as appointments_router
from .orders import router as orders_router
from .prescriptions import router as prescriptions_router
from .payments import (
    router as payments_router,
    RAZORPAY_KEY_ID,
    verify_razorpay_signature,
    verify_webhook_signature
)
from .upload import router as upload_router

__all__ = [
    # Auth
    "auth_router",
    "get_current_user",
    "require_roles",
    "create_access_token",

    # Routers
    "appointments_router",
    "orders_router",
    "prescriptions_router",
    "payments_router",
    "upload_router",

    # Razorpay
    "RAZORPAY_KEY_ID",
    "verify_razorpay_signature",
    "verify_webhook_signature",
]
