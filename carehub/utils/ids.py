import secrets
from datetime import datetime


def _dated_id(prefix: str) -> str:
    return f"{prefix}-{datetime.now().strftime('%Y%m%d')}-{secrets.randbelow(90000) + 10000}"


def generate_bill_id() -> str:
    """Gateway receipt like BILL-20251201-48213"""
    return _dated_id("BILL")


def generate_order_number() -> str:
    """Medicine order number like ORD-20251201-48213"""
    return _dated_id("ORD")
