"""
Utility functions for the application.
"""
from typing import Any, Dict
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal("0.01")


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (the database stores UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_money(value: Any) -> Decimal:
    """Convert a number to a Decimal rounded to cents."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def format_error(message: str, details: Any = None) -> Dict[str, Any]:
    """Format error response."""
    response = {"error": message}
    if details:
        response["details"] = details
    return response
