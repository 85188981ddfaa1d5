from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from errors import ValidationError

CENT = Decimal("0.01")
MAX_CENTS = 2**63 - 1


def parse_amount(value: Union[str, int, float, Decimal, None]) -> int:
    """Parse a user supplied amount into positive integer cents."""
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError("Amount is required", title="Missing required fields")
    if isinstance(value, bool):
        raise ValidationError("Amount must be a positive number", title="Invalid amount")
    clean = str(value).strip().replace("€", "").replace("$", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValidationError(
            "Amount must be a positive number", title="Invalid amount"
        ) from exc
    if not amount.is_finite():
        raise ValidationError("Amount must be a positive number", title="Invalid amount")
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cents <= 0 or cents > MAX_CENTS:
        raise ValidationError("Amount must be a positive number", title="Invalid amount")
    return cents


def cents_to_amount(cents: int) -> float:
    return float((Decimal(cents) / 100).quantize(CENT))


def format_cents(cents: int) -> str:
    return f"{Decimal(cents) / 100:.2f}"
