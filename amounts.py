from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union


AmountLike = Union[str, int, float, Decimal]

_CENT = Decimal("0.01")
# amount columns are signed 64-bit integers
MAX_CENTS = 2**63 - 1


def parse_amount(value: AmountLike) -> int:
    """Convert a user supplied amount to integer cents.

    Accepts numbers or strings such as ``"1.250.000,50"`` or ``"Rp 1500"``.
    Raises ``ValueError`` for non-numeric, non-finite, negative, or
    out-of-range input.
    """
    if isinstance(value, bool):
        raise ValueError("Invalid amount")
    raw = str(value)
    if isinstance(value, str):
        raw = raw.strip().replace("Rp", "").replace("rp", "").replace(" ", "")
        if "," in raw:
            # Indonesian notation: dots group thousands, comma marks decimals
            raw = raw.replace(".", "").replace(",", ".")
        elif raw.count(".") > 1:
            raw = raw.replace(".", "")
    if raw == "":
        raise ValueError("Amount is required")
    try:
        amount = Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Amount must be a finite number")
    if amount * 100 > MAX_CENTS:
        raise ValueError(f"Amount must not exceed {cents_to_decimal(MAX_CENTS)}")
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cents < 0:
        raise ValueError("Amount must not be negative")
    return cents


def cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(_CENT)
