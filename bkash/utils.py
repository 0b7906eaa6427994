from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

AMOUNT_EPSILON = Decimal("0.01")
CENTS = Decimal("0.01")


def format_amount(amount) -> str:
    """bKash expects amounts as fixed two-decimal strings, e.g. ``"500.00"``."""
    try:
        q = Decimal(str(amount)).quantize(CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid amount value: {amount!r}")
    return format(q, "f")


def parse_amount(value) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value).strip())
    except InvalidOperation:
        return None


def amounts_match(paid, expected) -> bool:
    return abs(Decimal(str(paid)) - Decimal(str(expected))) <= AMOUNT_EPSILON
