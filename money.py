from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("1")
HUNDRED = Decimal("100")


def parse_amount(value: str, *, allow_negative: bool = True) -> int:
    """
    Convert a human-entered amount ("1.234,56", "$-12.30", "(4.00)") to cents.

    The last separator is taken as the decimal point. Parenthesised amounts are
    negative, as on most bank statements.
    """
    clean = value.strip().replace("€", "").replace("$", "").replace(" ", "")
    negative = False
    if clean.startswith("(") and clean.endswith(")"):
        negative = True
        clean = clean[1:-1]
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    if negative:
        amount = -amount
    cents = int((amount * HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP))
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def format_cents(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 100)
    return f"{sign}{whole}.{frac:02d}"


def percent(part: int, whole: int) -> float:
    """Share of ``part`` in ``whole`` as a percentage clamped to [0, 100]."""
    if whole <= 0:
        return 0.0
    value = (Decimal(part) * HUNDRED / Decimal(whole)).quantize(
        Decimal("0.01"), rounding=ROUND_HALF_UP
    )
    value = max(Decimal(0), min(HUNDRED, value))
    return float(value)


def divide_up(cents: int, parts: int) -> int:
    if parts <= 0:
        raise ValueError("parts must be positive")
    return int((Decimal(cents) / Decimal(parts)).quantize(CENT, rounding=ROUND_CEILING))
