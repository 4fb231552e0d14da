"""Fixed-point conversions between raw reserve amounts and decimal values.

Raw amounts are integers in a token's smallest unit. All arithmetic stays in
Python integers until a single final ``Decimal`` division so that precision
does not degrade with token decimals.
"""

from decimal import Decimal, localcontext

from .errors import ReserveMathError, ZeroReserveError

# Enough digits for uint256 amounts scaled by 10**255.
_PRECISION = 78


def parse_raw_amount(value: str | int | None) -> int:
    """Parse a raw on-chain amount.

    Args:
        value: Non-negative integer or decimal integer string

    Returns:
        The amount as an int (None and "" parse as 0)

    Raises:
        ReserveMathError: If the value is negative or not an integer
    """
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ReserveMathError(f"Invalid raw amount: {value!r}")
    if isinstance(value, int):
        amount = value
    else:
        text = str(value).strip()
        if not text.isdigit():
            raise ReserveMathError(f"Invalid raw amount: {value!r}")
        amount = int(text)
    if amount < 0:
        raise ReserveMathError(f"Negative raw amount: {value!r}")
    return amount


def _check_decimals(decimals: int) -> int:
    if not isinstance(decimals, int) or decimals < 0 or decimals > 255:
        raise ReserveMathError(f"Invalid decimals: {decimals!r}")
    return decimals


def to_decimal(raw_amount: str | int, decimals: int) -> Decimal:
    """Convert a raw amount into whole-token units."""
    amount = parse_raw_amount(raw_amount)
    scale = 10 ** _check_decimals(decimals)
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return Decimal(amount) / Decimal(scale)


def price(
    reserve_a: str | int,
    decimals_a: int,
    reserve_b: str | int,
    decimals_b: int,
) -> Decimal:
    """Price of one whole token A expressed in token B.

    Computes ``(reserve_b / 10**decimals_b) / (reserve_a / 10**decimals_a)``.

    Raises:
        ZeroReserveError: If either reserve is zero
    """
    amount_a = parse_raw_amount(reserve_a)
    amount_b = parse_raw_amount(reserve_b)
    if amount_a == 0 or amount_b == 0:
        raise ZeroReserveError(
            f"Zero reserve (reserve_a={amount_a}, reserve_b={amount_b})"
        )

    numerator = amount_b * 10 ** _check_decimals(decimals_a)
    denominator = amount_a * 10 ** _check_decimals(decimals_b)
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return Decimal(numerator) / Decimal(denominator)


def is_active(reserve0: str | int, reserve1: str | int) -> bool:
    """A pair prices nothing unless both reserves are positive."""
    try:
        return parse_raw_amount(reserve0) > 0 and parse_raw_amount(reserve1) > 0
    except ReserveMathError:
        return False
