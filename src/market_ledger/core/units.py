"""Conversion between human-decimal USDC amounts and integer base units.

The settlement token uses six decimals, so ``1.5`` USDC is ``1_500_000``
base units. All pool arithmetic in the engine happens on integers; the
``Decimal`` side exists only at the input and display boundaries.
"""

from decimal import ROUND_DOWN, Decimal, InvalidOperation

from market_ledger.core.errors import BadRequestError

USDC_DECIMALS = 6
USDC_UNIT = 10**USDC_DECIMALS

MIN_BET_RAW = USDC_UNIT
MAX_BET_RAW = 10_000 * USDC_UNIT

_UNIT_DECIMAL = Decimal(USDC_UNIT)
_DISPLAY_QUANT = Decimal("0.01")


def to_base_units(amount: Decimal) -> int:
    """Convert a decimal USDC amount to base units, truncating sub-unit dust.

    Args:
        amount: Amount in whole USDC.

    Returns:
        Integer number of base units.

    """
    return int((amount * _UNIT_DECIMAL).to_integral_value(rounding=ROUND_DOWN))


def from_base_units(amount_raw: int) -> Decimal:
    """Convert base units back to a decimal USDC amount.

    Args:
        amount_raw: Integer number of base units.

    Returns:
        Amount in whole USDC.

    """
    return Decimal(amount_raw) / _UNIT_DECIMAL


def parse_amount(amount_str: str) -> int:
    """Parse a user-supplied decimal string into base units.

    Args:
        amount_str: Amount in whole USDC, e.g. ``"12.5"``.

    Returns:
        Positive integer number of base units.

    Raises:
        BadRequestError: If the string is not a finite number, is negative,
            is smaller than one base unit, or is too large to represent.

    """
    try:
        amount = Decimal(amount_str.strip())
    except (InvalidOperation, AttributeError) as exc:
        raise BadRequestError("Invalid amount format") from exc

    if not amount.is_finite():
        raise BadRequestError("Invalid amount format")
    if amount < 0:
        raise BadRequestError("Amount cannot be negative")

    try:
        amount_raw = to_base_units(amount)
    except ArithmeticError as exc:
        raise BadRequestError("Invalid amount format") from exc
    if amount_raw == 0:
        msg = f"Amount too small (minimum is {from_base_units(1)} USDC)"
        raise BadRequestError(msg)
    return amount_raw


def validate_bet_amount(amount_raw: int) -> None:
    """Check that a wager lies within the allowed bet bounds.

    Args:
        amount_raw: Wager in base units.

    Raises:
        BadRequestError: If the wager is below ``MIN_BET_RAW`` or above
            ``MAX_BET_RAW``.

    """
    if amount_raw < MIN_BET_RAW:
        msg = f"Minimum bet is {from_base_units(MIN_BET_RAW):.0f} USDC"
        raise BadRequestError(msg)
    if amount_raw > MAX_BET_RAW:
        msg = f"Maximum bet is {from_base_units(MAX_BET_RAW):.0f} USDC"
        raise BadRequestError(msg)


def format_amount(amount_raw: int) -> str:
    """Render base units as a two-decimal USDC string, e.g. ``"1.50 USDC"``."""
    value = from_base_units(amount_raw).quantize(_DISPLAY_QUANT)
    return f"{value} USDC"
