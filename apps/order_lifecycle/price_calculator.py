"""
Exit price level calculation.

Levels are derived from a reference price and two percentages:

    buy:  target = ref * (1 + target% / 100)    stop = ref * (1 - stop% / 100)
    sell: target = ref * (1 - target% / 100)    stop = ref * (1 + stop% / 100)

Both levels are rounded to the price increment with ROUND_HALF_UP, so
157.505 becomes 157.51 at a 0.01 increment. Rounding an already-rounded
price returns it unchanged.
"""

from decimal import ROUND_HALF_UP, Decimal

from apps.order_lifecycle.exceptions import InvalidInputError
from apps.order_lifecycle.models import PriceLevels

DEFAULT_PRICE_INCREMENT = Decimal("0.01")

_HUNDRED = Decimal("100")


def round_to_increment(price: Decimal, increment: Decimal = DEFAULT_PRICE_INCREMENT) -> Decimal:
    """
    Round a price half-up to a multiple of ``increment``.

    Example:
        >>> round_to_increment(Decimal("157.505"))
        Decimal('157.51')
        >>> round_to_increment(Decimal("10.07"), Decimal("0.05"))
        Decimal('10.05')
    """
    if increment <= 0:
        raise InvalidInputError("price increment must be positive", {"increment": str(increment)})
    steps = (price / increment).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return (steps * increment).quantize(increment)


def compute_price_levels(
    reference_price: Decimal,
    direction: str,
    target_percentage: Decimal,
    stop_percentage: Decimal,
    increment: Decimal = DEFAULT_PRICE_INCREMENT,
) -> PriceLevels:
    """
    Compute target and stop prices for an exit pair.

    Args:
        reference_price: Entry fill price or latest trade price (must be > 0)
        direction: Entry direction, "buy" or "sell"
        target_percentage: Profit target distance in percent (>= 0)
        stop_percentage: Stop loss distance in percent (>= 0)
        increment: Minimum price increment

    Returns:
        PriceLevels with both prices rounded to ``increment``

    Raises:
        InvalidInputError: On non-positive reference price, negative
            percentage, unknown direction, or a level that rounds to <= 0
            (e.g. a 100% stop on a long position)

    Example:
        >>> compute_price_levels(Decimal("150.00"), "buy", Decimal("5"), Decimal("2"))
        PriceLevels(target_price=Decimal('157.50'), stop_price=Decimal('147.00'))
    """
    reference_price = Decimal(reference_price)
    target_percentage = Decimal(target_percentage)
    stop_percentage = Decimal(stop_percentage)

    if reference_price <= 0:
        raise InvalidInputError(
            "reference price must be positive", {"reference_price": str(reference_price)}
        )
    if target_percentage < 0 or stop_percentage < 0:
        raise InvalidInputError(
            "percentages must be >= 0",
            {
                "target_percentage": str(target_percentage),
                "stop_percentage": str(stop_percentage),
            },
        )

    target_offset = target_percentage / _HUNDRED
    stop_offset = stop_percentage / _HUNDRED

    if direction == "buy":
        target = reference_price * (1 + target_offset)
        stop = reference_price * (1 - stop_offset)
    elif direction == "sell":
        target = reference_price * (1 - target_offset)
        stop = reference_price * (1 + stop_offset)
    else:
        raise InvalidInputError(f"Unknown direction: {direction!r}", {"direction": direction})

    levels = PriceLevels(
        target_price=round_to_increment(target, increment),
        stop_price=round_to_increment(stop, increment),
    )

    if levels.target_price <= 0 or levels.stop_price <= 0:
        raise InvalidInputError(
            "computed exit price is not positive",
            {
                "reference_price": str(reference_price),
                "direction": direction,
                "target_price": str(levels.target_price),
                "stop_price": str(levels.stop_price),
            },
        )

    return levels
