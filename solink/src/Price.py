"""Price: Normalized price event shared by adapters and the median engine."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from decimal import ROUND_FLOOR, Decimal, InvalidOperation

from .TradingPair import TradingPair


@dataclass(frozen=True)
class Price:
    """A fixed-point price observation.

    :ivar source: Source name (exchange name, or "median").
    :ivar pair: Trading pair the price belongs to.
    :ivar decimals: Number of fixed-point decimals in ``value``.
    :ivar value: Integer price scaled by ``10**decimals``. Zero means no reading.
    :ivar observed_at: Unix timestamp of the observation.
    """

    source: str
    pair: TradingPair
    decimals: int
    value: int
    observed_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if self.value < 0:
            raise ValueError(f"Price value must be non-negative, got {self.value}")

    @property
    def is_zero(self) -> bool:
        return self.value == 0

    def as_decimal(self) -> Decimal:
        """Return the value as a human readable Decimal."""
        return Decimal(self.value).scaleb(-self.decimals)

    def with_decimals(self, decimals: int) -> Price:
        """Return this price with ``decimals`` fixed-point decimals, rounding down."""
        if decimals == self.decimals:
            return self
        if decimals > self.decimals:
            value = self.value * 10 ** (decimals - self.decimals)
        else:
            value = self.value // 10 ** (self.decimals - decimals)
        return replace(self, decimals=decimals, value=value)


def to_fixed_point(raw: str | int | float | Decimal, decimals: int) -> int:
    """Convert an exchange price to a fixed-point integer, rounding down.

    Strings are parsed as decimals, never through float, so ``"100.02"``
    with 2 decimals is exactly ``10002``.

    :param raw: Price as the exchange sent it.
    :param decimals: Target number of decimals.
    :returns: Scaled integer value.
    :raises ValueError: If the price is not a finite non-negative number.

    .. code-block:: python

        >>> to_fixed_point("100.029", 2)
        10002
    """
    try:
        value = Decimal(str(raw))
    except InvalidOperation as e:
        raise ValueError(f"Invalid price {raw!r}") from e

    if not value.is_finite() or value < 0:
        raise ValueError(f"Invalid price {raw!r}")

    return int(value.scaleb(decimals).to_integral_value(rounding=ROUND_FLOOR))
