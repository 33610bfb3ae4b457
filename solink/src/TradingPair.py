"""TradingPair: Normalized trading pair naming.

Every component refers to pairs as ``base:quote`` in lower case, the same
key used by the deployment file. Exchange adapters translate this into
their own symbols (``BTC-USD``, ``btcusd``, ``BTCUSDC``...).

.. code-block:: python

    >>> pair = TradingPair.from_string("BTC/USD")
    >>> str(pair)
    'btc:usd'
    >>> pair.symbol("-", upper=True)
    'BTC-USD'
"""

from __future__ import annotations

import re

_SEPARATORS = re.compile(r"[:/\-_]")


class TradingPair:
    """A base/quote currency pair.

    :ivar base: Base currency symbol (lowercase).
    :ivar quote: Quote currency symbol (lowercase).
    """

    def __init__(self, base: str, quote: str) -> None:
        """Initialize a trading pair.

        :param base: Base currency symbol (e.g., "btc", "eth").
        :param quote: Quote currency symbol (e.g., "usd").
        """
        self.base = base.lower()
        self.quote = quote.lower()

    def __str__(self) -> str:
        """Return the canonical ``base:quote`` name."""
        return f"{self.base}:{self.quote}"

    def __repr__(self) -> str:
        return f"TradingPair({self.base!r}, {self.quote!r})"

    def __hash__(self) -> int:
        return hash(str(self))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TradingPair):
            return NotImplemented
        return str(self) == str(other)

    def symbol(
        self,
        separator: str = "",
        *,
        upper: bool = False,
        aliases: dict[str, str] | None = None,
    ) -> str:
        """Render the pair as an exchange symbol.

        :param separator: Text placed between base and quote.
        :param upper: Upper-case the result.
        :param aliases: Optional per-currency substitutions (e.g. usd -> usdc),
            keyed by lowercase currency.
        :returns: Exchange-specific symbol string.
        """
        aliases = aliases or {}
        base = aliases.get(self.base, self.base)
        quote = aliases.get(self.quote, self.quote)
        text = f"{base}{separator}{quote}"
        return text.upper() if upper else text.lower()

    @classmethod
    def from_string(cls, pair_str: str) -> TradingPair:
        """Parse a pair such as ``btc:usd``, ``btc/usd`` or ``BTC-USD``.

        :param pair_str: Pair string.
        :returns: New TradingPair instance.
        :raises ValueError: If the string does not have exactly two non-empty parts.
        """
        parts = _SEPARATORS.split(pair_str.strip())
        if len(parts) != 2 or not all(parts):
            raise ValueError(
                f"Invalid pair format '{pair_str}'. Expected 'base:quote' (e.g., 'btc:usd')"
            )
        return cls(parts[0], parts[1])
