"""
oracle.py - Price oracles consulted by the fee path

The pool never prices assets itself. It asks a PriceOracle for the
reference-unit price of one unit of an asset and treats the answer as
untrusted input (see fees.FeeCalculator).

Classes:
- PriceOracle: Protocol defining the price_of() interface
- StaticPriceOracle: fixed prices, updatable by hand
- TimeSeriesPriceOracle: price paths read at a clock's current time
- SpotPriceOracle: spot price of constant-product pools (manipulable)
- TWAPPriceOracle: average of recorded observations over a time window

Prices are Decimals in the reference unit (typically USD).
"""

from __future__ import annotations
from bisect import bisect_right
from collections import deque
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Deque, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from .amm import ConstantProductPool


@runtime_checkable
class PriceOracle(Protocol):
    """
    Protocol for price oracles.

    price_of() returns the reference-unit price of one unit of the asset, or
    None when the oracle has no price. It must not mutate anything.
    """

    def price_of(self, asset: str) -> Optional[Decimal]:
        """Get the current price of one unit of asset."""
        ...


class StaticPriceOracle:
    """
    Oracle with fixed prices (time-independent).

    The reference unit always prices at 1.
    """

    def __init__(self, prices: Dict[str, Decimal], reference: str = "USD"):
        """
        Initialize with a static price map.

        Args:
            prices: Dictionary mapping asset symbols to reference-unit prices
            reference: The unit prices are quoted in
        """
        self.reference = reference
        self.prices = dict(prices)
        self.prices[reference] = Decimal("1")

    def price_of(self, asset: str) -> Optional[Decimal]:
        return self.prices.get(asset)

    def update_price(self, asset: str, price: Decimal) -> None:
        """Update the price of an asset."""
        self.prices[asset] = price

    def update_prices(self, prices: Dict[str, Decimal]) -> None:
        """Update multiple prices at once."""
        self.prices.update(prices)

    def __repr__(self):
        return f"StaticPriceOracle({len(self.prices)} prices, reference={self.reference})"


class TimeSeriesPriceOracle:
    """
    Oracle over historical price paths.

    Returns the most recent price at or before clock(). Pass the ledger's
    clock (lambda: ledger.current_time) to price loans at logical time.

    Example:
        oracle = TimeSeriesPriceOracle(lambda: ledger.current_time, {
            'WETH': [(t0, Decimal("2000")), (t1, Decimal("1950"))],
        })
    """

    def __init__(
        self,
        clock: Callable[[], datetime],
        price_paths: Optional[Dict[str, List[Tuple[datetime, Decimal]]]] = None,
        reference: str = "USD",
    ):
        self.clock = clock
        self.reference = reference
        self.price_history: Dict[str, List[Tuple[datetime, Decimal]]] = {}

        if price_paths:
            for asset, path in price_paths.items():
                if path:
                    self.price_history[asset] = sorted(path, key=lambda x: x[0])

    def add_price(self, asset: str, timestamp: datetime, price: Decimal) -> None:
        """Add a price observation, keeping history sorted by time."""
        history = self.price_history.setdefault(asset, [])
        history.append((timestamp, price))
        history.sort(key=lambda x: x[0])

    def price_at(self, asset: str, timestamp: datetime) -> Optional[Decimal]:
        """
        Price at or before timestamp; None if there is none yet.

        Uses binary search for O(log n) lookup.
        """
        if asset == self.reference:
            return Decimal("1")
        history = self.price_history.get(asset)
        if not history:
            return None
        timestamps = [ts for ts, _ in history]
        idx = bisect_right(timestamps, timestamp)
        if idx == 0:
            return None
        return history[idx - 1][1]

    def price_of(self, asset: str) -> Optional[Decimal]:
        return self.price_at(asset, self.clock())

    def __repr__(self):
        total = sum(len(h) for h in self.price_history.values())
        return f"TimeSeriesPriceOracle({len(self.price_history)} assets, {total} observations)"


class SpotPriceOracle:
    """
    Naive oracle reading the spot price of constant-product pools.

    Whoever can trade against the pool can move this price within a single
    operation, which makes it the feed adversarial scenarios target.
    """

    def __init__(self, pools: Dict[str, ConstantProductPool], reference: str = "USD"):
        for asset, pool in pools.items():
            if pool.base != asset:
                raise ValueError(f"pool for {asset} quotes {pool.base}")
        self.pools = dict(pools)
        self.reference = reference

    def price_of(self, asset: str) -> Optional[Decimal]:
        if asset == self.reference:
            return Decimal("1")
        pool = self.pools.get(asset)
        if pool is None:
            return None
        return pool.price_of_base()

    def __repr__(self):
        return f"SpotPriceOracle({sorted(self.pools)})"


class TWAPPriceOracle:
    """
    Average of observations of another oracle over a trailing window.

    observe() samples the source; price_of() averages the samples taken
    within `window` of clock() and never samples on read, so a price moved
    inside a single operation does not reach the quote.
    """

    def __init__(
        self,
        source: PriceOracle,
        window: timedelta,
        clock: Callable[[], datetime],
    ):
        if window <= timedelta(0):
            raise ValueError("window must be positive")
        self.source = source
        self.window = window
        self.clock = clock
        self.samples: Dict[str, Deque[Tuple[datetime, Decimal]]] = {}

    def observe(self, asset: str) -> Optional[Decimal]:
        """Record the source's current price for asset."""
        price = self.source.price_of(asset)
        if price is None:
            return None
        samples = self.samples.setdefault(asset, deque())
        samples.append((self.clock(), price))
        self._prune(asset)
        return price

    def _prune(self, asset: str) -> None:
        samples = self.samples.get(asset)
        cutoff = self.clock() - self.window
        while samples and samples[0][0] < cutoff:
            samples.popleft()

    def price_of(self, asset: str) -> Optional[Decimal]:
        cutoff = self.clock() - self.window
        window_prices = [p for ts, p in self.samples.get(asset, ()) if ts >= cutoff]
        if not window_prices:
            return None
        return sum(window_prices, Decimal("0")) / len(window_prices)

    def __repr__(self):
        return f"TWAPPriceOracle(window={self.window}, source={self.source!r})"
