"""
amm.py - Constant-product pool (x * y = k) with a swap fee

The price feed the pool consults in the manipulation scenarios is the spot
price of one of these pools. Only price_of_base() is read by the protocol;
the swap math exists so tests can move that price the way an attacker
would, with borrowed funds inside a flash loan callback.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Any

from .core import to_decimal


class ConstantProductPool:
    """
    Two-asset AMM pool quoting `base` in units of `quote`.

    Example:
        pool = ConstantProductPool("WETH", "USD", Decimal("1000"), Decimal("2000000"))
        pool.price_of_base()                  # Decimal("2000")
        pool.swap_base_for_quote(Decimal("500"))
        pool.price_of_base() < Decimal("2000")  # True
    """

    def __init__(
        self,
        base: str,
        quote: str,
        reserve_base: Any,
        reserve_quote: Any,
        fee: Any = Decimal("0.003"),
    ):
        self.base = base
        self.quote = quote
        self.reserve_base = to_decimal(reserve_base, "reserve_base")
        self.reserve_quote = to_decimal(reserve_quote, "reserve_quote")
        self.fee = to_decimal(fee, "fee")
        if self.reserve_base <= 0 or self.reserve_quote <= 0:
            raise ValueError("reserves must be positive")
        if not Decimal("0") <= self.fee < Decimal("1"):
            raise ValueError(f"fee must be in [0, 1), got {self.fee}")

    @property
    def k(self) -> Decimal:
        return self.reserve_base * self.reserve_quote

    def price_of_base(self) -> Decimal:
        """Spot price of one base unit in quote units."""
        return self.reserve_quote / self.reserve_base

    def swap_base_for_quote(self, base_in: Any) -> Decimal:
        """Sell base into the pool; returns quote paid out. Lowers the base price."""
        dx = to_decimal(base_in, "base_in")
        if dx <= 0:
            raise ValueError("base_in must be positive")
        dx_net = dx * (1 - self.fee)
        k = self.k
        new_base = self.reserve_base + dx_net
        new_quote = k / new_base
        dy = self.reserve_quote - new_quote
        # the fee stays in the pool
        self.reserve_base += dx
        self.reserve_quote = new_quote
        return dy

    def swap_quote_for_base(self, quote_in: Any) -> Decimal:
        """Buy base with quote; returns base paid out. Raises the base price."""
        dy = to_decimal(quote_in, "quote_in")
        if dy <= 0:
            raise ValueError("quote_in must be positive")
        dy_net = dy * (1 - self.fee)
        k = self.k
        new_quote = self.reserve_quote + dy_net
        new_base = k / new_quote
        dx = self.reserve_base - new_base
        self.reserve_quote += dy
        self.reserve_base = new_base
        return dx

    def quote_for_base_out(self, base_out: Any) -> Decimal:
        """Quote input needed to receive exactly base_out (fee included)."""
        dx = to_decimal(base_out, "base_out")
        if not Decimal("0") < dx < self.reserve_base:
            raise ValueError(f"base_out must be in (0, {self.reserve_base})")
        new_base = self.reserve_base - dx
        dy_net = self.k / new_base - self.reserve_quote
        return dy_net / (1 - self.fee)

    def __repr__(self) -> str:
        return (
            f"ConstantProductPool({self.base}={self.reserve_base}, "
            f"{self.quote}={self.reserve_quote}, spot={self.price_of_base():.6f})"
        )
