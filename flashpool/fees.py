"""
fees.py - Flash loan fee quotes

fee = amount * fee_fraction * price

The price comes from a PriceOracle on every call and is never cached. The
oracle is untrusted input: anything that is not a finite positive number
inside the configured bounds is rejected with OracleUnavailable, and the
loan never starts.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
import logging

from .config import ProtocolConfig
from .core import DECIMAL_ROUNDING, OracleUnavailable, ZeroAmount, to_decimal
from .ledger import Ledger
from .oracle import PriceOracle

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FeeQuote:
    """Fee for one loan, computed from the price read at quote time."""
    asset: str
    amount: Decimal
    price: Decimal
    fee_fraction: Decimal
    fee: Decimal


class FeeCalculator:
    """
    Quotes flash loan fees from a fee fraction and an oracle price.

    The fee is denominated in the borrowed asset and rounded up to its
    decimals.

    Example:
        fees = FeeCalculator(ledger, StaticPriceOracle({"USDC": Decimal("1")}))
        fees.fee_for("USDC", Decimal("1000"))   # Decimal("3.000000")
    """

    def __init__(
        self,
        ledger: Ledger,
        oracle: PriceOracle,
        fee_fraction: Decimal = Decimal("0.003"),
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
    ):
        fee_fraction = to_decimal(fee_fraction, "fee_fraction")
        if not Decimal("0") < fee_fraction < Decimal("1"):
            raise ValueError(f"fee_fraction must be in (0, 1), got {fee_fraction}")
        self.ledger = ledger
        self.oracle = oracle
        self.fee_fraction = fee_fraction
        self.min_price = min_price
        self.max_price = max_price

    @classmethod
    def from_config(cls, ledger: Ledger, oracle: PriceOracle, config: ProtocolConfig) -> 'FeeCalculator':
        return cls(
            ledger, oracle,
            fee_fraction=config.fee_fraction,
            min_price=config.min_price,
            max_price=config.max_price,
        )

    def read_price(self, asset: str) -> Decimal:
        """
        Ask the oracle for asset's price and validate the answer.

        Raises:
            OracleUnavailable: If the oracle raises, has no price, or returns
                a value that is not finite, not positive, or out of bounds
        """
        try:
            raw = self.oracle.price_of(asset)
        except Exception as e:
            logger.warning("Oracle failed pricing %s: %s", asset, e)
            raise OracleUnavailable(f"oracle failed pricing {asset}: {e}") from e
        if raw is None:
            raise OracleUnavailable(f"oracle has no price for {asset}")
        try:
            price = to_decimal(raw, "price")
        except (ValueError, InvalidOperation) as e:
            logger.warning("Oracle returned unusable price %r for %s", raw, asset)
            raise OracleUnavailable(f"oracle returned unusable price {raw!r} for {asset}") from e
        if price <= 0:
            logger.warning("Oracle returned non-positive price %s for %s", price, asset)
            raise OracleUnavailable(f"oracle returned non-positive price {price} for {asset}")
        if self.min_price is not None and price < self.min_price:
            logger.warning("Oracle price %s for %s below bound %s", price, asset, self.min_price)
            raise OracleUnavailable(f"price {price} for {asset} is below {self.min_price}")
        if self.max_price is not None and price > self.max_price:
            logger.warning("Oracle price %s for %s above bound %s", price, asset, self.max_price)
            raise OracleUnavailable(f"price {price} for {asset} is above {self.max_price}")
        return price

    def quote(self, asset: str, amount: Any) -> FeeQuote:
        """
        Fee for borrowing amount of asset, at the oracle's current price.

        Raises:
            ZeroAmount: If amount is not positive
            OracleUnavailable: If the price is missing or invalid
        """
        quantity = to_decimal(amount)
        if quantity <= 0:
            raise ZeroAmount(f"loan amount must be positive, got {quantity}")
        price = self.read_price(asset)
        unit = self.ledger.get_unit(asset)
        fee = unit.round(quantity * self.fee_fraction * price, DECIMAL_ROUNDING['FEES'])
        return FeeQuote(asset, quantity, price, self.fee_fraction, fee)

    def fee_for(self, asset: str, amount: Any) -> Decimal:
        return self.quote(asset, amount).fee

    def __repr__(self) -> str:
        return f"FeeCalculator(fee_fraction={self.fee_fraction}, oracle={self.oracle!r})"
