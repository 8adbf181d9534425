"""
shares.py - ShareLedger: liquidity-provider shares of one asset's pool

A depositor hands the pool `amount` of the asset and receives
amount / exchange_rate shares; a holder redeeming shares receives
shares * exchange_rate. Fee income from flash loans raises the exchange
rate, which is the only way share value changes.

State lives in the ledger:
    - shares are the fp<ASSET> unit, issued from and burned to SYSTEM_WALLET
    - the exchange rate and the enabled flag are fields of that unit's state
    - the held balance is the pool wallet's balance of the asset

Rounding always favours the pool: shares minted and amounts paid out round
down, and the rate itself rounds down to RATE_DECIMALS places.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any
import logging

from .core import (
    Move, OriginType, TransactionOrigin, Unit,
    SYSTEM_WALLET, RATE_DECIMALS, DECIMAL_ROUNDING,
    EmptyShareSupply, ExchangeRateRegression, InsufficientLiquidity,
    InsufficientShares, ZeroAmount,
    build_transaction, share_symbol, to_decimal,
)
from .erc20 import Token

if TYPE_CHECKING:
    from .registry import AssetRegistry, SettlementCapability

logger = logging.getLogger(__name__)

RATE_QUANTUM = Decimal(10) ** -RATE_DECIMALS


@dataclass(frozen=True, slots=True)
class PoolState:
    """Externally visible state of one asset's pool."""
    asset: str
    share_symbol: str
    enabled: bool
    total_shares: Decimal
    exchange_rate: Decimal
    held_balance: Decimal
    pool_wallet: str


class ShareLedger:
    """
    Deposits, redemptions and fee realization for one asset.

    Obtained from AssetRegistry.set_asset() or AssetRegistry.ledger_for();
    every mutating call checks the registry's enabled flag and runs under
    the registry's per-asset guard.
    """

    def __init__(self, registry: 'AssetRegistry', asset: str):
        self.registry = registry
        self.ledger = registry.ledger
        self.asset = asset
        self.share_symbol = share_symbol(asset)
        self.token = Token(self.ledger, asset)

    # ========================================================================
    # QUERIES
    # ========================================================================

    @property
    def share_unit(self) -> Unit:
        return self.ledger.get_unit(self.share_symbol)

    @property
    def pool_wallet(self) -> str:
        return self.ledger.get_unit_state(self.share_symbol)['pool_wallet']

    @property
    def exchange_rate(self) -> Decimal:
        """Underlying units one share is worth."""
        return self.ledger.get_unit_state(self.share_symbol)['exchange_rate']

    @property
    def total_shares(self) -> Decimal:
        """Shares outstanding (everything not held by SYSTEM_WALLET)."""
        return self.ledger.total_supply(self.share_symbol, include_system=False)

    @property
    def held_balance(self) -> Decimal:
        """The pool wallet's balance of the asset."""
        return self.token.balance_of(self.pool_wallet)

    def shares_of(self, holder: str) -> Decimal:
        if not self.ledger.is_registered(holder):
            return Decimal("0")
        return self.ledger.get_balance(holder, self.share_symbol)

    def preview_deposit(self, amount: Any) -> Decimal:
        """Shares a deposit of amount would mint at the current rate."""
        return self._shares_for(to_decimal(amount), self.exchange_rate)

    def preview_redeem(self, shares: Any) -> Decimal:
        """Asset amount redeeming shares would pay at the current rate."""
        return self._amount_for(to_decimal(shares, "shares"), self.exchange_rate)

    def state(self) -> PoolState:
        with self.ledger.mutex:
            unit_state = self.ledger.get_unit_state(self.share_symbol)
            return PoolState(
                asset=self.asset,
                share_symbol=self.share_symbol,
                enabled=bool(unit_state.get('enabled')),
                total_shares=self.total_shares,
                exchange_rate=unit_state['exchange_rate'],
                held_balance=self.held_balance,
                pool_wallet=unit_state['pool_wallet'],
            )

    # ========================================================================
    # DEPOSIT / REDEEM
    # ========================================================================

    def deposit(self, depositor: str, amount: Any) -> Decimal:
        """
        Pull amount of the asset from depositor and mint shares for it.

        The depositor must have approved the pool wallet for at least amount.

        Args:
            depositor: Account paying in and receiving the shares
            amount: Asset amount, at most the token's decimals

        Returns:
            Shares minted: amount / rate at call time, rounded down

        Raises:
            ZeroAmount: If amount is not positive or buys no whole share quantum
            UnknownAsset, AssetDisabled: If the asset is not enabled
            InsufficientAllowance, InsufficientFunds: From the token transfer
        """
        quantity = self.token.parse_amount(amount)

        with self.registry.locks.guard(self.asset, "deposit"):
            self.registry.require_enabled(self.asset)
            rate = self.exchange_rate
            shares = self._shares_for(quantity, rate)
            if shares <= 0:
                raise ZeroAmount(f"deposit of {quantity} {self.asset} mints no shares at rate {rate}")
            pool_wallet = self.pool_wallet
            with self.ledger.atomic():
                self.token.transfer_from(pool_wallet, depositor, pool_wallet, quantity)
                self.ledger.apply(build_transaction(
                    self.ledger,
                    [Move(shares, self.share_symbol, SYSTEM_WALLET, depositor, "deposit")],
                    origin=self._origin(depositor, "DEPOSIT"),
                ))

        logger.debug("%s deposited %s %s for %s shares at rate %s",
                     depositor, quantity, self.asset, shares, rate)
        return shares

    def redeem(self, holder: str, share_amount: Any) -> Decimal:
        """
        Burn share_amount of holder's shares and pay out their value.

        Returns:
            Asset amount paid: shares * rate at call time, rounded down

        Raises:
            ZeroAmount: If share_amount is not positive or is worth nothing
            UnknownAsset, AssetDisabled: If the asset is not enabled
            InsufficientShares: If holder owns fewer shares
            InsufficientLiquidity: If the pool holds less than the amount owed
        """
        shares = to_decimal(share_amount, "shares")
        if shares <= 0:
            raise ZeroAmount(f"share amount must be positive, got {shares}")
        if self.share_unit.round(shares) != shares:
            raise ValueError(f"{shares} has more than {self.share_unit.decimal_places} decimal places")

        with self.registry.locks.guard(self.asset, "redeem"):
            self.registry.require_enabled(self.asset)
            owned = self.shares_of(holder)
            if owned < shares:
                raise InsufficientShares(f"{holder} owns {owned} {self.share_symbol}, redeeming {shares}")
            rate = self.exchange_rate
            owed = self._amount_for(shares, rate)
            if owed <= 0:
                raise ZeroAmount(f"{shares} {self.share_symbol} are worth nothing at rate {rate}")
            held = self.held_balance
            if owed > held:
                raise InsufficientLiquidity(f"pool holds {held} {self.asset}, redemption owes {owed}")
            pool_wallet = self.pool_wallet
            with self.ledger.atomic():
                self.ledger.apply(build_transaction(
                    self.ledger,
                    [Move(shares, self.share_symbol, holder, SYSTEM_WALLET, "redeem")],
                    origin=self._origin(holder, "REDEEM"),
                ))
                self.token.transfer(pool_wallet, holder, owed, origin=self._origin(holder, "REDEEM"))

        logger.debug("%s redeemed %s shares for %s %s at rate %s",
                     holder, shares, owed, self.asset, rate)
        return owed

    # ========================================================================
    # FEE REALIZATION
    # ========================================================================

    def realize_fee(self, settlement: 'SettlementCapability', fee: Any) -> Decimal:
        """
        Raise the exchange rate by fee income.

        Called by LoanEngine once a loan has settled, with the registry's
        SettlementCapability. The fee is expressed in shares at the current
        rate and the rate scaled by the resulting growth of the
        share-equivalent supply:

            new_rate = old_rate * (S + fee / old_rate) / S

        which at rate 1.0 is old_rate * (S + fee) / S.

        Returns:
            The new exchange rate

        Raises:
            Unauthorized: If settlement is not the registry's capability
            EmptyShareSupply: If no shares are outstanding (S == 0)
            ExchangeRateRegression: If the rate would not strictly increase
        """
        self.registry.authorize_settlement(settlement)
        amount = to_decimal(fee, "fee")
        with self.ledger.mutex:
            supply = self.total_shares
            old_rate = self.exchange_rate
            if supply <= 0:
                raise EmptyShareSupply(
                    f"cannot realize {amount} {self.asset} fee: no {self.share_symbol} outstanding"
                )
            fee_in_shares = amount / old_rate
            new_rate = (old_rate * (supply + fee_in_shares) / supply).quantize(
                RATE_QUANTUM, rounding=DECIMAL_ROUNDING['RATE']
            )
            if new_rate <= old_rate:
                raise ExchangeRateRegression(
                    f"{self.asset} fee {amount} would move rate {old_rate} to {new_rate}"
                )
            self.ledger.change_unit_state(
                self.share_symbol,
                {'exchange_rate': new_rate},
                origin=TransactionOrigin(OriginType.PROTOCOL, "pool", self.asset, "FEE_REALIZED"),
            )

        logger.info("%s fee %s realized: exchange rate %s -> %s", self.asset, amount, old_rate, new_rate)
        return new_rate

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _shares_for(self, amount: Decimal, rate: Decimal) -> Decimal:
        return self.share_unit.round(amount / rate)

    def _amount_for(self, shares: Decimal, rate: Decimal) -> Decimal:
        return self.token.unit.round(shares * rate)

    def _origin(self, account: str, event: str) -> TransactionOrigin:
        return TransactionOrigin(OriginType.USER_ACTION, account, self.asset, event)

    def __repr__(self) -> str:
        return f"ShareLedger({self.asset}, shares={self.total_shares}, rate={self.exchange_rate})"
