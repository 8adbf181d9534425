"""
erc20.py - Fungible token facade over a ledger unit

Gives one token unit of the Ledger the standard fungible-token surface the
pool relies on: balances, transfer, approve/allowance and transfer_from,
plus mint/burn against SYSTEM_WALLET for issuance.

Every operation is a ledger transaction, so token movements made by a flash
loan receiver are journaled and unwound with the loan when it reverts.
Allowances live in the token unit's state (one key per owner/spender pair)
for the same reason.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Any, Optional

from .core import (
    Move, Transaction, TransactionOrigin, OriginType, UnitStateChange, Unit,
    SYSTEM_WALLET, UNIT_TYPE_TOKEN,
    InsufficientAllowance, ZeroAmount,
    allowance_key, build_transaction, to_decimal,
)
from .ledger import Ledger


class Token:
    """
    Standard transfer/approve semantics for one token unit.

    Example:
        usdc = Token(ledger, "USDC")
        usdc.mint("alice", Decimal("1000"))
        usdc.approve("alice", "pool:USDC", Decimal("500"))
        usdc.transfer_from("pool:USDC", "alice", "pool:USDC", Decimal("500"))
    """

    def __init__(self, ledger: Ledger, symbol: str):
        unit = ledger.get_unit(symbol)
        if unit.unit_type != UNIT_TYPE_TOKEN:
            raise ValueError(f"{symbol} is a {unit.unit_type} unit, not a token")
        self.ledger = ledger
        self.symbol = symbol

    @property
    def unit(self) -> Unit:
        return self.ledger.get_unit(self.symbol)

    @property
    def decimals(self) -> Optional[int]:
        return self.unit.decimal_places

    def __repr__(self) -> str:
        return f"Token({self.symbol}, decimals={self.decimals})"

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def balance_of(self, account: str) -> Decimal:
        """Balance of an account; unknown accounts hold zero."""
        if not self.ledger.is_registered(account):
            return Decimal("0")
        return self.ledger.get_balance(account, self.symbol)

    def total_supply(self) -> Decimal:
        """Circulating supply (everything issued out of SYSTEM_WALLET)."""
        return self.ledger.total_supply(self.symbol, include_system=False)

    def allowance(self, owner: str, spender: str) -> Decimal:
        state = self.ledger.get_unit_state(self.symbol)
        return state.get(allowance_key(owner, spender), Decimal("0"))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def transfer(
        self,
        sender: str,
        to: str,
        amount: Any,
        origin: Optional[TransactionOrigin] = None,
    ) -> Transaction:
        """
        Move amount from sender to to.

        Raises:
            ZeroAmount: If amount is not positive
            InsufficientFunds: If sender's balance is too low
            TransferRuleViolation: If the token's rule rejects the move
        """
        quantity = self.parse_amount(amount)
        self.ledger.ensure_wallet(sender)
        self.ledger.ensure_wallet(to)
        pending = build_transaction(
            self.ledger,
            [Move(quantity, self.symbol, sender, to, f"transfer:{sender}")],
            origin=origin or self._origin(sender, "TRANSFER"),
        )
        return self.ledger.apply(pending)

    def approve(self, owner: str, spender: str, amount: Any) -> Transaction:
        """Set spender's allowance over owner's balance (zero revokes it)."""
        quantity = to_decimal(amount)
        if quantity < 0:
            raise ValueError(f"allowance cannot be negative, got {quantity}")
        self.ledger.ensure_wallet(owner)
        return self.ledger.change_unit_state(
            self.symbol,
            {allowance_key(owner, spender): self.unit.round(quantity)},
            origin=self._origin(owner, "APPROVE"),
        )

    def transfer_from(self, spender: str, owner: str, to: str, amount: Any) -> Transaction:
        """
        Move amount from owner to to, spending spender's allowance.

        The allowance decrement and the move are one transaction.

        Raises:
            InsufficientAllowance: If spender's allowance is below amount
            InsufficientFunds: If owner's balance is too low
        """
        quantity = self.parse_amount(amount)
        if spender == owner:
            return self.transfer(owner, to, quantity)
        self.ledger.ensure_wallet(owner)
        self.ledger.ensure_wallet(to)
        key = allowance_key(owner, spender)
        with self.ledger.mutex:
            old_state = self.ledger.get_unit_state(self.symbol)
            allowed = old_state.get(key, Decimal("0"))
            if allowed < quantity:
                raise InsufficientAllowance(
                    f"{spender} may spend {allowed} {self.symbol} of {owner}, needs {quantity}"
                )
            new_state = {**old_state, key: allowed - quantity}
            pending = build_transaction(
                self.ledger,
                [Move(quantity, self.symbol, owner, to, f"transfer_from:{spender}")],
                state_changes=[UnitStateChange(self.symbol, old_state, new_state)],
                origin=self._origin(spender, "TRANSFER_FROM"),
            )
            return self.ledger.apply(pending)

    def mint(self, to: str, amount: Any) -> Transaction:
        """Issue new tokens to an account."""
        quantity = self.parse_amount(amount)
        self.ledger.ensure_wallet(to)
        pending = build_transaction(
            self.ledger,
            [Move(quantity, self.symbol, SYSTEM_WALLET, to, "mint")],
            origin=TransactionOrigin(OriginType.SYSTEM, "token", self.symbol, "MINT"),
        )
        return self.ledger.apply(pending)

    def burn(self, holder: str, amount: Any) -> Transaction:
        """Destroy tokens held by an account."""
        quantity = self.parse_amount(amount)
        pending = build_transaction(
            self.ledger,
            [Move(quantity, self.symbol, holder, SYSTEM_WALLET, "burn")],
            origin=TransactionOrigin(OriginType.SYSTEM, "token", self.symbol, "BURN"),
        )
        return self.ledger.apply(pending)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def parse_amount(self, amount: Any) -> Decimal:
        """Convert amount to Decimal; must be positive and fit the token decimals."""
        quantity = to_decimal(amount)
        if quantity <= 0:
            raise ZeroAmount(f"{self.symbol} amount must be positive, got {quantity}")
        if self.unit.round(quantity) != quantity:
            raise ValueError(
                f"{quantity} has more than {self.decimals} decimal places for {self.symbol}"
            )
        return quantity

    def _origin(self, account: str, event: str) -> TransactionOrigin:
        return TransactionOrigin(OriginType.USER_ACTION, account, self.symbol, event)
