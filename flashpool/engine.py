"""
engine.py - LoanEngine: flash loan issuance and settlement

A flash loan runs as one atomic ledger scope:

    IDLE -> ISSUING -> AWAITING_SETTLEMENT -> SETTLING -> COMPLETED
    (any failure after IDLE)                          -> REVERTED

    ISSUING              principal moves pool -> receiver
    AWAITING_SETTLEMENT  receiver.execute_operation() runs
    SETTLING             repayment is checked, then the fee is realized

Any failure after issuing unwinds every transaction executed in the scope,
including whatever the receiver did with the funds, and the error reaches
the caller. The engine keeps no loan state between calls.
"""

from __future__ import annotations
from dataclasses import dataclass
from contextvars import ContextVar
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Tuple, runtime_checkable
import itertools
import logging
import time

from .config import ProtocolConfig, SettlementPolicy
from .core import (
    OriginType, TransactionOrigin,
    CallbackRejected, CallbackTimeout, InsufficientLiquidity,
    Reentrant, SettlementFailed, ZeroAmount,
    to_decimal,
)
from .fees import FeeCalculator, FeeQuote
from .ledger import Ledger
from .oracle import PriceOracle
from .registry import AdminCapability, AssetRegistry
from .shares import PoolState, ShareLedger

logger = logging.getLogger(__name__)


class LoanState(Enum):
    IDLE = "idle"
    ISSUING = "issuing"
    AWAITING_SETTLEMENT = "awaiting_settlement"
    SETTLING = "settling"
    COMPLETED = "completed"
    REVERTED = "reverted"


@runtime_checkable
class FlashLoanReceiver(Protocol):
    """
    Borrower contract.

    execute_operation() is called with the principal already in `address`.
    Returning a falsy value or raising fails the loan.
    """

    address: str

    def execute_operation(
        self,
        asset: str,
        amount: Decimal,
        fee: Decimal,
        initiator: str,
        data: bytes,
    ) -> bool:
        ...


@dataclass(slots=True)
class LoanRecord:
    """
    One loan in flight. Lives only for the duration of flashloan().

    `repaid` counts what came back through LoanEngine.repay(); only the
    EXPLICIT_REPAYMENT policy looks at it.
    """
    loan_id: str
    asset: str
    receiver: str
    initiator: str
    amount: Decimal
    fee: Decimal
    pre_loan_balance: Decimal
    price: Decimal
    policy: SettlementPolicy
    state: LoanState = LoanState.IDLE
    repaid: Decimal = Decimal("0")

    @property
    def amount_due(self) -> Decimal:
        return self.amount + self.fee

    @property
    def required_balance(self) -> Decimal:
        return self.pre_loan_balance + self.fee


@dataclass(frozen=True, slots=True)
class LoanResult:
    """Outcome of a completed flash loan."""
    loan_id: str
    asset: str
    amount: Decimal
    fee: Decimal
    price: Decimal
    exchange_rate_before: Decimal
    exchange_rate_after: Decimal
    repaid: Decimal
    policy: SettlementPolicy
    state: LoanState = LoanState.COMPLETED


# (engine id, loan) pairs in flight in the current execution context, innermost last.
_ACTIVE_LOANS: ContextVar[Tuple[Tuple[int, LoanRecord], ...]] = ContextVar("flashpool_loans", default=())


class LoanEngine:
    """
    Issues flash loans against the pools of an AssetRegistry.

    Example:
        engine = LoanEngine(registry, FeeCalculator(ledger, oracle))
        result = engine.flashloan(receiver, "USDC", Decimal("1000"))
        result.fee                  # Decimal("3")
        result.exchange_rate_after  # Decimal("1.0003") with 10,000 shares
    """

    def __init__(
        self,
        registry: AssetRegistry,
        fees: FeeCalculator,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            registry: Registry gating the assets; its config sets the
                settlement policy and the callback deadline
            fees: Fee calculator consulted once per loan
            clock: Monotonic seconds, used for the callback deadline

        Raises:
            Unauthorized: If another engine already serves registry
        """
        self.registry = registry
        self.fees = fees
        self.clock = clock
        self._loan_ids = itertools.count(1)
        self._settlement = registry.claim_settlement(f"engine@{registry.ledger.name}")

    @property
    def ledger(self) -> Ledger:
        return self.registry.ledger

    @property
    def config(self) -> ProtocolConfig:
        return self.registry.config

    # ========================================================================
    # FLASH LOANS
    # ========================================================================

    def flashloan(
        self,
        receiver: FlashLoanReceiver,
        asset: str,
        amount: Any,
        data: bytes = b"",
        initiator: Optional[str] = None,
    ) -> LoanResult:
        """
        Lend amount of asset to receiver for the duration of its callback.

        Args:
            receiver: Object with an `address` and execute_operation()
            asset: Enabled asset to borrow
            amount: Principal
            data: Opaque bytes passed through to the callback
            initiator: Account reported to the callback (default: receiver)

        Returns:
            LoanResult of the completed loan

        Raises:
            ZeroAmount, UnknownAsset, AssetDisabled, Reentrant,
            InsufficientLiquidity, OracleUnavailable: Before anything moves
            CallbackRejected, CallbackTimeout, SettlementFailed,
            ExchangeRateRegression: After issuing; the loan is unwound
        """
        if not isinstance(receiver, FlashLoanReceiver):
            raise TypeError(f"{receiver!r} is not a FlashLoanReceiver")
        quantity = to_decimal(amount)
        if quantity <= 0:
            raise ZeroAmount(f"loan amount must be positive, got {quantity}")

        with self.registry.locks.guard(asset, "flashloan"):
            share_ledger = self.registry.require_enabled(asset)
            quantity = share_ledger.token.parse_amount(quantity)
            held = share_ledger.held_balance
            if quantity > held:
                raise InsufficientLiquidity(f"pool holds {held} {asset}, loan requests {quantity}")

            quote = self.fees.quote(asset, quantity)
            record = LoanRecord(
                loan_id=f"loan-{next(self._loan_ids):06d}",
                asset=asset,
                receiver=receiver.address,
                initiator=initiator or receiver.address,
                amount=quantity,
                fee=quote.fee,
                pre_loan_balance=held,
                price=quote.price,
                policy=self.config.settlement_policy,
            )
            rate_before = share_ledger.exchange_rate

            token = _ACTIVE_LOANS.set(_ACTIVE_LOANS.get() + ((id(self), record),))
            try:
                with self.ledger.atomic():
                    self._issue(record, share_ledger)
                    self._await_settlement(record, receiver, data)
                    rate_after = self._settle(record, share_ledger)
            except BaseException as e:
                record.state = LoanState.REVERTED
                logger.warning("Flash loan %s of %s %s reverted: %s: %s",
                               record.loan_id, quantity, asset, type(e).__name__, e)
                raise
            finally:
                _ACTIVE_LOANS.reset(token)

        logger.info("Flash loan %s completed: %s %s to %s, fee %s, rate %s -> %s",
                    record.loan_id, quantity, asset, record.receiver, record.fee,
                    rate_before, rate_after)
        return LoanResult(
            loan_id=record.loan_id,
            asset=asset,
            amount=quantity,
            fee=record.fee,
            price=record.price,
            exchange_rate_before=rate_before,
            exchange_rate_after=rate_after,
            repaid=record.repaid,
            policy=record.policy,
        )

    def _issue(self, record: LoanRecord, share_ledger: ShareLedger) -> None:
        record.state = LoanState.ISSUING
        share_ledger.token.transfer(
            share_ledger.pool_wallet, record.receiver, record.amount,
            origin=TransactionOrigin(OriginType.PROTOCOL, "pool", record.asset, "LOAN_ISSUED"),
        )

    def _await_settlement(self, record: LoanRecord, receiver: FlashLoanReceiver, data: bytes) -> None:
        record.state = LoanState.AWAITING_SETTLEMENT
        started = self.clock()
        try:
            ok = receiver.execute_operation(
                record.asset, record.amount, record.fee, record.initiator, data
            )
        except Reentrant:
            # the guard's verdict, not the receiver's
            raise
        except Exception as e:
            raise CallbackRejected(
                f"{record.receiver} raised during {record.loan_id}: {type(e).__name__}: {e}"
            ) from e

        timeout = self.config.callback_timeout
        elapsed = self.clock() - started
        if timeout is not None and elapsed > timeout:
            raise CallbackTimeout(
                f"{record.receiver} took {elapsed:.3f}s for {record.loan_id}, deadline {timeout}s"
            )
        if not ok:
            raise CallbackRejected(f"{record.receiver} rejected {record.loan_id}")

    def _settle(self, record: LoanRecord, share_ledger: ShareLedger) -> Decimal:
        record.state = LoanState.SETTLING
        held = share_ledger.held_balance
        if held < record.required_balance:
            raise SettlementFailed(
                f"{record.loan_id}: pool holds {held} {record.asset}, "
                f"needs {record.required_balance} (pre-loan {record.pre_loan_balance} + fee {record.fee})"
            )
        if record.policy is SettlementPolicy.EXPLICIT_REPAYMENT and record.repaid < record.amount_due:
            raise SettlementFailed(
                f"{record.loan_id}: repaid {record.repaid} {record.asset} of {record.amount_due} due"
            )
        new_rate = share_ledger.realize_fee(self._settlement, record.fee)
        record.state = LoanState.COMPLETED
        return new_rate

    # ========================================================================
    # REPAYMENT
    # ========================================================================

    def repay(self, payer: str, asset: str, amount: Any) -> LoanRecord:
        """
        Pay amount of asset back to the pool against the innermost active loan.

        Only valid from inside a receiver callback of a loan on asset.

        Returns:
            The credited LoanRecord

        Raises:
            SettlementFailed: If no loan on asset is active in this context
            InsufficientFunds: If payer cannot cover amount
        """
        record = self.active_loan(asset)
        if record is None:
            raise SettlementFailed(f"no flash loan on {asset} is in progress")
        share_ledger = self.registry.ledger_for(asset)
        quantity = share_ledger.token.parse_amount(amount)
        share_ledger.token.transfer(
            payer, share_ledger.pool_wallet, quantity,
            origin=TransactionOrigin(OriginType.USER_ACTION, payer, asset, "LOAN_REPAID"),
        )
        record.repaid += quantity
        logger.debug("%s repaid %s %s against %s", payer, quantity, asset, record.loan_id)
        return record

    def active_loan(self, asset: str) -> Optional[LoanRecord]:
        """Innermost loan of this engine on asset awaiting settlement in the current context."""
        for engine_id, record in reversed(_ACTIVE_LOANS.get()):
            if (engine_id == id(self) and record.asset == asset
                    and record.state is LoanState.AWAITING_SETTLEMENT):
                return record
        return None

    # ========================================================================
    # PASSTHROUGHS
    # ========================================================================

    def quote(self, asset: str, amount: Any) -> FeeQuote:
        self.registry.require_enabled(asset)
        return self.fees.quote(asset, amount)

    def deposit(self, depositor: str, asset: str, amount: Any) -> Decimal:
        return self.registry.require_enabled(asset).deposit(depositor, amount)

    def redeem(self, holder: str, asset: str, shares: Any) -> Decimal:
        return self.registry.require_enabled(asset).redeem(holder, shares)

    def pool_state(self, asset: str) -> PoolState:
        return self.registry.pool_state(asset)

    def __repr__(self) -> str:
        return f"LoanEngine({self.registry!r}, policy={self.config.settlement_policy.value})"


def build_pool(
    ledger: Ledger,
    oracle: PriceOracle,
    admin: AdminCapability,
    config: Optional[ProtocolConfig] = None,
    clock: Callable[[], float] = time.monotonic,
) -> LoanEngine:
    """Wire a registry, fee calculator and engine around one ledger."""
    config = config or ProtocolConfig()
    registry = AssetRegistry(ledger, admin, config)
    return LoanEngine(registry, FeeCalculator.from_config(ledger, oracle, config), clock=clock)
