"""
Core types and pure functions for the flash-loan pool.

This module provides the foundational data structures and protocols:
1. Protocols: LedgerView for read-only ledger access
2. Immutable data structures: Move, PendingTransaction, Transaction, Unit
3. Exceptions: the full error taxonomy of the ledger and the protocol
4. Type aliases: Positions, UnitState
5. Transfer rules: pure validation functions for moves
6. Unit factories: token() and share_unit()

All functions in this module are pure and operate on read-only views.
No function can mutate ledger state directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, DefaultContext, ROUND_HALF_EVEN, ROUND_DOWN, ROUND_UP, getcontext
from enum import Enum
import itertools
from typing import (
    Dict, List, Set, Optional, Callable, Any, Protocol,
    Tuple, FrozenSet, Iterable, runtime_checkable,
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Share and fee arithmetic must be deterministic.
# The global context is configured once at module load time.
#
#   - prec=50: enough headroom for rate × shares products at 18 places
#   - rounding=ROUND_HALF_EVEN for intermediate results; every amount that
#     leaves the protocol is quantized explicitly with a directed rounding
#   - DefaultContext gets the same settings so threads started later
#     (concurrent borrowers) inherit them
#
_POOL_DECIMAL_CONTEXT = getcontext()
_POOL_DECIMAL_CONTEXT.prec = 50
_POOL_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN
DefaultContext.prec = 50
DefaultContext.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved wallet for token issuance and share minting/burning.
# The system wallet is exempt from balance validation and can hold any balance.
SYSTEM_WALLET = "system"

UNIT_TYPE_TOKEN = "TOKEN"
UNIT_TYPE_SHARE = "SHARE"

# Quantities with absolute value below this threshold are treated as zero.
QUANTITY_EPSILON = Decimal("1e-18")

# Fixed-point precision of the exchange rate (1e18 scaling).
RATE_DECIMALS = 18
INITIAL_EXCHANGE_RATE = Decimal("1")

DEFAULT_TOKEN_DECIMALS = 18

# Prefix of share unit symbols: USDC -> fpUSDC
SHARE_PREFIX = "fp"

# Amounts paid out by the pool round down, amounts owed to it round up.
DECIMAL_ROUNDING = {
    UNIT_TYPE_TOKEN: ROUND_DOWN,
    UNIT_TYPE_SHARE: ROUND_DOWN,
    'RATE': ROUND_DOWN,
    'FEES': ROUND_UP,
}


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from wallet ID to quantity held by that wallet for a specific unit.
Positions = Dict[str, Decimal]

# Internal state for a unit (exchange rate, allowances, flags, ...).
UnitState = Dict[str, Any]


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to ledger state.

    Transfer rules, fee quotes and share previews only need this view.
    Functions accepting a LedgerView parameter declare their read-only intent.
    """

    @property
    def current_time(self) -> datetime:
        """Return the current logical time of the ledger."""
        ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """
        Return the balance of a specific unit in a wallet.

        Returns Decimal("0") if the wallet holds none of the unit.
        """
        ...

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """Return a copy of the unit's internal state."""
        ...

    def get_positions(self, unit_symbol: str) -> Positions:
        """Return all non-zero positions for a unit across all wallets."""
        ...

    def list_wallets(self) -> Set[str]:
        """Return the set of all registered wallet IDs."""
        ...

    def get_unit(self, symbol: str) -> 'Unit':
        """Return the Unit object for a given symbol."""
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: Transaction was validated and applied to the ledger.
    REJECTED: Transaction failed validation (funds, balance limits,
              transfer rules, registration).
    """
    APPLIED = "applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """Classification of where a transaction originated, for the audit trail."""
    USER_ACTION = "user_action"      # Token transfers and approvals
    PROTOCOL = "protocol"            # Deposits, redemptions, loans, fees
    ADMIN = "admin"                  # Asset registry changes
    SYSTEM = "system"                # Token issuance, initial setup


# ============================================================================
# EXCEPTIONS
# ============================================================================

class FlashPoolError(Exception):
    """Base exception for every error raised by this package."""
    pass


class LedgerError(FlashPoolError):
    """Base exception for balance-store errors."""
    pass


class InsufficientFunds(LedgerError):
    """Raised when a move would cause a wallet balance to fall below the unit's minimum."""
    pass


class BalanceConstraintViolation(LedgerError):
    """Raised when a move would cause a wallet balance to exceed the unit's maximum."""
    pass


class TransferRuleViolation(LedgerError):
    """Raised when a move violates the unit's transfer rule."""
    pass


class UnitNotRegistered(LedgerError):
    """Raised when operating on a unit that has not been registered with the ledger."""
    pass


class WalletNotRegistered(LedgerError):
    """Raised when operating on a wallet that has not been registered with the ledger."""
    pass


class InsufficientAllowance(LedgerError):
    """Raised when transfer_from exceeds the spender's approved allowance."""
    pass


class UnknownAsset(FlashPoolError):
    """Raised for an asset that was never enabled in the registry."""
    pass


class AssetDisabled(FlashPoolError):
    """Raised for an asset that is registered but currently disabled."""
    pass


class InsufficientLiquidity(FlashPoolError):
    """Raised when the pool's held balance cannot cover a loan or a redemption."""
    pass


class InsufficientShares(FlashPoolError):
    """Raised when a holder redeems more shares than it owns."""
    pass


class ZeroAmount(FlashPoolError):
    """Raised for non-positive amounts, or amounts that round to zero."""
    pass


class ExchangeRateRegression(FlashPoolError):
    """Raised when fee realization would not strictly increase the exchange rate."""
    pass


class EmptyShareSupply(ExchangeRateRegression):
    """Raised when fee realization is attempted while no shares are outstanding."""
    pass


class SettlementFailed(FlashPoolError):
    """Raised when the post-callback settlement check does not pass."""
    pass


class CallbackRejected(FlashPoolError):
    """Raised when the receiver callback returns a falsy result or raises."""
    pass


class CallbackTimeout(CallbackRejected):
    """Raised when the receiver callback returns after its deadline."""
    pass


class OracleUnavailable(FlashPoolError):
    """Raised when the price oracle fails or returns an unusable price."""
    pass


class Reentrant(FlashPoolError):
    """Raised when an operation re-enters an asset already guarded by the caller."""
    pass


class Unauthorized(FlashPoolError):
    """Raised when a privileged operation is attempted without the admin capability."""
    pass


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Immutable record of a transaction's origin for audit purposes.

    Attributes:
        origin_type: Classification of the origin source
        source_id: Identifier of the specific source (component or account)
        unit_symbol: Asset the transaction concerns (if applicable)
        event_type: Event within the source (e.g., "DEPOSIT", "FLASHLOAN_ISSUE")
    """
    origin_type: OriginType
    source_id: str
    unit_symbol: Optional[str] = None
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.unit_symbol:
            parts.append(f"unit={self.unit_symbol}")
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# UNIT STATE CHANGE
# ============================================================================

@dataclass(frozen=True, slots=True)
class UnitStateChange:
    """
    Record of a unit state change.

    Stores complete before/after snapshots so a journaled transaction can be
    unwound by restoring old_state.
    """
    unit: str
    old_state: Any
    new_state: Any

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """Return {field: (old, new)} for the fields that differ."""
        old = self.old_state if isinstance(self.old_state, dict) else {}
        new = self.new_state if isinstance(self.new_state, dict) else {}
        changes = {}
        for key in set(old.keys()) | set(new.keys()):
            if old.get(key) != new.get(key):
                changes[key] = (old.get(key), new.get(key))
        return changes


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of value between two wallets.

    Attributes:
        quantity: The amount to transfer (must be finite and positive).
        unit_symbol: The unit being transferred (e.g., "USDC", "fpUSDC").
        source: The wallet ID from which value is debited.
        dest: The wallet ID to which value is credited.
        contract_id: Identifier of the operation generating this move.
    """
    quantity: Decimal
    unit_symbol: str
    source: str
    dest: str
    contract_id: str

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.unit_symbol or not self.unit_symbol.strip():
            raise ValueError("Move unit_symbol cannot be empty")
        if not self.contract_id or not self.contract_id.strip():
            raise ValueError("Move contract_id cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if self.quantity.is_infinite() or self.quantity.is_nan():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if self.quantity < QUANTITY_EPSILON:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest})"


_intent_counter = itertools.count()


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A proposed transaction, before execution.

    Attributes:
        moves: Value transfers between wallets
        state_changes: Unit state changes (with old_state and new_state)
        origin: Who/what created this transaction and why
        timestamp: When this pending transaction was created
        units_to_create: Units to register before executing moves
        intent_id: Process-unique identifier (auto-assigned)
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    units_to_create: Tuple['Unit', ...] = ()
    intent_id: str = field(default="")

    def __post_init__(self):
        # Deposits of equal size are distinct intents, so ids are sequential
        # rather than content hashes.
        if not self.intent_id:
            object.__setattr__(self, 'intent_id', f"intent:{next(_intent_counter):012d}")

    def is_empty(self) -> bool:
        """Return True if there are no moves, no state changes and no units to create."""
        return not self.moves and not self.state_changes and not self.units_to_create

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {len(self.state_changes)} deltas, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: Iterable[Move],
    state_changes: Optional[List[UnitStateChange]] = None,
    origin: Optional[TransactionOrigin] = None,
    units_to_create: Optional[Tuple['Unit', ...]] = None,
) -> PendingTransaction:
    """
    Build a PendingTransaction from moves and state changes.

    Args:
        view: Read-only ledger view (provides current_time)
        moves: Moves to include in the transaction
        state_changes: Optional UnitStateChange objects
        origin: Transaction origin (defaults to a PROTOCOL origin)
        units_to_create: Optional Units to register before executing moves

    Returns:
        A PendingTransaction ready for execution

    Example:
        tx = build_transaction(ledger, [
            Move(Decimal("100"), "USDC", "alice", "pool:USDC", "deposit")
        ])
        ledger.apply(tx)
    """
    import copy

    if origin is None:
        origin = TransactionOrigin(OriginType.PROTOCOL, "flashpool")

    copied_changes: Tuple[UnitStateChange, ...] = ()
    if state_changes:
        copied_changes = tuple(
            UnitStateChange(
                unit=sc.unit,
                old_state=copy.deepcopy(sc.old_state),
                new_state=copy.deepcopy(sc.new_state),
            )
            for sc in state_changes
        )

    return PendingTransaction(
        moves=tuple(moves),
        state_changes=copied_changes,
        origin=origin,
        timestamp=view.current_time,
        units_to_create=units_to_create or (),
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger state changes.

    Attributes:
        moves: Value transfers between wallets
        state_changes: Unit state changes (with old_state and new_state)
        origin: Who/what created this transaction and why
        timestamp: When the PendingTransaction was created
        intent_id: Identifier from the PendingTransaction
        exec_id: Unique execution identifier (ledger + sequence + time)
        ledger_name: Name of the ledger that executed this
        execution_time: When this was executed and logged
        sequence_number: Monotonic sequence within the ledger
        units_to_create: Units registered by this transaction
        contract_ids: Contract IDs from moves (auto-populated)
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    intent_id: str
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int
    units_to_create: Tuple['Unit', ...] = ()
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves and not self.state_changes and not self.units_to_create:
            raise ValueError("Transaction must have moves, state_changes, or units_to_create")
        if self.contract_ids is None:
            object.__setattr__(
                self, 'contract_ids',
                frozenset(m.contract_id for m in self.moves)
            )

    def __repr__(self) -> str:
        w = 100
        bar = "─" * w

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        lines = [
            "",
            f"┌{bar}┐",
            f"│{pad(' Transaction: ' + self.exec_id)}│",
            f"├{bar}┤",
            f"│{pad('   timestamp      : ' + str(self.timestamp))}│",
            f"│{pad('   sequence       : ' + str(self.sequence_number))}│",
            f"│{pad('   origin         : ' + str(self.origin))}│",
        ]
        if self.units_to_create:
            lines.append(f"├{bar}┤")
            lines.append(f"│{pad(' Units Created (' + str(len(self.units_to_create)) + '):')}│")
            for unit in self.units_to_create:
                lines.append(f"│{pad('   ' + unit.symbol + ' (' + unit.name + ')')}│")
        lines.append(f"├{bar}┤")
        lines.append(f"│{pad(' Moves (' + str(len(self.moves)) + '):')}│")
        for i, move in enumerate(self.moves):
            lines.append(f"│{pad(f'   [{i}] {move.quantity} {move.unit_symbol}: {move.source} → {move.dest}')}│")
        if self.state_changes:
            lines.append(f"├{bar}┤")
            lines.append(f"│{pad(' State Changes (' + str(len(self.state_changes)) + '):')}│")
            for sc in self.state_changes:
                lines.append(f"│{pad('   [' + sc.unit + ']')}│")
                for field_name, (old_val, new_val) in sc.changed_fields().items():
                    lines.append(f"│{pad(f'      {field_name}: {old_val!r} → {new_val!r}')}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)


# Transfer rules validate moves and raise TransferRuleViolation if invalid.
TransferRule = Callable[[LedgerView, Move], None]


def _freeze_state(state: Optional[UnitState]) -> Tuple[Tuple[str, Any], ...]:
    """Convert a state dict to a sorted tuple of (key, value) pairs."""
    if not state:
        return ()
    return tuple(sorted(state.items()))


def _thaw_state(frozen_state: Tuple[Tuple[str, Any], ...]) -> UnitState:
    """Convert a frozen state representation back to a dict."""
    return dict(frozen_state)


@dataclass(frozen=True, slots=True)
class Unit:
    """
    Definition of a unit held in the ledger: a token or a pool share.

    Attributes:
        symbol: Short identifier (e.g., "USDC", "fpUSDC").
        name: Human-readable name.
        unit_type: UNIT_TYPE_TOKEN or UNIT_TYPE_SHARE.
        min_balance: Minimum allowed balance in any non-system wallet.
        max_balance: Maximum allowed balance in any wallet.
        decimal_places: Number of decimal places for rounding (None = no rounding).
        transfer_rule: Optional function to validate moves involving this unit.
        _frozen_state: Internal frozen state representation.
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: Decimal = Decimal("0")
    max_balance: Decimal = Decimal("Infinity")
    decimal_places: Optional[int] = None
    transfer_rule: Optional[TransferRule] = None
    _frozen_state: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def state(self) -> UnitState:
        """Return the unit's state as a new dict."""
        return _thaw_state(self._frozen_state)

    @property
    def quantum(self) -> Optional[Decimal]:
        """Smallest representable amount, e.g. Decimal("0.000001") for 6 places."""
        if self.decimal_places is None:
            return None
        return Decimal(10) ** -self.decimal_places

    def round(self, value: Decimal, rounding: Optional[str] = None) -> Decimal:
        """
        Round a value to this unit's decimal precision.

        Uses the unit type's default rounding unless one is given.
        Returns the value unchanged if decimal_places is None.
        """
        if self.decimal_places is None:
            return value
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        rounding_mode = rounding or DECIMAL_ROUNDING.get(self.unit_type, ROUND_HALF_EVEN)
        return value.quantize(self.quantum, rounding=rounding_mode)


def to_decimal(value: Any, what: str = "amount") -> Decimal:
    """
    Convert an int, str or Decimal to a finite Decimal.

    Floats are converted through str() so 0.1 becomes Decimal("0.1").

    Raises:
        ValueError: If the value is not numeric, NaN or infinite
    """
    if isinstance(value, bool):
        raise ValueError(f"{what} must be numeric, got {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(str(value))
    else:
        raise ValueError(f"{what} must be numeric, got {type(value).__name__}")
    if result.is_nan() or result.is_infinite():
        raise ValueError(f"{what} must be finite, got {result}")
    return result


def share_symbol(asset: str) -> str:
    """Share unit symbol for an asset (USDC -> fpUSDC)."""
    return f"{SHARE_PREFIX}{asset}"


def allowance_key(owner: str, spender: str) -> str:
    """
    State key of one allowance entry in a token unit.

    One key per (owner, spender) pair keeps unwinds from clobbering
    unrelated approvals made concurrently on the same token.
    """
    return f"allowance:{owner}:{spender}"


# ============================================================================
# TRANSFER RULES
# ============================================================================

def paused_transfer_rule(view: LedgerView, move: Move) -> None:
    """
    Reject every move while the token's state has paused=True.

    Models a pausable token, one of the non-standard behaviors the pool has
    to survive without corrupting its own accounting.
    """
    if view.get_unit_state(move.unit_symbol).get('paused'):
        raise TransferRuleViolation(f"{move.unit_symbol} transfers are paused")


def blocklist_transfer_rule(view: LedgerView, move: Move) -> None:
    """Reject moves to or from wallets listed in the token's 'blocked' state."""
    blocked = view.get_unit_state(move.unit_symbol).get('blocked', ())
    if move.source in blocked:
        raise TransferRuleViolation(f"{move.unit_symbol}: {move.source} is blocked")
    if move.dest in blocked:
        raise TransferRuleViolation(f"{move.unit_symbol}: {move.dest} is blocked")


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def token(
    symbol: str,
    name: str,
    decimal_places: int = DEFAULT_TOKEN_DECIMALS,
    transfer_rule: Optional[TransferRule] = None,
    **state: Any,
) -> Unit:
    """
    Create a fungible token unit.

    Args:
        symbol: Token symbol (e.g., "USDC").
        name: Full name (e.g., "USD Coin").
        decimal_places: Token decimals (default: 18).
        transfer_rule: Optional rule modelling non-standard token behavior.
        **state: Extra initial state (e.g., paused=False, blocked=()).

    Returns:
        A Unit that cannot go negative outside the system wallet.
        Allowances are kept in its state under allowance_key() entries.
    """
    if decimal_places < 0:
        raise ValueError(f"decimal_places must be non-negative, got {decimal_places}")
    initial_state = dict(state)
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_TOKEN,
        decimal_places=decimal_places,
        transfer_rule=transfer_rule,
        _frozen_state=_freeze_state(initial_state),
    )


def share_unit(asset: Unit, pool_wallet: str) -> Unit:
    """
    Create the share unit representing claims on an asset's pool.

    Shares carry the asset's decimals; the exchange rate starts at 1.0.

    Args:
        asset: The underlying token unit.
        pool_wallet: Wallet that holds the pooled underlying balance.
    """
    return Unit(
        symbol=share_symbol(asset.symbol),
        name=f"Flash pool share: {asset.symbol}",
        unit_type=UNIT_TYPE_SHARE,
        decimal_places=asset.decimal_places,
        _frozen_state=_freeze_state({
            'asset': asset.symbol,
            'pool_wallet': pool_wallet,
            'exchange_rate': INITIAL_EXCHANGE_RATE,
            'enabled': True,
        }),
    )
