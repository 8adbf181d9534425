"""
ledger.py - Stateful Double-Entry Balance Store

The Ledger class holds every token and share balance of the pool. It is the
only module that mutates balances and unit state, so every change is
validated and auditable.

Key responsibilities:
    - Implements LedgerView protocol for read-only access by pure functions
    - Executes transactions atomically (all moves succeed or all fail)
    - Journals transactions inside atomic() scopes and unwinds them on failure
    - Serializes mutation with an internal re-entrant lock
"""

from __future__ import annotations
from collections import defaultdict
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterator, List, Set, Optional, Tuple, Any
import copy
import threading

from .core import (
    # Types
    Move, Transaction, Unit,
    PendingTransaction, TransactionOrigin, OriginType, UnitStateChange,
    ExecuteResult, Positions, UnitState,
    # Constants
    QUANTITY_EPSILON, SYSTEM_WALLET,
    # Exceptions
    LedgerError, InsufficientFunds, BalanceConstraintViolation,
    TransferRuleViolation, UnitNotRegistered, WalletNotRegistered,
    # Helper functions
    _freeze_state, build_transaction,
)


class Journal:
    """Transactions executed by one ledger inside one atomic() scope."""

    __slots__ = ("ledger", "entries")

    def __init__(self, ledger: 'Ledger'):
        self.ledger = ledger
        self.entries: List[Transaction] = []

    def __len__(self) -> int:
        return len(self.entries)

    def __repr__(self) -> str:
        return f"Journal({self.ledger.name}, {len(self.entries)} entries)"


# Journals open in the current execution context, innermost last.
# Threads do not inherit them, so one thread's rollback never touches
# transactions executed by another.
_ACTIVE_JOURNALS: ContextVar[Tuple[Journal, ...]] = ContextVar("flashpool_journals", default=())


class Ledger:
    """
    Double-entry balance store with full validation and audit trail.

    Design Principles:
        - Always validates: every transaction is checked against registration,
          balance constraints and transfer rules.
        - Always logs: every committed transaction is in transaction_log.
        - Rolled-back transactions leave no trace: atomic() unwinds them and
          removes them from the log.

    Thread Safety:
        Mutation is serialized by an internal RLock. Rollback only unwinds the
        calling context's own journal, so concurrent work on other assets
        survives a failed loan.

    Example:
        ledger = Ledger("main")
        ledger.register_unit(token("USDC", "USD Coin", 6))
        ledger.register_wallet("alice")

        with ledger.atomic():
            ledger.apply(build_transaction(ledger, [
                Move(Decimal("100"), "USDC", SYSTEM_WALLET, "alice", "mint")
            ]))
    """

    POSITION_EPSILON = QUANTITY_EPSILON

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = False,
        test_mode: bool = False
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting time for the ledger (default: 1970-01-01)
            verbose: Print every applied transaction (default: False)
            test_mode: Allow set_balance() calls (default: False)
        """
        self.name = name
        self.balances: Dict[str, Dict[str, Decimal]] = {}
        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self.verbose = verbose
        self._test_mode = test_mode
        self._next_sequence: int = 0
        # Inverted index unit -> {wallet -> quantity}
        self._positions_by_unit: Dict[str, Dict[str, Decimal]] = defaultdict(dict)
        self._mutex = threading.RLock()

        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(lambda: Decimal("0"))

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    @property
    def mutex(self) -> threading.RLock:
        """Lock serializing mutation; hold it across a read-modify-write."""
        return self._mutex

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """
        Get the balance of a specific unit in a wallet.

        Raises:
            WalletNotRegistered: If wallet is not registered
            UnitNotRegistered: If unit is not registered
        """
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return self.balances[wallet_id].get(unit_symbol, Decimal("0"))

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """
        Get a deep copy of a unit's internal state.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return copy.deepcopy(self.units[unit_symbol].state)

    def get_positions(self, unit_symbol: str) -> Positions:
        """Get all non-zero positions for a unit across all wallets."""
        return dict(self._positions_by_unit.get(unit_symbol, {}))

    def list_wallets(self) -> Set[str]:
        """List all registered wallet IDs."""
        return self.registered_wallets.copy()

    def list_units(self) -> List[str]:
        """List all registered unit symbols."""
        return sorted(self.units.keys())

    def get_unit(self, symbol: str) -> Unit:
        """Return the Unit object for a given symbol."""
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def has_unit(self, symbol: str) -> bool:
        return symbol in self.units

    def total_supply(self, unit_symbol: str, include_system: bool = True) -> Decimal:
        """
        Calculate total supply of a unit across all wallets.

        With include_system=True the result is the conserved double-entry
        total (always zero for units issued from SYSTEM_WALLET). With
        include_system=False it is the circulating supply.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        wallets = sorted(self.registered_wallets)
        if not include_system:
            wallets = [w for w in wallets if w != SYSTEM_WALLET]
        return sum((self.balances[w].get(unit_symbol, Decimal("0")) for w in wallets), Decimal("0"))

    def verify_double_entry(
        self,
        expected_supplies: Optional[Dict[str, Decimal]] = None,
        tolerance: Decimal = Decimal("1e-18")
    ) -> Dict[str, Any]:
        """
        Verify that conservation laws hold for all units.

        Every unit is issued out of SYSTEM_WALLET, so the sum of all balances
        (system included) must stay at the expected total, zero by default.

        Returns:
            Dict with keys 'valid', 'supplies' and 'discrepancies'.
        """
        expected_supplies = expected_supplies or {}
        supplies = {}
        discrepancies = []

        for unit_symbol in self.units:
            current_supply = self.total_supply(unit_symbol)
            supplies[unit_symbol] = current_supply
            expected = expected_supplies.get(unit_symbol, Decimal("0"))
            difference = abs(current_supply - expected)
            if difference > tolerance:
                discrepancies.append({
                    'unit': unit_symbol,
                    'expected': expected,
                    'actual': current_supply,
                    'difference': difference,
                })

        return {
            'valid': len(discrepancies) == 0,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    def is_registered(self, wallet_id: str) -> bool:
        """Check if a wallet is registered."""
        return wallet_id in self.registered_wallets

    def snapshot(self) -> Dict[str, Any]:
        """
        Return a comparable copy of all balances and unit states.

        Zero balances and empty wallets are dropped so that a wallet which
        received and returned funds compares equal to one that never moved.
        """
        with self._mutex:
            balances = {}
            for wallet, bals in self.balances.items():
                held = {u: q for u, q in bals.items() if abs(q) > self.POSITION_EPSILON}
                if held:
                    balances[wallet] = held
            states = {symbol: unit.state for symbol, unit in self.units.items()}
        return {'balances': balances, 'states': copy.deepcopy(states)}

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the ledger's logical clock. Time only moves forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def register_wallet(self, wallet_id: str) -> str:
        """
        Register a new wallet in the ledger.

        Raises:
            ValueError: If wallet is already registered or the id is empty
        """
        if not wallet_id or not wallet_id.strip():
            raise ValueError("wallet_id cannot be empty")
        with self._mutex:
            if wallet_id in self.registered_wallets:
                raise ValueError(f"Wallet {wallet_id} already registered")
            self.registered_wallets.add(wallet_id)
            self.balances[wallet_id] = defaultdict(lambda: Decimal("0"))
        return wallet_id

    def ensure_wallet(self, wallet_id: str) -> str:
        """Register a wallet if needed; token addresses need no prior setup."""
        with self._mutex:
            if wallet_id not in self.registered_wallets:
                self.register_wallet(wallet_id)
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        """
        Register a new unit.

        Raises:
            ValueError: If unit symbol is already registered
        """
        with self._mutex:
            if unit.symbol in self.units:
                raise ValueError(f"Unit {unit.symbol} already registered")
            self.units[unit.symbol] = unit
        if self.verbose:
            rule_str = f", rule={unit.transfer_rule.__name__}" if unit.transfer_rule else ""
            print(f"📝 Registered: {unit.symbol} ({unit.name}) [{unit.unit_type}]{rule_str}")

    def set_balance(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """
        Set a wallet's balance directly. Test mode only.

        WARNING: bypasses double-entry accounting and the journal.

        Raises:
            LedgerError: If called when test_mode is False
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() is disabled in production mode. "
                "Use build_transaction() and apply() to modify balances. "
                "Set test_mode=True when creating Ledger for testing."
            )
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        if not isinstance(quantity, Decimal):
            quantity = Decimal(str(quantity))
        with self._mutex:
            self.balances[wallet_id][unit_symbol] = quantity
            self._update_position_index(wallet_id, unit_symbol, quantity)

    def change_unit_state(
        self,
        unit_symbol: str,
        state_updates: UnitState,
        origin: Optional[TransactionOrigin] = None,
    ) -> Transaction:
        """
        Merge state_updates into a unit's state through a logged transaction.

        Going through apply() puts the change in the journal, so it is undone
        together with everything else when an enclosing atomic() scope fails.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        with self._mutex:
            old_state = self.get_unit_state(unit_symbol)
            new_state = {**old_state, **state_updates}
            pending = build_transaction(
                self, [],
                state_changes=[UnitStateChange(unit_symbol, old_state, new_state)],
                origin=origin or TransactionOrigin(OriginType.SYSTEM, "ledger", unit_symbol, "STATE"),
            )
            return self.apply(pending)

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """Format: exec:{ledger_name}:{sequence:012d}:{timestamp_micros}"""
        micros = int(self._current_time.timestamp() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        Returns:
            ExecuteResult.APPLIED if successful (or empty)
            ExecuteResult.REJECTED if validation failed
        """
        try:
            self.apply(pending)
        except LedgerError as e:
            if self.verbose:
                print(f"✗ REJECTED: {e}")
            return ExecuteResult.REJECTED
        return ExecuteResult.APPLIED

    def apply(self, pending: PendingTransaction) -> Optional[Transaction]:
        """
        Validate and apply a PendingTransaction, raising on rejection.

        All moves succeed together or all fail together. The executed
        Transaction is appended to the log and to every journal open in the
        current context.

        Returns:
            The executed Transaction, or None for an empty pending transaction

        Raises:
            UnitNotRegistered, WalletNotRegistered, TransferRuleViolation,
            InsufficientFunds, BalanceConstraintViolation
        """
        if pending.is_empty():
            return None

        with self._mutex:
            newly_registered_units: List[str] = []
            for unit in pending.units_to_create:
                if unit.symbol not in self.units:
                    self.units[unit.symbol] = unit
                    newly_registered_units.append(unit.symbol)

            error = self._validate_pending(pending)
            if error is not None:
                for sym in newly_registered_units:
                    del self.units[sym]
                raise error

            sequence = self._next_sequence
            self._next_sequence += 1
            tx = Transaction(
                moves=pending.moves,
                state_changes=pending.state_changes,
                origin=pending.origin,
                timestamp=pending.timestamp,
                intent_id=pending.intent_id,
                exec_id=self._generate_exec_id(sequence),
                ledger_name=self.name,
                execution_time=self._current_time,
                sequence_number=sequence,
                units_to_create=pending.units_to_create,
            )

            self._execute_moves(tx.moves)
            for sc in tx.state_changes:
                self._apply_state_fields(sc.unit, sc.old_state, sc.new_state)

            self.transaction_log.append(tx)
            for journal in _ACTIVE_JOURNALS.get():
                if journal.ledger is self:
                    journal.entries.append(tx)

        if self.verbose:
            self._print_tx_result(tx, "APPLIED", "✓")
        return tx

    def _print_tx_result(self, tx: Transaction, result: str, icon: str) -> None:
        """Print Transaction.__repr__ with a result line in place of the footer."""
        lines = repr(tx).split('\n')
        w = 100
        bar = "─" * w

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))
        lines[-1] = f"├{bar}┤"
        lines.append(f"│{pad(' ' + icon + ' ' + result)}│")
        lines.append(f"└{bar}┘")
        print("\n".join(lines))

    def _validate_pending(self, pending: PendingTransaction) -> Optional[LedgerError]:
        """
        Validate a pending transaction against all constraints.

        Checks performed:
        1. Unit and wallet registration
        2. Transfer rule enforcement
        3. Balance constraints (min/max) on the net effect of all moves;
           SYSTEM_WALLET is exempt

        Returns:
            None if valid, otherwise the LedgerError describing the failure
        """
        for move in pending.moves:
            if move.unit_symbol not in self.units:
                return UnitNotRegistered(f"Unit {move.unit_symbol} not registered")
            if not self.is_registered(move.source):
                return WalletNotRegistered(f"Wallet {move.source} not registered")
            if not self.is_registered(move.dest):
                return WalletNotRegistered(f"Wallet {move.dest} not registered")

            unit = self.units[move.unit_symbol]
            if unit.transfer_rule:
                try:
                    unit.transfer_rule(self, move)
                except TransferRuleViolation as e:
                    return e

        for sc in pending.state_changes:
            if sc.unit not in self.units:
                return UnitNotRegistered(f"Unit {sc.unit} not registered")

        net: Dict[Tuple[str, str], Decimal] = {}
        for move in pending.moves:
            key_src = (move.source, move.unit_symbol)
            key_dst = (move.dest, move.unit_symbol)
            net[key_src] = net.get(key_src, Decimal("0")) - move.quantity
            net[key_dst] = net.get(key_dst, Decimal("0")) + move.quantity

        for (wallet, unit_sym), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue
            unit = self.units[unit_sym]
            proposed = unit.round(self.balances[wallet][unit_sym] + delta)
            if proposed < unit.min_balance:
                return InsufficientFunds(
                    f"{wallet} {unit_sym}: balance {self.balances[wallet][unit_sym]} "
                    f"cannot cover {-delta}"
                )
            if proposed > unit.max_balance:
                return BalanceConstraintViolation(
                    f"{wallet} {unit_sym}: {proposed} > max {unit.max_balance}"
                )

        return None

    def _update_position_index(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """Keep the unit -> {wallet -> quantity} index in sync; dust is dropped."""
        if abs(quantity) > self.POSITION_EPSILON:
            self._positions_by_unit[unit_symbol][wallet_id] = quantity
        else:
            self._positions_by_unit[unit_symbol].pop(wallet_id, None)

    def _shift_balance(self, wallet_id: str, unit: Unit, delta: Decimal) -> None:
        new_balance = unit.round(self.balances[wallet_id][unit.symbol] + delta)
        self.balances[wallet_id][unit.symbol] = new_balance
        self._update_position_index(wallet_id, unit.symbol, new_balance)

    def _execute_moves(self, moves) -> None:
        """Apply moves to wallet balances with unit rounding."""
        for move in moves:
            unit = self.units[move.unit_symbol]
            self._shift_balance(move.source, unit, -move.quantity)
            self._shift_balance(move.dest, unit, move.quantity)

    def _apply_state_fields(self, unit_symbol: str, from_state: Any, to_state: Any) -> None:
        """
        Apply only the fields that differ between from_state and to_state.

        Fields untouched by the change keep their current value, so an
        unrelated update made concurrently to the same unit survives both
        the forward application and an unwind.
        """
        change = UnitStateChange(unit_symbol, from_state, to_state)
        target = to_state if isinstance(to_state, dict) else {}
        current = self.units[unit_symbol].state
        for key, (_, new_val) in change.changed_fields().items():
            if key in target:
                current[key] = copy.deepcopy(new_val)
            else:
                current.pop(key, None)
        self.units[unit_symbol] = replace(
            self.units[unit_symbol], _frozen_state=_freeze_state(current)
        )

    # ========================================================================
    # ATOMIC SCOPES (journal and unwind)
    # ========================================================================

    @contextmanager
    def atomic(self) -> Iterator[Journal]:
        """
        All-or-nothing scope over every transaction executed inside it.

        On an exception the journaled transactions are unwound in reverse
        order, removed from the transaction log, and the exception is
        re-raised. Scopes nest: an inner failure unwinds only the inner
        scope, an inner success folds into the enclosing one.

        Example:
            with ledger.atomic():
                ledger.apply(issue_principal)
                receiver_callback()        # may raise
                ledger.apply(realize_fee)  # never half-applied
        """
        journal = Journal(self)
        token = _ACTIVE_JOURNALS.set(_ACTIVE_JOURNALS.get() + (journal,))
        try:
            yield journal
        except BaseException:
            _ACTIVE_JOURNALS.reset(token)
            self.rollback(journal)
            raise
        _ACTIVE_JOURNALS.reset(token)

    def in_atomic_scope(self) -> bool:
        """True if the current context has an open atomic() scope on this ledger."""
        return any(j.ledger is self for j in _ACTIVE_JOURNALS.get())

    def rollback(self, journal: Journal) -> None:
        """
        Unwind every transaction in a journal, newest first.

        Moves are reversed without validation (they were valid when applied),
        state changes restore their old fields, and units created inside the
        scope are removed.
        """
        with self._mutex:
            undone = {id(tx) for tx in journal.entries}
            for tx in reversed(journal.entries):
                self._unwind(tx)
            self.transaction_log = [tx for tx in self.transaction_log if id(tx) not in undone]
            for outer in _ACTIVE_JOURNALS.get():
                if outer.ledger is self:
                    outer.entries = [tx for tx in outer.entries if id(tx) not in undone]
            journal.entries = []

    def _unwind(self, tx: Transaction) -> None:
        for move in reversed(tx.moves):
            unit = self.units.get(move.unit_symbol)
            if unit is None:
                raise LedgerError(f"Cannot unwind: unit {move.unit_symbol} not found")
            self._shift_balance(move.source, unit, move.quantity)
            self._shift_balance(move.dest, unit, -move.quantity)

        for sc in reversed(tx.state_changes):
            if sc.unit in self.units:
                self._apply_state_fields(sc.unit, sc.new_state, sc.old_state)

        for unit in tx.units_to_create:
            self.units.pop(unit.symbol, None)
            for wallet in self.registered_wallets:
                self.balances[wallet].pop(unit.symbol, None)
            self._positions_by_unit.pop(unit.symbol, None)
