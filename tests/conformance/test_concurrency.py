"""
Concurrency Conformance Tests

INVARIANT: Operations on one asset are serialized; operations on
different assets are independent.

    - a second thread's loan, deposit or redemption on an asset waits
      until the loan in progress on that asset has finished
    - enabling or disabling an asset waits for its operation in progress
    - a loan in progress on one asset never blocks another asset
    - unwinding a failed loan touches only its own transactions, never
      what another thread committed in the meantime
"""

import threading
import pytest
from decimal import Decimal

from flashpool import SettlementFailed, Token

from tests.receivers import (
    RepayingReceiver, fund, provide_liquidity,
)


WAIT = 5.0


class GatedReceiver(RepayingReceiver):
    """
    Signals when its callback starts and holds the loan open until released.

    With repay=False it returns without paying, so settlement fails.
    """

    def __init__(self, engine, address, repay=True):
        super().__init__(engine, address)
        self.repay = repay
        self.entered = threading.Event()
        self.release = threading.Event()

    def execute_operation(self, asset, amount, fee, initiator, data):
        self.entered.set()
        assert self.release.wait(WAIT)
        if not self.repay:
            return True
        return super().execute_operation(asset, amount, fee, initiator, data)


class Worker(threading.Thread):
    """Runs target, keeping its result or exception for the test thread."""

    def __init__(self, target):
        super().__init__(daemon=True)
        self._target_fn = target
        self.result = None
        self.error = None

    def run(self):
        try:
            self.result = self._target_fn()
        except Exception as e:
            self.error = e


@pytest.fixture
def two_asset_pool(make_pool):
    engine = make_pool(assets=("USDC", "WETH"))
    provide_liquidity(engine, "alice", "USDC", Decimal("10000"))
    provide_liquidity(engine, "alice", "WETH", Decimal("100"))
    return engine


class TestSameAssetSerialization:
    """Contending operations on one asset."""

    def test_second_loan_waits_for_first(self, two_asset_pool):
        engine = two_asset_pool
        fund(engine, "first", "USDC", "3")
        fund(engine, "second", "USDC", "3")
        first = GatedReceiver(engine, "first")
        second = RepayingReceiver(engine, "second")

        a = Worker(lambda: engine.flashloan(first, "USDC", Decimal("1000")))
        a.start()
        assert first.entered.wait(WAIT)

        second_started = threading.Event()

        def run_second():
            second_started.set()
            return engine.flashloan(second, "USDC", Decimal("1000"))
        b = Worker(run_second)
        b.start()
        assert second_started.wait(WAIT)
        b.join(0.2)
        assert b.is_alive()
        assert second.calls == []

        first.release.set()
        a.join(WAIT)
        b.join(WAIT)
        assert a.error is None and b.error is None
        assert len(second.calls) == 1
        # the second loan quoted and settled against the first loan's result
        assert b.result.exchange_rate_before == a.result.exchange_rate_after

    def test_deposit_waits_for_loan(self, two_asset_pool):
        engine = two_asset_pool
        fund(engine, "borrower", "USDC", "3")
        gated = GatedReceiver(engine, "borrower")
        usdc = Token(engine.ledger, "USDC")
        pool_wallet = engine.registry.ledger_for("USDC").pool_wallet
        fund(engine, "bob", "USDC", "1003")
        usdc.approve("bob", pool_wallet, Decimal("1003"))

        loan = Worker(lambda: engine.flashloan(gated, "USDC", Decimal("1000")))
        loan.start()
        assert gated.entered.wait(WAIT)

        deposit = Worker(lambda: engine.deposit("bob", "USDC", Decimal("1003")))
        deposit.start()
        deposit.join(0.2)
        assert deposit.is_alive()

        gated.release.set()
        loan.join(WAIT)
        deposit.join(WAIT)
        assert loan.error is None and deposit.error is None
        # minted at the post-fee rate 1.0003
        assert deposit.result == Decimal("1002.699190")

    def test_disable_waits_for_loan(self, two_asset_pool, admin):
        engine = two_asset_pool
        fund(engine, "borrower", "USDC", "3")
        gated = GatedReceiver(engine, "borrower")

        loan = Worker(lambda: engine.flashloan(gated, "USDC", Decimal("1000")))
        loan.start()
        assert gated.entered.wait(WAIT)

        disable = Worker(lambda: engine.registry.set_asset(admin, "USDC", False))
        disable.start()
        disable.join(0.2)
        assert disable.is_alive()
        assert engine.registry.is_enabled("USDC")

        gated.release.set()
        loan.join(WAIT)
        disable.join(WAIT)
        assert loan.error is None and disable.error is None
        assert loan.result.fee == Decimal("3")
        assert not engine.registry.is_enabled("USDC")


class TestCrossAssetIndependence:
    """A loan on one asset does not hold up another."""

    def test_other_asset_proceeds_while_loan_open(self, two_asset_pool):
        engine = two_asset_pool
        fund(engine, "slow", "USDC", "3")
        fund(engine, "fast", "WETH", "0.03")
        gated = GatedReceiver(engine, "slow")

        slow = Worker(lambda: engine.flashloan(gated, "USDC", Decimal("1000")))
        slow.start()
        assert gated.entered.wait(WAIT)

        fast = Worker(lambda: engine.flashloan(RepayingReceiver(engine, "fast"), "WETH", Decimal("10")))
        fast.start()
        fast.join(WAIT)
        assert not fast.is_alive()
        assert fast.error is None
        assert fast.result.fee == Decimal("0.03")
        assert slow.is_alive()

        gated.release.set()
        slow.join(WAIT)
        assert slow.error is None


class TestRollbackIsolation:
    """Unwinding one thread's loan leaves other threads' work in place."""

    def test_failed_loan_keeps_concurrent_deposit(self, two_asset_pool):
        engine = two_asset_pool
        gated = GatedReceiver(engine, "borrower", repay=False)
        weth = engine.registry.ledger_for("WETH")
        usdc_before = engine.pool_state("USDC")

        loan = Worker(lambda: engine.flashloan(gated, "USDC", Decimal("1000")))
        loan.start()
        assert gated.entered.wait(WAIT)

        deposit = Worker(lambda: provide_liquidity(engine, "bob", "WETH", Decimal("5")))
        deposit.start()
        deposit.join(WAIT)
        assert deposit.error is None

        gated.release.set()
        loan.join(WAIT)
        assert isinstance(loan.error, SettlementFailed)

        assert engine.pool_state("USDC") == usdc_before
        assert weth.shares_of("bob") == Decimal("5")
        assert weth.held_balance == Decimal("105")
        assert engine.ledger.verify_double_entry()['valid']

    def test_guard_not_visible_from_other_threads(self, two_asset_pool):
        """A thread holding no guard is never told it re-entered."""
        engine = two_asset_pool
        gated = GatedReceiver(engine, "borrower", repay=False)
        loan = Worker(lambda: engine.flashloan(gated, "USDC", Decimal("1000")))
        loan.start()
        assert gated.entered.wait(WAIT)

        assert not engine.registry.locks.is_held("USDC")
        gated.release.set()
        loan.join(WAIT)
        assert isinstance(loan.error, SettlementFailed)
