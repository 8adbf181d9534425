"""
test_scenarios.py - End-to-end flash pool scenarios

Tests complete pool lifecycles:
- Liquidity in, one loan, liquidity out
- Fee income shared pro rata between providers
- Repeated loans compounding the exchange rate
- Loans on one asset nested inside loans on another
- Disabling and re-enabling an asset
- A pool configured from YAML
"""

import pytest
from decimal import Decimal

from flashpool import (
    AssetDisabled, CallbackRejected, ProtocolConfig, SettlementPolicy, Token, load_config,
)

from tests.receivers import (
    RepayingReceiver, ScriptedReceiver, fund, provide_liquidity,
)


class TestSingleLoanLifecycle:
    """10,000 USDC in the pool, 0.3% fee, price 1:1."""

    def test_borrow_1000_repay_1003(self, funded_pool):
        """Fee is 3, the rate rises to 10003/10000 and alice can take it all out."""
        share_ledger = funded_pool.registry.ledger_for("USDC")
        fund(funded_pool, "borrower", "USDC", "3")
        receiver = RepayingReceiver(funded_pool, "borrower")

        result = funded_pool.flashloan(receiver, "USDC", Decimal("1000"))

        assert result.fee == Decimal("3")
        assert result.exchange_rate_before == Decimal("1")
        assert result.exchange_rate_after == Decimal("10003") / Decimal("10000")
        assert share_ledger.held_balance == Decimal("10003")
        assert share_ledger.total_shares == Decimal("10000")
        assert receiver.calls == [("USDC", Decimal("1000"), Decimal("3"), "borrower", b"")]

        paid = funded_pool.redeem("alice", "USDC", Decimal("10000"))
        assert paid == Decimal("10003")
        assert share_ledger.held_balance == Decimal("0")
        assert Token(funded_pool.ledger, "USDC").balance_of("borrower") == Decimal("0")

    def test_explicit_repayment_lifecycle(self, make_pool):
        engine = make_pool(ProtocolConfig(settlement_policy=SettlementPolicy.EXPLICIT_REPAYMENT))
        provide_liquidity(engine, "alice", "USDC", Decimal("10000"))
        fund(engine, "borrower", "USDC", "3")

        result = engine.flashloan(RepayingReceiver(engine, "borrower", use_repay=True), "USDC", Decimal("1000"))

        assert result.repaid == Decimal("1003")
        assert result.policy is SettlementPolicy.EXPLICIT_REPAYMENT
        assert engine.redeem("alice", "USDC", Decimal("10000")) == Decimal("10003")

    def test_callback_data_and_initiator_pass_through(self, funded_pool):
        fund(funded_pool, "borrower", "USDC", "0.3")
        receiver = RepayingReceiver(funded_pool, "borrower")
        funded_pool.flashloan(receiver, "USDC", Decimal("100"), data=b"\x01route", initiator="keeper")
        assert receiver.calls[0][3:] == ("keeper", b"\x01route")


class TestFeeSharing:
    """Fee income accrues to every share holder in proportion."""

    def test_two_providers_split_fee(self, funded_pool):
        provide_liquidity(funded_pool, "bob", "USDC", Decimal("5000"))
        fund(funded_pool, "borrower", "USDC", "4.5")
        funded_pool.flashloan(RepayingReceiver(funded_pool, "borrower"), "USDC", Decimal("1500"))

        assert funded_pool.redeem("alice", "USDC", Decimal("10000")) == Decimal("10003")
        assert funded_pool.redeem("bob", "USDC", Decimal("5000")) == Decimal("5001.5")

    def test_late_depositor_does_not_share_earlier_fees(self, funded_pool):
        fund(funded_pool, "borrower", "USDC", "3")
        funded_pool.flashloan(RepayingReceiver(funded_pool, "borrower"), "USDC", Decimal("1000"))

        shares = provide_liquidity(funded_pool, "bob", "USDC", Decimal("1000.3"))
        assert shares == Decimal("1000")
        assert funded_pool.redeem("bob", "USDC", shares) == Decimal("1000.3")
        assert funded_pool.redeem("alice", "USDC", Decimal("10000")) == Decimal("10003")

    def test_repeated_loans_compound(self, funded_pool):
        share_ledger = funded_pool.registry.ledger_for("USDC")
        rates = [share_ledger.exchange_rate]
        for _ in range(3):
            fund(funded_pool, "borrower", "USDC", "30")
            result = funded_pool.flashloan(RepayingReceiver(funded_pool, "borrower"), "USDC", Decimal("10000"))
            assert result.fee == Decimal("30")
            rates.append(result.exchange_rate_after)

        assert rates == sorted(rates)
        assert len(set(rates)) == 4
        # each step rounds down at the 18th place
        assert Decimal("1.008999999999999997") <= rates[-1] <= Decimal("1.009")
        assert share_ledger.held_balance == Decimal("10090")


class TestNestedAcrossAssets:
    """A loan on one asset may borrow another asset inside its callback."""

    def test_usdc_loan_wraps_weth_loan(self, make_pool):
        engine = make_pool(assets=("USDC", "WETH"))
        provide_liquidity(engine, "alice", "USDC", Decimal("10000"))
        provide_liquidity(engine, "alice", "WETH", Decimal("100"))
        fund(engine, "outer", "USDC", "3")
        fund(engine, "inner", "WETH", "0.03")
        inner = RepayingReceiver(engine, "inner")
        outer = RepayingReceiver(engine, "outer")
        pay_back = outer.action

        def borrow_weth_then_repay(asset, amount, fee):
            engine.flashloan(inner, "WETH", Decimal("10"))
            pay_back(asset, amount, fee)
        outer.action = borrow_weth_then_repay

        engine.flashloan(outer, "USDC", Decimal("1000"))

        assert engine.pool_state("USDC").held_balance == Decimal("10003")
        assert engine.pool_state("WETH").held_balance == Decimal("100.03")
        assert engine.active_loan("USDC") is None

    def test_inner_failure_unwinds_outer(self, make_pool):
        engine = make_pool(assets=("USDC", "WETH"))
        provide_liquidity(engine, "alice", "USDC", Decimal("10000"))
        provide_liquidity(engine, "alice", "WETH", Decimal("100"))
        fund(engine, "outer", "USDC", "3")
        before = engine.ledger.snapshot()

        def borrow_weth_and_keep(asset, amount, fee):
            engine.flashloan(ScriptedReceiver("inner"), "WETH", Decimal("10"))

        with pytest.raises(CallbackRejected):
            engine.flashloan(ScriptedReceiver("outer", action=borrow_weth_and_keep), "USDC", Decimal("1000"))
        assert engine.ledger.snapshot() == before


class TestAssetAdministration:
    """Enabling and disabling assets over a pool's life."""

    def test_disable_blocks_everything_and_reenable_restores(self, funded_pool, admin):
        share_ledger = funded_pool.registry.ledger_for("USDC")
        fund(funded_pool, "borrower", "USDC", "3")
        funded_pool.flashloan(RepayingReceiver(funded_pool, "borrower"), "USDC", Decimal("1000"))
        rate = share_ledger.exchange_rate

        funded_pool.registry.set_asset(admin, "USDC", False)
        with pytest.raises(AssetDisabled):
            funded_pool.flashloan(RepayingReceiver(funded_pool, "borrower"), "USDC", Decimal("1"))
        with pytest.raises(AssetDisabled):
            funded_pool.redeem("alice", "USDC", Decimal("1"))
        assert funded_pool.pool_state("USDC").enabled is False

        funded_pool.registry.set_asset(admin, "USDC", True)
        assert share_ledger.exchange_rate == rate
        assert funded_pool.redeem("alice", "USDC", Decimal("10000")) == Decimal("10003")


class TestConfiguredPool:
    """A pool built from a YAML config file."""

    def test_yaml_config_drives_fee_and_policy(self, make_pool, tmp_path):
        path = tmp_path / "pool.yaml"
        path.write_text(
            "flashpool:\n"
            "  fee_fraction: \"0.0009\"\n"
            "  settlement_policy: explicit_repayment\n"
        )
        engine = make_pool(load_config(path))
        provide_liquidity(engine, "alice", "USDC", Decimal("10000"))
        fund(engine, "borrower", "USDC", "0.9")

        result = engine.flashloan(RepayingReceiver(engine, "borrower", use_repay=True), "USDC", Decimal("1000"))

        assert result.fee == Decimal("0.9")
        assert result.policy is SettlementPolicy.EXPLICIT_REPAYMENT
