"""
test_registry.py - Tests for AssetRegistry and AdminCapability

Tests:
- Authorization of set_asset and fee settlement
- First enable creates the share unit and pool wallet
- Disable / re-enable keep the share ledger
- Gating errors for unknown and disabled assets
"""

import pytest
from contextlib import contextmanager
from decimal import Decimal

from flashpool import (
    AssetRegistry, AdminCapability, FeeCalculator, LoanEngine, ProtocolConfig,
    OriginType, SettlementCapability, Token,
    AssetDisabled, Unauthorized, UnknownAsset,
)


@pytest.fixture
def registry(ledger, admin):
    return AssetRegistry(ledger, admin)


class TestAuthorization:
    """Only the registry's own capability administers it."""

    def test_foreign_capability_rejected(self, registry):
        with pytest.raises(Unauthorized):
            registry.set_asset(AdminCapability("test-admin"), "USDC", True)
        assert not registry.is_enabled("USDC")

    def test_non_capability_rejected_at_construction(self, ledger):
        with pytest.raises(TypeError):
            AssetRegistry(ledger, "admin")

    def test_settlement_is_issued_once(self, registry):
        settlement = registry.claim_settlement()
        registry.authorize_settlement(settlement)
        with pytest.raises(Unauthorized):
            registry.claim_settlement()
        with pytest.raises(Unauthorized):
            registry.authorize_settlement(SettlementCapability("engine"))

    def test_nothing_authorized_before_claim(self, registry):
        with pytest.raises(Unauthorized):
            registry.authorize_settlement(None)

    def test_second_engine_on_a_registry_rejected(self, pool, ledger, oracle):
        with pytest.raises(Unauthorized):
            LoanEngine(pool.registry, FeeCalculator(ledger, oracle))


class TestSetAsset:
    """Enabling and disabling assets."""

    def test_first_enable_creates_share_ledger(self, registry, admin, ledger):
        share_ledger = registry.set_asset(admin, "USDC", True)
        assert registry.is_enabled("USDC")
        assert ledger.has_unit("fpUSDC")
        assert ledger.is_registered("pool:USDC")
        assert share_ledger.total_shares == Decimal("0")
        assert share_ledger.exchange_rate == Decimal("1")
        assert registry.assets() == ["USDC"]

    def test_enable_is_audited(self, registry, admin, ledger):
        registry.set_asset(admin, "USDC", True)
        tx = ledger.transaction_log[-1]
        assert tx.origin.origin_type == OriginType.ADMIN
        assert tx.origin.event_type == "ENABLE_ASSET"

    def test_unknown_token_rejected(self, registry, admin):
        with pytest.raises(UnknownAsset):
            registry.set_asset(admin, "DOGE", True)

    def test_disable_before_enable_rejected(self, registry, admin):
        with pytest.raises(UnknownAsset):
            registry.set_asset(admin, "USDC", False)

    def test_disable_then_reenable_keeps_shares(self, registry, admin, ledger):
        share_ledger = registry.set_asset(admin, "USDC", True)
        usdc = Token(ledger, "USDC")
        usdc.mint("alice", Decimal("100"))
        usdc.approve("alice", "pool:USDC", Decimal("100"))
        share_ledger.deposit("alice", Decimal("100"))

        registry.set_asset(admin, "USDC", False)
        assert not registry.is_enabled("USDC")
        assert registry.ledger_for("USDC") is share_ledger

        again = registry.set_asset(admin, "USDC", True)
        assert again is share_ledger
        assert again.shares_of("alice") == Decimal("100")

    def test_repeated_enable_is_a_no_op(self, registry, admin, ledger):
        registry.set_asset(admin, "USDC", True)
        log_size = len(ledger.transaction_log)
        registry.set_asset(admin, "USDC", True)
        assert len(ledger.transaction_log) == log_size

    def test_custom_pool_wallet_prefix(self, ledger, admin):
        registry = AssetRegistry(ledger, admin, ProtocolConfig(pool_wallet_prefix="vault/"))
        assert registry.set_asset(admin, "WETH", True).pool_wallet == "vault/WETH"


class TestGating:
    """ledger_for / require_enabled / pool_state."""

    def test_unknown_asset(self, registry):
        assert not registry.is_enabled("USDC")
        with pytest.raises(UnknownAsset):
            registry.ledger_for("USDC")
        with pytest.raises(UnknownAsset):
            registry.require_enabled("USDC")

    def test_disabled_asset(self, registry, admin):
        registry.set_asset(admin, "USDC", True)
        registry.set_asset(admin, "USDC", False)
        with pytest.raises(AssetDisabled):
            registry.require_enabled("USDC")

    def test_pool_state(self, funded_pool):
        state = funded_pool.registry.pool_state("USDC")
        assert state.asset == "USDC"
        assert state.share_symbol == "fpUSDC"
        assert state.enabled
        assert state.total_shares == Decimal("10000")
        assert state.exchange_rate == Decimal("1")
        assert state.held_balance == Decimal("10000")
        assert state.pool_wallet == "pool:USDC"

    def test_disabled_pool_rejects_operations_before_mutation(self, funded_pool, admin, ledger):
        funded_pool.registry.set_asset(admin, "USDC", False)
        before = ledger.snapshot()
        with pytest.raises(AssetDisabled):
            funded_pool.deposit("alice", "USDC", Decimal("1"))
        with pytest.raises(AssetDisabled):
            funded_pool.redeem("alice", "USDC", Decimal("1"))
        assert ledger.snapshot() == before

    @pytest.mark.parametrize("operation", ["deposit", "redeem"])
    def test_disable_landing_before_the_guard_is_seen(self, funded_pool, admin, ledger, monkeypatch, operation):
        registry = funded_pool.registry
        usdc = Token(ledger, "USDC")
        usdc.mint("alice", Decimal("100"))
        usdc.approve("alice", "pool:USDC", Decimal("100"))
        before = ledger.snapshot()["balances"]
        guard = registry.locks.guard
        fired = []

        @contextmanager
        def disable_on_entry(asset, op="operation"):
            if not fired:
                fired.append(op)
                registry.set_asset(admin, asset, False)
            with guard(asset, op):
                yield
        monkeypatch.setattr(registry.locks, "guard", disable_on_entry)

        with pytest.raises(AssetDisabled):
            getattr(funded_pool, operation)("alice", "USDC", Decimal("100"))
        assert fired == [operation]
        assert ledger.snapshot()["balances"] == before

    def test_enable_inside_failed_scope_is_undone(self, registry, admin, ledger):
        with pytest.raises(RuntimeError):
            with ledger.atomic():
                registry.set_asset(admin, "USDC", True)
                raise RuntimeError("boom")
        assert not registry.is_enabled("USDC")
        assert registry.assets() == []
        registry.set_asset(admin, "USDC", True)
        assert registry.is_enabled("USDC")
