"""
conftest.py - Shared pytest fixtures for flashpool tests

Provides:
- A test-mode ledger with USDC (6 decimals) and WETH (18 decimals)
- Pool factories wiring registry, fee calculator and engine
- A pool with 10,000 USDC of liquidity from alice
"""

import pytest
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional

from flashpool import (
    Ledger, LoanEngine, ProtocolConfig, StaticPriceOracle, AdminCapability,
    token, build_pool,
)

from tests.receivers import FakeClock, provide_liquidity


START = datetime(2025, 1, 1)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def make_ledger() -> Ledger:
    ledger = Ledger("test", initial_time=START, test_mode=True)
    ledger.register_unit(token("USDC", "USD Coin", 6))
    ledger.register_unit(token("WETH", "Wrapped Ether", 18))
    ledger.register_unit(token("DAI", "Dai Stablecoin", 18))
    return ledger


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def ledger():
    return make_ledger()


@pytest.fixture
def admin():
    return AdminCapability("test-admin")


@pytest.fixture
def oracle():
    return StaticPriceOracle({
        "USDC": Decimal("1"),
        "WETH": Decimal("1"),
        "DAI": Decimal("1"),
    })


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_pool(ledger, admin, oracle, clock) -> Callable[..., LoanEngine]:
    """
    Factory for engines over the shared ledger.

    Example:
        engine = make_pool(ProtocolConfig(allow_reentry=True), assets=("USDC",))
    """
    def _make(
        config: Optional[ProtocolConfig] = None,
        assets: Iterable[str] = ("USDC",),
        price_oracle=None,
    ) -> LoanEngine:
        engine = build_pool(ledger, price_oracle or oracle, admin, config, clock=clock)
        for asset in assets:
            engine.registry.set_asset(admin, asset, True)
        return engine
    return _make


@pytest.fixture
def pool(make_pool) -> LoanEngine:
    return make_pool()


@pytest.fixture
def funded_pool(pool) -> LoanEngine:
    """Default pool holding 10,000 USDC deposited by alice."""
    provide_liquidity(pool, "alice", "USDC", Decimal("10000"))
    return pool
