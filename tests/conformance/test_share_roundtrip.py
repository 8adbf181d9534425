"""
Share Round-Trip Conformance Tests

INVARIANT: Depositing an amount and redeeming the shares it minted never
returns more than was deposited, and loses less than one share quantum's
worth plus one token quantum to rounding:

    0 <= amount - redeem(deposit(amount)) < quantum * (rate + 1)

A round trip also never moves value between other holders.
"""

from hypothesis import given, settings, note
from hypothesis import strategies as st
from decimal import Decimal

from tests.receivers import RepayingReceiver, fund, provide_liquidity, standalone_pool


QUANTUM = Decimal("0.000001")

amounts = st.decimals(
    min_value=Decimal("0.000001"),
    max_value=Decimal("1000000"),
    places=6,
    allow_nan=False,
    allow_infinity=False,
)

loan_sizes = st.decimals(
    min_value=Decimal("0"),
    max_value=Decimal("10000"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)


def pool_at_raised_rate(loan_amount):
    """Pool with 10,000 USDC whose rate was raised by one loan of loan_amount (0: none)."""
    engine = standalone_pool()
    if loan_amount > 0:
        fund(engine, "borrower", "USDC", engine.quote("USDC", loan_amount).fee)
        engine.flashloan(RepayingReceiver(engine, "borrower"), "USDC", loan_amount)
    return engine


class TestShareRoundTripProperties:
    """Property-based deposit/redeem round-trip tests."""

    @given(amounts, loan_sizes)
    @settings(max_examples=100, deadline=None)
    def test_round_trip_never_profits(self, amount, loan_amount):
        """
        PROPERTY: redeem(deposit(x)) <= x, within rounding of x.
        """
        engine = pool_at_raised_rate(loan_amount)
        share_ledger = engine.registry.ledger_for("USDC")
        rate = share_ledger.exchange_rate
        note(f"rate {rate}")
        if share_ledger.preview_deposit(amount) <= 0:
            return

        shares = provide_liquidity(engine, "bob", "USDC", amount)
        returned = engine.redeem("bob", "USDC", shares)

        assert returned <= amount
        assert amount - returned < QUANTUM * (rate + 1)

    @given(amounts, loan_sizes)
    @settings(max_examples=100, deadline=None)
    def test_round_trip_does_not_dilute_others(self, amount, loan_amount):
        """
        PROPERTY: Another holder's claim is never smaller after a round trip.
        """
        engine = pool_at_raised_rate(loan_amount)
        share_ledger = engine.registry.ledger_for("USDC")
        if share_ledger.preview_deposit(amount) <= 0:
            return
        lp_claim = share_ledger.preview_redeem(share_ledger.shares_of("lp"))

        shares = provide_liquidity(engine, "bob", "USDC", amount)
        assert share_ledger.preview_redeem(share_ledger.shares_of("lp")) >= lp_claim
        engine.redeem("bob", "USDC", shares)

        assert share_ledger.preview_redeem(share_ledger.shares_of("lp")) >= lp_claim
        assert share_ledger.held_balance >= lp_claim

    @given(amounts)
    @settings(max_examples=50, deadline=None)
    def test_shares_equal_amount_at_initial_rate(self, amount):
        """
        PROPERTY: At rate 1.0 a deposit mints exactly its amount in shares.
        """
        engine = standalone_pool(liquidity="0")
        shares = provide_liquidity(engine, "bob", "USDC", amount)
        assert shares == amount
        assert engine.redeem("bob", "USDC", shares) == amount
