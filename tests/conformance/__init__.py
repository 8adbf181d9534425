"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the flash pool.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. atomicity.py - A failed loan leaves no trace
2. conservation.py - Double-entry totals and pool solvency
3. exchange_rate.py - The share exchange rate never decreases
4. share_roundtrip.py - Deposit then redeem never pays out more
5. concurrency.py - Per-asset serialization across threads

These tests use hypothesis for property-based testing.
"""
