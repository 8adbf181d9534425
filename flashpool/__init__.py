"""
flashpool - Single-pool flash loan protocol

Liquidity providers deposit an asset and receive shares; borrowers take
uncollateralized loans that must come back with a fee before the call that
issued them returns. Fee income raises the share exchange rate.

Usage:
    from flashpool import (
        Ledger, Token, token, AdminCapability, StaticPriceOracle, build_pool,
    )

    ledger = Ledger("main")
    ledger.register_unit(token("USDC", "USD Coin", 6))
    admin = AdminCapability()
    engine = build_pool(ledger, StaticPriceOracle({"USDC": Decimal("1")}), admin)
    engine.registry.set_asset(admin, "USDC", True)

    usdc = Token(ledger, "USDC")
    usdc.mint("alice", Decimal("10000"))
    usdc.approve("alice", "pool:USDC", Decimal("10000"))
    engine.deposit("alice", "USDC", Decimal("10000"))

    result = engine.flashloan(receiver, "USDC", Decimal("1000"))
"""

# Core types
from .core import (
    LedgerView,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    Unit,
    UnitStateChange,
    ExecuteResult,
    token,
    share_unit,
    share_symbol,
    paused_transfer_rule,
    blocklist_transfer_rule,
    SYSTEM_WALLET,
    UNIT_TYPE_TOKEN,
    UNIT_TYPE_SHARE,
    RATE_DECIMALS,
    INITIAL_EXCHANGE_RATE,
    # Errors
    FlashPoolError,
    LedgerError,
    InsufficientFunds,
    BalanceConstraintViolation,
    TransferRuleViolation,
    UnitNotRegistered,
    WalletNotRegistered,
    InsufficientAllowance,
    UnknownAsset,
    AssetDisabled,
    InsufficientLiquidity,
    InsufficientShares,
    ZeroAmount,
    ExchangeRateRegression,
    EmptyShareSupply,
    SettlementFailed,
    CallbackRejected,
    CallbackTimeout,
    OracleUnavailable,
    Reentrant,
    Unauthorized,
)

from .ledger import Ledger, Journal
from .erc20 import Token
from .config import ProtocolConfig, SettlementPolicy, load_config, config_from_mapping
from .logging_setup import configure_logging
from .locks import AssetLocks
from .shares import ShareLedger, PoolState
from .registry import AssetRegistry, AdminCapability, SettlementCapability
from .oracle import (
    PriceOracle,
    StaticPriceOracle,
    TimeSeriesPriceOracle,
    SpotPriceOracle,
    TWAPPriceOracle,
)
from .amm import ConstantProductPool
from .fees import FeeCalculator, FeeQuote
from .engine import (
    LoanEngine,
    LoanRecord,
    LoanResult,
    LoanState,
    FlashLoanReceiver,
    build_pool,
)

__all__ = [
    # Core
    'LedgerView', 'Move', 'Transaction', 'PendingTransaction', 'TransactionOrigin', 'OriginType',
    'build_transaction', 'Unit', 'UnitStateChange', 'ExecuteResult',
    'token', 'share_unit', 'share_symbol', 'paused_transfer_rule', 'blocklist_transfer_rule',
    'SYSTEM_WALLET', 'UNIT_TYPE_TOKEN', 'UNIT_TYPE_SHARE', 'RATE_DECIMALS', 'INITIAL_EXCHANGE_RATE',
    # Errors
    'FlashPoolError', 'LedgerError', 'InsufficientFunds', 'BalanceConstraintViolation',
    'TransferRuleViolation', 'UnitNotRegistered', 'WalletNotRegistered', 'InsufficientAllowance',
    'UnknownAsset', 'AssetDisabled', 'InsufficientLiquidity', 'InsufficientShares', 'ZeroAmount',
    'ExchangeRateRegression', 'EmptyShareSupply', 'SettlementFailed', 'CallbackRejected',
    'CallbackTimeout', 'OracleUnavailable', 'Reentrant', 'Unauthorized',
    # Ledger
    'Ledger', 'Journal', 'Token',
    # Config
    'ProtocolConfig', 'SettlementPolicy', 'load_config', 'config_from_mapping',
    'configure_logging',
    # Pool
    'AssetLocks', 'ShareLedger', 'PoolState', 'AssetRegistry', 'AdminCapability', 'SettlementCapability',
    # Pricing
    'PriceOracle', 'StaticPriceOracle', 'TimeSeriesPriceOracle', 'SpotPriceOracle',
    'TWAPPriceOracle', 'ConstantProductPool', 'FeeCalculator', 'FeeQuote',
    # Loans
    'LoanEngine', 'LoanRecord', 'LoanResult', 'LoanState', 'FlashLoanReceiver', 'build_pool',
]

__version__ = '1.0.0'
