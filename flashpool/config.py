"""Protocol configuration: frozen dataclass, YAML loading, validation."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from .core import to_decimal

logger = logging.getLogger(__name__)


class SettlementPolicy(Enum):
    """
    How the LoanEngine decides that a flash loan was repaid.

    BALANCE_DELTA: the pool's held balance is at least pre-loan balance + fee
        after the callback. Any route that raises the balance counts,
        including a deposit by the borrower, which mints it shares for the
        loaned funds. Kept as the default for compatibility; known to be
        exploitable.
    EXPLICIT_REPAYMENT: in addition, amount + fee must have come back through
        LoanEngine.repay().
    """
    BALANCE_DELTA = "balance_delta"
    EXPLICIT_REPAYMENT = "explicit_repayment"


# ---------------------------------------------------------------------------
# Frozen config dataclass
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProtocolConfig:
    fee_fraction: Decimal = Decimal("0.003")
    settlement_policy: SettlementPolicy = SettlementPolicy.BALANCE_DELTA
    allow_reentry: bool = False
    callback_timeout: Optional[float] = 30.0
    min_price: Optional[Decimal] = None
    max_price: Optional[Decimal] = None
    pool_wallet_prefix: str = "pool:"

    def __post_init__(self) -> None:
        if not isinstance(self.fee_fraction, Decimal):
            object.__setattr__(self, "fee_fraction", to_decimal(self.fee_fraction, "fee_fraction"))
        if not Decimal("0") < self.fee_fraction < Decimal("1"):
            raise ValueError(f"fee_fraction must be in (0, 1), got {self.fee_fraction}")
        if not isinstance(self.settlement_policy, SettlementPolicy):
            object.__setattr__(self, "settlement_policy", SettlementPolicy(self.settlement_policy))
        if self.callback_timeout is not None and self.callback_timeout <= 0:
            raise ValueError(f"callback_timeout must be positive, got {self.callback_timeout}")
        for name in ("min_price", "max_price"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, Decimal):
                object.__setattr__(self, name, to_decimal(value, name))
        if self.min_price is not None and self.min_price <= 0:
            raise ValueError(f"min_price must be positive, got {self.min_price}")
        if (
            self.min_price is not None
            and self.max_price is not None
            and self.max_price < self.min_price
        ):
            raise ValueError(
                f"max_price {self.max_price} is below min_price {self.min_price}"
            )
        if not self.pool_wallet_prefix:
            raise ValueError("pool_wallet_prefix cannot be empty")

    def pool_wallet(self, asset: str) -> str:
        return f"{self.pool_wallet_prefix}{asset}"


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def _optional_decimal(raw: Mapping[str, Any], key: str) -> Optional[Decimal]:
    value = raw.get(key)
    if value is None or value == "":
        return None
    return to_decimal(str(value), key)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def config_from_mapping(raw: Mapping[str, Any]) -> ProtocolConfig:
    """Build a ProtocolConfig from plain YAML/JSON values.

    Numbers may be given as strings ("0.003") to avoid float artifacts.
    """
    timeout = raw.get("callback_timeout", 30.0)
    return ProtocolConfig(
        fee_fraction=to_decimal(str(raw.get("fee_fraction", "0.003")), "fee_fraction"),
        settlement_policy=SettlementPolicy(
            str(raw.get("settlement_policy", SettlementPolicy.BALANCE_DELTA.value)).lower()
        ),
        allow_reentry=_as_bool(raw.get("allow_reentry", False)),
        callback_timeout=None if timeout in (None, "") else float(timeout),
        min_price=_optional_decimal(raw, "min_price"),
        max_price=_optional_decimal(raw, "max_price"),
        pool_wallet_prefix=str(raw.get("pool_wallet_prefix", "pool:")),
    )


def load_config(config_path: str | Path) -> ProtocolConfig:
    """Load protocol configuration from a YAML file.

    The settings may sit at the top level or under a ``flashpool:`` key.
    ``${VAR}`` references are replaced with environment variables.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")
    raw = _interpolate_env(raw)
    section = raw.get("flashpool", raw)

    cfg = config_from_mapping(section)
    logger.info("Configuration loaded from %s", config_path)
    return cfg
