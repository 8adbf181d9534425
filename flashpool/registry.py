"""
registry.py - Asset registry: which assets the pool serves

The registry is the entry gate of every pool operation. An asset becomes
usable only after an administrator enables it with the AdminCapability the
registry was created with; from then on it is never deleted, only disabled.

The enabled flag lives in the share unit's state, so flipping it is a ledger
transaction like any other and shows up in the audit trail.
"""

from __future__ import annotations
from typing import Dict, List, Optional
import logging
import threading

from .config import ProtocolConfig
from .core import (
    OriginType, TransactionOrigin, UNIT_TYPE_TOKEN,
    AssetDisabled, Unauthorized, UnknownAsset,
    build_transaction, share_symbol, share_unit,
)
from .ledger import Ledger
from .locks import AssetLocks
from .shares import PoolState, ShareLedger

logger = logging.getLogger(__name__)


class AdminCapability:
    """
    Credential for registry administration.

    Authorization is by identity: only the very object handed to the
    registry at construction is accepted.
    """

    __slots__ = ("label",)

    def __init__(self, label: str = "admin"):
        self.label = label

    def __repr__(self) -> str:
        return f"AdminCapability({self.label})"


class SettlementCapability:
    """
    Credential for realizing loan fees into the exchange rate.

    Each registry issues exactly one, to the LoanEngine built on it.
    """

    __slots__ = ("label",)

    def __init__(self, label: str):
        self.label = label

    def __repr__(self) -> str:
        return f"SettlementCapability({self.label})"


class AssetRegistry:
    """
    Maps assets to their ShareLedger and gates access by the enabled flag.

    Example:
        admin = AdminCapability()
        registry = AssetRegistry(ledger, admin)
        registry.set_asset(admin, "USDC", True)
        registry.require_enabled("USDC").deposit("alice", Decimal("100"))
    """

    def __init__(
        self,
        ledger: Ledger,
        admin: AdminCapability,
        config: Optional[ProtocolConfig] = None,
    ):
        if not isinstance(admin, AdminCapability):
            raise TypeError(f"admin must be an AdminCapability, got {type(admin).__name__}")
        self.ledger = ledger
        self.config = config or ProtocolConfig()
        self.locks = AssetLocks(allow_reentry=self.config.allow_reentry)
        self._admin = admin
        self._settlement: Optional[SettlementCapability] = None
        self._share_ledgers: Dict[str, ShareLedger] = {}
        self._mutex = threading.Lock()

    # ========================================================================
    # ADMINISTRATION
    # ========================================================================

    def set_asset(self, admin: AdminCapability, asset: str, enabled: bool) -> ShareLedger:
        """
        Enable or disable an asset.

        The first enable creates the asset's share unit (zero shares, rate
        1.0) and pool wallet. Later calls only flip the flag; the share
        ledger and its balances are kept.

        Runs under the asset's guard: it waits for any deposit, redemption
        or loan in progress on asset.

        Args:
            admin: The registry's AdminCapability
            asset: Symbol of a token unit registered in the ledger
            enabled: New value of the flag

        Returns:
            The asset's ShareLedger

        Raises:
            Unauthorized: If admin is not the registry's capability
            UnknownAsset: If asset is not a registered token, or is being
                disabled before it was ever enabled
            Reentrant: If called from inside an operation on asset
        """
        if admin is not self._admin:
            raise Unauthorized(f"{admin!r} may not administer this registry")
        if not self.ledger.has_unit(asset) or self.ledger.get_unit(asset).unit_type != UNIT_TYPE_TOKEN:
            raise UnknownAsset(f"{asset} is not a registered token")

        origin = TransactionOrigin(
            OriginType.ADMIN, self._admin.label, asset,
            "ENABLE_ASSET" if enabled else "DISABLE_ASSET",
        )
        with self.locks.guard(asset, "set_asset"), self._mutex:
            symbol = share_symbol(asset)
            if not self.ledger.has_unit(symbol):
                if not enabled:
                    raise UnknownAsset(f"{asset} was never enabled")
                pool_wallet = self.ledger.ensure_wallet(self.config.pool_wallet(asset))
                unit = share_unit(self.ledger.get_unit(asset), pool_wallet)
                self.ledger.apply(build_transaction(
                    self.ledger, [], origin=origin, units_to_create=(unit,),
                ))
                logger.info("Asset %s enabled (share unit %s, pool wallet %s)", asset, symbol, pool_wallet)
            elif self.ledger.get_unit_state(symbol).get('enabled') != enabled:
                self.ledger.change_unit_state(symbol, {'enabled': enabled}, origin=origin)
                logger.info("Asset %s %s", asset, "enabled" if enabled else "disabled")
            return self._share_ledger(asset)

    def claim_settlement(self, label: str = "engine") -> SettlementCapability:
        """
        Issue the registry's SettlementCapability. Only the first call succeeds.

        Raises:
            Unauthorized: If the capability was already claimed
        """
        with self._mutex:
            if self._settlement is not None:
                raise Unauthorized(f"settlement for this registry is held by {self._settlement!r}")
            self._settlement = SettlementCapability(label)
            return self._settlement

    def authorize_settlement(self, settlement: SettlementCapability) -> None:
        """
        Raises:
            Unauthorized: Unless settlement is the capability this registry issued
        """
        if self._settlement is None or settlement is not self._settlement:
            raise Unauthorized(f"{settlement!r} may not realize fees in this registry")

    # ========================================================================
    # GATING
    # ========================================================================

    def is_enabled(self, asset: str) -> bool:
        """Whether asset is known and enabled; False for unknown assets."""
        symbol = share_symbol(asset)
        if not self.ledger.has_unit(symbol):
            return False
        return bool(self.ledger.get_unit_state(symbol).get('enabled'))

    def ledger_for(self, asset: str) -> ShareLedger:
        """
        The asset's ShareLedger, enabled or not.

        Raises:
            UnknownAsset: If the asset was never enabled
        """
        if not self.ledger.has_unit(share_symbol(asset)):
            raise UnknownAsset(f"{asset} is not served by this pool")
        with self._mutex:
            return self._share_ledger(asset)

    def require_enabled(self, asset: str) -> ShareLedger:
        """
        The asset's ShareLedger, provided the asset is enabled.

        Raises:
            UnknownAsset: If the asset was never enabled
            AssetDisabled: If the asset is disabled
        """
        share_ledger = self.ledger_for(asset)
        if not self.is_enabled(asset):
            raise AssetDisabled(f"{asset} is disabled")
        return share_ledger

    # ========================================================================
    # OBSERVABILITY
    # ========================================================================

    def pool_state(self, asset: str) -> PoolState:
        return self.ledger_for(asset).state()

    def assets(self) -> List[str]:
        """Assets that were ever enabled, sorted."""
        return sorted(a for a in self._share_ledgers if self.ledger.has_unit(share_symbol(a)))

    def _share_ledger(self, asset: str) -> ShareLedger:
        share_ledger = self._share_ledgers.get(asset)
        if share_ledger is None:
            share_ledger = self._share_ledgers[asset] = ShareLedger(self, asset)
        return share_ledger

    def __repr__(self) -> str:
        return f"AssetRegistry({self.ledger.name}, assets={self.assets()})"
