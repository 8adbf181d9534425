"""
locks.py - Per-asset mutual exclusion with same-context reentry detection

Every operation that reads the exchange rate or the held balance of an asset
and then mutates them runs under that asset's guard. Operations on other
assets are never blocked.

Two callers contend for a guard in different ways:
    - another thread blocks until the holder releases the asset;
    - the holder's own execution context (a flash loan callback calling back
      into the pool) is detected through a ContextVar and rejected with
      Reentrant, because blocking there would deadlock.
"""

from __future__ import annotations
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Dict, FrozenSet, Iterator, Tuple
import threading

from .core import Reentrant


# (locks id, asset) pairs guarded by the current execution context.
_GUARDED: ContextVar[FrozenSet[Tuple[int, str]]] = ContextVar(
    "flashpool_guarded_assets", default=frozenset()
)


class AssetLocks:
    """
    One lock per asset.

    With allow_reentry=True a same-context nested call on a guarded asset is
    let through without re-acquiring. That reproduces an unguarded pool and
    is what makes the deposit-instead-of-repay exploit reachable.
    """

    def __init__(self, allow_reentry: bool = False):
        self.allow_reentry = allow_reentry
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, asset: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(asset)
            if lock is None:
                lock = self._locks[asset] = threading.Lock()
            return lock

    def is_held(self, asset: str) -> bool:
        """True if the current execution context holds asset's guard."""
        return (id(self), asset) in _GUARDED.get()

    @contextmanager
    def guard(self, asset: str, operation: str = "operation") -> Iterator[None]:
        """
        Hold asset's guard for the duration of the block.

        Raises:
            Reentrant: If the current context already holds the guard and
                reentry is not allowed
        """
        key = (id(self), asset)
        held = _GUARDED.get()
        if key in held:
            if not self.allow_reentry:
                raise Reentrant(f"{operation} on {asset} re-entered an operation in progress")
            yield
            return

        lock = self._lock_for(asset)
        lock.acquire()
        token = _GUARDED.set(held | {key})
        try:
            yield
        finally:
            _GUARDED.reset(token)
            lock.release()

    def __repr__(self) -> str:
        return f"AssetLocks({len(self._locks)} assets, allow_reentry={self.allow_reentry})"
