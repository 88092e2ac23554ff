"""
Capacity guard factory.
Configures which occupancy enforcement strategy admission uses.
"""

from typing import Optional

from regqueue.services.interfaces.capacity_guard import CapacityGuard
from regqueue.services.interfaces.optimistic_guard import OptimisticGuard
from regqueue.services.interfaces.locking_guard import LockingGuard
from regqueue.core.config import get_settings

_STRATEGIES = {
    OptimisticGuard.name: OptimisticGuard,
    LockingGuard.name: LockingGuard,
}


def get_capacity_guard_strategy(name: Optional[str] = None) -> CapacityGuard:
    """
    Build the configured guard.

    Selected by the ADMISSION_STRATEGY setting:
    - optimistic (default): soft cap, no locking
    - locking: strict cap, per-resource row lock

    Unknown names fall back to optimistic.
    """
    strategy = (name or get_settings().ADMISSION_STRATEGY).lower()
    return _STRATEGIES.get(strategy, OptimisticGuard)()


# Singleton instance
_guard: Optional[CapacityGuard] = None


def get_capacity_guard() -> CapacityGuard:
    """Get capacity guard singleton."""
    global _guard
    if _guard is None:
        _guard = get_capacity_guard_strategy()
    return _guard


def set_capacity_guard(guard: Optional[CapacityGuard]) -> None:
    """Override the process guard; ``None`` re-reads the configuration."""
    global _guard
    _guard = guard
