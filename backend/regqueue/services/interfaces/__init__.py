"""
Service interfaces for dependency inversion.
Allows swapping implementations without changing business logic.
"""

from .capacity_guard import CapacityGuard
from .optimistic_guard import OptimisticGuard
from .locking_guard import LockingGuard

__all__ = ['CapacityGuard', 'OptimisticGuard', 'LockingGuard']
