"""
Optimistic capacity guard - no serialization.
Accepts a soft cap under concurrent admissions.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from regqueue.services.interfaces.capacity_guard import CapacityGuard


class OptimisticGuard(CapacityGuard):
    """
    No locking - count and admit as independent statements.

    Two requests racing for the last slot may both be admitted, pushing a
    lane one over its cap until those sessions finish or expire.

    Use when:
    - Caps are a traffic-shaping target, not a hard limit
    - Lowest admission latency matters most
    """

    name = "optimistic"

    async def acquire(self, db: AsyncSession, resource_id: str, lane: str) -> None:
        """Nothing to acquire."""
        pass
