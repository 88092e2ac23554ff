"""
Capacity guard strategy interface.
Allows swapping between different occupancy enforcement approaches.
"""

from abc import ABC, abstractmethod

from sqlalchemy.ext.asyncio import AsyncSession


class CapacityGuard(ABC):
    """
    Runs before a lane's live occupancy is counted and a slot is handed out.

    Admission is count-then-upsert. Without serialization two concurrent
    checks can both see "one below cap" and both admit.

    Implementations:
    - OptimisticGuard: no serialization, soft cap (may overshoot by racers)
    - LockingGuard: row lock on the resource's settings row, hard cap
    """

    name: str = "abstract"

    @abstractmethod
    async def acquire(self, db: AsyncSession, resource_id: str, lane: str) -> None:
        """
        Prepare the transaction for a count + admit on (resource_id, lane).

        Args:
            db: Session whose transaction will perform the count and write
            resource_id: Queue resource (event) id
            lane: Registration type lane
        """
        pass
