"""
Queue entry: one row per browser session.

Key design decisions:
- ``session_id`` is unique across the table, so admission can upsert by it
  atomically (INSERT ... ON CONFLICT)
- ``entered_queue_at`` is the fairness key; ``queue_position`` is only a
  cached, recomputed value
- ``status`` alone never means "occupying a slot": an active row also needs
  ``expires_at > now``
- Composite indexes back the two hot queries: live occupancy per lane and
  FIFO ordering of waiters per lane
"""

from sqlalchemy import Boolean, Column, Integer, String, Index, CheckConstraint

from regqueue.db.base import Base, TimestampMixin, UTCDateTime


class EntryStatus:
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"
    ABANDONED = "abandoned"

    ALL = (WAITING, ACTIVE, COMPLETED, EXPIRED, ABANDONED)
    REQUEUEABLE = (EXPIRED, ABANDONED)


class QueueEntry(Base, TimestampMixin):
    __tablename__ = "queue_entries"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(128), unique=True, index=True, nullable=False)
    resource_id = Column(String(64), nullable=False, index=True)
    lane = Column(String(50), nullable=False)
    user_id = Column(String(64), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)

    status = Column(String(20), nullable=False, default=EntryStatus.WAITING)
    entered_queue_at = Column(UTCDateTime(), nullable=False)
    queue_position = Column(Integer, nullable=True)
    admitted_at = Column(UTCDateTime(), nullable=True)
    expires_at = Column(UTCDateTime(), nullable=True)
    extension_used = Column(Boolean, nullable=False, default=False)
    completed_at = Column(UTCDateTime(), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('waiting', 'active', 'completed', 'expired', 'abandoned')",
            name="check_queue_entry_status",
        ),
        # Live occupancy: resource + lane + active + expires_at > now
        Index("ix_queue_entries_occupancy", "resource_id", "lane", "status", "expires_at"),
        # Position and promotion order: resource + lane + waiting by arrival
        Index("ix_queue_entries_fifo", "resource_id", "lane", "status", "entered_queue_at"),
    )

    def __repr__(self) -> str:
        return f"<QueueEntry(session={self.session_id}, resource={self.resource_id}, lane={self.lane}, status={self.status})>"
