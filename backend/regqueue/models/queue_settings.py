"""
Per-resource queue configuration.

Key design decisions:
- One row per resource (event), upserted and never deleted
- Lanes are a JSON mapping ``{lane: {max_concurrent, session_timeout}}`` so a
  new registration type needs no schema change
- The optional active window turns the queue into a full bypass outside it
"""

from sqlalchemy import Boolean, Column, Integer, JSON, String, CheckConstraint

from regqueue.db.base import Base, TimestampMixin, UTCDateTime

DEFAULT_LANES = {
    "group": {"max_concurrent": 10, "session_timeout": 600},
    "individual": {"max_concurrent": 40, "session_timeout": 420},
}
DEFAULT_ALLOW_EXTENSION = True
DEFAULT_EXTENSION_DURATION = 300


class QueueSettings(Base, TimestampMixin):
    __tablename__ = "queue_settings"

    id = Column(Integer, primary_key=True, index=True)
    resource_id = Column(String(64), unique=True, index=True, nullable=False)
    queue_enabled = Column(Boolean, nullable=False, default=False)
    lanes = Column(JSON, nullable=False, default=lambda: {k: dict(v) for k, v in DEFAULT_LANES.items()})
    allow_time_extension = Column(Boolean, nullable=False, default=DEFAULT_ALLOW_EXTENSION)
    extension_duration = Column(Integer, nullable=False, default=DEFAULT_EXTENSION_DURATION)
    active_window_start = Column(UTCDateTime(), nullable=True)
    active_window_end = Column(UTCDateTime(), nullable=True)
    waiting_room_message = Column(String(2000), nullable=True)

    __table_args__ = (
        CheckConstraint("extension_duration > 0", name="check_extension_duration_positive"),
    )

    def __repr__(self) -> str:
        return f"<QueueSettings(resource={self.resource_id}, enabled={self.queue_enabled})>"
