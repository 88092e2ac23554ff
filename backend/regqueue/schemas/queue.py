"""
Pydantic schemas for queue settings, admission decisions and stats.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class LanePolicy(BaseModel):
    max_concurrent: int
    session_timeout: int  # seconds


class LanePolicyUpdate(BaseModel):
    max_concurrent: Optional[int] = None
    session_timeout: Optional[int] = None


class QueueSettingsData(BaseModel):
    resource_id: str
    queue_enabled: bool
    lanes: dict[str, LanePolicy]
    allow_time_extension: bool
    extension_duration: int  # seconds
    active_window_start: Optional[datetime] = None
    active_window_end: Optional[datetime] = None
    waiting_room_message: Optional[str] = None

    model_config = {"from_attributes": True}


class QueueSettingsUpdate(BaseModel):
    """
    Partial settings update. Only fields explicitly set are written, so
    ``active_window_end=None`` clears the bound while omitting it keeps it.
    """

    queue_enabled: Optional[bool] = None
    lanes: Optional[dict[str, LanePolicyUpdate]] = None
    allow_time_extension: Optional[bool] = None
    extension_duration: Optional[int] = None
    active_window_start: Optional[datetime] = None
    active_window_end: Optional[datetime] = None
    waiting_room_message: Optional[str] = Field(None, max_length=2000)


class EntryContext(BaseModel):
    """Audit context recorded when a session first enters the queue."""

    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class AdmissionResult(BaseModel):
    allowed: bool
    session_id: str
    status: str
    queue_position: Optional[int] = None
    estimated_wait_minutes: Optional[int] = None
    expires_at: Optional[datetime] = None
    extension_allowed: Optional[bool] = None
    extension_used: Optional[bool] = None
    waiting_room_message: Optional[str] = None


class ExtensionResult(BaseModel):
    success: bool
    new_expires_at: Optional[datetime] = None
    error: Optional[str] = None
    message: Optional[str] = None


class SweepResult(BaseModel):
    expired_count: int = 0
    admitted_count: int = 0


class LaneStats(BaseModel):
    lane: str
    active: int
    waiting: int
    max_concurrent: int


class QueueStats(BaseModel):
    resource_id: str
    lanes: list[LaneStats]
    total_active: int
    total_waiting: int

    def lane(self, name: str) -> Optional[LaneStats]:
        return next((s for s in self.lanes if s.lane == name), None)
