"""
Queue error taxonomy.

Only session extension reports discriminated failures to callers; the
other operations treat a missing entry as "no session yet". Store-layer
errors are never wrapped and propagate as raised by SQLAlchemy.
"""

from typing import Optional


class QueueError(Exception):
    """Base class for queue failures that callers are expected to explain."""

    code = "queue_error"
    default_message = "Queue operation failed"

    def __init__(self, message: Optional[str] = None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)


class NotFound(QueueError):
    code = "not_found"
    default_message = "Session not found"


class InvalidState(QueueError):
    code = "invalid_state"
    default_message = "Session is not active"


class AlreadyUsed(QueueError):
    code = "already_used"
    default_message = "Extension already used"


class NotAllowed(QueueError):
    code = "not_allowed"
    default_message = "Extensions not allowed for this event"


class UnknownLane(QueueError):
    code = "unknown_lane"
    default_message = "Registration type is not configured for this queue"
