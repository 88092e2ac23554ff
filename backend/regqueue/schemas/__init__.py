from regqueue.schemas.queue import (
    LanePolicy, LanePolicyUpdate, QueueSettingsData, QueueSettingsUpdate,
    EntryContext, AdmissionResult, ExtensionResult, SweepResult,
    LaneStats, QueueStats,
)

__all__ = [
    "LanePolicy", "LanePolicyUpdate", "QueueSettingsData", "QueueSettingsUpdate",
    "EntryContext", "AdmissionResult", "ExtensionResult", "SweepResult",
    "LaneStats", "QueueStats",
]
