from regqueue.models.queue_settings import QueueSettings
from regqueue.models.queue_entry import QueueEntry, EntryStatus

__all__ = ["QueueSettings", "QueueEntry", "EntryStatus"]
