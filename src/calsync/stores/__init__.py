"""Local persistence consumed by the sync engine."""

from calsync.stores.base import CalendarStore, CredentialStore, EventWriteFailure, SyncBatch
from calsync.stores.memory import InMemoryCalendarStore, InMemoryCredentialStore

__all__ = [
    "CalendarStore",
    "CredentialStore",
    "EventWriteFailure",
    "InMemoryCalendarStore",
    "InMemoryCredentialStore",
    "SyncBatch",
]
