"""
inbox-sync: optimistic mutation and reconciliation engine for a messaging client.

Send messages and change conversation labels with immediate local effect,
survive restarts before the server confirms, and converge with the realtime
change stream.
"""

from inbox_sync.client import AsyncInboxSync
from inbox_sync.bus import NotificationBus, bus
from inbox_sync.conversations import ConversationListView
from inbox_sync.thread import ThreadView
from inbox_sync.errors import (
    InboxSyncError,
    TransientRemoteFailure,
    StoreUnavailable,
    MutationInFlight,
    ConnectionError,
)
from inbox_sync.models.pending import MutationKind, MutationState

__version__ = "0.1.0"
__all__ = [
    "AsyncInboxSync",
    "NotificationBus",
    "bus",
    "ConversationListView",
    "ThreadView",
    "InboxSyncError",
    "TransientRemoteFailure",
    "StoreUnavailable",
    "MutationInFlight",
    "ConnectionError",
    "MutationKind",
    "MutationState",
]
