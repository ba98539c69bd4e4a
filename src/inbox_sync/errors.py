"""
inbox-sync error types.

Remote and store failures are resolved locally into state transitions; these
types only cross the public boundary for caller-contract violations
(MutationInFlight, ConnectionError).
"""

from typing import Any, Optional


class InboxSyncError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details


class TransientRemoteFailure(InboxSyncError):
    """Network or server error from the remote data service."""

    def __init__(self, message: str, status: Optional[int] = None, details: Optional[dict[str, Any]] = None):
        super().__init__("remote_error", message, details)
        self.status = status


class StoreUnavailable(InboxSyncError):
    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__("store_unavailable", message, {"key": key} if key else None)
        self.key = key


class MutationInFlight(InboxSyncError):
    """A second mutation was attempted before the first one resolved."""

    def __init__(self, conversation_id: str, kind: str):
        super().__init__(
            "mutation_in_flight",
            f"A {kind} mutation is already in flight for conversation {conversation_id}",
            {"conversation_id": conversation_id, "kind": kind},
        )
        self.conversation_id = conversation_id
        self.kind = kind


class ConnectionError(InboxSyncError):
    def __init__(self, message: str):
        super().__init__("connection_error", message)
