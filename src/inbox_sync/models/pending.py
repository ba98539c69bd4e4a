"""
Pending mutation records: the optimistic writes a conversation view has
applied locally but the remote service has not yet confirmed.
"""

from enum import Enum
from typing import Literal, NewType, Optional

from pydantic import BaseModel

from inbox_sync.models.label import Label
from inbox_sync.models.message import Message

CorrelationId = NewType("CorrelationId", str)


class MutationKind(str, Enum):
    MESSAGE = "message"
    LABELS = "labels"


class MutationState(str, Enum):
    IDLE = "idle"
    OPTIMISTIC = "optimistic"
    PERSISTED = "persisted"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"

    @property
    def in_flight(self) -> bool:
        return self in (MutationState.OPTIMISTIC, MutationState.PERSISTED, MutationState.SUBMITTED)

    @property
    def resolved(self) -> bool:
        return self in (MutationState.CONFIRMED, MutationState.REVERTED)


class PendingMessage(BaseModel):
    kind: Literal["message"] = "message"
    correlation_id: CorrelationId
    conversation_id: str
    payload: Message
    state: MutationState = MutationState.OPTIMISTIC


class PendingLabelAssignment(BaseModel):
    kind: Literal["labels"] = "labels"
    correlation_id: CorrelationId
    conversation_id: str
    user_id: str
    payload: tuple[Label, ...] = ()
    state: MutationState = MutationState.OPTIMISTIC



class MutationOutcome(BaseModel):
    """What a send/set call resolved to, as far as the caller can tell on return."""
    kind: MutationKind
    correlation_id: CorrelationId
    conversation_id: str
    state: MutationState
    message: Optional[Message] = None
    labels: Optional[tuple[Label, ...]] = None
    error: Optional[str] = None
