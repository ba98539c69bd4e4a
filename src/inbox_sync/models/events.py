"""
Event models.

Change events arrive from the push channel; notices travel on the
cross-view notification bus.
"""

from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from inbox_sync.models.label import Label
from inbox_sync.models.message import Message
from inbox_sync.models.pending import CorrelationId, MutationKind, MutationState


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """postgres_changes payload"""
    model_config = ConfigDict(populate_by_name=True)

    table: str
    type: ChangeType = Field(alias="eventType")
    new: dict[str, Any] = {}
    old: dict[str, Any] = {}
    subscription_id: Optional[str] = None


class NoticeKind(str, Enum):
    UPDATE = "update"
    REVERT = "revert"


class UpdateNotice(BaseModel):
    """A mutation's value became visible, optimistically or as confirmed state.

    `correlation_id` is None for authoritative changes that did not originate
    from a local mutation (another device, the other participant).
    """
    model_config = ConfigDict(frozen=True)

    kind: Literal[NoticeKind.UPDATE] = NoticeKind.UPDATE
    conversation_id: str
    correlation_id: Optional[CorrelationId] = None
    mutation: MutationKind
    state: MutationState
    message: Optional[Message] = None
    labels: Optional[tuple[Label, ...]] = None


class RevertNotice(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal[NoticeKind.REVERT] = NoticeKind.REVERT
    conversation_id: str
    correlation_id: CorrelationId
    mutation: MutationKind
    reason: str = ""
    draft: Optional[str] = None
