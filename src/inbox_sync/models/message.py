"""
Message models.

`MessageRow` is the wire shape of the `messages` table; `Message` is the
display record the projector orders and renders. Messages are immutable:
a pending message becomes a confirmed one by replacement.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

TEMP_ID_PREFIX = "temp_"


class MessageDirection(str, Enum):
    SENT = "SENT"
    RECEIVED = "RECEIVED"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MessageRow(BaseModel):
    """Row as delivered by query/insert results and change events."""
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str
    sender_id: str
    receiver_id: str
    content: str
    created_at: datetime
    is_read: bool = False
    replied_id: Optional[str] = None
    client_id: Optional[str] = None

    @field_validator("created_at")
    @classmethod
    def _created_at_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: MessageDirection
    name: str = ""
    phone: str = ""
    content: str
    sender_id: str
    receiver_id: str
    is_read: bool = False
    created_at: datetime
    replied_id: Optional[str] = None
    client_id: Optional[str] = None
    is_pending: bool = False

    @field_validator("created_at")
    @classmethod
    def _created_at_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def is_temporary(self) -> bool:
        return self.id.startswith(TEMP_ID_PREFIX)

    def partner_id(self, user_id: str) -> str:
        return self.receiver_id if self.sender_id == user_id else self.sender_id
