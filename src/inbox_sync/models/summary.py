"""
Conversation summary: derived row of the conversation list.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from inbox_sync.models.label import Label
from inbox_sync.models.profile import UNKNOWN_NAME, UNKNOWN_PHONE


class ConversationSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    person_id: str
    name: str = UNKNOWN_NAME
    phone: str = UNKNOWN_PHONE
    latest_message: str = ""
    latest_message_timestamp: Optional[datetime] = None
    labels: tuple[Label, ...] = ()
    is_pending: bool = False
