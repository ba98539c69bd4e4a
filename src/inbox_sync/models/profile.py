"""
Profile models: rows of the `profiles` table.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict

UNKNOWN_NAME = "Unknown User"
UNKNOWN_PHONE = "N/A"


class Profile(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    id: str
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or UNKNOWN_NAME

    @property
    def display_phone(self) -> str:
        return self.phone or UNKNOWN_PHONE
