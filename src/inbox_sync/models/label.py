"""
Label models: catalog entries (`chat_label_separate`) and per-conversation
assignments (`chat_labels`).
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Label(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    id: str = Field(min_length=1)
    label_name: str = Field(min_length=1)
    color: str = Field(min_length=1)


class LabelAssignment(BaseModel):
    """The full label set one user assigned to one chat partner. Always replaced whole."""
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    user_id: str
    chat_partner_id: str
    labels: tuple[Label, ...] = ()

    def to_row(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "chat_partner_id": self.chat_partner_id,
            "label_name": [label.model_dump() for label in self.labels],
        }


def unique_labels(labels: "list[Label] | tuple[Label, ...]") -> tuple[Label, ...]:
    """Drop repeated label ids, keeping the first occurrence."""
    seen: set[str] = set()
    result: list[Label] = []
    for label in labels:
        if label.id in seen:
            continue
        seen.add(label.id)
        result.append(label)
    return tuple(result)
