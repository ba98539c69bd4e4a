"""
Event normalizer: turns raw rows and change events into typed records.

Invalid input never raises: each undecodable element becomes a MalformedEvent,
which is logged, kept in a bounded diagnostic ring, and dropped.
"""

import json
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError

from inbox_sync.models.label import Label, LabelAssignment, unique_labels
from inbox_sync.models.message import Message, MessageDirection, MessageRow
from inbox_sync.models.profile import UNKNOWN_NAME, UNKNOWN_PHONE, Profile

logger = logging.getLogger("inbox_sync.normalizer")


@dataclass(frozen=True)
class MalformedEvent:
    source: str
    reason: str
    raw: Any = None


class EventNormalizer:
    def __init__(self, user: Profile, max_dropped: int = 100):
        self._user = user
        self.dropped: deque[MalformedEvent] = deque(maxlen=max_dropped)

    @property
    def user(self) -> Profile:
        return self._user

    def _drop(self, source: str, reason: str, raw: Any) -> MalformedEvent:
        malformed = MalformedEvent(source=source, reason=reason, raw=raw)
        self.dropped.append(malformed)
        logger.warning(f"Dropped malformed {source}: {reason}")
        return malformed

    # Labels

    def decode_label(self, item: Any) -> Union[Label, MalformedEvent]:
        """Label values arrive either structured or as JSON text."""
        if isinstance(item, str):
            try:
                item = json.loads(item)
            except json.JSONDecodeError as e:
                return self._drop("label", f"undecodable label text: {e.msg}", item)
        if not isinstance(item, dict):
            return self._drop("label", f"label is {type(item).__name__}, not an object", item)
        try:
            return Label.model_validate(item)
        except ValidationError as e:
            missing = ", ".join(str(err["loc"][0]) for err in e.errors() if err["loc"])
            return self._drop("label", f"invalid fields: {missing}", item)

    def labels(self, raw: Any) -> tuple[Label, ...]:
        if raw is None:
            return ()
        if not isinstance(raw, list):
            self._drop("label collection", f"expected a list, got {type(raw).__name__}", raw)
            return ()
        decoded = [self.decode_label(item) for item in raw]
        return unique_labels([label for label in decoded if isinstance(label, Label)])

    def label_assignment(self, row: Any) -> Union[LabelAssignment, MalformedEvent]:
        if not isinstance(row, dict):
            return self._drop("label assignment", "row is not an object", row)
        user_id, partner_id = row.get("user_id"), row.get("chat_partner_id")
        if not user_id or not partner_id:
            return self._drop("label assignment", "missing user_id or chat_partner_id", row)
        return LabelAssignment(
            user_id=str(user_id),
            chat_partner_id=str(partner_id),
            labels=self.labels(row.get("label_name")),
        )

    def catalog(self, rows: Iterable[Any]) -> list[Label]:
        labels = [self.decode_label(row) for row in rows]
        return list(unique_labels([label for label in labels if isinstance(label, Label)]))

    # Messages

    def message(self, row: Any, partner: Optional[Profile] = None) -> Union[Message, MalformedEvent]:
        """Map a wire row 1:1 into a Message, resolving display fields from profiles."""
        try:
            wire = MessageRow.model_validate(row)
        except ValidationError as e:
            return self._drop("message", f"{e.error_count()} invalid fields", row)

        sent = wire.sender_id == self._user.id
        if sent:
            name, phone = self._user.name or "", self._user.phone or ""
        elif partner is not None and partner.id == wire.sender_id:
            name, phone = partner.display_name, partner.display_phone
        else:
            name, phone = UNKNOWN_NAME, UNKNOWN_PHONE

        return Message(
            id=wire.id,
            type=MessageDirection.SENT if sent else MessageDirection.RECEIVED,
            name=name,
            phone=phone,
            content=wire.content,
            sender_id=wire.sender_id,
            receiver_id=wire.receiver_id,
            is_read=wire.is_read,
            created_at=wire.created_at,
            replied_id=wire.replied_id or None,
            client_id=wire.client_id,
        )

    def messages(self, rows: Iterable[Any], partner: Optional[Profile] = None) -> list[Message]:
        result = [self.message(row, partner) for row in rows]
        return [m for m in result if isinstance(m, Message)]

    # Profiles

    def profile(self, row: Any) -> Union[Profile, MalformedEvent]:
        try:
            return Profile.model_validate(row)
        except ValidationError as e:
            return self._drop("profile", f"{e.error_count()} invalid fields", row)

    def profiles(self, rows: Iterable[Any]) -> dict[str, Profile]:
        """Valid profile rows by id. A dropped row reads as a lookup miss."""
        result = [self.profile(row) for row in rows]
        return {p.id: p for p in result if isinstance(p, Profile)}


def profile_or_placeholder(rows: list[dict[str, Any]], profile_id: str) -> Profile:
    """First matching profile row, or a placeholder profile for a lookup miss."""
    for row in rows:
        try:
            profile = Profile.model_validate(row)
        except ValidationError:
            continue
        if profile.id == profile_id:
            return profile
    logger.info(f"No profile for {profile_id}, using placeholder")
    return Profile(id=profile_id)
