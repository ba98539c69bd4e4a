"""
Merged view projector: overlays pending mutations on last-known confirmed data.

- ThreadProjection: ordered messages of one conversation.
- LabelProjection: the selected labels of one conversation.
- ConversationListProjection: the conversation list with pending overlays.
- search_cache: process-wide copy of the last fetched conversation list, used
  only for instant local search within the session.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from inbox_sync.bus import Notice, NoticeLedger
from inbox_sync.models.events import RevertNotice
from inbox_sync.models.label import Label
from inbox_sync.models.message import Message
from inbox_sync.models.pending import CorrelationId, MutationKind, MutationState
from inbox_sync.models.summary import ConversationSummary
from inbox_sync.search import fuzzy_filter

logger = logging.getLogger("inbox_sync.projector")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def project_messages(confirmed: Iterable[Message], pending: Iterable[Message]) -> list[Message]:
    """Confirmed history plus still-pending messages, ascending by timestamp.

    A pending message whose correlation id already appears on a confirmed
    message has been replaced and is left out. Equal timestamps keep input order.
    """
    confirmed = list(confirmed)
    taken = {m.id for m in confirmed} | {m.client_id for m in confirmed if m.client_id}
    merged = confirmed + [m for m in pending if m.id not in taken]
    return sorted(merged, key=lambda m: m.created_at)


class ThreadProjection:
    def __init__(self) -> None:
        self._confirmed: dict[str, Message] = {}
        self._pending: dict[str, Message] = {}

    def load(self, messages: Iterable[Message]) -> list[str]:
        """Replace confirmed history. Returns temp ids the history already confirms."""
        self._confirmed = {m.id: m for m in messages}
        confirmed_clients = {m.client_id for m in self._confirmed.values() if m.client_id}
        resolved = [temp_id for temp_id in self._pending if temp_id in confirmed_clients]
        for temp_id in resolved:
            del self._pending[temp_id]
        return resolved

    def add_pending(self, message: Message) -> None:
        self._pending[message.id] = message

    def confirm(self, temp_id: str, message: Message) -> None:
        """Replace a pending message with its confirmed record. Idempotent."""
        self._pending.pop(temp_id, None)
        self._confirmed[message.id] = message

    def apply_echo(self, message: Message) -> bool:
        """Accept a pushed message unless its server id is already known."""
        if message.id in self._confirmed:
            return False
        if message.client_id:
            self._pending.pop(message.client_id, None)
        self._confirmed[message.id] = message
        return True

    def replace(self, message: Message) -> bool:
        if message.id not in self._confirmed:
            return False
        self._confirmed[message.id] = message
        return True

    def discard(self, temp_id: str) -> bool:
        return self._pending.pop(temp_id, None) is not None

    def get(self, message_id: str) -> Optional[Message]:
        return self._confirmed.get(message_id) or self._pending.get(message_id)

    def replied_to(self, message: Message) -> Optional[Message]:
        return self.get(message.replied_id) if message.replied_id else None

    def is_pending(self, temp_id: str) -> bool:
        return temp_id in self._pending

    def confirmed_client_ids(self) -> set[str]:
        return {m.client_id for m in self._confirmed.values() if m.client_id}

    def project(self) -> list[Message]:
        return project_messages(self._confirmed.values(), self._pending.values())


class LabelProjection:
    def __init__(self) -> None:
        self.confirmed: tuple[Label, ...] = ()
        self._overlay: Optional[tuple[CorrelationId, tuple[Label, ...]]] = None

    @property
    def overlay_id(self) -> Optional[CorrelationId]:
        return self._overlay[0] if self._overlay else None

    @property
    def selected(self) -> tuple[Label, ...]:
        return self._overlay[1] if self._overlay else self.confirmed

    def set_overlay(self, correlation_id: CorrelationId, labels: tuple[Label, ...]) -> None:
        self._overlay = (correlation_id, labels)

    def clear_overlay(self, correlation_id: CorrelationId) -> bool:
        if self._overlay and self._overlay[0] == correlation_id:
            self._overlay = None
            return True
        return False


class ConversationSearchCache:
    def __init__(self) -> None:
        self._user_id: Optional[str] = None
        self._summaries: list[ConversationSummary] = []

    @property
    def summaries(self) -> list[ConversationSummary]:
        return list(self._summaries)

    def populate(self, user_id: str, summaries: Iterable[ConversationSummary]) -> None:
        self._user_id = user_id
        self._summaries = list(summaries)

    def clear(self) -> None:
        self._user_id = None
        self._summaries = []

    def search(self, user_id: str, query: str) -> Optional[set[str]]:
        """Person ids whose name fuzzy-matches. None means no filter applies."""
        if not query.strip() or user_id != self._user_id:
            return None
        names = fuzzy_filter(query.strip(), [s.name for s in self._summaries])
        matched = set(names)
        return {s.person_id for s in self._summaries if s.name in matched}


search_cache = ConversationSearchCache()


class ConversationListProjection:
    def __init__(self, user_id: str, cache: ConversationSearchCache = search_cache):
        self._user_id = user_id
        self._cache = cache
        self._confirmed: dict[str, ConversationSummary] = {}
        self._label_overlays: dict[str, tuple[CorrelationId, tuple[Label, ...]]] = {}
        self._message_overlays: dict[str, tuple[CorrelationId, Message]] = {}
        self._ledger = NoticeLedger()

    def load(self, summaries: Iterable[ConversationSummary]) -> None:
        """Replace confirmed summaries after a successful fetch."""
        self._confirmed = {s.person_id: s for s in summaries}
        self._cache.populate(self._user_id, self._confirmed.values())

    def confirmed(self, person_id: str) -> Optional[ConversationSummary]:
        return self._confirmed.get(person_id)

    def has_overlay(self, person_id: str) -> bool:
        return person_id in self._label_overlays or person_id in self._message_overlays

    def apply(self, notice: Notice) -> bool:
        if not self._ledger.accept(notice):
            return False
        cid = notice.conversation_id
        if isinstance(notice, RevertNotice):
            overlays = self._label_overlays if notice.mutation == MutationKind.LABELS else self._message_overlays
            if cid in overlays and overlays[cid][0] == notice.correlation_id:
                del overlays[cid]
            return True

        optimistic = notice.state != MutationState.CONFIRMED
        if notice.mutation == MutationKind.LABELS and notice.labels is not None:
            if optimistic:
                self._label_overlays[cid] = (notice.correlation_id, notice.labels)  # type: ignore[assignment]
            else:
                self._set_confirmed(cid, labels=notice.labels)
                self._drop_overlay(self._label_overlays, cid, notice.correlation_id)
        elif notice.mutation == MutationKind.MESSAGE and notice.message is not None:
            if optimistic:
                self._message_overlays[cid] = (notice.correlation_id, notice.message)  # type: ignore[assignment]
            else:
                current = self._confirmed.get(cid)
                stamp = current.latest_message_timestamp if current else None
                if stamp is None or notice.message.created_at >= stamp:
                    self._set_confirmed(
                        cid,
                        latest_message=notice.message.content,
                        latest_message_timestamp=notice.message.created_at,
                    )
                self._drop_overlay(self._message_overlays, cid, notice.correlation_id)
        return True

    @staticmethod
    def _drop_overlay(overlays: dict, cid: str, correlation_id: Optional[CorrelationId]) -> None:
        if correlation_id is not None and cid in overlays and overlays[cid][0] == correlation_id:
            del overlays[cid]

    def _set_confirmed(self, cid: str, **changes: object) -> None:
        current = self._confirmed.get(cid) or ConversationSummary(person_id=cid)
        self._confirmed[cid] = current.model_copy(update=changes)

    def _overlaid(self, summary: ConversationSummary) -> ConversationSummary:
        changes: dict[str, object] = {}
        label_overlay = self._label_overlays.get(summary.person_id)
        if label_overlay:
            changes["labels"] = label_overlay[1]
            changes["is_pending"] = True
        message_overlay = self._message_overlays.get(summary.person_id)
        if message_overlay:
            message = message_overlay[1]
            stamp = summary.latest_message_timestamp
            if stamp is None or message.created_at >= stamp:
                changes["latest_message"] = message.content
                changes["latest_message_timestamp"] = message.created_at
                changes["is_pending"] = True
        return summary.model_copy(update=changes) if changes else summary

    def project(self) -> list[ConversationSummary]:
        ids = list(self._confirmed)
        ids += [cid for cid in {**self._message_overlays, **self._label_overlays} if cid not in self._confirmed]
        summaries = [self._overlaid(self._confirmed.get(cid) or ConversationSummary(person_id=cid)) for cid in ids]
        return sorted(summaries, key=lambda s: s.latest_message_timestamp or _EPOCH, reverse=True)
