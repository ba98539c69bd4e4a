"""
Conversation-list view: one summary per chat partner.

Consumes lifecycle notices from the bus (it shares no memory with any open
thread view) and the user's message stream, and offers debounced local search
over the process-wide search cache.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable, Optional

from inbox_sync.bus import Notice, NotificationBus
from inbox_sync.debounce import SEARCH_DEBOUNCE_S, Debouncer
from inbox_sync.errors import TransientRemoteFailure
from inbox_sync.models.events import ChangeEvent, ChangeType, UpdateNotice
from inbox_sync.models.label import Label, LabelAssignment
from inbox_sync.models.message import Message
from inbox_sync.models.pending import MutationKind, MutationState
from inbox_sync.models.profile import Profile
from inbox_sync.models.summary import ConversationSummary
from inbox_sync.normalizer import EventNormalizer, MalformedEvent
from inbox_sync.projector import ConversationListProjection, ConversationSearchCache, search_cache
from inbox_sync.transport import filters
from inbox_sync.transport.remote import LABELS_TABLE, MESSAGES_TABLE, PROFILES_TABLE, DataService

logger = logging.getLogger("inbox_sync.conversations")


class ConversationListView:
    def __init__(
        self,
        service: DataService,
        bus: NotificationBus,
        normalizer: EventNormalizer,
        *,
        debounce_s: float = SEARCH_DEBOUNCE_S,
        cache: ConversationSearchCache = search_cache,
        on_change: Optional[Callable[[], None]] = None,
    ):
        self._service = service
        self._bus = bus
        self._normalizer = normalizer
        self._cache = cache
        self._projection = ConversationListProjection(normalizer.user.id, cache)
        self._on_change = on_change
        self._remove_bus_handler: Optional[Callable[[], None]] = None
        self._remove_reconnect_handler: Optional[Callable[[], None]] = None
        self._resync_task: Optional[asyncio.Task] = None
        self._subscription: Any = None

        self._query = ""
        self._matches: Optional[set[str]] = None
        self._sort_by_name = False
        self._search = Debouncer(self._run_search, debounce_s)
        self._contact_search = Debouncer(self._run_contact_search, debounce_s)
        self.contact_results: list[ConversationSummary] = []

    @property
    def user_id(self) -> str:
        return self._normalizer.user.id

    @property
    def projection(self) -> ConversationListProjection:
        return self._projection

    @property
    def query(self) -> str:
        return self._query

    @property
    def sort_by_name(self) -> bool:
        return self._sort_by_name

    @property
    def summaries(self) -> list[ConversationSummary]:
        summaries = self._projection.project()
        if self._matches is not None:
            summaries = [s for s in summaries if s.person_id in self._matches]
        if self._sort_by_name:
            summaries = sorted(summaries, key=lambda s: s.name, reverse=True)
        return summaries

    def summary(self, person_id: str) -> Optional[ConversationSummary]:
        for s in self._projection.project():
            if s.person_id == person_id:
                return s
        return None

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None

    async def open(self) -> None:
        """Listen for notices and messages, then load the list.

        A failed subscription leaves the list usable from fetched state; it is
        retried, with a fresh fetch, by the next open() or reconnect.
        """
        if self._remove_bus_handler is None:
            self._remove_bus_handler = self._bus.subscribe(self._on_notice)
        if self._remove_reconnect_handler is None:
            self._remove_reconnect_handler = self._service.add_reconnect_handler(self._on_reconnect)
        await self.resync()

    async def resync(self) -> None:
        await self._subscribe()
        await self.refresh()

    async def _subscribe(self) -> None:
        if self._subscription is not None:
            return
        try:
            self._subscription = await self._service.subscribe(
                MESSAGES_TABLE, filters.involving(self.user_id), self._on_message_event,
            )
        except TransientRemoteFailure as e:
            logger.error(f"Subscribing to {MESSAGES_TABLE} failed: {e}")

    def _on_reconnect(self) -> None:
        if self._resync_task is None or self._resync_task.done():
            self._resync_task = asyncio.get_running_loop().create_task(self.resync())

    async def close(self) -> None:
        self._search.cancel()
        self._contact_search.cancel()
        if self._remove_bus_handler is not None:
            self._remove_bus_handler()
            self._remove_bus_handler = None
        if self._remove_reconnect_handler is not None:
            self._remove_reconnect_handler()
            self._remove_reconnect_handler = None
        if self._resync_task is not None and not self._resync_task.done():
            self._resync_task.cancel()
            try:
                await self._resync_task
            except asyncio.CancelledError:
                pass
        self._resync_task = None
        if self._subscription is not None:
            await self._service.unsubscribe(self._subscription)
            self._subscription = None

    async def refresh(self) -> bool:
        """Re-read the list from confirmed state. Keeps the previous list on failure."""
        try:
            summaries = await self._fetch_summaries()
        except TransientRemoteFailure as e:
            logger.error(f"Fetching conversation list failed: {e}")
            return False
        self._projection.load(summaries)
        if self._query:
            self._matches = self._cache.search(self.user_id, self._query)
        self._changed()
        return True

    async def _fetch_summaries(self) -> list[ConversationSummary]:
        rows = await self._service.query(MESSAGES_TABLE, filters.involving(self.user_id), order="created_at.desc")
        latest: dict[str, Message] = {}
        for message in self._normalizer.messages(rows):
            partner_id = message.partner_id(self.user_id)
            current = latest.get(partner_id)
            if current is None or message.created_at > current.created_at:
                latest[partner_id] = message
        if not latest:
            return []

        profile_rows = await self._service.query(PROFILES_TABLE, {"id": filters.in_(sorted(latest))})
        profiles = self._normalizer.profiles(profile_rows)

        label_rows = await self._service.query(LABELS_TABLE, {"user_id": self.user_id})
        labels: dict[str, tuple[Label, ...]] = defaultdict(tuple)
        for row in label_rows:
            assignment = self._normalizer.label_assignment(row)
            if isinstance(assignment, LabelAssignment):
                labels[assignment.chat_partner_id] = assignment.labels

        summaries = []
        for partner_id, message in latest.items():
            profile = profiles.get(partner_id) or Profile(id=partner_id)
            summaries.append(ConversationSummary(
                person_id=partner_id,
                name=profile.display_name,
                phone=profile.display_phone,
                latest_message=message.content,
                latest_message_timestamp=message.created_at,
                labels=labels[partner_id],
            ))
        return summaries

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def _on_notice(self, notice: Notice) -> None:
        if self._projection.apply(notice):
            self._changed()

    def _on_message_event(self, event: ChangeEvent) -> None:
        if event.type != ChangeType.INSERT:
            return
        message = self._normalizer.message(event.new)
        if isinstance(message, MalformedEvent):
            return
        self._on_notice(UpdateNotice(
            conversation_id=message.partner_id(self.user_id),
            mutation=MutationKind.MESSAGE,
            state=MutationState.CONFIRMED,
            message=message,
        ))

    # Search

    def search(self, query: str, immediate: bool = False) -> None:
        """Filter the list by fuzzy name match once typing pauses."""
        self._query = query
        if immediate:
            self._search.cancel_timer()
            self._run_search(query)
            return
        self._search(query)

    def _run_search(self, query: str) -> None:
        self._matches = self._cache.search(self.user_id, query)
        self._changed()

    def toggle_sort_by_name(self) -> bool:
        self._sort_by_name = not self._sort_by_name
        self._changed()
        return self._sort_by_name

    def search_contacts(self, phone: str) -> None:
        """Look up other users by partial phone number once typing pauses."""
        self._contact_search(phone)

    async def _run_contact_search(self, phone: str) -> None:
        if not phone.strip():
            self.contact_results = []
            self._changed()
            return
        try:
            rows = await self._service.query(
                PROFILES_TABLE, {"phone": filters.ilike(f"%{phone.strip()}%"), "id": filters.neq(self.user_id)},
            )
        except TransientRemoteFailure as e:
            logger.error(f"Contact search failed: {e}")
            rows = []
        self.contact_results = [
            ConversationSummary(person_id=p.id, name=p.display_name, phone=p.display_phone)
            for p in self._normalizer.profiles(rows).values()
        ]
        self._changed()
