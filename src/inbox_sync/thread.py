"""
Open-thread view: messages and labels of one conversation.

open() subscribes to both push streams before fetching confirmed state, so no
change can fall between the fetch and the subscription. After a reconnect the
confirmed state is read again, since events sent while the channel was down
are lost. close() unsubscribes; a closed view receives no further updates.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from inbox_sync.bus import NotificationBus
from inbox_sync.errors import TransientRemoteFailure
from inbox_sync.lifecycle import LabelConfirmation, MutationController, RevertHandler
from inbox_sync.models.events import RevertNotice
from inbox_sync.models.label import Label
from inbox_sync.models.message import Message
from inbox_sync.models.pending import MutationKind, MutationOutcome, MutationState
from inbox_sync.models.profile import Profile
from inbox_sync.normalizer import EventNormalizer, profile_or_placeholder
from inbox_sync.projector import LabelProjection, ThreadProjection
from inbox_sync.store import PendingStore
from inbox_sync.transport import filters
from inbox_sync.transport.remote import (
    LABEL_CATALOG_TABLE,
    LABELS_TABLE,
    MESSAGES_TABLE,
    PROFILES_TABLE,
    DataService,
)

logger = logging.getLogger("inbox_sync.thread")


class ThreadView:
    def __init__(
        self,
        service: DataService,
        store: PendingStore,
        bus: NotificationBus,
        normalizer: EventNormalizer,
        partner_id: str,
        *,
        label_confirmation: LabelConfirmation = "echo",
        resubmit_recovered: bool = True,
        on_revert: Optional[RevertHandler] = None,
    ):
        self._service = service
        self._store = store
        self._bus = bus
        self._normalizer = normalizer
        self._partner = Profile(id=partner_id)
        self._label_confirmation = label_confirmation
        self._resubmit_recovered = resubmit_recovered
        self._on_revert = on_revert

        self._thread = ThreadProjection()
        self._labels = LabelProjection()
        self._controller = self._build_controller()
        self._catalog: list[Label] = []
        self._subscriptions: dict[str, Any] = {}
        self._remove_reconnect_handler: Optional[Callable[[], None]] = None
        self._recovery: Optional[asyncio.Task] = None
        self._resync: Optional[asyncio.Task] = None
        self._open = False
        self.draft = ""

    def _build_controller(self) -> MutationController:
        return MutationController(
            self._service, self._store, self._bus, self._normalizer,
            partner=self._partner,
            thread=self._thread,
            labels=self._labels,
            label_confirmation=self._label_confirmation,
            on_revert=self._handle_revert,
        )

    @property
    def partner(self) -> Profile:
        return self._partner

    @property
    def conversation_id(self) -> str:
        return self._partner.id

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def messages(self) -> list[Message]:
        return self._thread.project()

    @property
    def selected_labels(self) -> tuple[Label, ...]:
        return self._labels.selected

    @property
    def confirmed_labels(self) -> tuple[Label, ...]:
        return self._labels.confirmed

    @property
    def pending_labels_id(self) -> Optional[str]:
        """Correlation id of the label change still shown optimistically, if any."""
        return self._labels.overlay_id

    @property
    def label_catalog(self) -> list[Label]:
        return list(self._catalog)

    @property
    def controller(self) -> MutationController:
        return self._controller

    def state(self, kind: MutationKind) -> MutationState:
        return self._controller.state(kind)

    def replied_to(self, message: Message) -> Optional[Message]:
        return self._thread.replied_to(message)

    @property
    def subscribed(self) -> bool:
        return len(self._subscriptions) == 2

    async def open(self) -> None:
        """Subscribe, load confirmed state, then start restart recovery.

        A subscription that cannot be established is logged and the view is
        still loaded. Calling open() again (or a reconnect) retries it and
        re-reads confirmed state.
        """
        if self._open:
            if not self.subscribed:
                await self.resync()
            return
        self._open = True
        self._remove_reconnect_handler = self._service.add_reconnect_handler(self._on_reconnect)
        await self._load_partner()
        await self._subscribe()

        await self.refresh_messages()
        await self._controller.refresh_labels()
        await self.refresh_catalog()
        self._recovery = asyncio.get_running_loop().create_task(
            self._controller.recover(resubmit=self._resubmit_recovered)
        )

    async def _subscribe(self) -> None:
        user_id = self._normalizer.user.id
        streams = {
            MESSAGES_TABLE: (filters.between(user_id, self.conversation_id), self._on_message_event),
            LABELS_TABLE: ({"user_id": user_id, "chat_partner_id": self.conversation_id}, self._on_label_event),
        }
        for table, (row_filter, handler) in streams.items():
            if table in self._subscriptions:
                continue
            try:
                self._subscriptions[table] = await self._service.subscribe(table, row_filter, handler)
            except TransientRemoteFailure as e:
                logger.error(f"Subscribing to {table} for {self.conversation_id} failed: {e}")

    async def resync(self) -> None:
        """Re-establish missing subscriptions and re-read confirmed state."""
        if not self._open:
            return
        await self._subscribe()
        await self.refresh_messages()
        await self._controller.refresh_labels()

    def _on_reconnect(self) -> None:
        if self._open and (self._resync is None or self._resync.done()):
            self._resync = asyncio.get_running_loop().create_task(self.resync())

    async def _load_partner(self) -> None:
        try:
            rows = await self._service.query(PROFILES_TABLE, {"id": self.conversation_id})
        except TransientRemoteFailure as e:
            logger.error(f"Profile lookup for {self.conversation_id} failed: {e}")
            rows = []
        self._partner = profile_or_placeholder(rows, self.conversation_id)
        self._controller.partner = self._partner

    async def wait_recovered(self) -> None:
        if self._recovery is not None:
            await self._recovery

    async def refresh_messages(self) -> bool:
        try:
            rows = await self._service.query(
                MESSAGES_TABLE,
                filters.between(self._normalizer.user.id, self.conversation_id),
                order="created_at.asc",
            )
        except TransientRemoteFailure as e:
            logger.error(f"Fetching messages for {self.conversation_id} failed: {e}")
            return False
        resolved = self._thread.load(self._normalizer.messages(rows, self._partner))
        for temp_id in resolved:
            await self._store.remove_message(self.conversation_id, temp_id)
        return True

    async def refresh_catalog(self) -> bool:
        try:
            rows = await self._service.query(LABEL_CATALOG_TABLE)
        except TransientRemoteFailure as e:
            logger.error(f"Fetching label catalog failed: {e}")
            return False
        self._catalog = self._normalizer.catalog(rows)
        return True

    def _on_message_event(self, event: Any) -> None:
        if self._open:
            self._controller.on_message_event(event)

    def _on_label_event(self, event: Any) -> None:
        if self._open:
            self._controller.on_label_event(event)

    def _handle_revert(self, notice: RevertNotice) -> None:
        if notice.draft is not None:
            self.draft = notice.draft
        if self._on_revert is not None:
            self._on_revert(notice)

    async def send_message(self, text: str, reply_to_id: Optional[str] = None) -> Optional[MutationOutcome]:
        outcome = await self._controller.send_message(text, reply_to_id)
        if outcome is not None and self.draft == text and outcome.state != MutationState.REVERTED:
            self.draft = ""
        return outcome

    async def set_labels(self, labels: Any) -> MutationOutcome:
        return await self._controller.set_labels(labels)

    def is_label_selected(self, label: Label) -> bool:
        return any(selected.id == label.id for selected in self._labels.selected)

    def toggle_label(self, label: Label, selection: Optional[tuple[Label, ...]] = None) -> tuple[Label, ...]:
        """Selection with `label` added or removed, for building a set_labels call."""
        if selection is None:
            selection = self._labels.selected
        if any(item.id == label.id for item in selection):
            return tuple(item for item in selection if item.id != label.id)
        return selection + (label,)

    async def wait_resolved(self, kind: MutationKind, timeout: Optional[float] = None) -> MutationState:
        return await self._controller.wait_resolved(kind, timeout)

    async def close(self) -> None:
        self._open = False
        if self._remove_reconnect_handler is not None:
            self._remove_reconnect_handler()
            self._remove_reconnect_handler = None
        for task in (self._recovery, self._resync):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._recovery = None
        self._resync = None
        subscriptions, self._subscriptions = self._subscriptions, {}
        for sub in subscriptions.values():
            await self._service.unsubscribe(sub)
        await self._controller.drain()
