"""
Mutation lifecycle controller: one in-flight mutation per (conversation, kind).

States: IDLE -> OPTIMISTIC -> PERSISTED -> SUBMITTED -> {CONFIRMED, REVERTED}

- OPTIMISTIC: the projection shows the change before any I/O.
- PERSISTED: the pending store holds it (best effort; skipped when the store
  is unavailable).
- SUBMITTED: the remote insert/upsert is issued. A slow write stays here.
- CONFIRMED: messages on the insert's returned row or their echo; labels on
  their echo ("echo" mode) or the upsert's return ("ack" mode).
- REVERTED: the remote write failed; the projection is restored, the store
  entry removed, and a RevertNotice is raised.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Coroutine, Iterable, Literal, Optional, Union

from inbox_sync.bus import NotificationBus
from inbox_sync.errors import MutationInFlight, TransientRemoteFailure
from inbox_sync.models.events import ChangeEvent, ChangeType, RevertNotice, UpdateNotice
from inbox_sync.models.label import Label, LabelAssignment, unique_labels
from inbox_sync.models.message import TEMP_ID_PREFIX, Message, MessageDirection
from inbox_sync.models.pending import (
    CorrelationId,
    MutationKind,
    MutationOutcome,
    MutationState,
    PendingLabelAssignment,
    PendingMessage,
)
from inbox_sync.models.profile import Profile
from inbox_sync.normalizer import EventNormalizer, MalformedEvent
from inbox_sync.projector import LabelProjection, ThreadProjection
from inbox_sync.store import PendingStore
from inbox_sync.transport.remote import (
    LABELS_CONFLICT_KEY,
    LABELS_TABLE,
    MESSAGES_TABLE,
    DataService,
)

LABEL_TEMP_ID_PREFIX = "temp_label_"

LabelConfirmation = Literal["echo", "ack"]
PendingRecord = Union[PendingMessage, PendingLabelAssignment]
RevertHandler = Callable[[RevertNotice], None]

logger = logging.getLogger("inbox_sync.lifecycle")


class MutationController:
    def __init__(
        self,
        service: DataService,
        store: PendingStore,
        bus: NotificationBus,
        normalizer: EventNormalizer,
        *,
        partner: Profile,
        thread: ThreadProjection,
        labels: LabelProjection,
        label_confirmation: LabelConfirmation = "echo",
        on_revert: Optional[RevertHandler] = None,
    ):
        self._service = service
        self._store = store
        self._bus = bus
        self._normalizer = normalizer
        self._user = normalizer.user
        self._partner = partner
        self._thread = thread
        self._labels = labels
        self._label_confirmation = label_confirmation
        self._on_revert = on_revert

        self._records: dict[MutationKind, PendingRecord] = {}
        self._results: dict[MutationKind, MutationOutcome] = {}
        self._resolved: dict[MutationKind, asyncio.Event] = {}
        self._tasks: set[asyncio.Task] = set()
        self._last_sent_at: Optional[datetime] = None

    @property
    def conversation_id(self) -> str:
        return self._partner.id

    @property
    def partner(self) -> Profile:
        return self._partner

    @partner.setter
    def partner(self, profile: Profile) -> None:
        if profile.id != self._partner.id:
            raise ValueError(f"Profile {profile.id} is not the partner of {self._partner.id}")
        self._partner = profile

    def state(self, kind: MutationKind) -> MutationState:
        record = self._records.get(kind)
        return record.state if record else MutationState.IDLE

    async def wait_resolved(self, kind: MutationKind, timeout: Optional[float] = None) -> MutationState:
        """Wait until the current mutation of `kind` is Confirmed or Reverted."""
        if self.state(kind).in_flight:
            await asyncio.wait_for(self._resolved[kind].wait(), timeout=timeout)
        return self.state(kind)

    async def drain(self) -> None:
        """Wait for scheduled store cleanups."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks))

    # State machine plumbing

    def _start(self, kind: MutationKind, record: PendingRecord) -> None:
        if self.state(kind).in_flight:
            raise MutationInFlight(self.conversation_id, kind.value)
        self._records[kind] = record
        self._resolved[kind] = asyncio.Event()
        logger.debug(f"{kind.value} {record.correlation_id} for {self.conversation_id}: {record.state.value}")

    def _transition(self, record: PendingRecord, state: MutationState) -> None:
        logger.debug(f"{record.kind} {record.correlation_id}: {record.state.value} -> {state.value}")
        record.state = state

    def _is_current(self, kind: MutationKind, record: PendingRecord) -> bool:
        return self._records.get(kind) is record and record.state.in_flight

    def _resolve(self, kind: MutationKind, record: PendingRecord, state: MutationState, **fields: Any) -> None:
        self._transition(record, state)
        self._results[kind] = MutationOutcome(
            kind=kind,
            correlation_id=record.correlation_id,
            conversation_id=self.conversation_id,
            state=state,
            **fields,
        )

    def _result(self, kind: MutationKind, record: PendingRecord) -> MutationOutcome:
        result = self._results.get(kind)
        if result is not None and result.correlation_id == record.correlation_id:
            return result
        return MutationOutcome(
            kind=kind,
            correlation_id=record.correlation_id,
            conversation_id=self.conversation_id,
            state=record.state,
        )

    def _finish(self, kind: MutationKind, record: PendingRecord) -> None:
        if self._records.get(kind) is record:
            self._resolved[kind].set()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _publish_update(
        self,
        kind: MutationKind,
        state: MutationState,
        correlation_id: Optional[CorrelationId] = None,
        message: Optional[Message] = None,
        labels: Optional[tuple[Label, ...]] = None,
    ) -> None:
        self._bus.publish(UpdateNotice(
            conversation_id=self.conversation_id,
            correlation_id=correlation_id,
            mutation=kind,
            state=state,
            message=message,
            labels=labels,
        ))

    def _raise_revert(self, notice: RevertNotice) -> None:
        self._bus.publish(notice)
        if self._on_revert is not None:
            self._on_revert(notice)

    def _next_timestamp(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_sent_at is not None and now <= self._last_sent_at:
            now = self._last_sent_at + timedelta(microseconds=1)
        self._last_sent_at = now
        return now

    # Messages

    async def send_message(self, text: str, reply_to_id: Optional[str] = None) -> Optional[MutationOutcome]:
        if not text:
            return None
        if self.state(MutationKind.MESSAGE).in_flight:
            raise MutationInFlight(self.conversation_id, MutationKind.MESSAGE.value)

        correlation_id = CorrelationId(f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}")
        message = Message(
            id=correlation_id,
            type=MessageDirection.SENT,
            name=self._user.name or "",
            phone=self._user.phone or "",
            content=text,
            sender_id=self._user.id,
            receiver_id=self.conversation_id,
            created_at=self._next_timestamp(),
            replied_id=reply_to_id or None,
            client_id=correlation_id,
            is_pending=True,
        )
        record = PendingMessage(correlation_id=correlation_id, conversation_id=self.conversation_id, payload=message)
        self._start(MutationKind.MESSAGE, record)
        self._thread.add_pending(message)
        self._publish_update(MutationKind.MESSAGE, MutationState.OPTIMISTIC, correlation_id, message=message)

        if await self._store.add_message(record):
            self._transition(record, MutationState.PERSISTED)
        else:
            logger.warning(f"Message {correlation_id} is not durable; it will not survive a restart")
        return await self._submit_message(record)

    async def _submit_message(self, record: PendingMessage) -> MutationOutcome:
        if not self._is_current(MutationKind.MESSAGE, record):
            return self._result(MutationKind.MESSAGE, record)
        self._transition(record, MutationState.SUBMITTED)
        payload = record.payload
        try:
            saved = await self._service.insert(MESSAGES_TABLE, {
                "sender_id": payload.sender_id,
                "receiver_id": payload.receiver_id,
                "content": payload.content,
                "replied_id": payload.replied_id,
                "client_id": record.correlation_id,
            })
        except TransientRemoteFailure as e:
            return await self._revert_message(record, str(e))

        if self._is_current(MutationKind.MESSAGE, record):
            confirmed = self._normalizer.message(saved, self._partner)
            if isinstance(confirmed, MalformedEvent):
                logger.warning(f"Insert result for {record.correlation_id} unreadable; waiting for its echo")
                return self._result(MutationKind.MESSAGE, record)
            self._confirm_message(record, confirmed)
            await self._forget_message(record)
        return self._result(MutationKind.MESSAGE, record)

    def _confirm_message(self, record: PendingMessage, message: Message) -> None:
        self._thread.confirm(record.correlation_id, message)
        self._resolve(MutationKind.MESSAGE, record, MutationState.CONFIRMED, message=message)
        self._publish_update(MutationKind.MESSAGE, MutationState.CONFIRMED, record.correlation_id, message=message)

    async def _forget_message(self, record: PendingMessage) -> None:
        await self._store.remove_message(self.conversation_id, record.correlation_id)
        self._finish(MutationKind.MESSAGE, record)

    async def _revert_message(self, record: PendingMessage, reason: str) -> MutationOutcome:
        if not self._is_current(MutationKind.MESSAGE, record):
            return self._result(MutationKind.MESSAGE, record)
        logger.error(f"Sending message {record.correlation_id} to {self.conversation_id} failed: {reason}")
        self._thread.discard(record.correlation_id)
        self._resolve(MutationKind.MESSAGE, record, MutationState.REVERTED, error=reason)
        await self._store.remove_message(self.conversation_id, record.correlation_id)
        self._finish(MutationKind.MESSAGE, record)
        self._raise_revert(RevertNotice(
            conversation_id=self.conversation_id,
            correlation_id=record.correlation_id,
            mutation=MutationKind.MESSAGE,
            reason=reason,
            draft=record.payload.content,
        ))
        return self._result(MutationKind.MESSAGE, record)

    def on_message_event(self, event: ChangeEvent) -> None:
        message = self._normalizer.message(event.new, self._partner)
        if isinstance(message, MalformedEvent):
            return
        if message.partner_id(self._user.id) != self.conversation_id:
            return

        if event.type == ChangeType.UPDATE:
            if self._thread.replace(message):
                self._publish_update(MutationKind.MESSAGE, MutationState.CONFIRMED, message=message)
            return

        record = self._records.get(MutationKind.MESSAGE)
        if (
            isinstance(record, PendingMessage)
            and message.client_id == record.correlation_id
            and self._is_current(MutationKind.MESSAGE, record)
        ):
            self._confirm_message(record, message)
            self._spawn(self._forget_message(record))
            return

        if message.client_id and self._thread.is_pending(message.client_id):
            # Recovered pending message confirmed by its original submission.
            self._spawn(self._store.remove_message(self.conversation_id, message.client_id))
        if self._thread.apply_echo(message):
            self._publish_update(MutationKind.MESSAGE, MutationState.CONFIRMED, message=message)

    # Labels

    async def set_labels(self, labels: Iterable[Label]) -> MutationOutcome:
        if self.state(MutationKind.LABELS).in_flight:
            raise MutationInFlight(self.conversation_id, MutationKind.LABELS.value)
        chosen = unique_labels(list(labels))
        record = PendingLabelAssignment(
            correlation_id=CorrelationId(f"{LABEL_TEMP_ID_PREFIX}{uuid.uuid4()}"),
            conversation_id=self.conversation_id,
            user_id=self._user.id,
            payload=chosen,
        )
        self._start(MutationKind.LABELS, record)
        self._labels.set_overlay(record.correlation_id, chosen)
        self._publish_update(MutationKind.LABELS, MutationState.OPTIMISTIC, record.correlation_id, labels=chosen)

        if await self._store.save_labels(self._user.id, self.conversation_id, chosen):
            self._transition(record, MutationState.PERSISTED)
        else:
            logger.warning(f"Labels {record.correlation_id} are not durable; they will not survive a restart")
        return await self._submit_labels(record)

    async def _submit_labels(self, record: PendingLabelAssignment) -> MutationOutcome:
        if not self._is_current(MutationKind.LABELS, record):
            return self._result(MutationKind.LABELS, record)
        self._transition(record, MutationState.SUBMITTED)
        assignment = LabelAssignment(
            user_id=self._user.id, chat_partner_id=self.conversation_id, labels=record.payload,
        )
        try:
            await self._service.upsert(LABELS_TABLE, assignment.to_row(), LABELS_CONFLICT_KEY)
        except TransientRemoteFailure as e:
            return await self._revert_labels(record, str(e))

        if self._label_confirmation == "ack" and self._is_current(MutationKind.LABELS, record):
            self._confirm_labels(record, record.payload)
            await self._forget_labels(record)
        return self._result(MutationKind.LABELS, record)

    def _confirm_labels(self, record: PendingLabelAssignment, labels: tuple[Label, ...]) -> None:
        self._labels.confirmed = labels
        self._labels.clear_overlay(record.correlation_id)
        self._resolve(MutationKind.LABELS, record, MutationState.CONFIRMED, labels=labels)
        self._publish_update(MutationKind.LABELS, MutationState.CONFIRMED, record.correlation_id, labels=labels)

    async def _forget_labels(self, record: PendingLabelAssignment) -> None:
        await self._store.clear_labels(self._user.id, self.conversation_id)
        self._finish(MutationKind.LABELS, record)

    async def _revert_labels(self, record: PendingLabelAssignment, reason: str) -> MutationOutcome:
        if not self._is_current(MutationKind.LABELS, record):
            return self._result(MutationKind.LABELS, record)
        logger.error(f"Updating labels for {self.conversation_id} failed: {reason}")
        self._labels.clear_overlay(record.correlation_id)
        self._resolve(MutationKind.LABELS, record, MutationState.REVERTED, error=reason)
        await self.refresh_labels()
        await self._store.clear_labels(self._user.id, self.conversation_id)
        self._finish(MutationKind.LABELS, record)
        self._raise_revert(RevertNotice(
            conversation_id=self.conversation_id,
            correlation_id=record.correlation_id,
            mutation=MutationKind.LABELS,
            reason=reason,
        ))
        return self._result(MutationKind.LABELS, record)

    async def refresh_labels(self) -> bool:
        """Re-read the confirmed label assignment. Keeps the last known one on failure."""
        try:
            rows = await self._service.query(
                LABELS_TABLE, {"user_id": self._user.id, "chat_partner_id": self.conversation_id},
            )
        except TransientRemoteFailure as e:
            logger.error(f"Fetching labels for {self.conversation_id} failed: {e}")
            return False
        labels: tuple[Label, ...] = ()
        if rows:
            assignment = self._normalizer.label_assignment(rows[0])
            if isinstance(assignment, LabelAssignment):
                labels = assignment.labels
        self._labels.confirmed = labels

        # An echo lost while the push channel was down: the fetched row is the confirmation.
        record = self._records.get(MutationKind.LABELS)
        if (
            isinstance(record, PendingLabelAssignment)
            and self._is_current(MutationKind.LABELS, record)
            and record.state == MutationState.SUBMITTED
            and {label.id for label in labels} == {label.id for label in record.payload}
        ):
            self._confirm_labels(record, labels)
            await self._forget_labels(record)
        return True

    def on_label_event(self, event: ChangeEvent) -> None:
        if event.type not in (ChangeType.INSERT, ChangeType.UPDATE):
            return
        assignment = self._normalizer.label_assignment(event.new)
        if isinstance(assignment, MalformedEvent):
            return
        if assignment.user_id != self._user.id or assignment.chat_partner_id != self.conversation_id:
            return

        record = self._records.get(MutationKind.LABELS)
        if (
            isinstance(record, PendingLabelAssignment)
            and self._is_current(MutationKind.LABELS, record)
            and record.state == MutationState.SUBMITTED
        ):
            self._confirm_labels(record, assignment.labels)
            self._spawn(self._forget_labels(record))
            return
        self._labels.confirmed = assignment.labels
        self._publish_update(MutationKind.LABELS, MutationState.CONFIRMED, labels=assignment.labels)

    # Restart recovery

    async def recover(self, resubmit: bool = True) -> None:
        """Reload mutations a previous session left unconfirmed.

        Call after the confirmed history is loaded: pending messages it already
        contains are resolved on the spot, the rest are shown and, with
        `resubmit`, sent again one at a time.
        """
        confirmed_clients = self._thread.confirmed_client_ids()
        outstanding: list[PendingMessage] = []
        for record in await self._store.load_messages(self.conversation_id):
            if record.correlation_id in confirmed_clients:
                await self._store.remove_message(self.conversation_id, record.correlation_id)
                continue
            self._thread.add_pending(record.payload)
            self._publish_update(
                MutationKind.MESSAGE, MutationState.OPTIMISTIC, record.correlation_id, message=record.payload,
            )
            outstanding.append(record)
        if outstanding:
            logger.info(f"Recovered {len(outstanding)} pending message(s) for {self.conversation_id}")

        stored_labels = await self._store.load_labels(self._user.id, self.conversation_id)
        if stored_labels is not None and not self.state(MutationKind.LABELS).in_flight:
            label_record = PendingLabelAssignment(
                correlation_id=CorrelationId(f"{LABEL_TEMP_ID_PREFIX}{uuid.uuid4()}"),
                conversation_id=self.conversation_id,
                user_id=self._user.id,
                payload=stored_labels,
                state=MutationState.PERSISTED,
            )
            self._start(MutationKind.LABELS, label_record)
            self._labels.set_overlay(label_record.correlation_id, stored_labels)
            self._publish_update(
                MutationKind.LABELS, MutationState.OPTIMISTIC, label_record.correlation_id, labels=stored_labels,
            )
            if resubmit:
                await self._submit_labels(label_record)

        if resubmit:
            for record in outstanding:
                await self._resubmit_message(record)

    async def _resubmit_message(self, record: PendingMessage) -> None:
        while self.state(MutationKind.MESSAGE).in_flight:
            await self._resolved[MutationKind.MESSAGE].wait()
        if not self._thread.is_pending(record.correlation_id):
            return
        record.state = MutationState.PERSISTED
        self._start(MutationKind.MESSAGE, record)
        await self._submit_message(record)
