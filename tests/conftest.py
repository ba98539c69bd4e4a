"""Shared fakes: an in-memory data service standing in for REST + change feed."""

import asyncio
import itertools
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional

import pytest

from inbox_sync.bus import NotificationBus
from inbox_sync.errors import TransientRemoteFailure
from inbox_sync.models.events import ChangeEvent
from inbox_sync.models.profile import Profile
from inbox_sync.normalizer import EventNormalizer
from inbox_sync.projector import ConversationSearchCache
from inbox_sync.store import MemoryStore, PendingStore
from inbox_sync.transport import filters as row_filters
from inbox_sync.transport.remote import LABEL_CATALOG_TABLE, LABELS_TABLE, MESSAGES_TABLE, PROFILES_TABLE

USER_ID = "u1"

LABEL_A = {"id": "a", "label_name": "Urgent", "color": "red"}
LABEL_B = {"id": "b", "label_name": "Family", "color": "green"}


def at(minutes: int) -> str:
    """An ISO timestamp `minutes` after a fixed point in the past."""
    return (datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes)).isoformat()


@dataclass
class FakeSubscription:
    table: str
    filters: Mapping[str, Any]
    on_event: Callable[[ChangeEvent], None]


class FakeDataService:
    """In-memory DataService.

    echo: "before" pushes a write's change event before the call returns,
    "deferred" queues it until deliver(), "none" never pushes it.
    hold: when set to an Event, writes wait on it before touching the tables.
    """

    def __init__(self, echo: str = "before"):
        self.echo = echo
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.subscriptions: list[FakeSubscription] = []
        self.queued: list[ChangeEvent] = []
        self.fail_inserts = False
        self.fail_upserts = False
        self.fail_queries: set[str] = set()
        self.fail_subscribes: set[str] = set()
        self.hold: Optional[asyncio.Event] = None
        self.inserts: list[dict[str, Any]] = []
        self.upserts: list[dict[str, Any]] = []
        self.reconnect_handlers: list[Callable[[], None]] = []
        self._ids = itertools.count(1)
        self._last_created: Optional[datetime] = None

    def seed(self, table: str, *rows: dict[str, Any]) -> None:
        self.tables.setdefault(table, []).extend(dict(row) for row in rows)

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables.get(table, [])

    def _created_at(self) -> str:
        now = datetime.now(timezone.utc)
        if self._last_created is not None and now <= self._last_created:
            now = self._last_created + timedelta(microseconds=1)
        self._last_created = now
        return now.isoformat()

    async def query(self, table, filters=None, *, order=None):
        if table in self.fail_queries:
            raise TransientRemoteFailure(f"query {table} failed", status=503)
        rows = [dict(r) for r in self.rows(table) if row_filters.matches(r, filters)]
        if order:
            column, _, direction = order.partition(".")
            rows.sort(key=lambda r: str(r.get(column)), reverse=direction == "desc")
        return rows

    async def insert(self, table, row):
        if self.hold is not None:
            await self.hold.wait()
        if self.fail_inserts:
            raise TransientRemoteFailure("HTTP 500: insert failed", status=500)
        saved = {"is_read": False, **row, "id": f"s{next(self._ids)}", "created_at": self._created_at()}
        self.inserts.append(dict(row))
        self.seed(table, saved)
        self._push(table, "INSERT", saved)
        return dict(saved)

    async def upsert(self, table, row, conflict_key):
        if self.hold is not None:
            await self.hold.wait()
        if self.fail_upserts:
            raise TransientRemoteFailure("HTTP 500: upsert failed", status=500)
        self.upserts.append(dict(row))
        keys = conflict_key.split(",")
        existing = self.rows(table)
        for index, current in enumerate(existing):
            if all(current.get(k) == row.get(k) for k in keys):
                existing[index] = dict(row)
                self._push(table, "UPDATE", row)
                return None
        self.seed(table, row)
        self._push(table, "INSERT", row)
        return None

    async def subscribe(self, table, filters, on_event):
        if table in self.fail_subscribes:
            raise TransientRemoteFailure(f"Subscribe to {table} failed: timeout")
        sub = FakeSubscription(table, filters, on_event)
        self.subscriptions.append(sub)
        return sub

    async def unsubscribe(self, handle):
        if handle in self.subscriptions:
            self.subscriptions.remove(handle)

    def add_reconnect_handler(self, handler):
        self.reconnect_handlers.append(handler)
        return lambda: self.reconnect_handlers.remove(handler)

    def reconnect(self) -> None:
        """The push channel came back; subscriptions were re-sent."""
        for handler in list(self.reconnect_handlers):
            handler()

    def _push(self, table: str, event_type: str, row: dict[str, Any]) -> None:
        if self.echo == "none":
            return
        event = ChangeEvent.model_validate({"table": table, "eventType": event_type, "new": dict(row)})
        if self.echo == "deferred":
            self.queued.append(event)
        else:
            self.dispatch(event)

    def emit(self, table: str, event_type: str, row: dict[str, Any]) -> None:
        """A change made elsewhere (the other participant, another device)."""
        if event_type == "INSERT":
            self.seed(table, row)
        self.dispatch(ChangeEvent.model_validate({"table": table, "eventType": event_type, "new": dict(row)}))

    def deliver(self) -> None:
        queued, self.queued = self.queued, []
        for event in queued:
            self.dispatch(event)

    def dispatch(self, event: ChangeEvent) -> None:
        for sub in list(self.subscriptions):
            if sub.table == event.table and row_filters.matches(event.new, sub.filters):
                sub.on_event(event)


async def until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    for _ in range(int(timeout / 0.005)):
        if predicate():
            return
        await asyncio.sleep(0.005)
    raise AssertionError("condition not reached")


def seed_inbox(service: FakeDataService) -> None:
    """Me (u1) talking to P1 and P2; P2 already labelled Urgent."""
    service.seed(
        PROFILES_TABLE,
        {"id": USER_ID, "name": "Me", "phone": "555-0100"},
        {"id": "P1", "name": "Alice", "phone": "555-0101"},
        {"id": "P2", "name": "Bob", "phone": "555-0102"},
    )
    service.seed(
        MESSAGES_TABLE,
        {"id": "m1", "sender_id": "P1", "receiver_id": USER_ID, "content": "hi", "created_at": at(1)},
        {"id": "m2", "sender_id": USER_ID, "receiver_id": "P1", "content": "hey", "created_at": at(2)},
        {"id": "m10", "sender_id": "P2", "receiver_id": USER_ID, "content": "yo", "created_at": at(3)},
    )
    service.seed(LABEL_CATALOG_TABLE, LABEL_A, LABEL_B)
    service.seed(LABELS_TABLE, {"user_id": USER_ID, "chat_partner_id": "P2", "label_name": [LABEL_A]})


@pytest.fixture
def service() -> FakeDataService:
    svc = FakeDataService()
    seed_inbox(svc)
    return svc


@pytest.fixture
def backend() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def store(backend) -> PendingStore:
    return PendingStore(backend)


@pytest.fixture
def user() -> Profile:
    return Profile(id=USER_ID, name="Me", phone="555-0100")


@pytest.fixture
def normalizer(user) -> EventNormalizer:
    return EventNormalizer(user)


@pytest.fixture
def notice_bus() -> NotificationBus:
    return NotificationBus()


@pytest.fixture
def cache() -> ConversationSearchCache:
    return ConversationSearchCache()
