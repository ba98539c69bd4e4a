"""
Remote data service: the authoritative store the engine reconciles against.

`DataService` is the contract the engine consumes; `RemoteDataService` fulfils it
with the REST client for reads/writes and the Socket.IO change feed for pushes.
Implementations raise TransientRemoteFailure for any network or server error,
and call reconnect handlers once a dropped push channel is subscribed again.
"""

from typing import Any, Callable, Mapping, Optional, Protocol

from inbox_sync.transport.filters import to_params
from inbox_sync.transport.http import HttpClient
from inbox_sync.transport.socketio import ChangeFeed, ChangeHandler, ReconnectHandler, Subscription

MESSAGES_TABLE = "messages"
LABELS_TABLE = "chat_labels"
LABELS_CONFLICT_KEY = "user_id,chat_partner_id"
LABEL_CATALOG_TABLE = "chat_label_separate"
PROFILES_TABLE = "profiles"


class DataService(Protocol):
    async def query(
        self, table: str, filters: Optional[Mapping[str, Any]] = None, *, order: Optional[str] = None,
    ) -> list[dict[str, Any]]: ...

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]: ...

    async def upsert(self, table: str, row: dict[str, Any], conflict_key: str) -> Any: ...

    async def subscribe(self, table: str, filters: Mapping[str, Any], on_event: ChangeHandler) -> Any: ...

    async def unsubscribe(self, handle: Any) -> None: ...

    def add_reconnect_handler(self, handler: ReconnectHandler) -> Callable[[], None]: ...


class RemoteDataService:
    def __init__(self, http: HttpClient, feed: ChangeFeed):
        self._http = http
        self._feed = feed

    async def query(
        self, table: str, filters: Optional[Mapping[str, Any]] = None, *, order: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        return await self._http.select(table, to_params(filters, order))

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        return await self._http.insert(table, row)

    async def upsert(self, table: str, row: dict[str, Any], conflict_key: str) -> Any:
        return await self._http.upsert(table, row, on_conflict=conflict_key)

    async def subscribe(self, table: str, filters: Mapping[str, Any], on_event: ChangeHandler) -> Subscription:
        return await self._feed.subscribe(table, filters, on_event)

    async def unsubscribe(self, handle: Subscription) -> None:
        await self._feed.unsubscribe(handle)

    def add_reconnect_handler(self, handler: ReconnectHandler) -> Callable[[], None]:
        return self._feed.add_reconnect_handler(handler)
