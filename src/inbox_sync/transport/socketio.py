"""
Socket.IO change feed: the push channel for table change events.

Connection: {baseUrl}/realtime/socket.io/ with auth={token}.
Waits for `ready` before resolving connect(). Subscriptions registered before
connect are sent once the channel is ready. The server forgets subscriptions
when the transport drops, so every later `ready` (an automatic reconnect)
sends them again and then notifies reconnect handlers, which re-read any
state that changed while the channel was down.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

import socketio
from socketio import exceptions as sio_exceptions
from pydantic import ValidationError

from inbox_sync.errors import TransientRemoteFailure
from inbox_sync.models.events import ChangeEvent
from inbox_sync.transport.filters import matches, to_params

SOCKETIO_PATH = "/realtime/socket.io/"
CHANGE_EVENT = "postgres_changes"

logger = logging.getLogger("inbox_sync.transport.socketio")

ChangeHandler = Callable[[ChangeEvent], None]
ReconnectHandler = Callable[[], None]


@dataclass
class Subscription:
    table: str
    filters: Mapping[str, Any]
    on_event: ChangeHandler
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def wants(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        if event.subscription_id and event.subscription_id != self.id:
            return False
        return matches(event.new or event.old, self.filters)


class ChangeFeed:
    def __init__(
        self,
        base_url: str,
        token: str,
        transports: Optional[list[str]] = None,
        ready_timeout: float = 15.0,
        ack_timeout: float = 10.0,
    ):
        self._base_url = base_url
        self._token = token
        self._transports = transports or ["websocket"]
        self._ready_timeout = ready_timeout
        self._ack_timeout = ack_timeout
        self._sio: Optional[socketio.AsyncClient] = None
        self._connected = False
        self._ready_count = 0
        self._subscriptions: dict[str, Subscription] = {}
        self._reconnect_handlers: list[ReconnectHandler] = []

    @property
    def connected(self) -> bool:
        return self._connected and self._sio is not None and self._sio.connected

    def add_reconnect_handler(self, handler: ReconnectHandler) -> Callable[[], None]:
        """Call `handler` after subscriptions are re-sent on a reconnect. Returns a remover."""
        self._reconnect_handlers.append(handler)

        def remove() -> None:
            try:
                self._reconnect_handlers.remove(handler)
            except ValueError:
                pass
        return remove

    async def connect(self) -> None:
        """Connect and wait for the `ready` event."""
        if self._sio and self._sio.connected:
            return

        self._sio = socketio.AsyncClient()
        self._ready_count = 0
        ready_event = asyncio.Event()

        @self._sio.on("ready")
        async def on_ready(*_args: Any) -> None:
            await self.handle_ready()
            ready_event.set()

        @self._sio.on(CHANGE_EVENT)
        async def on_change(data: Any) -> None:
            self.dispatch(data)

        @self._sio.event
        async def disconnect(_reason: str = "") -> None:
            self._connected = False

        await self._sio.connect(
            self._base_url,
            auth={"token": self._token},
            transports=self._transports,
            socketio_path=SOCKETIO_PATH,
        )

        try:
            await asyncio.wait_for(ready_event.wait(), timeout=self._ready_timeout)
        except asyncio.TimeoutError:
            await self._sio.disconnect()
            raise TimeoutError(f"Timed out waiting for 'ready' event after {self._ready_timeout}s")

        for sub in list(self._subscriptions.values()):
            await self._send_subscribe(sub)

    async def handle_ready(self) -> None:
        self._connected = True
        self._ready_count += 1
        if self._ready_count > 1:
            await self.resubscribe()

    async def resubscribe(self) -> None:
        """Send every registered subscription again, then run the reconnect handlers."""
        logger.info(f"Change feed reconnected, re-sending {len(self._subscriptions)} subscription(s)")
        for sub in list(self._subscriptions.values()):
            try:
                await self._send_subscribe(sub)
            except TransientRemoteFailure as e:
                logger.error(f"{e}; retrying on the next reconnect")
        for handler in list(self._reconnect_handlers):
            try:
                handler()
            except Exception:
                logger.exception(f"Reconnect handler {handler!r} failed")

    def dispatch(self, data: Any) -> None:
        """Route one raw change payload to every matching subscription."""
        if not isinstance(data, dict):
            logger.warning(f"Dropping non-object {CHANGE_EVENT} payload: {data!r:.200}")
            return
        try:
            event = ChangeEvent.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Dropping malformed {CHANGE_EVENT} payload: {e.error_count()} errors")
            return
        for sub in list(self._subscriptions.values()):
            if sub.wants(event):
                sub.on_event(event)

    async def subscribe(self, table: str, filters: Mapping[str, Any], on_event: ChangeHandler) -> Subscription:
        """Register locally first, then wait for the server ack, so no event is missed."""
        sub = Subscription(table=table, filters=filters, on_event=on_event)
        self._subscriptions[sub.id] = sub
        if self.connected:
            try:
                await self._send_subscribe(sub)
            except TransientRemoteFailure:
                self._subscriptions.pop(sub.id, None)
                raise
        return sub

    async def _send_subscribe(self, sub: Subscription) -> None:
        try:
            await self._sio.call(  # type: ignore[union-attr]
                "subscribe",
                {"id": sub.id, "table": sub.table, "filter": to_params(sub.filters)},
                timeout=self._ack_timeout,
            )
        except (sio_exceptions.TimeoutError, sio_exceptions.SocketIOError) as e:
            raise TransientRemoteFailure(f"Subscribe to {sub.table} failed: {e}") from e

    async def unsubscribe(self, sub: Subscription) -> None:
        if self._subscriptions.pop(sub.id, None) is None:
            return
        if not self.connected:
            return
        try:
            await self._sio.emit("unsubscribe", {"id": sub.id})  # type: ignore[union-attr]
        except sio_exceptions.SocketIOError as e:
            logger.warning(f"Unsubscribe {sub.id} failed: {e}")

    async def disconnect(self) -> None:
        self._connected = False
        self._subscriptions.clear()
        if self._sio:
            await self._sio.disconnect()
            self._sio = None
