"""
AsyncInboxSync: main client.
"""

import logging
from pathlib import Path
from typing import Optional

from inbox_sync.bus import NotificationBus, bus as default_bus
from inbox_sync.conversations import ConversationListView
from inbox_sync.debounce import SEARCH_DEBOUNCE_S
from inbox_sync.errors import ConnectionError, TransientRemoteFailure
from inbox_sync.lifecycle import LabelConfirmation, RevertHandler
from inbox_sync.normalizer import EventNormalizer, profile_or_placeholder
from inbox_sync.store import DEFAULT_STORE_PATH, JsonFileStore, KeyValueStore, PendingStore
from inbox_sync.thread import ThreadView
from inbox_sync.transport.http import DEFAULT_BASE_URL, HttpClient
from inbox_sync.transport.remote import PROFILES_TABLE, DataService, RemoteDataService
from inbox_sync.transport.socketio import ChangeFeed

logger = logging.getLogger("inbox_sync.client")


class AsyncInboxSync:
    """Async client: one conversation list and at most one open thread."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        user_id: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        api_key: Optional[str] = None,
        store_path: Path = DEFAULT_STORE_PATH,
        store: Optional[KeyValueStore] = None,
        service: Optional[DataService] = None,
        bus: Optional[NotificationBus] = None,
        label_confirmation: LabelConfirmation = "echo",
        resubmit_recovered: bool = True,
        debounce_s: float = SEARCH_DEBOUNCE_S,
        transports: Optional[list[str]] = None,
        ready_timeout: float = 15.0,
    ):
        self._base_url = base_url
        self._access_token = access_token
        self._user_id = user_id
        self._label_confirmation = label_confirmation
        self._resubmit_recovered = resubmit_recovered
        self._debounce_s = debounce_s

        self._http: Optional[HttpClient] = None
        self._feed: Optional[ChangeFeed] = None
        if service is None:
            self._http = HttpClient(base_url=base_url, token=access_token, api_key=api_key)
            self._feed = ChangeFeed(base_url, access_token or "", transports=transports, ready_timeout=ready_timeout)
            service = RemoteDataService(self._http, self._feed)
        self.service: DataService = service
        self.store = PendingStore(store if store is not None else JsonFileStore(store_path))
        self.bus = bus if bus is not None else default_bus

        self._normalizer: Optional[EventNormalizer] = None
        self._conversations: Optional[ConversationListView] = None
        self._thread: Optional[ThreadView] = None

    @property
    def connected(self) -> bool:
        return self._normalizer is not None

    @property
    def normalizer(self) -> EventNormalizer:
        self._ensure_connected()
        return self._normalizer  # type: ignore[return-value]

    @property
    def active_thread(self) -> Optional[ThreadView]:
        return self._thread

    async def connect(self, access_token: Optional[str] = None, user_id: Optional[str] = None) -> None:
        token = access_token or self._access_token
        uid = user_id or self._user_id
        if not uid:
            raise ConnectionError("user_id required. Run `inbox auth login` first.")
        if self._http is not None:
            if not token:
                raise ConnectionError("access_token required. Run `inbox auth login` first.")
            self._http.set_token(token)
        if self._feed is not None:
            await self._feed.connect()

        try:
            rows = await self.service.query(PROFILES_TABLE, {"id": uid})
        except TransientRemoteFailure as e:
            logger.error(f"Own profile lookup failed: {e}")
            rows = []
        self._user_id = uid
        self._normalizer = EventNormalizer(profile_or_placeholder(rows, uid))

    async def disconnect(self) -> None:
        await self.close_thread()
        if self._conversations is not None:
            await self._conversations.close()
            self._conversations = None
        if self._feed is not None:
            await self._feed.disconnect()
        if self._http is not None:
            await self._http.close()
        self._normalizer = None

    async def conversations(self) -> ConversationListView:
        """The conversation list, opened on first use."""
        self._ensure_connected()
        if self._conversations is None:
            self._conversations = ConversationListView(
                self.service, self.bus, self._normalizer,  # type: ignore[arg-type]
                debounce_s=self._debounce_s,
            )
            await self._conversations.open()
        return self._conversations

    async def open_thread(self, partner_id: str, on_revert: Optional[RevertHandler] = None) -> ThreadView:
        """Switch the active conversation. The previous thread is closed first."""
        self._ensure_connected()
        if self._thread is not None and self._thread.conversation_id == partner_id and self._thread.is_open:
            return self._thread
        await self.close_thread()
        thread = ThreadView(
            self.service, self.store, self.bus, self._normalizer,  # type: ignore[arg-type]
            partner_id,
            label_confirmation=self._label_confirmation,
            resubmit_recovered=self._resubmit_recovered,
            on_revert=on_revert,
        )
        self._thread = thread
        await thread.open()
        return thread

    async def close_thread(self) -> None:
        if self._thread is not None:
            thread, self._thread = self._thread, None
            await thread.close()

    def _ensure_connected(self) -> None:
        if self._normalizer is None:
            raise ConnectionError("Not connected. Call connect() first.")
