"""
Integration tests for inbox-sync: tests against a real data service.

Requires environment variables:
  INBOX_SYNC_ACCESS_TOKEN : valid access token
  INBOX_SYNC_USER_ID      : user ID
  INBOX_SYNC_PARTNER_ID   : a chat partner the user may message
  INBOX_SYNC_BASE_URL     : (optional) defaults to http://localhost:54321
  INBOX_SYNC_API_KEY      : (optional) project API key

Run: INBOX_SYNC_INTEGRATION=1 pytest tests/integration/ -v
"""

import os
import uuid

import pytest

from inbox_sync import AsyncInboxSync, MutationKind, MutationState
from inbox_sync.store import MemoryStore

SKIP = not os.environ.get("INBOX_SYNC_INTEGRATION")
ACCESS_TOKEN = os.environ.get("INBOX_SYNC_ACCESS_TOKEN", "")
USER_ID = os.environ.get("INBOX_SYNC_USER_ID", "")
PARTNER_ID = os.environ.get("INBOX_SYNC_PARTNER_ID", "")
BASE_URL = os.environ.get("INBOX_SYNC_BASE_URL", "http://localhost:54321")
API_KEY = os.environ.get("INBOX_SYNC_API_KEY")

pytestmark = pytest.mark.skipif(SKIP, reason="INBOX_SYNC_INTEGRATION not set")


def make_client(**kwargs) -> AsyncInboxSync:
    return AsyncInboxSync(
        access_token=ACCESS_TOKEN, user_id=USER_ID, base_url=BASE_URL, api_key=API_KEY, store=MemoryStore(), **kwargs,
    )


class TestConnectionLifecycle:
    @pytest.mark.asyncio
    async def test_connects_and_receives_ready(self):
        client = make_client()
        await client.connect()
        assert client.connected
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_rejects_invalid_token(self):
        client = AsyncInboxSync(access_token="invalid", user_id=USER_ID, base_url=BASE_URL, store=MemoryStore())
        with pytest.raises(Exception):
            await client.connect()


class TestConversationList:
    @pytest.mark.asyncio
    async def test_lists_conversations(self):
        client = make_client()
        await client.connect()
        try:
            view = await client.conversations()
            assert all(s.person_id != USER_ID for s in view.summaries)
        finally:
            await client.disconnect()


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_send_is_confirmed_once(self):
        client = make_client()
        await client.connect()
        try:
            thread = await client.open_thread(PARTNER_ID)
            text = f"inbox-sync integration {uuid.uuid4().hex[:8]}"
            outcome = await thread.send_message(text)
            assert outcome.state == MutationState.CONFIRMED
            assert not outcome.message.is_temporary

            await thread.refresh_messages()
            assert [m.content for m in thread.messages].count(text) == 1
        finally:
            await client.disconnect()


class TestLabels:
    @pytest.mark.asyncio
    async def test_label_round_trip_confirmed_by_echo(self):
        client = make_client()
        await client.connect()
        try:
            thread = await client.open_thread(PARTNER_ID)
            original = thread.selected_labels
            if not thread.label_catalog:
                pytest.skip("No labels in catalog")

            toggled = thread.toggle_label(thread.label_catalog[0])
            await thread.set_labels(toggled)
            assert await thread.wait_resolved(MutationKind.LABELS, timeout=15) == MutationState.CONFIRMED

            await thread.set_labels(original)
            await thread.wait_resolved(MutationKind.LABELS, timeout=15)
        finally:
            await client.disconnect()
