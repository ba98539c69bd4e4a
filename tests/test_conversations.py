"""Conversation list: fetch, cross-view overlays, debounced search."""

import asyncio

import pytest

from inbox_sync.conversations import ConversationListView
from inbox_sync.models.label import Label
from inbox_sync.models.pending import MutationKind, MutationState
from inbox_sync.thread import ThreadView
from inbox_sync.transport.remote import MESSAGES_TABLE, PROFILES_TABLE

from tests.conftest import LABEL_A, LABEL_B, USER_ID, at, until

A = Label(**LABEL_A)
B = Label(**LABEL_B)


async def open_list(service, notice_bus, normalizer, cache, **kwargs) -> ConversationListView:
    view = ConversationListView(service, notice_bus, normalizer, debounce_s=0.01, cache=cache, **kwargs)
    await view.open()
    return view


async def open_thread(service, store, notice_bus, normalizer, partner) -> ThreadView:
    thread = ThreadView(service, store, notice_bus, normalizer, partner)
    await thread.open()
    await thread.wait_recovered()
    return thread


@pytest.fixture
def inbox(service):
    service.seed(PROFILES_TABLE, {"id": "P3", "name": "Zed", "phone": "555-0199"})
    service.seed(MESSAGES_TABLE, {"id": "m0", "sender_id": "P3", "receiver_id": USER_ID, "content": "old", "created_at": at(0)})
    return service


class TestListFetch:
    @pytest.mark.asyncio
    async def test_one_summary_per_partner_newest_first(self, inbox, notice_bus, normalizer, cache):
        view = await open_list(inbox, notice_bus, normalizer, cache)
        summaries = view.summaries
        assert [s.person_id for s in summaries] == ["P2", "P1", "P3"]
        bob = summaries[0]
        assert (bob.name, bob.phone, bob.latest_message, bob.labels) == ("Bob", "555-0102", "yo", (A,))
        assert view.summary("P1").latest_message == "hey"
        assert view.summary("P1").labels == ()
        await view.close()

    @pytest.mark.asyncio
    async def test_missing_profile_gets_placeholder(self, inbox, notice_bus, normalizer, cache):
        inbox.seed(MESSAGES_TABLE, {"id": "q1", "sender_id": "P9", "receiver_id": USER_ID, "content": "?", "created_at": at(4)})
        view = await open_list(inbox, notice_bus, normalizer, cache)
        assert (view.summary("P9").name, view.summary("P9").phone) == ("Unknown User", "N/A")
        await view.close()

    @pytest.mark.asyncio
    async def test_malformed_profile_row_gets_placeholder(self, inbox, notice_bus, normalizer, cache):
        inbox.tables[PROFILES_TABLE] = [row for row in inbox.rows(PROFILES_TABLE) if row["id"] != "P1"]
        inbox.seed(PROFILES_TABLE, {"id": "P1", "name": ["not", "a", "string"]})
        view = await open_list(inbox, notice_bus, normalizer, cache)
        assert await view.refresh() is True
        assert (view.summary("P1").name, view.summary("P1").phone) == ("Unknown User", "N/A")
        assert view.summary("P2").name == "Bob"
        assert any(dropped.source == "profile" for dropped in normalizer.dropped)
        await view.close()

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_list(self, inbox, notice_bus, normalizer, cache):
        view = await open_list(inbox, notice_bus, normalizer, cache)
        before = view.summaries
        inbox.fail_queries.add(MESSAGES_TABLE)
        assert await view.refresh() is False
        assert view.summaries == before
        await view.close()

    @pytest.mark.asyncio
    async def test_incoming_message_moves_conversation_up(self, inbox, notice_bus, normalizer, cache):
        changes = []
        view = await open_list(inbox, notice_bus, normalizer, cache, on_change=lambda: changes.append(1))
        inbox.emit(MESSAGES_TABLE, "INSERT", {
            "id": "m20", "sender_id": "P3", "receiver_id": USER_ID, "content": "back", "created_at": at(30),
        })
        assert view.summaries[0].person_id == "P3"
        assert view.summaries[0].latest_message == "back"
        assert changes
        await view.close()


class TestCrossViewConsistency:
    @pytest.mark.asyncio
    async def test_sent_message_shows_pending_then_confirmed(self, inbox, store, notice_bus, normalizer, cache):
        view = await open_list(inbox, notice_bus, normalizer, cache)
        thread = await open_thread(inbox, store, notice_bus, normalizer, "P3")
        inbox.hold = asyncio.Event()

        task = asyncio.create_task(thread.send_message("hello"))
        await until(lambda: thread.state(MutationKind.MESSAGE) == MutationState.SUBMITTED)
        top = view.summaries[0]
        assert (top.person_id, top.latest_message, top.is_pending) == ("P3", "hello", True)

        inbox.hold.set()
        await task
        top = view.summaries[0]
        assert (top.person_id, top.latest_message, top.is_pending) == ("P3", "hello", False)
        assert not view.projection.has_overlay("P3")
        await thread.close()
        await view.close()

    @pytest.mark.asyncio
    async def test_label_failure_reverts_list_overlay(self, inbox, store, notice_bus, normalizer, cache):
        view = await open_list(inbox, notice_bus, normalizer, cache)
        thread = await open_thread(inbox, store, notice_bus, normalizer, "P2")
        inbox.hold = asyncio.Event()
        inbox.fail_upserts = True

        task = asyncio.create_task(thread.set_labels([A, B]))
        await until(lambda: thread.state(MutationKind.LABELS) == MutationState.SUBMITTED)
        assert view.summary("P2").labels == (A, B)
        assert view.summary("P2").is_pending

        inbox.hold.set()
        outcome = await task
        assert outcome.state == MutationState.REVERTED
        assert view.summary("P2").labels == (A,)
        assert not view.summary("P2").is_pending
        assert not view.projection.has_overlay("P2")
        await thread.close()
        await view.close()

    @pytest.mark.asyncio
    async def test_confirmed_labels_reach_list(self, inbox, store, notice_bus, normalizer, cache):
        view = await open_list(inbox, notice_bus, normalizer, cache)
        thread = await open_thread(inbox, store, notice_bus, normalizer, "P1")
        await thread.set_labels([B])
        assert view.summary("P1").labels == (B,)
        assert not view.summary("P1").is_pending
        await thread.close()
        await view.close()


class TestSearch:
    @pytest.mark.asyncio
    async def test_search_applies_after_pause(self, inbox, notice_bus, normalizer, cache):
        view = await open_list(inbox, notice_bus, normalizer, cache)
        view.search("a")
        view.search("al")
        view.search("alc")
        assert view.query == "alc"
        assert len(view.summaries) == 3
        await asyncio.sleep(0.05)
        assert [s.person_id for s in view.summaries] == ["P1"]

        view.search("", immediate=True)
        assert len(view.summaries) == 3
        await view.close()

    @pytest.mark.asyncio
    async def test_search_survives_refresh(self, inbox, notice_bus, normalizer, cache):
        view = await open_list(inbox, notice_bus, normalizer, cache)
        view.search("zd", immediate=True)
        await view.refresh()
        assert [s.person_id for s in view.summaries] == ["P3"]
        await view.close()

    @pytest.mark.asyncio
    async def test_sort_by_name_toggles(self, inbox, notice_bus, normalizer, cache):
        view = await open_list(inbox, notice_bus, normalizer, cache)
        assert view.toggle_sort_by_name() is True
        assert [s.name for s in view.summaries] == ["Zed", "Bob", "Alice"]
        assert view.toggle_sort_by_name() is False
        assert [s.name for s in view.summaries] == ["Bob", "Alice", "Zed"]
        await view.close()

    @pytest.mark.asyncio
    async def test_contact_search_by_phone_excludes_self(self, inbox, notice_bus, normalizer, cache):
        view = await open_list(inbox, notice_bus, normalizer, cache)
        view.search_contacts("0101")
        await until(lambda: bool(view.contact_results))
        assert [c.name for c in view.contact_results] == ["Alice"]

        view.search_contacts("555-01")
        await asyncio.sleep(0.05)
        assert USER_ID not in {c.person_id for c in view.contact_results}
        assert len(view.contact_results) == 3

        view.search_contacts("  ")
        await asyncio.sleep(0.05)
        assert view.contact_results == []
        await view.close()

    @pytest.mark.asyncio
    async def test_contact_search_skips_malformed_profiles(self, inbox, notice_bus, normalizer, cache):
        inbox.seed(PROFILES_TABLE, {"id": "P7", "name": {"first": "Eve"}, "phone": "555-0777"})
        view = await open_list(inbox, notice_bus, normalizer, cache)
        view.search_contacts("0777")
        await asyncio.sleep(0.05)
        assert view.contact_results == []

        view.search_contacts("0101")
        await until(lambda: bool(view.contact_results))
        assert [c.name for c in view.contact_results] == ["Alice"]
        await view.close()

    @pytest.mark.asyncio
    async def test_close_cancels_pending_search_and_subscriptions(self, inbox, notice_bus, normalizer, cache):
        view = await open_list(inbox, notice_bus, normalizer, cache)
        view.search("alc")
        await view.close()
        await asyncio.sleep(0.05)
        assert len(view.summaries) == 3
        assert inbox.subscriptions == []
        assert notice_bus.subscriber_count == 0


class TestPushChannel:
    @pytest.mark.asyncio
    async def test_failed_subscribe_keeps_list_usable(self, inbox, notice_bus, normalizer, cache):
        inbox.fail_subscribes.add(MESSAGES_TABLE)
        view = await open_list(inbox, notice_bus, normalizer, cache)
        assert not view.subscribed
        assert [s.person_id for s in view.summaries] == ["P2", "P1", "P3"]

        inbox.fail_subscribes.clear()
        await view.open()
        assert view.subscribed
        await view.close()

    @pytest.mark.asyncio
    async def test_reconnect_resubscribes_and_refetches(self, inbox, notice_bus, normalizer, cache):
        inbox.fail_subscribes.add(MESSAGES_TABLE)
        view = await open_list(inbox, notice_bus, normalizer, cache)
        inbox.fail_subscribes.clear()
        inbox.seed(MESSAGES_TABLE, {
            "id": "m30", "sender_id": "P3", "receiver_id": USER_ID, "content": "while away", "created_at": at(40),
        })

        inbox.reconnect()
        await until(lambda: view.subscribed and view.summaries[0].person_id == "P3")
        assert view.summaries[0].latest_message == "while away"
        await view.close()
        assert inbox.reconnect_handlers == []
