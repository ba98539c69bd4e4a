"""Notification bus fan-out and the idempotency ledger."""

from inbox_sync.bus import NoticeLedger, NotificationBus
from inbox_sync.models.events import RevertNotice, UpdateNotice
from inbox_sync.models.pending import MutationKind, MutationState


def update(state: MutationState, correlation_id="temp_1", cid="P1") -> UpdateNotice:
    return UpdateNotice(conversation_id=cid, correlation_id=correlation_id, mutation=MutationKind.MESSAGE, state=state)


def test_every_subscriber_receives_notices():
    bus = NotificationBus()
    first, second = [], []
    bus.subscribe(first.append)
    remove = bus.subscribe(second.append)

    bus.publish(update(MutationState.OPTIMISTIC))
    remove()
    remove()
    bus.publish(update(MutationState.CONFIRMED))

    assert len(first) == 2
    assert len(second) == 1
    assert bus.subscriber_count == 1


def test_failing_handler_does_not_block_others():
    bus = NotificationBus()
    received = []

    def broken(_notice):
        raise RuntimeError("boom")

    bus.subscribe(broken)
    bus.subscribe(received.append)
    bus.publish(update(MutationState.OPTIMISTIC))
    assert len(received) == 1


def test_ledger_rejects_duplicates():
    ledger = NoticeLedger()
    assert ledger.accept(update(MutationState.OPTIMISTIC))
    assert not ledger.accept(update(MutationState.OPTIMISTIC))
    assert ledger.accept(update(MutationState.CONFIRMED))
    assert not ledger.accept(update(MutationState.CONFIRMED))


def test_ledger_ignores_late_optimistic_after_resolution():
    ledger = NoticeLedger()
    revert = RevertNotice(conversation_id="P1", correlation_id="temp_1", mutation=MutationKind.MESSAGE)
    assert ledger.accept(revert)
    assert not ledger.accept(revert)
    assert not ledger.accept(update(MutationState.OPTIMISTIC))


def test_ledger_keys_by_conversation():
    ledger = NoticeLedger()
    assert ledger.accept(update(MutationState.CONFIRMED, cid="P1"))
    assert ledger.accept(update(MutationState.CONFIRMED, cid="P2"))


def test_uncorrelated_notices_always_pass():
    ledger = NoticeLedger()
    notice = update(MutationState.CONFIRMED, correlation_id=None)
    assert ledger.accept(notice)
    assert ledger.accept(notice)


def test_ledger_is_bounded():
    ledger = NoticeLedger(max_entries=4)
    for i in range(10):
        ledger.accept(update(MutationState.OPTIMISTIC, correlation_id=f"temp_{i}"))
    assert ledger.accept(update(MutationState.OPTIMISTIC, correlation_id="temp_0"))
