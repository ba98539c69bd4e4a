"""
Cross-view notification bus.

One process-wide broadcast channel for mutation lifecycle notices. Views do not
share memory; they stay consistent by consuming the same notices. Delivery is
at-least-once, so consumers filter through a NoticeLedger.
"""

import logging
from collections import OrderedDict
from typing import Callable, Union

from inbox_sync.models.events import RevertNotice, UpdateNotice
from inbox_sync.models.pending import MutationState

logger = logging.getLogger("inbox_sync.bus")

Notice = Union[UpdateNotice, RevertNotice]
NoticeHandler = Callable[[Notice], None]


class NotificationBus:
    def __init__(self) -> None:
        self._handlers: list[NoticeHandler] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def subscribe(self, handler: NoticeHandler) -> Callable[[], None]:
        """Add a handler. Returns a function that removes it."""
        self._handlers.append(handler)

        def remove() -> None:
            try:
                self._handlers.remove(handler)
            except ValueError:
                pass
        return remove

    def publish(self, notice: Notice) -> None:
        logger.debug(f"publish {notice.kind.value} {notice.mutation.value} for {notice.conversation_id}")
        for handler in list(self._handlers):
            try:
                handler(notice)
            except Exception:
                # One broken view must not starve the others.
                logger.exception(f"Notice handler {handler!r} failed")


class NoticeLedger:
    """Remembers which notices a consumer already applied.

    Keyed by conversation id + correlation id (+ notice stage). Once a
    correlation is resolved, late optimistic updates for it are ignored.
    Notices without a correlation id carry confirmed state that is applied by
    replacement, so they always pass.
    """

    def __init__(self, max_entries: int = 2048):
        self._max_entries = max_entries
        self._seen: "OrderedDict[tuple[str, ...], None]" = OrderedDict()

    def _remember(self, key: tuple[str, ...]) -> None:
        self._seen[key] = None
        while len(self._seen) > self._max_entries:
            self._seen.popitem(last=False)

    def accept(self, notice: Notice) -> bool:
        if notice.correlation_id is None:
            return True
        base = (notice.conversation_id, notice.correlation_id)
        stage = notice.kind.value if isinstance(notice, RevertNotice) else notice.state.value
        key = base + (stage,)
        if key in self._seen:
            return False
        if base + ("resolved",) in self._seen:
            return False
        self._remember(key)
        if isinstance(notice, RevertNotice) or notice.state == MutationState.CONFIRMED:
            self._remember(base + ("resolved",))
        return True


bus = NotificationBus()
