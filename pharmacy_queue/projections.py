"""
Push projections of queue and reservation state.

Every ``subscribe_*`` function delivers the current value to ``on_change``
right away and again each time the value changes, and returns a handle that
must be closed to release the listener. Handles are idempotent.
"""
from __future__ import annotations

from typing import Any, Callable, Optional

from pharmacy_queue.domain import QueueMeta, TicketView
from pharmacy_queue.queue_engine import (
    queue_topic,
    read_next_waiting,
    read_queue_meta,
    read_ticket,
    read_waiting_count,
)
from pharmacy_queue.reservation_engine import (
    ALL_RESERVATIONS_TOPIC,
    read_reservations,
    reservation_topic,
)
from pharmacy_queue.store import Store, Subscription

OnError = Optional[Callable[[Exception], None]]


def subscribe_queue_meta(
    store: Store, branch_id: str, on_change: Callable[[QueueMeta], None], on_error: OnError = None
) -> Subscription:
    return store.subscribe(
        [queue_topic(branch_id)],
        lambda session: read_queue_meta(session, branch_id),
        on_change,
        on_error,
    )


def subscribe_next_waiting(
    store: Store,
    branch_id: str,
    on_change: Callable[[Optional[TicketView]], None],
    on_error: OnError = None,
) -> Subscription:
    return store.subscribe(
        [queue_topic(branch_id)],
        lambda session: read_next_waiting(session, branch_id),
        on_change,
        on_error,
    )


def subscribe_waiting_count(
    store: Store, branch_id: str, on_change: Callable[[int], None], on_error: OnError = None
) -> Subscription:
    return store.subscribe(
        [queue_topic(branch_id)],
        lambda session: read_waiting_count(session, branch_id),
        on_change,
        on_error,
    )


def subscribe_reservations(
    store: Store,
    on_change: Callable[[list], None],
    branch_id: Optional[str] = None,
    on_error: OnError = None,
) -> Subscription:
    topic = reservation_topic(branch_id) if branch_id else ALL_RESERVATIONS_TOPIC
    return store.subscribe(
        [topic],
        lambda session: read_reservations(session, branch_id),
        on_change,
        on_error,
    )


class NowServingSubscription:
    """
    Follows ``serving_ticket_id`` on the queue meta and keeps one inner
    listener on the referenced ticket, replacing it whenever the id changes.
    """

    def __init__(
        self,
        store: Store,
        branch_id: str,
        on_change: Callable[[Optional[TicketView]], None],
        on_error: OnError = None,
    ) -> None:
        self._store = store
        self._branch_id = branch_id
        self._on_change = on_change
        self._on_error = on_error
        self._ticket_id: Any = None
        self._inner: Optional[Subscription] = None
        self.closed = False
        self._started = False
        self._outer = subscribe_queue_meta(store, branch_id, self._on_meta, on_error)

    def _on_meta(self, meta: QueueMeta) -> None:
        if self.closed:
            return
        if self._started and meta.serving_ticket_id == self._ticket_id:
            return
        self._started = True
        self._ticket_id = meta.serving_ticket_id
        if self._inner is not None:
            self._inner.close()
            self._inner = None
        if not self._ticket_id:
            self._on_change(None)
            return
        ticket_id = self._ticket_id
        self._inner = self._store.subscribe(
            [queue_topic(self._branch_id)],
            lambda session: read_ticket(session, ticket_id),
            self._on_change,
            self._on_error,
        )

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._inner is not None:
            self._inner.close()
            self._inner = None
        self._outer.close()

    def __call__(self) -> None:
        self.close()

    def __enter__(self) -> "NowServingSubscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def subscribe_now_serving(
    store: Store,
    branch_id: str,
    on_change: Callable[[Optional[TicketView]], None],
    on_error: OnError = None,
) -> NowServingSubscription:
    return NowServingSubscription(store, branch_id, on_change, on_error)
