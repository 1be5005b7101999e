from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import func, select, update

from pharmacy_queue.domain import (
    IssuedTicket,
    QueueMeta,
    TicketView,
    new_id,
    queue_meta_view,
    ticket_view,
    utcnow,
)
from pharmacy_queue.errors import (
    NotFound,
    QueueUnavailable,
    StoreUnavailable,
    TransactionConflict,
    ValidationError,
)
from pharmacy_queue.models import Branch, QueueState, Ticket
from pharmacy_queue.store import Store, Transaction

logger = logging.getLogger(__name__)


def queue_topic(branch_id: str) -> str:
    return f"queue:{branch_id}"


def _require_branch_id(branch_id: str) -> str:
    branch_id = (branch_id or "").strip()
    if not branch_id:
        raise ValidationError("branch_id is required")
    return branch_id


def _lowest_waiting_query(branch_id: str):
    return (
        select(Ticket)
        .where(Ticket.branch_id == branch_id, Ticket.status == "waiting")
        .order_by(Ticket.ticket_number.asc(), Ticket.created_at.asc())
        .limit(1)
    )


class QueueEngine:
    """
    Per-branch ticket sequence with a single serving slot.

    Ticket lifecycle is waiting -> serving -> done. ``advance_ticket`` does not
    touch whatever was serving before: a ticket skipped with "next" stays in
    ``serving`` until someone completes it, which only ever happens for the
    ticket the slot currently points at.
    """

    def __init__(self, store: Store, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._clock = clock

    def _state_for_update(self, tx: Transaction, branch_id: str) -> QueueState:
        state = tx.get(QueueState, branch_id, for_update=True)
        if state is None:
            if tx.get(Branch, branch_id) is None:
                raise NotFound(f"branch {branch_id} not found")
            state = QueueState(
                branch_id=branch_id,
                current_number=0,
                serving_ticket_id=None,
                updated_at=self._clock(),
            )
            tx.add(state)
            tx.flush()
        return state

    def issue_ticket(self, branch_id: str) -> IssuedTicket:
        branch_id = _require_branch_id(branch_id)

        def _issue(tx: Transaction) -> IssuedTicket:
            now = self._clock()
            state = self._state_for_update(tx, branch_id)
            # Increment in SQL so the row write serializes concurrent kiosks.
            state.current_number = QueueState.current_number + 1
            state.updated_at = now
            tx.flush()
            tx.refresh(state)
            ticket = Ticket(
                id=new_id("tkt"),
                branch_id=branch_id,
                ticket_number=state.current_number,
                status="waiting",
                created_at=now,
            )
            tx.add(ticket)
            tx.touch(queue_topic(branch_id))
            return IssuedTicket(ticket_number=ticket.ticket_number, ticket_id=ticket.id)

        try:
            issued = self.store.transaction(_issue)
        except StoreUnavailable as exc:
            raise QueueUnavailable(f"could not issue ticket for branch {branch_id}") from exc
        logger.info("ticket issued branch=%s number=%s", branch_id, issued.ticket_number)
        return issued

    def advance_ticket(self, branch_id: str) -> Optional[TicketView]:
        branch_id = _require_branch_id(branch_id)

        def _advance(tx: Transaction) -> Optional[TicketView]:
            state = self._state_for_update(tx, branch_id)
            ticket = tx.scalars(_lowest_waiting_query(branch_id)).first()
            state.updated_at = self._clock()
            tx.touch(queue_topic(branch_id))
            if ticket is None:
                state.serving_ticket_id = None
                return None
            # status = 'waiting' guard: two advances never take the same ticket
            result = tx.execute(
                update(Ticket)
                .where(Ticket.id == ticket.id, Ticket.status == "waiting")
                .values(status="serving")
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise TransactionConflict(f"ticket {ticket.id} was taken by another advance")
            tx.refresh(ticket)
            state.serving_ticket_id = ticket.id
            return ticket_view(ticket)

        try:
            ticket = self.store.transaction(_advance)
        except StoreUnavailable as exc:
            raise QueueUnavailable(f"could not advance queue for branch {branch_id}") from exc
        if ticket is None:
            logger.info("advance on empty queue branch=%s", branch_id)
        else:
            logger.info("now serving branch=%s number=%s", branch_id, ticket.ticket_number)
        return ticket

    def complete_ticket(self, branch_id: str) -> Optional[TicketView]:
        branch_id = _require_branch_id(branch_id)

        def _complete(tx: Transaction) -> Optional[TicketView]:
            state = tx.get(QueueState, branch_id, for_update=True)
            if state is None or not state.serving_ticket_id:
                return None
            ticket = tx.get(Ticket, state.serving_ticket_id)
            state.serving_ticket_id = None
            state.updated_at = self._clock()
            tx.touch(queue_topic(branch_id))
            if ticket is None:
                return None
            ticket.status = "done"
            return ticket_view(ticket)

        try:
            ticket = self.store.transaction(_complete)
        except StoreUnavailable as exc:
            raise QueueUnavailable(f"could not complete ticket for branch {branch_id}") from exc
        if ticket is not None:
            logger.info("ticket done branch=%s number=%s", branch_id, ticket.ticket_number)
        return ticket

    def reset_queue(self, branch_id: str) -> int:
        """
        Zero the counter, clear the serving slot, then drain every ticket.

        The metadata reset commits on its own before the drain starts, and the
        drain deletes at most ``store.delete_batch_size`` tickets per batch. If
        a batch fails the counter is already back at zero while some tickets
        remain; the queue keeps working and running the reset again finishes
        the drain.
        """
        branch_id = _require_branch_id(branch_id)
        topic = queue_topic(branch_id)

        def _reset_meta(tx: Transaction) -> None:
            state = self._state_for_update(tx, branch_id)
            state.current_number = 0
            state.serving_ticket_id = None
            state.updated_at = self._clock()
            tx.touch(topic)

        try:
            self.store.transaction(_reset_meta)
        except StoreUnavailable as exc:
            raise QueueUnavailable(f"could not reset queue for branch {branch_id}") from exc

        batch_size = self.store.delete_batch_size
        deleted = 0
        while True:
            ids = self.store.read(
                lambda session: list(
                    session.scalars(
                        select(Ticket.id).where(Ticket.branch_id == branch_id).limit(batch_size)
                    )
                )
            )
            if not ids:
                break
            try:
                deleted += self.store.batch_delete(Ticket, ids, topic)
            except StoreUnavailable as exc:
                logger.warning(
                    "queue reset interrupted branch=%s deleted=%s remaining>=%s",
                    branch_id,
                    deleted,
                    len(ids),
                )
                raise QueueUnavailable(
                    f"queue reset for branch {branch_id} stopped after deleting {deleted} tickets"
                ) from exc
        logger.info("queue reset branch=%s deleted=%s", branch_id, deleted)
        return deleted

    def get_queue_meta(self, branch_id: str) -> QueueMeta:
        branch_id = _require_branch_id(branch_id)
        return self.store.read(lambda session: read_queue_meta(session, branch_id))

    def get_now_serving(self, branch_id: str) -> Optional[TicketView]:
        branch_id = _require_branch_id(branch_id)

        def _read(session) -> Optional[TicketView]:
            meta = read_queue_meta(session, branch_id)
            if not meta.serving_ticket_id:
                return None
            return read_ticket(session, meta.serving_ticket_id)

        return self.store.read(_read)

    def get_next_waiting(self, branch_id: str) -> Optional[TicketView]:
        branch_id = _require_branch_id(branch_id)
        return self.store.read(lambda session: read_next_waiting(session, branch_id))

    def get_waiting_count(self, branch_id: str) -> int:
        branch_id = _require_branch_id(branch_id)
        return self.store.read(lambda session: read_waiting_count(session, branch_id))


def read_queue_meta(session, branch_id: str) -> QueueMeta:
    return queue_meta_view(branch_id, session.get(QueueState, branch_id))


def read_ticket(session, ticket_id: str) -> Optional[TicketView]:
    ticket = session.get(Ticket, ticket_id)
    return ticket_view(ticket) if ticket is not None else None


def read_next_waiting(session, branch_id: str) -> Optional[TicketView]:
    ticket = session.scalars(_lowest_waiting_query(branch_id)).first()
    return ticket_view(ticket) if ticket is not None else None


def read_waiting_count(session, branch_id: str) -> int:
    return int(
        session.scalar(
            select(func.count())
            .select_from(Ticket)
            .where(Ticket.branch_id == branch_id, Ticket.status == "waiting")
        )
        or 0
    )
