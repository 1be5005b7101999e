from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from pharmacy_queue.models import QueueState, Reservation, ReservationItem, Ticket


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


def _jsonable(data: dict) -> dict:
    out: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, datetime):
            out[key] = value.isoformat()
        elif isinstance(value, Decimal):
            out[key] = str(value)
        else:
            out[key] = value
    return out


@dataclass(frozen=True)
class Actor:
    """Staff member on whose behalf an engine call is made."""

    user_id: str
    role: str


@dataclass(frozen=True)
class QueueMeta:
    branch_id: str
    current_number: int
    serving_ticket_id: Optional[str]

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class TicketView:
    id: str
    branch_id: str
    ticket_number: int
    status: str
    created_at: datetime

    def as_dict(self) -> dict:
        return _jsonable(asdict(self))


@dataclass(frozen=True)
class IssuedTicket:
    ticket_number: int
    ticket_id: str


@dataclass(frozen=True)
class ReservationView:
    id: str
    branch_id: str
    customer_name: str
    customer_phone: str
    qr_token: str
    status: str
    total_qty: int
    created_at: datetime
    expires_at: datetime
    claimed_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    archived_at: Optional[datetime] = None
    archived_by: Optional[str] = None

    def as_dict(self) -> dict:
        return _jsonable(asdict(self))


@dataclass(frozen=True)
class ReservationItemView:
    id: str
    reservation_id: str
    branch_id: str
    medicine_id: str
    medicine_name: str
    qty: int
    price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.price * self.qty

    def as_dict(self) -> dict:
        data = _jsonable(asdict(self))
        data["line_total"] = str(self.line_total)
        return data


@dataclass(frozen=True)
class CreatedReservation:
    reservation_id: str
    qr_token: str
    expires_at: datetime


def queue_meta_view(branch_id: str, state: Optional[QueueState]) -> QueueMeta:
    if state is None:
        return QueueMeta(branch_id=branch_id, current_number=0, serving_ticket_id=None)
    return QueueMeta(
        branch_id=branch_id,
        current_number=int(state.current_number or 0),
        serving_ticket_id=state.serving_ticket_id or None,
    )


def ticket_view(ticket: Ticket) -> TicketView:
    return TicketView(
        id=ticket.id,
        branch_id=ticket.branch_id,
        ticket_number=ticket.ticket_number,
        status=ticket.status,
        created_at=as_utc(ticket.created_at),
    )


def reservation_view(reservation: Reservation) -> ReservationView:
    return ReservationView(
        id=reservation.id,
        branch_id=reservation.branch_id,
        customer_name=reservation.customer_name,
        customer_phone=reservation.customer_phone or "",
        qr_token=reservation.qr_token,
        status=reservation.status,
        total_qty=reservation.total_qty,
        created_at=as_utc(reservation.created_at),
        expires_at=as_utc(reservation.expires_at),
        claimed_at=as_utc(reservation.claimed_at),
        claimed_by=reservation.claimed_by,
        completed_at=as_utc(reservation.completed_at),
        completed_by=reservation.completed_by,
        archived_at=as_utc(reservation.archived_at),
        archived_by=reservation.archived_by,
    )


def reservation_item_view(item: ReservationItem) -> ReservationItemView:
    return ReservationItemView(
        id=item.id,
        reservation_id=item.reservation_id,
        branch_id=item.branch_id,
        medicine_id=item.medicine_id,
        medicine_name=item.medicine_name or "",
        qty=item.qty,
        price=Decimal(str(item.price or 0)),
    )
