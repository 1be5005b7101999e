from __future__ import annotations

import json
import logging
import secrets
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Mapping, Optional

from sqlalchemy import select, update

from pharmacy_queue.domain import (
    Actor,
    CreatedReservation,
    ReservationItemView,
    ReservationView,
    as_utc,
    new_id,
    reservation_item_view,
    reservation_view,
    utcnow,
)
from pharmacy_queue.errors import Expired, NotFound, ValidationError
from pharmacy_queue.models import RESERVATION_STATUSES, Branch, Reservation, ReservationItem
from pharmacy_queue.store import Store, Transaction

logger = logging.getLogger(__name__)

# no 0/O, 1/I so tokens can be read back over the counter
TOKEN_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
DEFAULT_TOKEN_LENGTH = 20
DEFAULT_EXPIRES_HOURS = 6
MAX_EXPIRES_HOURS = 24 * 30

CENT = Decimal("0.01")
MAX_PRICE = Decimal("9999999999.99")

ALL_RESERVATIONS_TOPIC = "reservations"


def reservation_topic(branch_id: str) -> str:
    return f"reservations:{branch_id}"


def make_token(length: int = DEFAULT_TOKEN_LENGTH) -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def normalize_token(qr_token: Optional[str]) -> str:
    return (qr_token or "").strip().upper()


def is_expired(status: str, expires_at: Optional[datetime], now: datetime) -> bool:
    if status != "reserved" or expires_at is None:
        return False
    return as_utc(expires_at) < as_utc(now)


def reservation_buckets(reservation: ReservationView, now: datetime) -> tuple[str, ...]:
    """
    Reservations-hub tabs a reservation shows up on. A reserved reservation
    past its expiry stays on ``current`` until someone acts on it and is
    also listed under ``history``.
    """
    buckets = []
    if reservation.status in ("reserved", "claimed"):
        buckets.append("current")
    if reservation.status == "completed":
        buckets.append("completed")
    if reservation.status in ("archived", "cancelled") or is_expired(
        reservation.status, reservation.expires_at, now
    ):
        buckets.append("history")
    return tuple(buckets)


def matches_search(reservation: ReservationView, q: Optional[str]) -> bool:
    """Case-insensitive substring match over id, customer, phone, token, branch and status."""
    needle = (q or "").strip().lower()
    if not needle:
        return True
    haystack = " ".join(
        value
        for value in (
            reservation.id,
            reservation.customer_name,
            reservation.customer_phone,
            reservation.qr_token,
            reservation.branch_id,
            reservation.status,
        )
        if value
    )
    return needle in haystack.lower()


def reservation_cost(items: Iterable[ReservationItemView]) -> Decimal:
    return sum((item.line_total for item in items), Decimal("0"))


def build_qr_payload(branch_id: str, reservation_id: str, token: str) -> str:
    return json.dumps(
        {
            "type": "reservation",
            "branchId": branch_id,
            "reservationId": reservation_id,
            "token": token,
        },
        separators=(",", ":"),
    )


def parse_qr_input(raw: Optional[str]) -> tuple[str, str]:
    """
    Return ``(token, branch_id)`` from a scanned or pasted value.

    Accepts the JSON payload produced by :func:`build_qr_payload` (or any JSON
    object carrying ``token``/``qrToken``), otherwise treats the whole input as
    a bare token. ``branch_id`` is ``""`` when the input does not carry one.
    """
    clean = (raw or "").strip()
    if not clean:
        return "", ""
    if clean.startswith("{") and clean.endswith("}"):
        try:
            obj = json.loads(clean)
        except ValueError:
            obj = None
        if isinstance(obj, dict):
            token = str(obj.get("token") or obj.get("qrToken") or "").strip()
            branch_id = str(obj.get("branchId") or "").strip()
            if token:
                return token, branch_id
    return clean, ""


def _validated_qty(raw: Any, medicine_id: str) -> int:
    if isinstance(raw, bool):
        raise ValidationError(f"qty must be an integer for medicine {medicine_id}")
    if isinstance(raw, float):
        if not raw.is_integer():
            raise ValidationError(f"qty must be a whole number for medicine {medicine_id}")
        return int(raw)
    try:
        return int(str(raw if raw is not None else 0).strip())
    except ValueError:
        raise ValidationError(f"qty must be an integer for medicine {medicine_id}")


def _validated_price(raw: Any, medicine_id: str) -> Decimal:
    try:
        price = Decimal(str(raw if raw is not None else 0).strip() or "0")
    except InvalidOperation:
        raise ValidationError(f"price must be a number for medicine {medicine_id}")
    if not price.is_finite():
        raise ValidationError(f"price must be a finite number for medicine {medicine_id}")
    if price < 0:
        raise ValidationError(f"price must be >= 0 for medicine {medicine_id}")
    # fits Numeric(12, 2)
    if price > MAX_PRICE or price != price.quantize(CENT):
        raise ValidationError(
            f"price must have at most 2 decimals and be <= {MAX_PRICE} for medicine {medicine_id}"
        )
    return price


def _validated_items(items: Optional[Iterable[Mapping[str, Any]]]) -> list[dict]:
    rows = list(items or [])
    if not rows:
        raise ValidationError("at least one item is required")
    cleaned = []
    for raw in rows:
        medicine_id = str(raw.get("medicine_id") or "").strip()
        if not medicine_id:
            raise ValidationError("medicine_id is required for every item")
        qty = _validated_qty(raw.get("qty"), medicine_id)
        if qty <= 0:
            raise ValidationError(f"qty must be > 0 for medicine {medicine_id}")
        cleaned.append(
            {
                "medicine_id": medicine_id,
                "medicine_name": str(raw.get("medicine_name") or "").strip(),
                "qty": qty,
                "price": _validated_price(raw.get("price"), medicine_id),
            }
        )
    return cleaned


class ReservationEngine:
    """
    Customer reservations: reserve -> claim (by token, before expiry) ->
    complete -> archive.

    Expiry is never swept in the background. A reserved reservation past
    ``expires_at`` is only reported as expired (see :func:`is_expired`) until
    someone tries to claim it, at which point it is written as ``cancelled``.
    """

    def __init__(
        self,
        store: Store,
        *,
        clock: Callable[[], datetime] = utcnow,
        expires_hours: float = DEFAULT_EXPIRES_HOURS,
        token_length: int = DEFAULT_TOKEN_LENGTH,
    ) -> None:
        self.store = store
        self._clock = clock
        self.expires_hours = expires_hours
        self.token_length = token_length

    def now(self) -> datetime:
        return as_utc(self._clock())

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------
    def create_reservation(
        self,
        branch_id: str,
        customer_name: str,
        items: Iterable[Mapping[str, Any]],
        customer_phone: Optional[str] = None,
        expires_hours: Optional[float] = None,
    ) -> CreatedReservation:
        branch_id = (branch_id or "").strip()
        if not branch_id:
            raise ValidationError("branch_id is required")
        customer_name = (customer_name or "").strip()
        if not customer_name:
            raise ValidationError("customer_name is required")
        rows = _validated_items(items)
        hours = self.expires_hours if expires_hours is None else expires_hours
        try:
            hours = float(hours)
        except (TypeError, ValueError):
            raise ValidationError("expires_hours must be a number")
        if not 0 < hours <= MAX_EXPIRES_HOURS:
            raise ValidationError(f"expires_hours must be > 0 and <= {MAX_EXPIRES_HOURS}")

        token = make_token(self.token_length)
        now = self.now()
        expires_at = now + timedelta(hours=hours)
        reservation_id = new_id("rsv")

        def _create(tx: Transaction) -> None:
            if tx.get(Branch, branch_id) is None:
                raise NotFound(f"branch {branch_id} not found")
            tx.add(
                Reservation(
                    id=reservation_id,
                    branch_id=branch_id,
                    customer_name=customer_name,
                    customer_phone=(customer_phone or "").strip(),
                    qr_token=token,
                    status="reserved",
                    total_qty=sum(row["qty"] for row in rows),
                    created_at=now,
                    expires_at=expires_at,
                    updated_at=now,
                )
            )
            tx.flush()
            for row in rows:
                tx.add(
                    ReservationItem(
                        id=new_id("rsi"),
                        reservation_id=reservation_id,
                        branch_id=branch_id,
                        created_at=now,
                        **row,
                    )
                )
            tx.touch(reservation_topic(branch_id), ALL_RESERVATIONS_TOPIC)

        self.store.transaction(_create)
        logger.info(
            "reservation created id=%s branch=%s items=%s", reservation_id, branch_id, len(rows)
        )
        return CreatedReservation(reservation_id=reservation_id, qr_token=token, expires_at=expires_at)

    # ------------------------------------------------------------------
    # lookup / claim
    # ------------------------------------------------------------------
    def get_reservation_by_token(self, branch_id: str, qr_token: str) -> Optional[ReservationView]:
        branch_id = (branch_id or "").strip()
        token = normalize_token(qr_token)
        if not branch_id:
            raise ValidationError("branch_id is required")
        if not token:
            raise ValidationError("qr_token is required")

        def _lookup(session) -> Optional[ReservationView]:
            reservation = session.scalars(
                select(Reservation)
                .where(Reservation.branch_id == branch_id, Reservation.qr_token == token)
                .order_by(Reservation.created_at.desc())
                .limit(1)
            ).first()
            return reservation_view(reservation) if reservation is not None else None

        return self.store.read(_lookup)

    def claim_reservation_by_token(
        self, branch_id: str, qr_token: str, actor: Optional[Actor] = None
    ) -> ReservationView:
        branch_id = (branch_id or "").strip()
        token = normalize_token(qr_token)
        if not branch_id:
            raise ValidationError("branch_id is required")
        if not token:
            raise ValidationError("qr_token is required")
        claimed_by = actor.user_id if actor is not None else None

        def _claim(tx: Transaction) -> tuple[str, ReservationView]:
            now = self.now()
            reservation = tx.scalars(
                select(Reservation)
                .where(
                    Reservation.branch_id == branch_id,
                    Reservation.qr_token == token,
                    Reservation.status == "reserved",
                )
                .limit(1)
            ).first()
            if reservation is None:
                raise NotFound(
                    "no active reservation for this token (wrong branch or token, or already claimed)"
                )

            if is_expired(reservation.status, reservation.expires_at, now):
                values = {"status": "cancelled", "updated_at": now}
                outcome = "expired"
            else:
                values = {
                    "status": "claimed",
                    "claimed_at": now,
                    "claimed_by": claimed_by,
                    "updated_at": now,
                }
                outcome = "claimed"

            # status = 'reserved' in the WHERE clause makes the losing claim a no-op
            result = tx.execute(
                update(Reservation)
                .where(Reservation.id == reservation.id, Reservation.status == "reserved")
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise NotFound(
                    "no active reservation for this token (wrong branch or token, or already claimed)"
                )
            tx.refresh(reservation)
            tx.touch(reservation_topic(branch_id), ALL_RESERVATIONS_TOPIC)
            return outcome, reservation_view(reservation)

        outcome, reservation = self.store.transaction(_claim)
        if outcome == "expired":
            logger.warning("claim on expired reservation id=%s cancelled", reservation.id)
            raise Expired(f"reservation {reservation.id} expired at {reservation.expires_at.isoformat()}")
        logger.info("reservation claimed id=%s by=%s", reservation.id, claimed_by)
        return reservation

    # ------------------------------------------------------------------
    # status changes
    # ------------------------------------------------------------------
    def update_reservation_status(
        self, reservation_id: str, status: str, **extra: Any
    ) -> ReservationView:
        """
        Set ``status`` (plus any extra columns) without checking the current
        status. Callers wanting a specific transition go through
        :meth:`complete_reservation` / :meth:`archive_reservation`.
        """
        if not reservation_id:
            raise ValidationError("reservation_id is required")
        status = (status or "").strip().lower()
        if status not in RESERVATION_STATUSES:
            raise ValidationError(f"unknown reservation status: {status!r}")

        def _update(tx: Transaction) -> ReservationView:
            reservation = tx.get(Reservation, reservation_id)
            if reservation is None:
                raise NotFound(f"reservation {reservation_id} not found")
            reservation.status = status
            for key, value in extra.items():
                setattr(reservation, key, value)
            reservation.updated_at = self.now()
            tx.touch(reservation_topic(reservation.branch_id), ALL_RESERVATIONS_TOPIC)
            return reservation_view(reservation)

        reservation = self.store.transaction(_update)
        logger.info("reservation status id=%s status=%s", reservation_id, status)
        return reservation

    def complete_reservation(
        self, reservation_id: str, actor: Optional[Actor] = None
    ) -> ReservationView:
        return self.update_reservation_status(
            reservation_id,
            "completed",
            completed_at=self.now(),
            completed_by=actor.user_id if actor is not None else None,
        )

    def archive_reservation(
        self, reservation_id: str, actor: Optional[Actor] = None
    ) -> ReservationView:
        return self.update_reservation_status(
            reservation_id,
            "archived",
            archived_at=self.now(),
            archived_by=actor.user_id if actor is not None else None,
        )

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def get_reservation(self, reservation_id: str) -> Optional[ReservationView]:
        def _read(session) -> Optional[ReservationView]:
            reservation = session.get(Reservation, reservation_id)
            return reservation_view(reservation) if reservation is not None else None

        return self.store.read(_read)

    def get_reservation_items(self, reservation_id: str) -> list[ReservationItemView]:
        if not reservation_id:
            raise ValidationError("reservation_id is required")
        return self.store.read(lambda session: read_reservation_items(session, reservation_id))

    def list_reservations(
        self, branch_id: Optional[str] = None, q: Optional[str] = None
    ) -> list[ReservationView]:
        reservations = self.store.read(lambda session: read_reservations(session, branch_id))
        return [r for r in reservations if matches_search(r, q)]


def read_reservation_items(session, reservation_id: str) -> list[ReservationItemView]:
    items = session.scalars(
        select(ReservationItem)
        .where(ReservationItem.reservation_id == reservation_id)
        .order_by(ReservationItem.created_at.asc(), ReservationItem.id.asc())
    )
    return [reservation_item_view(item) for item in items]


def read_reservations(session, branch_id: Optional[str] = None) -> list[ReservationView]:
    query = select(Reservation)
    if branch_id:
        query = query.where(Reservation.branch_id == branch_id)
    query = query.order_by(Reservation.created_at.desc(), Reservation.id.desc())
    return [reservation_view(reservation) for reservation in session.scalars(query)]
