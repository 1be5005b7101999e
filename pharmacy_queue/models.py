from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from pharmacy_queue.db import Base

ID_TYPE = String(64)

TICKET_STATUSES = ("waiting", "serving", "done")
RESERVATION_STATUSES = ("reserved", "claimed", "completed", "archived", "cancelled")


class Branch(Base):
    __tablename__ = "branch"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class QueueState(Base):
    __tablename__ = "queue_state"

    branch_id: Mapped[str] = mapped_column(ID_TYPE, ForeignKey("branch.id"), primary_key=True)
    current_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    serving_ticket_id: Mapped[str | None] = mapped_column(ID_TYPE)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class Ticket(Base):
    __tablename__ = "queue_ticket"
    __table_args__ = (
        CheckConstraint("status IN ('waiting', 'serving', 'done')", name="queue_ticket_status"),
        CheckConstraint("ticket_number > 0", name="queue_ticket_number_positive"),
        Index("ix_queue_ticket_branch_status_number", "branch_id", "status", "ticket_number"),
    )

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True)
    branch_id: Mapped[str] = mapped_column(ID_TYPE, ForeignKey("branch.id"), nullable=False)
    ticket_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="waiting")
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class Reservation(Base):
    __tablename__ = "reservation"
    __table_args__ = (
        CheckConstraint(
            "status IN ('reserved', 'claimed', 'completed', 'archived', 'cancelled')",
            name="reservation_status",
        ),
        Index("ix_reservation_branch_token", "branch_id", "qr_token"),
        Index("ix_reservation_branch_created", "branch_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True)
    branch_id: Mapped[str] = mapped_column(ID_TYPE, ForeignKey("branch.id"), nullable=False)
    customer_name: Mapped[str] = mapped_column(Text, nullable=False)
    customer_phone: Mapped[str] = mapped_column(Text, nullable=False, default="")
    qr_token: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="reserved")
    total_qty: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    claimed_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    claimed_by: Mapped[str | None] = mapped_column(Text)
    completed_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    completed_by: Mapped[str | None] = mapped_column(Text)
    archived_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    archived_by: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class ReservationItem(Base):
    __tablename__ = "reservation_item"
    __table_args__ = (
        CheckConstraint("qty > 0", name="reservation_item_qty_positive"),
        Index("ix_reservation_item_reservation", "reservation_id"),
    )

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True)
    reservation_id: Mapped[str] = mapped_column(
        ID_TYPE, ForeignKey("reservation.id"), nullable=False
    )
    branch_id: Mapped[str] = mapped_column(ID_TYPE, nullable=False)
    medicine_id: Mapped[str] = mapped_column(Text, nullable=False)
    # name and price are copied from the catalog when the reservation is made
    medicine_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    qty: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class ChangeTopic(Base):
    """Per-topic commit counter; other processes poll it to learn about writes."""

    __tablename__ = "change_topic"

    topic: Mapped[str] = mapped_column(String(128), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
