from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import select

from pharmacy_queue.auth import require_admin, require_staff, websocket_actor
from pharmacy_queue.config import Settings, get_settings
from pharmacy_queue.db import SessionLocal, init_db
from pharmacy_queue.domain import Actor, new_id
from pharmacy_queue.errors import Expired, NotFound, PharmacyError, StoreUnavailable, ValidationError
from pharmacy_queue.logging_config import setup_logging
from pharmacy_queue.models import Branch
from pharmacy_queue.projections import (
    subscribe_next_waiting,
    subscribe_now_serving,
    subscribe_queue_meta,
    subscribe_reservations,
    subscribe_waiting_count,
)
from pharmacy_queue.queue_engine import QueueEngine
from pharmacy_queue.reservation_engine import (
    ReservationEngine,
    build_qr_payload,
    is_expired,
    parse_qr_input,
    reservation_buckets,
    reservation_cost,
)
from pharmacy_queue.store import Store, Transaction

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: 400,
    NotFound: 404,
    Expired: 410,
    StoreUnavailable: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings)
    if settings.create_tables:
        init_db()
    yield
    if _store is not None:
        _store.stop()


app = FastAPI(title="Pharmacy Queue", lifespan=lifespan)


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def _now() -> datetime:
    return datetime.now(timezone.utc)


_store: Optional[Store] = None


def get_store() -> Store:
    global _store
    if _store is None:
        settings = get_settings()
        _store = Store(
            SessionLocal,
            max_attempts=settings.transaction_max_attempts,
            delete_batch_size=settings.ticket_delete_batch_size,
        )
        _store.start(settings.change_poll_interval)
    return _store


def get_queue_engine(store: Store = Depends(get_store)) -> QueueEngine:
    return QueueEngine(store)


def get_reservation_engine(
    store: Store = Depends(get_store), settings: Settings = Depends(get_settings)
) -> ReservationEngine:
    return ReservationEngine(
        store,
        expires_hours=settings.reservation_expires_hours,
        token_length=settings.reservation_token_length,
    )


@app.exception_handler(PharmacyError)
async def handle_pharmacy_error(request: Request, exc: PharmacyError) -> JSONResponse:
    status_code = 500
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": exc.code, "message": exc.message}, "meta": _meta()},
    )


def _require_branch(store: Store, branch_id: str) -> Branch:
    branch = store.read(lambda session: session.get(Branch, branch_id))
    if branch is None:
        raise NotFound(f"branch {branch_id} not found")
    return branch


def _branch_to_dict(branch: Branch) -> dict:
    created_at = branch.created_at
    return {
        "branch_id": branch.id,
        "name": branch.name,
        "created_at": created_at.isoformat() if created_at else None,
    }


def _projection_data(value: Any) -> Any:
    if value is None or isinstance(value, (int, str)):
        return value
    if isinstance(value, list):
        return [_projection_data(v) for v in value]
    return value.as_dict()


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"service": "Pharmacy Queue", "status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Branches
# ---------------------------------------------------------------------------
class BranchCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"branch_id": "br1", "name": "Main Street"}}}
    branch_id: Optional[str] = None
    name: str


@app.post("/api/v1/branches", tags=["Branches"])
def create_branch(
    payload: BranchCreate,
    store: Store = Depends(get_store),
    actor: Actor = Depends(require_admin),
) -> dict:
    name = payload.name.strip()
    if not name:
        raise ValidationError("name is required")
    branch_id = (payload.branch_id or "").strip() or new_id("br")
    branch = Branch(id=branch_id, name=name, created_at=_now())

    def _create(tx: Transaction) -> None:
        if tx.get(Branch, branch_id) is not None:
            raise ValidationError(f"branch {branch_id} already exists")
        tx.add(branch)

    store.transaction(_create)
    logger.info("branch created id=%s by=%s", branch_id, actor.user_id)
    return {"data": _branch_to_dict(branch), "meta": _meta()}


@app.get("/api/v1/branches", tags=["Branches"])
def list_branches(store: Store = Depends(get_store)) -> dict:
    branches = store.read(lambda session: list(session.scalars(select(Branch).order_by(Branch.name))))
    return {"data": [_branch_to_dict(b) for b in branches], "meta": _meta()}


@app.get("/api/v1/branches/{branch_id}", tags=["Branches"])
def get_branch(branch_id: str, store: Store = Depends(get_store)) -> dict:
    return {"data": _branch_to_dict(_require_branch(store, branch_id)), "meta": _meta()}


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------
@app.post("/api/v1/branches/{branch_id}/queue/tickets", tags=["Queue"])
def join_queue(
    branch_id: str,
    store: Store = Depends(get_store),
    engine: QueueEngine = Depends(get_queue_engine),
) -> dict:
    _require_branch(store, branch_id)
    issued = engine.issue_ticket(branch_id)
    return {
        "data": {"ticket_number": issued.ticket_number, "ticket_id": issued.ticket_id},
        "meta": _meta(),
    }


@app.get("/api/v1/branches/{branch_id}/queue", tags=["Queue"])
def get_queue(
    branch_id: str,
    store: Store = Depends(get_store),
    engine: QueueEngine = Depends(get_queue_engine),
) -> dict:
    _require_branch(store, branch_id)
    meta = engine.get_queue_meta(branch_id)
    now_serving = engine.get_now_serving(branch_id)
    next_waiting = engine.get_next_waiting(branch_id)
    return {
        "data": {
            "branch_id": branch_id,
            "current_number": meta.current_number,
            "serving_ticket_id": meta.serving_ticket_id,
            "now_serving": now_serving.as_dict() if now_serving else None,
            "next_waiting": next_waiting.as_dict() if next_waiting else None,
            "waiting_count": engine.get_waiting_count(branch_id),
        },
        "meta": _meta(),
    }


@app.post("/api/v1/branches/{branch_id}/queue/next", tags=["Queue"])
def next_ticket(
    branch_id: str,
    store: Store = Depends(get_store),
    engine: QueueEngine = Depends(get_queue_engine),
    actor: Actor = Depends(require_staff),
) -> dict:
    _require_branch(store, branch_id)
    ticket = engine.advance_ticket(branch_id)
    warnings = [] if ticket else ["queue_empty"]
    return {"data": ticket.as_dict() if ticket else None, "meta": _meta(warnings=warnings)}


@app.post("/api/v1/branches/{branch_id}/queue/done", tags=["Queue"])
def done_ticket(
    branch_id: str,
    store: Store = Depends(get_store),
    engine: QueueEngine = Depends(get_queue_engine),
    actor: Actor = Depends(require_staff),
) -> dict:
    _require_branch(store, branch_id)
    ticket = engine.complete_ticket(branch_id)
    warnings = [] if ticket else ["nothing_serving"]
    return {"data": ticket.as_dict() if ticket else None, "meta": _meta(warnings=warnings)}


@app.post("/api/v1/branches/{branch_id}/queue/reset", tags=["Queue"])
def reset_queue(
    branch_id: str,
    store: Store = Depends(get_store),
    engine: QueueEngine = Depends(get_queue_engine),
    actor: Actor = Depends(require_admin),
) -> dict:
    _require_branch(store, branch_id)
    logger.info("queue reset requested branch=%s by=%s", branch_id, actor.user_id)
    deleted = engine.reset_queue(branch_id)
    return {"data": {"branch_id": branch_id, "deleted_tickets": deleted}, "meta": _meta()}


async def _pump(websocket: WebSocket, open_subscriptions: Callable[[Callable[[dict], None]], list]) -> None:
    """
    Forward subscription callbacks to ``websocket`` until the client leaves.

    ``open_subscriptions(emit)`` runs in the threadpool because a subscribe
    queries the database; callbacks may fire on any thread and are handed to
    the event loop through ``emit``.
    """
    loop = asyncio.get_running_loop()
    outbox: asyncio.Queue = asyncio.Queue()

    def emit(message: dict) -> None:
        loop.call_soon_threadsafe(outbox.put_nowait, message)

    subscriptions = await run_in_threadpool(open_subscriptions, emit)

    async def _until_disconnect() -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    receiver = asyncio.ensure_future(_until_disconnect())
    try:
        while not receiver.done():
            getter = asyncio.ensure_future(outbox.get())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if getter in done:
                await websocket.send_json(getter.result())
            else:
                getter.cancel()
    except WebSocketDisconnect:
        pass
    finally:
        receiver.cancel()
        await run_in_threadpool(_close_all, subscriptions)


def _close_all(subscriptions: list) -> None:
    for subscription in subscriptions:
        subscription.close()


@app.websocket("/api/v1/branches/{branch_id}/queue/live")
async def queue_live(websocket: WebSocket, branch_id: str, store: Store = Depends(get_store)) -> None:
    await websocket.accept()

    def _open(emit: Callable[[dict], None]) -> list:
        def _push(kind: str):
            return lambda value: emit({"type": kind, "data": _projection_data(value)})

        return [
            subscribe_queue_meta(store, branch_id, _push("queue_meta")),
            subscribe_now_serving(store, branch_id, _push("now_serving")),
            subscribe_next_waiting(store, branch_id, _push("next_waiting")),
            subscribe_waiting_count(store, branch_id, _push("waiting_count")),
        ]

    await _pump(websocket, _open)


# ---------------------------------------------------------------------------
# Reservations
# ---------------------------------------------------------------------------
class ReservationItemInput(BaseModel):
    medicine_id: str
    medicine_name: str = ""
    qty: int
    price: Decimal = Decimal("0")


class ReservationCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "branch_id": "br1",
                "customer_name": "Juan",
                "customer_phone": "09171234567",
                "items": [{"medicine_id": "m1", "medicine_name": "Paracetamol", "qty": 2, "price": 10}],
            }
        }
    }
    branch_id: str
    customer_name: str
    customer_phone: Optional[str] = None
    items: list[ReservationItemInput] = Field(default_factory=list)
    expires_hours: Optional[float] = None


class ReservationScan(BaseModel):
    model_config = {"json_schema_extra": {"example": {"branch_id": "br1", "input": "K7M2Q9..."}}}
    branch_id: Optional[str] = None
    input: str


def _scan_target(payload: ReservationScan) -> tuple[str, str]:
    token, scanned_branch = parse_qr_input(payload.input)
    branch_id = scanned_branch or (payload.branch_id or "").strip()
    if not branch_id:
        raise ValidationError("select a branch first")
    if not token:
        raise ValidationError("enter or scan a QR token")
    return branch_id, token


def _reservation_to_dict(reservation, now: datetime) -> dict:
    data = reservation.as_dict()
    data["is_expired"] = is_expired(reservation.status, reservation.expires_at, now)
    data["buckets"] = list(reservation_buckets(reservation, now))
    return data


def _reservation_detail(engine: ReservationEngine, reservation) -> dict:
    items = engine.get_reservation_items(reservation.id)
    data = _reservation_to_dict(reservation, engine.now())
    data["items"] = [item.as_dict() for item in items]
    data["total_cost"] = str(reservation_cost(items))
    return data


@app.post("/api/v1/reservations", tags=["Reservations"])
def create_reservation(
    payload: ReservationCreate,
    store: Store = Depends(get_store),
    engine: ReservationEngine = Depends(get_reservation_engine),
) -> dict:
    if payload.branch_id.strip():
        _require_branch(store, payload.branch_id.strip())
    created = engine.create_reservation(
        branch_id=payload.branch_id,
        customer_name=payload.customer_name,
        customer_phone=payload.customer_phone,
        items=[item.model_dump() for item in payload.items],
        expires_hours=payload.expires_hours,
    )
    return {
        "data": {
            "reservation_id": created.reservation_id,
            "qr_token": created.qr_token,
            "expires_at": created.expires_at.isoformat(),
            "qr_payload": build_qr_payload(
                payload.branch_id.strip(), created.reservation_id, created.qr_token
            ),
        },
        "meta": _meta(),
    }


@app.get("/api/v1/reservations", tags=["Reservations"])
def list_reservations(
    branch_id: Optional[str] = Query(default=None),
    bucket: Optional[str] = Query(default=None, pattern="^(current|completed|history)$"),
    q: Optional[str] = Query(default=None, description="search id, customer, phone or token"),
    engine: ReservationEngine = Depends(get_reservation_engine),
    actor: Actor = Depends(require_staff),
) -> dict:
    now = engine.now()
    data = [_reservation_to_dict(r, now) for r in engine.list_reservations(branch_id, q=q)]
    if bucket is not None:
        data = [r for r in data if bucket in r["buckets"]]
    return {"data": data, "meta": _meta()}


@app.websocket("/api/v1/reservations/live")
async def reservations_live(
    websocket: WebSocket,
    branch_id: Optional[str] = None,
    store: Store = Depends(get_store),
    engine: ReservationEngine = Depends(get_reservation_engine),
    settings: Settings = Depends(get_settings),
) -> None:
    """Staff reservations hub: pushes the full list, newest first, on every change."""
    if websocket_actor(websocket, settings) is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()

    def _open(emit: Callable[[dict], None]) -> list:
        def _push(reservations: list) -> None:
            now = engine.now()
            emit({"type": "reservations", "data": [_reservation_to_dict(r, now) for r in reservations]})

        return [subscribe_reservations(store, _push, branch_id=branch_id or None)]

    await _pump(websocket, _open)


@app.post("/api/v1/reservations:lookup", tags=["Reservations"])
def lookup_reservation(
    payload: ReservationScan,
    engine: ReservationEngine = Depends(get_reservation_engine),
    actor: Actor = Depends(require_staff),
) -> dict:
    branch_id, token = _scan_target(payload)
    reservation = engine.get_reservation_by_token(branch_id, token)
    if reservation is None:
        raise NotFound("reservation not found for this branch and token")
    return {"data": _reservation_detail(engine, reservation), "meta": _meta()}


@app.post("/api/v1/reservations:claim", tags=["Reservations"])
def claim_reservation(
    payload: ReservationScan,
    engine: ReservationEngine = Depends(get_reservation_engine),
    actor: Actor = Depends(require_staff),
) -> dict:
    branch_id, token = _scan_target(payload)
    reservation = engine.claim_reservation_by_token(branch_id, token, actor=actor)
    return {"data": _reservation_detail(engine, reservation), "meta": _meta()}


@app.get("/api/v1/reservations/{reservation_id}/items", tags=["Reservations"])
def get_reservation_items(
    reservation_id: str,
    engine: ReservationEngine = Depends(get_reservation_engine),
    actor: Actor = Depends(require_staff),
) -> dict:
    items = engine.get_reservation_items(reservation_id)
    return {
        "data": {
            "reservation_id": reservation_id,
            "items": [item.as_dict() for item in items],
            "total_cost": str(reservation_cost(items)),
        },
        "meta": _meta(),
    }


@app.post("/api/v1/reservations/{reservation_id}/complete", tags=["Reservations"])
def complete_reservation(
    reservation_id: str,
    engine: ReservationEngine = Depends(get_reservation_engine),
    actor: Actor = Depends(require_staff),
) -> dict:
    reservation = engine.complete_reservation(reservation_id, actor=actor)
    return {"data": _reservation_to_dict(reservation, engine.now()), "meta": _meta()}


@app.post("/api/v1/reservations/{reservation_id}/archive", tags=["Reservations"])
def archive_reservation(
    reservation_id: str,
    engine: ReservationEngine = Depends(get_reservation_engine),
    actor: Actor = Depends(require_staff),
) -> dict:
    reservation = engine.archive_reservation(reservation_id, actor=actor)
    return {"data": _reservation_to_dict(reservation, engine.now()), "meta": _meta()}
