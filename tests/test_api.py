import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from pharmacy_queue.config import Settings, get_settings
from pharmacy_queue.main import app, get_reservation_engine, get_store
from pharmacy_queue.reservation_engine import ReservationEngine
from tests.factories import FakeClock, make_store

ADMIN = {"Authorization": "Bearer admin-token"}
PHARMACIST = {"Authorization": "Bearer pharm-token"}

ITEMS = [
    {"medicine_id": "m1", "medicine_name": "Paracetamol 500mg", "qty": 2, "price": 10},
    {"medicine_id": "m2", "medicine_name": "Cetirizine 10mg", "qty": 1, "price": 25},
]


def _make_client(clock: FakeClock | None = None) -> TestClient:
    store = make_store()
    settings = Settings(
        staff_tokens={
            "admin-token": {"user_id": "u-admin", "role": "admin"},
            "pharm-token": {"user_id": "u-pharm", "role": "pharmacist"},
        }
    )

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_settings] = lambda: settings
    if clock is not None:
        app.dependency_overrides[get_reservation_engine] = lambda: ReservationEngine(store, clock=clock)
    else:
        app.dependency_overrides.pop(get_reservation_engine, None)
    client = TestClient(app)
    client.store = store
    return client


def test_create_and_list_branches() -> None:
    client = _make_client()
    with client:
        unauth = client.post("/api/v1/branches", json={"name": "Annex"})
        assert unauth.status_code == 401

        forbidden = client.post("/api/v1/branches", json={"name": "Annex"}, headers=PHARMACIST)
        assert forbidden.status_code == 403

        created = client.post(
            "/api/v1/branches", json={"branch_id": "br3", "name": "Annex"}, headers=ADMIN
        )
        assert created.status_code == 200
        assert created.json()["data"]["branch_id"] == "br3"

        duplicate = client.post(
            "/api/v1/branches", json={"branch_id": "br3", "name": "Annex"}, headers=ADMIN
        )
        assert duplicate.status_code == 400

        listed = client.get("/api/v1/branches")
        assert listed.status_code == 200
        assert {b["branch_id"] for b in listed.json()["data"]} == {"br1", "br2", "br3"}

        missing = client.get("/api/v1/branches/nope")
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "not_found"


def test_queue_flow() -> None:
    client = _make_client()
    with client:
        first = client.post("/api/v1/branches/br1/queue/tickets")
        assert first.status_code == 200
        assert first.json()["data"]["ticket_number"] == 1
        second = client.post("/api/v1/branches/br1/queue/tickets")
        assert second.json()["data"]["ticket_number"] == 2

        assert client.post("/api/v1/branches/br1/queue/next").status_code == 401

        serving = client.post("/api/v1/branches/br1/queue/next", headers=PHARMACIST)
        assert serving.status_code == 200
        assert serving.json()["data"]["ticket_number"] == 1
        assert serving.json()["data"]["status"] == "serving"

        snapshot = client.get("/api/v1/branches/br1/queue").json()["data"]
        assert snapshot["current_number"] == 2
        assert snapshot["now_serving"]["ticket_number"] == 1
        assert snapshot["next_waiting"]["ticket_number"] == 2
        assert snapshot["waiting_count"] == 1

        done = client.post("/api/v1/branches/br1/queue/done", headers=PHARMACIST)
        assert done.json()["data"]["status"] == "done"
        nothing = client.post("/api/v1/branches/br1/queue/done", headers=PHARMACIST)
        assert nothing.json()["data"] is None
        assert nothing.json()["meta"]["warnings"] == ["nothing_serving"]

        assert client.post("/api/v1/branches/br1/queue/reset", headers=PHARMACIST).status_code == 403
        reset = client.post("/api/v1/branches/br1/queue/reset", headers=ADMIN)
        assert reset.status_code == 200
        assert reset.json()["data"]["deleted_tickets"] == 2

        again = client.post("/api/v1/branches/br1/queue/tickets")
        assert again.json()["data"]["ticket_number"] == 1


def test_next_on_empty_queue_warns() -> None:
    client = _make_client()
    with client:
        resp = client.post("/api/v1/branches/br2/queue/next", headers=PHARMACIST)
        assert resp.status_code == 200
        assert resp.json()["data"] is None
        assert resp.json()["meta"]["warnings"] == ["queue_empty"]


def test_unknown_branch_queue_is_not_found() -> None:
    client = _make_client()
    with client:
        resp = client.post("/api/v1/branches/ghost/queue/tickets")
        assert resp.status_code == 404


def test_reservation_claim_flow() -> None:
    client = _make_client()
    with client:
        created = client.post(
            "/api/v1/reservations",
            json={"branch_id": "br1", "customer_name": "Juan", "items": ITEMS},
        )
        assert created.status_code == 200
        data = created.json()["data"]
        assert len(data["qr_token"]) == 20
        payload = json.loads(data["qr_payload"])
        assert payload == {
            "type": "reservation",
            "branchId": "br1",
            "reservationId": data["reservation_id"],
            "token": data["qr_token"],
        }

        # the scanned payload carries its own branch
        lookup = client.post(
            "/api/v1/reservations:lookup",
            json={"input": data["qr_payload"]},
            headers=PHARMACIST,
        )
        assert lookup.status_code == 200
        found = lookup.json()["data"]
        assert found["id"] == data["reservation_id"]
        assert found["total_qty"] == 3
        assert found["total_cost"] == "45.00"
        assert len(found["items"]) == 2
        assert found["is_expired"] is False

        wrong_branch = client.post(
            "/api/v1/reservations:lookup",
            json={"branch_id": "br2", "input": data["qr_token"]},
            headers=PHARMACIST,
        )
        assert wrong_branch.status_code == 404

        claimed = client.post(
            "/api/v1/reservations:claim",
            json={"branch_id": "br1", "input": data["qr_token"].lower()},
            headers=PHARMACIST,
        )
        assert claimed.status_code == 200
        assert claimed.json()["data"]["status"] == "claimed"
        assert claimed.json()["data"]["claimed_by"] == "u-pharm"

        twice = client.post(
            "/api/v1/reservations:claim",
            json={"branch_id": "br1", "input": data["qr_token"]},
            headers=PHARMACIST,
        )
        assert twice.status_code == 404

        rid = data["reservation_id"]
        completed = client.post(f"/api/v1/reservations/{rid}/complete", headers=PHARMACIST)
        assert completed.json()["data"]["status"] == "completed"
        assert completed.json()["data"]["buckets"] == ["completed"]
        archived = client.post(f"/api/v1/reservations/{rid}/archive", headers=ADMIN)
        assert archived.json()["data"]["archived_by"] == "u-admin"

        history = client.get(
            "/api/v1/reservations", params={"branch_id": "br1", "bucket": "history"}, headers=PHARMACIST
        )
        assert [r["id"] for r in history.json()["data"]] == [rid]

        searched = client.get("/api/v1/reservations", params={"q": "JUAN"}, headers=PHARMACIST)
        assert [r["id"] for r in searched.json()["data"]] == [rid]
        nobody = client.get("/api/v1/reservations", params={"q": "pedro"}, headers=PHARMACIST)
        assert nobody.json()["data"] == []

        items = client.get(f"/api/v1/reservations/{rid}/items", headers=PHARMACIST)
        assert items.json()["data"]["total_cost"] == "45.00"


def test_expired_claim_is_gone_and_cancels() -> None:
    clock = FakeClock()
    client = _make_client(clock)
    with client:
        created = client.post(
            "/api/v1/reservations",
            json={"branch_id": "br1", "customer_name": "Maria", "items": ITEMS},
        ).json()["data"]
        clock.advance(hours=6, seconds=1)

        listed = client.get("/api/v1/reservations", headers=PHARMACIST).json()["data"]
        assert listed[0]["status"] == "reserved"
        assert listed[0]["is_expired"] is True
        assert listed[0]["buckets"] == ["current", "history"]

        resp = client.post(
            "/api/v1/reservations:claim",
            json={"branch_id": "br1", "input": created["qr_token"]},
            headers=PHARMACIST,
        )
        assert resp.status_code == 410
        assert resp.json()["error"]["code"] == "expired"

        listed = client.get("/api/v1/reservations", headers=PHARMACIST).json()["data"]
        assert listed[0]["status"] == "cancelled"


def test_reservation_validation_errors() -> None:
    client = _make_client()
    with client:
        zero_qty = client.post(
            "/api/v1/reservations",
            json={"branch_id": "br1", "customer_name": "Juan", "items": [{"medicine_id": "m1", "qty": 0}]},
        )
        assert zero_qty.status_code == 400
        assert zero_qty.json()["error"]["code"] == "validation_error"

        too_long = client.post(
            "/api/v1/reservations",
            json={"branch_id": "br1", "customer_name": "Juan", "items": ITEMS, "expires_hours": 1e8},
        )
        assert too_long.status_code == 400

        no_items = client.post(
            "/api/v1/reservations", json={"branch_id": "br1", "customer_name": "Juan", "items": []}
        )
        assert no_items.status_code == 400

        no_branch = client.post(
            "/api/v1/reservations:lookup", json={"input": "ABC"}, headers=PHARMACIST
        )
        assert no_branch.status_code == 400

        assert client.get("/api/v1/reservations").status_code == 401


def test_queue_live_websocket_pushes_changes() -> None:
    client = _make_client()
    with client:
        with client.websocket_connect("/api/v1/branches/br1/queue/live") as ws:
            initial = [ws.receive_json() for _ in range(4)]
            assert [m["type"] for m in initial] == [
                "queue_meta",
                "now_serving",
                "next_waiting",
                "waiting_count",
            ]
            assert initial[0]["data"]["current_number"] == 0
            assert initial[1]["data"] is None
            assert initial[3]["data"] == 0

            client.post("/api/v1/branches/br1/queue/tickets")

            updates = [ws.receive_json() for _ in range(3)]
            assert [m["type"] for m in updates] == ["queue_meta", "next_waiting", "waiting_count"]
            assert updates[0]["data"]["current_number"] == 1
            assert updates[1]["data"]["ticket_number"] == 1
            assert updates[2]["data"] == 1

        assert client.store.subscription_count == 0


def test_reservations_live_requires_staff() -> None:
    client = _make_client()
    with client:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/api/v1/reservations/live?token=wrong"):
                pass
        assert exc_info.value.code == 1008
        assert client.store.subscription_count == 0


def test_reservations_live_pushes_creates_and_claims() -> None:
    client = _make_client()
    with client:
        with client.websocket_connect("/api/v1/reservations/live?branch_id=br1&token=pharm-token") as ws:
            initial = ws.receive_json()
            assert initial == {"type": "reservations", "data": []}

            created = client.post(
                "/api/v1/reservations",
                json={"branch_id": "br1", "customer_name": "Juan", "items": ITEMS},
            ).json()["data"]
            pushed = ws.receive_json()["data"]
            assert [r["id"] for r in pushed] == [created["reservation_id"]]
            assert pushed[0]["status"] == "reserved"
            assert pushed[0]["buckets"] == ["current"]

            # other branches do not reach a branch-scoped hub
            client.post(
                "/api/v1/reservations",
                json={"branch_id": "br2", "customer_name": "Maria", "items": ITEMS},
            )

            client.post(
                "/api/v1/reservations:claim",
                json={"branch_id": "br1", "input": created["qr_token"]},
                headers=PHARMACIST,
            )
            claimed = ws.receive_json()["data"]
            assert len(claimed) == 1
            assert claimed[0]["status"] == "claimed"
            assert claimed[0]["claimed_by"] == "u-pharm"

        assert client.store.subscription_count == 0


def test_reservations_live_accepts_bearer_header() -> None:
    client = _make_client()
    with client:
        with client.websocket_connect("/api/v1/reservations/live", headers=ADMIN) as ws:
            assert ws.receive_json()["data"] == []
