import threading

import pytest
from sqlalchemy.exc import OperationalError

from pharmacy_queue.domain import utcnow
from pharmacy_queue.errors import IntegrityViolation, NotFound, StoreUnavailable
from pharmacy_queue.models import Branch, Ticket
from pharmacy_queue.projections import subscribe_waiting_count
from pharmacy_queue.queue_engine import QueueEngine
from tests.factories import make_store


def _ticket(ticket_id: str, number: int, branch_id: str = "br1") -> Ticket:
    return Ticket(
        id=ticket_id, branch_id=branch_id, ticket_number=number, status="waiting", created_at=utcnow()
    )


def test_transaction_retries_then_gives_up(store_factory) -> None:
    store = store_factory(max_attempts=3)
    attempts = []

    def _always_locked(tx):
        attempts.append(1)
        raise OperationalError("UPDATE queue_state", {}, Exception("database is locked"))

    with pytest.raises(StoreUnavailable):
        store.transaction(_always_locked)
    assert len(attempts) == 3


def test_transaction_recovers_after_conflict(store) -> None:
    attempts = []

    def _flaky(tx):
        attempts.append(1)
        if len(attempts) == 1:
            raise OperationalError("UPDATE queue_state", {}, Exception("database is locked"))
        tx.add(Branch(id="br9", name="Annex", created_at=utcnow()))
        return "ok"

    assert store.transaction(_flaky) == "ok"
    assert len(attempts) == 2
    assert store.read(lambda session: session.get(Branch, "br9")) is not None


def test_domain_errors_roll_back_and_are_not_retried(store) -> None:
    attempts = []

    def _missing(tx):
        attempts.append(1)
        tx.add(Branch(id="br8", name="Ghost", created_at=utcnow()))
        tx.flush()
        raise NotFound("nope")

    with pytest.raises(NotFound):
        store.transaction(_missing)
    assert len(attempts) == 1
    assert store.read(lambda session: session.get(Branch, "br8")) is None


def test_batch_delete_respects_batch_limit(store_factory) -> None:
    store = store_factory(delete_batch_size=2)
    for i in range(3):
        store.add_document(_ticket(f"tkt_{i}", i + 1), "queue:br1")

    with pytest.raises(ValueError):
        store.batch_delete(Ticket, ["tkt_0", "tkt_1", "tkt_2"])

    assert store.batch_delete(Ticket, ["tkt_0", "tkt_1"], "queue:br1") == 2
    assert store.batch_delete(Ticket, []) == 0


def test_publish_only_after_commit(store) -> None:
    seen = []
    store.subscribe(["queue:br1"], lambda session: session.get(Ticket, "tkt_x") is not None, seen.append)

    def _rolled_back(tx):
        tx.add(_ticket("tkt_x", 1))
        tx.touch("queue:br1")
        raise NotFound("abort")

    with pytest.raises(NotFound):
        store.transaction(_rolled_back)
    assert seen == [False]

    store.add_document(_ticket("tkt_x", 1), "queue:br1")
    assert seen == [False, True]


def test_constraint_violation_is_not_retried(store_factory) -> None:
    store = store_factory(foreign_keys=True)
    attempts = []

    def _orphan(tx):
        attempts.append(1)
        tx.add(_ticket("tkt_orphan", 1, branch_id="ghost"))

    with pytest.raises(IntegrityViolation):
        store.transaction(_orphan)
    assert len(attempts) == 1


def test_duplicate_key_is_retried(store) -> None:
    attempts = []

    def _racing_insert(tx):
        attempts.append(1)
        if len(attempts) == 1:
            tx.add(Branch(id="br1", name="Duplicate", created_at=utcnow()))
        return "ok"

    assert store.transaction(_racing_insert) == "ok"
    assert len(attempts) == 2


def test_writes_from_another_store_are_delivered_on_poll(tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'shared.db'}"
    local = make_store(url)
    remote = make_store(url, seed=False)
    seen = []

    sub = subscribe_waiting_count(local, "br1", seen.append)
    QueueEngine(remote).issue_ticket("br1")
    assert seen == [0]

    assert local.poll_changes() == {"queue:br1"}
    assert seen == [0, 1]
    assert local.poll_changes() == set()

    # local writes are already delivered and do not come back through the poll
    QueueEngine(local).issue_ticket("br1")
    assert seen == [0, 1, 2]
    assert local.poll_changes() == set()
    sub.close()


def test_started_store_delivers_on_its_worker_thread(tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'worker.db'}"
    store = make_store(url)
    remote = make_store(url, seed=False)
    deliveries = []
    reached_two = threading.Event()

    def _on_change(count: int) -> None:
        deliveries.append(threading.current_thread().name)
        if count == 2:
            reached_two.set()

    store.start(poll_interval=0.05)
    try:
        sub = subscribe_waiting_count(store, "br1", _on_change)
        QueueEngine(store).issue_ticket("br1")
        QueueEngine(remote).issue_ticket("br1")
        assert reached_two.wait(5)
        sub.close()
    finally:
        store.stop()
        store.stop()

    assert not store.running
    assert deliveries[0] == threading.current_thread().name
    assert set(deliveries[1:]) == {"store-changes"}


def test_start_rejects_non_positive_interval(store) -> None:
    with pytest.raises(ValueError):
        store.start(poll_interval=0)
    assert not store.running
