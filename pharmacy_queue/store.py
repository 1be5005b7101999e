"""
SQLAlchemy-backed document store used by the queue and reservation engines.

The engines only talk to the store through a small contract:

  - ``transaction(fn)``: run ``fn(tx)`` in one database transaction, commit,
    and retry on conflicts up to ``max_attempts`` times;
  - ``read(fn)``: one-shot query in a throwaway session;
  - ``add_document`` / ``batch_delete``: single-shot writes, the latter capped
    at ``delete_batch_size`` ids per call;
  - ``subscribe(topics, query, on_change, on_error)``: push subscription that
    re-runs ``query`` after every committed transaction touching one of
    ``topics`` and calls ``on_change`` when the result differs from the last
    delivered value.

Transactions declare what they wrote with ``tx.touch(topic)``. The commit also
bumps a per-topic counter in the ``change_topic`` table. Writes made through
this store reach local subscribers right after commit; writes made by other
processes are picked up by ``poll_changes()``, which the background worker
started with ``start()`` runs every ``poll_interval`` seconds.
"""
from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Iterable, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from pharmacy_queue.errors import IntegrityViolation, StoreUnavailable, TransactionConflict
from pharmacy_queue.models import ChangeTopic

logger = logging.getLogger(__name__)

_UNSET = object()
_STOP = object()

# unique_violation, serialization_failure, deadlock_detected, lock_not_available
_RETRYABLE_PGCODES = {"23505", "40001", "40P01", "55P03"}


def is_conflict(exc: Exception) -> bool:
    """True when running the transaction again may succeed."""
    if isinstance(exc, (OperationalError, TransactionConflict)):
        return True
    if not isinstance(exc, IntegrityError):
        return False
    orig = exc.orig
    pgcode = getattr(orig, "pgcode", None)
    if pgcode is not None:
        return pgcode in _RETRYABLE_PGCODES
    message = str(orig).lower()
    return "unique constraint" in message or "duplicate key" in message


class Transaction:
    """Handle passed to transaction callbacks; wraps the live session."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.topics: set[str] = set()

    def get(self, model, key, *, for_update: bool = False):
        return self.session.get(model, key, with_for_update=True if for_update else None)

    def add(self, obj) -> None:
        self.session.add(obj)

    def flush(self) -> None:
        self.session.flush()

    def refresh(self, obj) -> None:
        self.session.refresh(obj)

    def execute(self, statement):
        return self.session.execute(statement)

    def scalars(self, statement):
        return self.session.scalars(statement)

    def touch(self, *topics: str) -> None:
        self.topics.update(topics)


class Subscription:
    """
    Teardown handle for a push subscription.

    Calling it (or ``close()``) more than once is harmless.
    """

    def __init__(
        self,
        store: "Store",
        topics: Iterable[str],
        query: Callable[[Session], Any],
        on_change: Callable[[Any], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        self._store = store
        self.topics = frozenset(topics)
        self._query = query
        self._on_change = on_change
        self._on_error = on_error
        self._last: Any = _UNSET
        self.closed = False

    def refresh(self) -> None:
        if self.closed:
            return
        try:
            value = self._store.read(self._query)
        except Exception as exc:
            self._fail(exc)
            return
        if self.closed or value == self._last:
            return
        self._last = value
        try:
            self._on_change(value)
        except Exception:
            logger.exception("subscriber callback failed topics=%s", sorted(self.topics))

    def _fail(self, exc: Exception) -> None:
        self.close()
        if self._on_error is None:
            logger.error("subscription query failed topics=%s: %s", sorted(self.topics), exc)
            return
        try:
            self._on_error(exc)
        except Exception:
            logger.exception("subscriber error callback failed topics=%s", sorted(self.topics))

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._store._unregister(self)

    def __call__(self) -> None:
        self.close()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class Store:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        max_attempts: int = 5,
        delete_batch_size: int = 450,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if delete_batch_size < 1:
            raise ValueError("delete_batch_size must be >= 1")
        self._session_factory = session_factory
        self.max_attempts = max_attempts
        self.delete_batch_size = delete_batch_size
        self._subscriptions: list[Subscription] = []
        self._lock = threading.RLock()
        # last change_topic version this process has delivered, per topic
        self._versions: dict[str, int] = {}
        self._pending: "queue.Queue[Any]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self.poll_interval = 1.0

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    def transaction(self, fn: Callable[[Transaction], Any]) -> Any:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            session = self._session_factory()
            tx = Transaction(session)
            try:
                result = fn(tx)
                versions = self._bump_versions(session, tx.topics)
                session.commit()
            except (IntegrityError, OperationalError, TransactionConflict) as exc:
                session.rollback()
                if not is_conflict(exc):
                    raise IntegrityViolation(f"constraint violated: {exc.orig}") from exc
                last_error = exc
                logger.warning(
                    "transaction conflict attempt=%s/%s: %s",
                    attempt,
                    self.max_attempts,
                    exc.__class__.__name__,
                )
                continue
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()
            self._remember(versions)
            self.publish(tx.topics)
            return result
        raise StoreUnavailable(
            f"transaction could not be committed after {self.max_attempts} attempts"
        ) from last_error

    def _bump_versions(self, session: Session, topics: Iterable[str]) -> dict[str, int]:
        versions = {}
        # fixed order so concurrent writers lock counter rows the same way
        for topic in sorted(topics):
            result = session.execute(
                update(ChangeTopic)
                .where(ChangeTopic.topic == topic)
                .values(version=ChangeTopic.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                session.add(ChangeTopic(topic=topic, version=1))
                session.flush()
                versions[topic] = 1
            else:
                versions[topic] = session.scalar(
                    select(ChangeTopic.version).where(ChangeTopic.topic == topic)
                )
        return versions

    def _remember(self, versions: dict[str, int]) -> None:
        with self._lock:
            for topic, version in versions.items():
                if version > self._versions.get(topic, 0):
                    self._versions[topic] = version

    def add_document(self, obj, *topics: str) -> str:
        def _add(tx: Transaction) -> str:
            tx.add(obj)
            tx.flush()
            tx.touch(*topics)
            return obj.id

        return self.transaction(_add)

    def batch_delete(self, model, ids: Sequence[Any], *topics: str) -> int:
        ids = list(ids)
        if not ids:
            return 0
        if len(ids) > self.delete_batch_size:
            raise ValueError(
                f"batch of {len(ids)} exceeds delete_batch_size={self.delete_batch_size}"
            )

        def _delete(tx: Transaction) -> int:
            result = tx.execute(
                delete(model)
                .where(model.id.in_(ids))
                .execution_options(synchronize_session=False)
            )
            tx.touch(*topics)
            return result.rowcount

        return self.transaction(_delete)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def read(self, fn: Callable[[Session], Any]) -> Any:
        session = self._session_factory()
        try:
            return fn(session)
        finally:
            session.close()

    # ------------------------------------------------------------------
    # change notification
    # ------------------------------------------------------------------
    def subscribe(
        self,
        topics: Iterable[str],
        query: Callable[[Session], Any],
        on_change: Callable[[Any], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Subscription:
        subscription = Subscription(self, topics, query, on_change, on_error)
        with self._lock:
            self._subscriptions.append(subscription)
            subscription.refresh()
        return subscription

    def publish(self, topics: Iterable[str]) -> None:
        """
        Refresh subscribers of ``topics``: on the worker thread when the
        store was started, otherwise right here on the caller's thread.
        """
        topics = set(topics)
        if not topics:
            return
        if self.running:
            self._pending.put(topics)
        else:
            self._deliver(topics)

    def _deliver(self, topics: set[str]) -> None:
        with self._lock:
            for subscription in list(self._subscriptions):
                if subscription.topics & topics:
                    subscription.refresh()

    def poll_changes(self) -> set[str]:
        """Deliver topics whose counter moved since this process last saw them."""
        with self._lock:
            watched = set()
            for subscription in self._subscriptions:
                watched |= subscription.topics
        if not watched:
            return set()
        rows = self.read(
            lambda session: session.execute(
                select(ChangeTopic.topic, ChangeTopic.version).where(ChangeTopic.topic.in_(watched))
            ).all()
        )
        changed = set()
        with self._lock:
            for topic, version in rows:
                if version > self._versions.get(topic, 0):
                    self._versions[topic] = version
                    changed.add(topic)
        if changed:
            self._deliver(changed)
        return changed

    def _unregister(self, subscription: Subscription) -> None:
        with self._lock:
            try:
                self._subscriptions.remove(subscription)
            except ValueError:
                pass

    @property
    def subscription_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    # ------------------------------------------------------------------
    # background worker
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def start(self, poll_interval: Optional[float] = None) -> None:
        """Move delivery off writer threads and begin polling for outside writes."""
        if poll_interval is not None:
            if poll_interval <= 0:
                raise ValueError("poll_interval must be > 0")
            self.poll_interval = poll_interval
        with self._lock:
            if self.running:
                return
            self._worker = threading.Thread(target=self._run, name="store-changes", daemon=True)
            self._worker.start()
        logger.info("change worker started poll_interval=%ss", self.poll_interval)

    def stop(self, timeout: float = 5.0) -> None:
        worker = self._worker
        if worker is None:
            return
        self._pending.put(_STOP)
        worker.join(timeout)
        self._worker = None

    def _run(self) -> None:
        while True:
            try:
                topics = self._pending.get(timeout=self.poll_interval)
            except queue.Empty:
                topics = None
            if topics is _STOP:
                return
            try:
                if topics is None:
                    self.poll_changes()
                else:
                    self._deliver(topics)
            except Exception:
                logger.exception("change delivery failed")
