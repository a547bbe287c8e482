# Overview: Persistence contract for ledger entries with per-product locking.

"""
Ledger Store

CONTRACT:
- with_product_lock(product_id, fn): only one unit of work per product at a
  time. fn receives a LedgerUnit, the only handle that can write entries.
  The unit commits all-or-nothing when fn returns; any exception rolls it
  back and the lock is released either way.
- Point read by line_item_id, batch read by product_id / order_id / owner.
- Snapshots of raw orders are stored outside the product lock (they are not
  ledger state).

Two implementations share the contract: SqlLedgerStore (Flask-SQLAlchemy)
and MemoryLedgerStore (embedding and tests).
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
from typing import Any, Callable, Optional

from flask import current_app
from sqlalchemy import func, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import LockTimeout, PersistenceConflict
from ..extensions import db
from ..models import EditionEvent, LedgerEntry, OrderSnapshot, ProductEdition
from edition_ledger.time_utils import utcnow
from .concurrency import ProductLockRegistry, lock_for_update, run_with_retry

logger = logging.getLogger(__name__)

# Sentinel: use the store's configured lock timeout
DEFAULT_TIMEOUT = object()

ENTRY_COLUMNS = tuple(c.key for c in LedgerEntry.__table__.columns)


def clone_entry(entry: LedgerEntry) -> LedgerEntry:
    """Detached copy of an entry (all column values)."""
    return LedgerEntry(**{key: getattr(entry, key) for key in ENTRY_COLUMNS})


def _edition_sort_key(entry: LedgerEntry):
    return (entry.edition_number is None, entry.edition_number or 0, entry.line_item_id)


# =============================================================================
# UNITS OF WORK
# =============================================================================

class LedgerUnit:
    """Write handle for one product, valid only inside with_product_lock."""

    def __init__(self, product_id: str):
        self.product_id = product_id

    def _check_product(self, entry: LedgerEntry) -> None:
        if entry.product_id != self.product_id:
            raise RuntimeError(
                f"Entry {entry.line_item_id} belongs to product {entry.product_id}, "
                f"not locked product {self.product_id}"
            )

    def update_entry(self, entry: LedgerEntry, **fields: Any) -> bool:
        """Set fields on an entry; bumps updated_at only when something changed."""
        self._check_product(entry)
        changed = False
        for key, value in fields.items():
            if getattr(entry, key) != value:
                setattr(entry, key, value)
                changed = True
        if changed:
            entry.updated_at = utcnow()
        return changed

    def append_event(
        self,
        *,
        line_item_id: str,
        event_type: str,
        status_reason: str | None = None,
        edition_number: int | None = None,
        source: str | None = None,
        actor: str | None = None,
        payload: dict | None = None,
    ) -> EditionEvent:
        event = EditionEvent(
            line_item_id=line_item_id,
            product_id=self.product_id,
            event_type=event_type,
            status_reason=status_reason,
            edition_number=edition_number,
            source=source,
            actor=actor,
            payload=payload,
            created_at=utcnow(),
        )
        self._add_event(event)
        return event

    # Implemented per store
    def entries(self) -> list[LedgerEntry]:
        raise NotImplementedError

    def get_entry(self, line_item_id: str) -> Optional[LedgerEntry]:
        raise NotImplementedError

    def add_entry(self, entry: LedgerEntry) -> LedgerEntry:
        raise NotImplementedError

    def edition_size(self) -> Optional[int]:
        raise NotImplementedError

    def set_edition_size(self, edition_size: Optional[int], title: str | None = None) -> None:
        raise NotImplementedError

    def _add_event(self, event: EditionEvent) -> None:
        raise NotImplementedError


class SqlLedgerUnit(LedgerUnit):
    def __init__(self, store: "SqlLedgerStore", product_id: str):
        super().__init__(product_id)
        self.store = store
        self.config: ProductEdition | None = None

    @property
    def session(self):
        return self.store.session

    def lock_row(self, timeout: float | None) -> None:
        """Row lock on the product's config row (cross-process exclusion)."""
        if self.session.get_bind().dialect.name == "postgresql" and timeout is not None and timeout >= 0:
            self.session.execute(text(f"SET LOCAL lock_timeout = '{int(timeout * 1000)}ms'"))
        query = lock_for_update(self.session.query(ProductEdition).filter_by(product_id=self.product_id))
        try:
            config = query.first()
            if config is None:
                config = ProductEdition(product_id=self.product_id, edition_size=None)
                self.session.add(config)
                try:
                    self.session.flush()
                except IntegrityError:
                    # Created concurrently by another process; lock theirs
                    self.session.rollback()
                    config = query.one()
        except OperationalError as exc:
            self.session.rollback()
            logger.warning("Database lock wait failed for product %s: %s", self.product_id, exc)
            raise LockTimeout(self.product_id, timeout) from exc
        self.config = config

    def entries(self) -> list[LedgerEntry]:
        return (
            self.session.query(LedgerEntry)
            .filter_by(product_id=self.product_id)
            .order_by(LedgerEntry.created_at.asc(), LedgerEntry.line_item_id.asc())
            .all()
        )

    def get_entry(self, line_item_id: str) -> Optional[LedgerEntry]:
        entry = self.session.query(LedgerEntry).filter_by(line_item_id=line_item_id).first()
        if entry is not None and entry.product_id != self.product_id:
            return None
        return entry

    def add_entry(self, entry: LedgerEntry) -> LedgerEntry:
        self._check_product(entry)
        self.session.add(entry)
        self.session.flush()
        return entry

    def edition_size(self) -> Optional[int]:
        return self.config.edition_size if self.config else None

    def set_edition_size(self, edition_size: Optional[int], title: str | None = None) -> None:
        self.config.edition_size = edition_size
        if title is not None:
            self.config.title = title
        self.session.flush()

    def _add_event(self, event: EditionEvent) -> None:
        self.session.add(event)


class MemoryLedgerUnit(LedgerUnit):
    """Works on copies; the store swaps them in on commit."""

    def __init__(self, store: "MemoryLedgerStore", product_id: str):
        super().__init__(product_id)
        self.store = store
        with store._guard:
            self._working = {
                e.line_item_id: clone_entry(e)
                for e in store._entries.values()
                if e.product_id == product_id
            }
            self._edition_size = store._sizes.get(product_id)
            self._title = store._titles.get(product_id)
        self._events: list[EditionEvent] = []

    def entries(self) -> list[LedgerEntry]:
        return sorted(
            self._working.values(),
            key=lambda e: (e.created_at is None, e.created_at, e.line_item_id),
        )

    def get_entry(self, line_item_id: str) -> Optional[LedgerEntry]:
        return self._working.get(line_item_id)

    def add_entry(self, entry: LedgerEntry) -> LedgerEntry:
        self._check_product(entry)
        if entry.line_item_id in self._working:
            raise PersistenceConflict(self.product_id, ValueError(f"duplicate line item {entry.line_item_id}"))
        self._working[entry.line_item_id] = entry
        return entry

    def edition_size(self) -> Optional[int]:
        return self._edition_size

    def set_edition_size(self, edition_size: Optional[int], title: str | None = None) -> None:
        self._edition_size = edition_size
        if title is not None:
            self._title = title

    def _add_event(self, event: EditionEvent) -> None:
        self._events.append(event)

    def commit(self) -> None:
        store = self.store
        with store._guard:
            for line_item_id, entry in self._working.items():
                existing = store._entries.get(line_item_id)
                if existing is not None and existing.product_id != self.product_id:
                    raise PersistenceConflict(
                        self.product_id, ValueError(f"line item {line_item_id} belongs to {existing.product_id}")
                    )
            store.before_commit(self)
            store._entries.update(self._working)
            store._sizes[self.product_id] = self._edition_size
            if self._title is not None:
                store._titles[self.product_id] = self._title
            for event in self._events:
                event.id = next(store._event_ids)
                store._events.append(event)


# =============================================================================
# STORES
# =============================================================================

class LedgerStore:
    """Base class; see module docstring for the contract."""

    def __init__(self, *, locks: ProductLockRegistry | None = None, lock_timeout: float | None = 10.0):
        self.locks = locks if locks is not None else ProductLockRegistry()
        self.lock_timeout = lock_timeout

    def _resolve_timeout(self, timeout):
        return self.lock_timeout if timeout is DEFAULT_TIMEOUT else timeout

    def with_product_lock(self, product_id: str, fn: Callable[[LedgerUnit], Any], *, timeout=DEFAULT_TIMEOUT):
        raise NotImplementedError

    def get_entry(self, line_item_id: str) -> Optional[LedgerEntry]:
        raise NotImplementedError

    def entries_for_product(self, product_id: str) -> list[LedgerEntry]:
        raise NotImplementedError

    def entries_for_order(self, order_id: str) -> list[LedgerEntry]:
        raise NotImplementedError

    def active_entries_for_owner(self, owner_email: str) -> list[LedgerEntry]:
        raise NotImplementedError

    def product_ids(self) -> list[str]:
        raise NotImplementedError

    def get_edition_size(self, product_id: str) -> Optional[int]:
        raise NotImplementedError

    def events_for(self, line_item_id: str) -> list[EditionEvent]:
        raise NotImplementedError

    def save_order_snapshot(self, order_id: str, payload: dict, order_name: str | None = None) -> None:
        raise NotImplementedError

    def get_order_snapshot(self, order_id: str) -> Optional[dict]:
        raise NotImplementedError


class SqlLedgerStore(LedgerStore):
    """Ledger store on the Flask-SQLAlchemy session."""

    def __init__(
        self,
        *,
        locks: ProductLockRegistry | None = None,
        lock_timeout: float | None = 10.0,
        commit_attempts: int = 3,
        backoff_base: float = 0.1,
    ):
        super().__init__(locks=locks, lock_timeout=lock_timeout)
        self.commit_attempts = commit_attempts
        self.backoff_base = backoff_base

    @classmethod
    def from_config(cls, config) -> "SqlLedgerStore":
        timeout = config.get("LEDGER_LOCK_TIMEOUT_SECONDS", 10.0)
        return cls(
            lock_timeout=None if timeout is not None and timeout < 0 else timeout,
            commit_attempts=config.get("LEDGER_COMMIT_ATTEMPTS", 3),
            backoff_base=config.get("LEDGER_RETRY_BACKOFF_SECONDS", 0.1),
        )

    @property
    def session(self):
        return db.session

    def with_product_lock(self, product_id: str, fn: Callable[[LedgerUnit], Any], *, timeout=DEFAULT_TIMEOUT):
        timeout = self._resolve_timeout(timeout)

        def _op():
            unit = SqlLedgerUnit(self, product_id)
            try:
                unit.lock_row(timeout)
                result = fn(unit)
                self.session.commit()
                return result
            except BaseException:
                self.session.rollback()
                raise

        with self.locks.hold(product_id, timeout):
            try:
                return run_with_retry(
                    _op,
                    attempts=self.commit_attempts,
                    backoff_base=self.backoff_base,
                    on_retry=self.session.rollback,
                )
            except (IntegrityError, OperationalError, StaleDataError) as exc:
                logger.warning("Atomic write rejected for product %s: %s", product_id, exc)
                raise PersistenceConflict(product_id, exc) from exc

    def get_entry(self, line_item_id: str) -> Optional[LedgerEntry]:
        return self.session.query(LedgerEntry).filter_by(line_item_id=line_item_id).first()

    def entries_for_product(self, product_id: str) -> list[LedgerEntry]:
        return (
            self.session.query(LedgerEntry)
            .filter_by(product_id=product_id)
            .order_by(LedgerEntry.created_at.asc(), LedgerEntry.line_item_id.asc())
            .all()
        )

    def entries_for_order(self, order_id: str) -> list[LedgerEntry]:
        return (
            self.session.query(LedgerEntry)
            .filter_by(order_id=order_id)
            .order_by(LedgerEntry.line_item_id.asc())
            .all()
        )

    def active_entries_for_owner(self, owner_email: str) -> list[LedgerEntry]:
        return (
            self.session.query(LedgerEntry)
            .filter(func.lower(LedgerEntry.owner_email) == owner_email.strip().lower())
            .filter(LedgerEntry.status == "active")
            .order_by(LedgerEntry.product_id.asc(), LedgerEntry.edition_number.asc())
            .all()
        )

    def product_ids(self) -> list[str]:
        rows = self.session.query(LedgerEntry.product_id).distinct().order_by(LedgerEntry.product_id).all()
        return [r[0] for r in rows]

    def get_edition_size(self, product_id: str) -> Optional[int]:
        config = self.session.query(ProductEdition).filter_by(product_id=product_id).first()
        return config.edition_size if config else None

    def events_for(self, line_item_id: str) -> list[EditionEvent]:
        return (
            self.session.query(EditionEvent)
            .filter_by(line_item_id=line_item_id)
            .order_by(EditionEvent.created_at.asc(), EditionEvent.id.asc())
            .all()
        )

    def save_order_snapshot(self, order_id: str, payload: dict, order_name: str | None = None) -> None:
        def _op():
            snapshot = self.session.query(OrderSnapshot).filter_by(order_id=order_id).first()
            if snapshot is None:
                snapshot = OrderSnapshot(order_id=order_id)
                self.session.add(snapshot)
            snapshot.order_name = order_name
            snapshot.payload = payload
            snapshot.received_at = utcnow()
            self.session.commit()

        try:
            run_with_retry(_op, attempts=self.commit_attempts, backoff_base=self.backoff_base,
                           on_retry=self.session.rollback)
        except IntegrityError:
            # Concurrent first insert; the other writer's snapshot is as fresh
            self.session.rollback()
            logger.info("Order snapshot %s written concurrently", order_id)

    def get_order_snapshot(self, order_id: str) -> Optional[dict]:
        snapshot = self.session.query(OrderSnapshot).filter_by(order_id=order_id).first()
        return snapshot.payload if snapshot else None


class MemoryLedgerStore(LedgerStore):
    """In-process store with the same locking and atomicity contract."""

    def __init__(self, *, locks: ProductLockRegistry | None = None, lock_timeout: float | None = None):
        super().__init__(locks=locks, lock_timeout=lock_timeout)
        self._guard = threading.Lock()
        self._entries: dict[str, LedgerEntry] = {}
        self._sizes: dict[str, Optional[int]] = {}
        self._titles: dict[str, str] = {}
        self._events: list[EditionEvent] = []
        self._snapshots: dict[str, dict] = {}
        self._event_ids = itertools.count(1)

    def before_commit(self, unit: MemoryLedgerUnit) -> None:
        """Hook for tests that inject persistence failures."""

    def with_product_lock(self, product_id: str, fn: Callable[[LedgerUnit], Any], *, timeout=DEFAULT_TIMEOUT):
        timeout = self._resolve_timeout(timeout)
        with self.locks.hold(product_id, timeout):
            unit = MemoryLedgerUnit(self, product_id)
            result = fn(unit)
            unit.commit()
            return result

    def set_edition_size(self, product_id: str, edition_size: Optional[int]) -> None:
        """Seed configuration directly (no resequencing)."""
        with self._guard:
            self._sizes[product_id] = edition_size

    def get_entry(self, line_item_id: str) -> Optional[LedgerEntry]:
        with self._guard:
            return self._entries.get(line_item_id)

    def entries_for_product(self, product_id: str) -> list[LedgerEntry]:
        with self._guard:
            rows = [e for e in self._entries.values() if e.product_id == product_id]
        return sorted(rows, key=lambda e: (e.created_at is None, e.created_at, e.line_item_id))

    def entries_for_order(self, order_id: str) -> list[LedgerEntry]:
        with self._guard:
            rows = [e for e in self._entries.values() if e.order_id == order_id]
        return sorted(rows, key=lambda e: e.line_item_id)

    def active_entries_for_owner(self, owner_email: str) -> list[LedgerEntry]:
        email = owner_email.strip().lower()
        with self._guard:
            rows = [
                e for e in self._entries.values()
                if e.status == "active" and (e.owner_email or "").lower() == email
            ]
        return sorted(rows, key=lambda e: (e.product_id,) + _edition_sort_key(e))

    def product_ids(self) -> list[str]:
        with self._guard:
            return sorted({e.product_id for e in self._entries.values()})

    def get_edition_size(self, product_id: str) -> Optional[int]:
        with self._guard:
            return self._sizes.get(product_id)

    def events_for(self, line_item_id: str) -> list[EditionEvent]:
        with self._guard:
            return [e for e in self._events if e.line_item_id == line_item_id]

    def save_order_snapshot(self, order_id: str, payload: dict, order_name: str | None = None) -> None:
        with self._guard:
            self._snapshots[order_id] = copy.deepcopy(payload)

    def get_order_snapshot(self, order_id: str) -> Optional[dict]:
        with self._guard:
            payload = self._snapshots.get(order_id)
        return copy.deepcopy(payload) if payload is not None else None


def get_ledger_store() -> LedgerStore:
    """The store registered on the current Flask app by create_app()."""
    return current_app.extensions["edition_ledger"]
