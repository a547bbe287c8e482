"""
Ledger store tests.

Verifies:
- A failed unit leaves entries, configuration and events untouched
- Lock timeout semantics (fail fast, bounded wait)
- Units cannot write another product's entries
- The SQL store rolls back overflowing syncs and maps IntegrityError
"""

import threading

import pytest
import sqlalchemy as sa

from edition_ledger.errors import LockTimeout, PersistenceConflict
from edition_ledger.extensions import db
from edition_ledger.models import LedgerEntry, ProductEdition
from edition_ledger.services import ledger_service
from edition_ledger.services.concurrency import ProductLockRegistry
from edition_ledger.services.edition_assigner import reassign, reassign_locked
from edition_ledger.services.ledger_store import MemoryLedgerStore
from ledger_factories import make_entry, numbers, seed_entries, single_item_order


class FailingMemoryStore(MemoryLedgerStore):
    """Rejects commits while `fail` is set, like a database refusing a batch."""

    fail = False

    def before_commit(self, unit):
        if self.fail:
            raise PersistenceConflict(unit.product_id, RuntimeError("write rejected"))


# =============================================================================
# ATOMICITY
# =============================================================================

class TestAtomicity:
    def test_rejected_commit_leaves_rows_untouched(self, app):
        store = FailingMemoryStore(lock_timeout=0)
        store.set_edition_size("prod-1", 5)
        seed_entries(store, [make_entry("a", minutes=0), make_entry("b", minutes=1)])
        before = [e.to_dict() for e in store.entries_for_product("prod-1")]

        store.fail = True
        with pytest.raises(PersistenceConflict):
            reassign("prod-1", store=store)

        assert [e.to_dict() for e in store.entries_for_product("prod-1")] == before
        assert store.events_for("a") == []
        assert store.locks.is_locked("prod-1") is False

        store.fail = False
        reassign("prod-1", store=store)
        assert numbers(store) == {"a": 1, "b": 2}

    def test_exception_in_unit_rolls_back(self, store):
        seed_entries(store, [make_entry("a")])

        def _op(unit):
            unit.update_entry(unit.get_entry("a"), status="inactive", status_reason="refunded")
            unit.set_edition_size(3)
            raise ValueError("boom")

        with pytest.raises(ValueError):
            store.with_product_lock("prod-1", _op)

        assert store.get_entry("a").status == "active"
        assert store.get_edition_size("prod-1") is None
        assert store.locks.is_locked("prod-1") is False

    def test_update_entry_reports_changes(self, store):
        seed_entries(store, [make_entry("a")])

        def _op(unit):
            entry = unit.get_entry("a")
            stamp = entry.updated_at
            unchanged = unit.update_entry(entry, status="active")
            assert entry.updated_at == stamp
            changed = unit.update_entry(entry, edition_number=1)
            return unchanged, changed

        assert store.with_product_lock("prod-1", _op) == (False, True)

    def test_unit_rejects_other_products(self, store):
        with pytest.raises(RuntimeError):
            store.with_product_lock("prod-1", lambda unit: unit.add_entry(make_entry("a", "prod-2")))
        assert store.get_entry("a") is None

    def test_event_ids_assigned_on_commit(self, store):
        store.set_edition_size("prod-1", 2)
        seed_entries(store, [make_entry("a"), make_entry("b", minutes=1)])
        reassign("prod-1", store=store)
        ids = [e.id for e in store.events_for("a") + store.events_for("b")]
        assert ids == [1, 2]


# =============================================================================
# LOCKING
# =============================================================================

class TestLocking:
    def test_fail_fast_when_held(self, store):
        store.locks.acquire("prod-1", None)
        try:
            with pytest.raises(LockTimeout) as exc_info:
                reassign("prod-1", store=store, timeout=0)
            assert exc_info.value.product_id == "prod-1"
        finally:
            store.locks.release("prod-1")

    def test_bounded_wait(self, store):
        store.locks.acquire("prod-1", None)
        try:
            with pytest.raises(LockTimeout):
                reassign("prod-1", store=store, timeout=0.05)
        finally:
            store.locks.release("prod-1")

    def test_other_products_do_not_block(self, store):
        seed_entries(store, [make_entry("b", "prod-2")])
        store.locks.acquire("prod-1", None)
        try:
            result = reassign("prod-2", store=store, timeout=0)
        finally:
            store.locks.release("prod-1")
        assert result.active_count == 1

    def test_waiter_proceeds_after_release(self, store):
        store.set_edition_size("prod-1", 5)
        seed_entries(store, [make_entry("a")])
        store.locks.acquire("prod-1", None)
        results = []

        worker = threading.Thread(target=lambda: results.append(reassign("prod-1", store=store, timeout=5)))
        worker.start()
        worker.join(0.1)
        assert results == []

        store.locks.release("prod-1")
        worker.join(5)
        assert results[0].numbers == {"a": 1}
        assert store.locks.tracked_products() == []

    def test_registry_drops_idle_locks(self):
        locks = ProductLockRegistry()
        with locks.hold("prod-1", None):
            assert locks.tracked_products() == ["prod-1"]
        assert locks.tracked_products() == []

        locks.acquire("prod-2", None)
        with pytest.raises(LockTimeout):
            locks.acquire("prod-2", 0)
        assert locks.tracked_products() == ["prod-2"]
        locks.release("prod-2")
        assert locks.tracked_products() == []
        assert locks.is_locked("prod-2") is False


# =============================================================================
# SQL STORE
# =============================================================================

class TestSqlStore:
    def test_sync_and_reassign_roundtrip(self, sql_store, db_session):
        ledger_service.set_edition_size("prod-1", 3, title="Nightfall Print", store=sql_store)
        ledger_service.sync_order(single_item_order("L1", minutes=0), store=sql_store)
        ledger_service.sync_order(single_item_order("L2", minutes=1), store=sql_store)

        assert numbers(sql_store) == {"L1": 1, "L2": 2}
        config = db_session.query(ProductEdition).filter_by(product_id="prod-1").one()
        assert config.edition_size == 3
        assert config.title == "Nightfall Print"
        assert sql_store.get_order_snapshot("order-L1")["id"] == "order-L1"

    def test_overflow_rolls_back_whole_product_unit(self, sql_store, db_session):
        ledger_service.set_edition_size("prod-1", 1, store=sql_store)
        ledger_service.sync_order(single_item_order("L1", minutes=0), store=sql_store)

        result = ledger_service.sync_order(single_item_order("L2", minutes=1), store=sql_store)

        assert [o.surplus for o in result.overflows] == [["L2"]]
        assert db_session.query(LedgerEntry).filter_by(line_item_id="L2").first() is None
        assert numbers(sql_store) == {"L1": 1}

    def test_integrity_error_becomes_persistence_conflict(self, sql_store, db_session):
        ledger_service.sync_order(single_item_order("L1"), store=sql_store)

        def _op(unit):
            unit.add_entry(make_entry("L1"))

        with pytest.raises(PersistenceConflict):
            sql_store.with_product_lock("prod-1", _op)

        assert db_session.query(LedgerEntry).count() == 1
        assert sql_store.locks.is_locked("prod-1") is False

    def test_lock_row_creates_product_config(self, sql_store, db_session):
        sql_store.with_product_lock("prod-9", lambda unit: reassign_locked(unit))
        config = db_session.query(ProductEdition).filter_by(product_id="prod-9").one()
        assert config.edition_size is None

    def test_collector_lookup_is_case_insensitive(self, sql_store, db_session):
        ledger_service.sync_order(single_item_order("L1", email="Ada@Example.com"), store=sql_store)
        entries = sql_store.active_entries_for_owner("  ADA@example.COM ")
        assert [e.line_item_id for e in entries] == ["L1"]

    def test_constraint_names_match_migration(self, app):
        inspector = sa.inspect(db.engine)
        unique = {uc["name"] for uc in inspector.get_unique_constraints("ledger_entries")}
        indexes = {ix["name"] for ix in inspector.get_indexes("ledger_entries")}
        assert unique == {"uq_ledger_entries_line_item_id"}
        assert {"ix_ledger_entries_product_id", "ix_ledger_entries_order_id"} <= indexes
        assert {uc["name"] for uc in inspector.get_unique_constraints("order_snapshots")} == {
            "uq_order_snapshots_order_id"
        }
