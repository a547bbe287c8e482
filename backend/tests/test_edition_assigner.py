"""
Edition assigner tests.

Verifies:
- Dense 1..k numbering, held numbers keep their relative order
- Idempotence of reassign
- Overflow detected before anything is written; oldest entries keep their claim
- Open editions carry totals but no numbers
- Density over seeded random status sequences
"""

import random

import pytest

from edition_ledger.errors import EditionOverflow
from edition_ledger.services import ledger_service
from edition_ledger.services.edition_assigner import (
    EVENT_EDITION_ASSIGNED,
    EVENT_EDITION_CLEARED,
    plan_assignment,
    plan_over_capacity,
    reassign,
    reassign_locked,
)
from ledger_factories import make_entry, numbers, refund, seed_entries, single_item_order


def rows(store, product_id="prod-1"):
    return [e.to_dict() for e in store.entries_for_product(product_id)]


# =============================================================================
# PURE PLANNING
# =============================================================================

class TestPlanAssignment:
    def test_numbers_follow_creation_order(self):
        entries = [make_entry("c", minutes=2), make_entry("a", minutes=0), make_entry("b", minutes=1)]
        plan = plan_assignment("prod-1", entries, 5)
        assert plan.numbers == {"a": 1, "b": 2, "c": 3}
        assert plan.is_overflow is False

    def test_held_numbers_keep_relative_order(self):
        entries = [
            make_entry("old", minutes=0, edition_number=5),
            make_entry("older", minutes=-10, edition_number=3),
            make_entry("new", minutes=20),
        ]
        plan = plan_assignment("prod-1", entries, 10)
        assert plan.numbers == {"older": 1, "old": 2, "new": 3}

    def test_line_item_id_breaks_created_at_ties(self):
        entries = [make_entry("b"), make_entry("a")]
        assert plan_assignment("prod-1", entries, 2).numbers == {"a": 1, "b": 2}

    def test_consistent_set_is_noop(self):
        entries = [
            make_entry("a", minutes=0, edition_number=1, edition_total=3),
            make_entry("b", minutes=1, edition_number=2, edition_total=3),
        ]
        assert plan_assignment("prod-1", entries, 3).is_noop

    def test_plan_does_not_touch_entries(self):
        entries = [make_entry("a", edition_number=7)]
        plan_assignment("prod-1", entries, 3)
        assert entries[0].edition_number == 7

    def test_open_edition(self):
        entries = [make_entry("a", minutes=0), make_entry("b", minutes=1), make_entry("x", status="inactive")]
        plan = plan_assignment("prod-1", entries, None)
        assert plan.numbers == {"a": None, "b": None}
        totals = {c.line_item_id: c.edition_total for c in plan.changes}
        assert totals == {"a": 2, "b": 2}

    def test_inactive_entries_lose_numbers(self):
        entries = [make_entry("a"), make_entry("x", status="inactive", edition_number=2, edition_total=5)]
        plan = plan_assignment("prod-1", entries, 5)
        cleared = [c for c in plan.changes if c.line_item_id == "x"][0]
        assert cleared.edition_number is None
        assert cleared.edition_total is None
        assert cleared.previous_number == 2

    def test_overflow_names_newest_created(self):
        entries = [make_entry(f"L{i}", minutes=i) for i in range(1, 6)]
        plan = plan_assignment("prod-1", entries, 3)
        assert plan.surplus == ["L4", "L5"]
        assert plan.changes == []

    def test_over_capacity_numbers_the_entitled_entries(self):
        entries = [
            make_entry("L1", minutes=1),
            make_entry("L2", minutes=2, edition_number=1, edition_total=2),
            make_entry("L3", minutes=3, edition_number=2, edition_total=2),
            make_entry("x", status="inactive", edition_number=3),
        ]
        plan = plan_over_capacity("prod-1", entries, 2)

        assert plan.surplus == ["L3"]
        assert plan.active_count == 3
        assert plan.numbers == {"L2": 1, "L1": 2, "L3": None}
        assert {c.line_item_id: c.edition_number for c in plan.changes} == {"L1": 2, "x": None, "L3": None}


# =============================================================================
# STORE-BACKED REASSIGN
# =============================================================================

class TestReassign:
    def test_idempotent(self, store):
        store.set_edition_size("prod-1", 10)
        seed_entries(store, [
            make_entry("a", minutes=0, edition_number=4),
            make_entry("b", minutes=1),
            make_entry("c", minutes=2, edition_number=4),
            make_entry("d", minutes=3, status="inactive", edition_number=1),
        ])

        first = reassign("prod-1", store=store)
        after_first = rows(store)
        second = reassign("prod-1", store=store)

        assert first.changed
        assert second.changed == []
        assert rows(store) == after_first
        assert numbers(store) == {"a": 1, "c": 2, "b": 3}

    def test_events_record_number_changes(self, store):
        store.set_edition_size("prod-1", 5)
        seed_entries(store, [make_entry("a"), make_entry("x", status="inactive", edition_number=1)])

        reassign("prod-1", store=store, source="admin", actor="ops@example.com")

        assigned = store.events_for("a")
        assert [e.event_type for e in assigned] == [EVENT_EDITION_ASSIGNED]
        assert assigned[0].edition_number == 1
        assert assigned[0].actor == "ops@example.com"
        cleared = store.events_for("x")
        assert [e.event_type for e in cleared] == [EVENT_EDITION_CLEARED]
        assert cleared[0].edition_number == 1

    def test_overflow_writes_nothing(self, store):
        store.set_edition_size("prod-1", 2)
        seed_entries(store, [make_entry(f"L{i}", minutes=i) for i in range(1, 4)])
        before = rows(store)

        with pytest.raises(EditionOverflow) as exc_info:
            reassign("prod-1", store=store)

        assert exc_info.value.surplus == ["L3"]
        assert exc_info.value.edition_size == 2
        assert rows(store) == before
        assert store.events_for("L1") == []

    def test_over_capacity_pass_that_does_not_grow_commits(self, store):
        store.set_edition_size("prod-1", 1)
        seed_entries(store, [make_entry(f"L{i}", minutes=i) for i in range(1, 4)])

        def _remove_newest(unit):
            prior = 3
            unit.update_entry(unit.get_entry("L3"), status="inactive", status_reason="refunded")
            return reassign_locked(unit, prior_active_count=prior)

        result = store.with_product_lock("prod-1", _remove_newest)

        assert result.surplus == ["L2"]
        assert result.overflow.surplus == ["L2"]
        assert numbers(store) == {"L1": 1, "L2": None}

        with pytest.raises(EditionOverflow):
            store.with_product_lock("prod-1", lambda unit: reassign_locked(unit, prior_active_count=1))

    def test_grandfathering_keeps_oldest_even_when_newest_holds_low_number(self, store):
        store.set_edition_size("prod-1", 2)
        seed_entries(store, [
            make_entry("oldest", minutes=0, edition_number=2),
            make_entry("middle", minutes=1),
            make_entry("newest", minutes=2, edition_number=1),
        ])
        with pytest.raises(EditionOverflow) as exc_info:
            reassign("prod-1", store=store)
        assert exc_info.value.surplus == ["newest"]

    def test_explicit_open_edition_pass(self, store):
        store.set_edition_size("prod-1", 5)
        seed_entries(store, [make_entry("a", edition_number=1, edition_total=5), make_entry("b", minutes=1)])
        result = reassign("prod-1", None, store=store)
        assert result.edition_size is None
        assert numbers(store) == {"a": None, "b": None}
        assert {e.edition_total for e in store.entries_for_product("prod-1")} == {2}

    def test_products_are_independent(self, store):
        store.set_edition_size("prod-1", 1)
        store.set_edition_size("prod-2", 5)
        seed_entries(store, [make_entry("a", "prod-1"), make_entry("b", "prod-2"), make_entry("c", "prod-2", minutes=1)])
        reassign("prod-2", store=store)
        assert numbers(store, "prod-2") == {"b": 1, "c": 2}
        assert numbers(store, "prod-1") == {"a": None}


# =============================================================================
# SCENARIOS THROUGH ORDER SYNC
# =============================================================================

class TestLimitedEditionScenario:
    def test_refund_resequence_and_overflow(self, store):
        store.set_edition_size("P", 3)
        for minutes, line_item_id in enumerate(["L1", "L2", "L3"]):
            ledger_service.sync_order(single_item_order(line_item_id, "P", minutes=minutes), store=store)
        assert numbers(store, "P") == {"L1": 1, "L2": 2, "L3": 3}

        refunded = single_item_order("L2", "P", minutes=1, refunds=[refund("L2", 1)])
        ledger_service.sync_order(refunded, store=store)
        assert numbers(store, "P") == {"L1": 1, "L3": 2}
        assert store.get_entry("L2").status_reason == "refunded"
        assert store.get_entry("L2").edition_number is None

        ledger_service.sync_order(single_item_order("L4", "P", minutes=3), store=store)
        assert numbers(store, "P") == {"L1": 1, "L3": 2, "L4": 3}

        result = ledger_service.sync_order(single_item_order("L5", "P", minutes=4), store=store)
        assert result.ok is False
        assert [o.surplus for o in result.overflows] == [["L5"]]
        assert numbers(store, "P") == {"L1": 1, "L3": 2, "L4": 3}
        assert store.get_entry("L5") is None

    def test_partial_refund_keeps_number(self, store):
        store.set_edition_size("P", 3)
        order = single_item_order("L1", "P")
        order["line_items"][0]["quantity"] = 2
        ledger_service.sync_order(order, store=store)

        order["refunds"] = [refund("L1", 1)]
        ledger_service.sync_order(order, store=store)

        entry = store.get_entry("L1")
        assert entry.status == "active"
        assert entry.edition_number == 1
        assert entry.refunded_quantity == 1

    def test_out_of_order_webhooks_converge(self, store):
        store.set_edition_size("P", 5)
        # Refund arrives before the original paid webhook
        ledger_service.sync_order(single_item_order("L2", "P", minutes=1, refunds=[refund("L2", 1)]), store=store)
        ledger_service.sync_order(single_item_order("L1", "P", minutes=0), store=store)
        ledger_service.sync_order(single_item_order("L3", "P", minutes=2), store=store)
        assert numbers(store, "P") == {"L1": 1, "L3": 2}


# =============================================================================
# DENSITY OVER RANDOM SEQUENCES
# =============================================================================

@pytest.mark.parametrize("seed", range(25))
def test_density_over_random_status_sequences(store, seed):
    rng = random.Random(seed)
    size = 12
    store.set_edition_size("prod-1", size)
    ids = [f"L{i:02d}" for i in range(size)]
    seed_entries(store, [
        make_entry(line_item_id, minutes=rng.randint(0, 5), status=rng.choice(["active", "inactive"]))
        for line_item_id in ids
    ])

    def flip(unit, line_item_id):
        entry = unit.get_entry(line_item_id)
        if entry.status == "active":
            unit.update_entry(entry, status="inactive", status_reason="refunded")
        else:
            unit.update_entry(entry, status="active", status_reason="active")
        return reassign_locked(unit)

    for _ in range(40):
        target = rng.choice(ids)
        store.with_product_lock("prod-1", lambda unit: flip(unit, target))

        active = numbers(store)
        assert sorted(active.values()) == list(range(1, len(active) + 1))
        for entry in store.entries_for_product("prod-1"):
            if entry.status != "active":
                assert entry.edition_number is None
